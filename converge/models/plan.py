from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from converge.models.change import Action, ChangeSet
from converge.models.resource import ResourceNode
from converge.models.state import StateRecord


class Step(str, Enum):
    CREATE  = "create"
    UPDATE  = "update"
    DESTROY = "destroy"


class OpStatus(str, Enum):
    PENDING     = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED   = "succeeded"
    FAILED      = "failed"
    SKIPPED     = "skipped"
    CANCELLED   = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (OpStatus.PENDING, OpStatus.IN_PROGRESS)


@dataclass(frozen=True)
class Operation:
    address: str
    resource_type: str
    step: Step
    action: Action            # change classification this step belongs to
    deposed: bool = False     # destroys the old instance of a create-before-destroy replace

    @property
    def key(self) -> str:
        suffix = " (deposed)" if self.deposed else ""
        return f"{self.step.value}:{self.address}{suffix}"

    def __str__(self) -> str:
        return f"{self.step.value}({self.address}{' deposed' if self.deposed else ''})"


@dataclass
class Plan:
    changes: List[ChangeSet]
    operations: List[Operation]
    dependencies: Dict[str, FrozenSet[str]]     # operation key -> prerequisite keys
    nodes: Dict[str, ResourceNode] = field(default_factory=dict)
    destroy: bool = False
    recorded: Dict[str, StateRecord] = field(default_factory=dict)   # stored state the plan was made from
    serial: Optional[int] = None      # store serial the plan was made at; None skips the check
    lineage: Optional[str] = None

    def change_for(self, address: str) -> Optional[ChangeSet]:
        for change in self.changes:
            if change.address == address:
                return change
        return None

    def operation(self, key: str) -> Operation:
        for op in self.operations:
            if op.key == key:
                return op
        raise KeyError(key)

    def dependents(self, key: str) -> List[str]:
        return [k for k, prereqs in self.dependencies.items() if key in prereqs]

    @property
    def is_empty(self) -> bool:
        return not self.operations

    def summary(self) -> Dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for change in self.changes:
            counts[change.action.value] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            "destroy": self.destroy,
            "summary": self.summary(),
            "changes": [c.to_dict() for c in self.changes],
            "operations": [
                {
                    "key": op.key,
                    "address": op.address,
                    "step": op.step.value,
                    "action": op.action.value,
                    "deposed": op.deposed,
                    "after": sorted(self.dependencies.get(op.key, ())),
                }
                for op in self.operations
            ],
        }
