from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from converge.models.resource import LifecyclePolicy


class Action(str, Enum):
    NOOP    = "no-op"
    CREATE  = "create"
    UPDATE  = "update"
    REPLACE = "replace"
    DESTROY = "destroy"


class DiffKind(str, Enum):
    ADDED   = "added"
    CHANGED = "changed"
    REMOVED = "removed"


class _Unknown:
    """Value of an attribute that is only known once a dependency is applied."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    __str__ = __repr__


UNKNOWN = _Unknown()


@dataclass
class AttributeDiff:
    name: str
    kind: DiffKind
    old: Any = None
    new: Any = None
    forces_replacement: bool = False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "old": _plain(self.old),
            "new": _plain(self.new),
            "forces_replacement": self.forces_replacement,
        }


@dataclass
class ChangeSet:
    address: str
    resource_type: str
    action: Action
    diffs: List[AttributeDiff] = field(default_factory=list)
    lifecycle: LifecyclePolicy = LifecyclePolicy()
    deposed_id: Optional[str] = None   # left-over old instance to destroy
    reason: str = ""

    @property
    def changed_attributes(self) -> List[str]:
        return [d.name for d in self.diffs]

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "resource_type": self.resource_type,
            "action": self.action.value,
            "reason": self.reason,
            "deposed_id": self.deposed_id,
            "diffs": [d.to_dict() for d in self.diffs],
        }


def _plain(value: Any) -> Any:
    if value is UNKNOWN:
        return str(UNKNOWN)
    return value
