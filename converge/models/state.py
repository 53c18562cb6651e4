from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from converge.errors import StateCorruptionError
from converge.models.resource import LifecyclePolicy


@dataclass
class StateRecord:
    resource_type: str
    remote_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)   # last-applied, resolved
    outputs: Dict[str, Any] = field(default_factory=dict)      # computed by the remote side
    dependencies: List[str] = field(default_factory=list)
    lifecycle: LifecyclePolicy = LifecyclePolicy()
    deposed_id: Optional[str] = None

    def value(self, attribute: str) -> Any:
        if attribute in self.outputs:
            return self.outputs[attribute]
        return self.attributes.get(attribute)

    def has(self, attribute: str) -> bool:
        return attribute in self.outputs or attribute in self.attributes

    def to_dict(self) -> dict:
        return {
            "resource_type": self.resource_type,
            "remote_id": self.remote_id,
            "attributes": self.attributes,
            "outputs": self.outputs,
            "dependencies": sorted(self.dependencies),
            "lifecycle": self.lifecycle.to_dict(),
            "deposed_id": self.deposed_id,
        }

    @classmethod
    def from_dict(cls, identity: str, data: Any) -> "StateRecord":
        if not isinstance(data, dict):
            raise StateCorruptionError(f"record for {identity} is not a mapping")
        try:
            return cls(
                resource_type=data["resource_type"],
                remote_id=data["remote_id"],
                attributes=dict(data.get("attributes") or {}),
                outputs=dict(data.get("outputs") or {}),
                dependencies=list(data.get("dependencies") or []),
                lifecycle=LifecyclePolicy.from_dict(data.get("lifecycle")),
                deposed_id=data.get("deposed_id"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise StateCorruptionError(f"record for {identity} is malformed: {exc}") from exc


@dataclass
class LockInfo:
    lock_id: str
    operation: str
    who: str
    created: str

    def to_dict(self) -> dict:
        return {
            "id": self.lock_id,
            "operation": self.operation,
            "who": self.who,
            "created": self.created,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LockInfo":
        return cls(
            lock_id=str(data.get("id", "")),
            operation=str(data.get("operation", "")),
            who=str(data.get("who", "")),
            created=str(data.get("created", "")),
        )
