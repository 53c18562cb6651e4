"""
Provider capability interface.

A provider performs CRUD against a remote API for the resource types it
knows about, and describes which attributes of a type force replacement
and which are computed by the remote side.
"""
import abc
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional


@dataclass(frozen=True)
class ResourceSchema:
    resource_type: str
    force_new: FrozenSet[str] = frozenset()
    computed: FrozenSet[str] = frozenset({"id", "arn"})

    def forces_replacement(self, attribute: str) -> bool:
        return attribute in self.force_new

    def merged(self, force_new: Iterable[str] = (), computed: Iterable[str] = ()) -> "ResourceSchema":
        return ResourceSchema(
            resource_type=self.resource_type,
            force_new=self.force_new | frozenset(force_new),
            computed=self.computed | frozenset(computed),
        )


@dataclass
class RemoteObject:
    remote_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)   # desired attributes as stored remotely
    outputs: Dict[str, Any] = field(default_factory=dict)      # computed values


class Provider(abc.ABC):
    """Capability interface. Failures raise TransientAPIError or PermanentAPIError."""

    name = "provider"

    def __init__(self, schema_overrides: Optional[Mapping[str, Mapping[str, Iterable[str]]]] = None):
        self._overrides = dict(schema_overrides or {})

    def base_schema(self, resource_type: str) -> ResourceSchema:
        return ResourceSchema(resource_type)

    def schema(self, resource_type: str) -> ResourceSchema:
        schema = self.base_schema(resource_type)
        override = self._overrides.get(resource_type)
        if override:
            schema = schema.merged(override.get("force_new", ()), override.get("computed", ()))
        return schema

    @abc.abstractmethod
    def create(self, resource_type: str, attributes: Dict[str, Any]) -> RemoteObject:
        ...

    @abc.abstractmethod
    def read(self, resource_type: str, remote_id: str) -> Optional[RemoteObject]:
        ...

    @abc.abstractmethod
    def update(self, resource_type: str, remote_id: str, attributes: Dict[str, Any]) -> RemoteObject:
        ...

    @abc.abstractmethod
    def delete(self, resource_type: str, remote_id: str) -> None:
        ...
