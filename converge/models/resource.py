from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from converge.errors import ParseError


@dataclass(frozen=True)
class LifecyclePolicy:
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    ignore_changes: FrozenSet[str] = frozenset()   # "all" ignores every attribute

    def ignores(self, attribute: str) -> bool:
        return "all" in self.ignore_changes or attribute in self.ignore_changes

    def to_dict(self) -> dict:
        return {
            "create_before_destroy": self.create_before_destroy,
            "prevent_destroy": self.prevent_destroy,
            "ignore_changes": sorted(self.ignore_changes),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "LifecyclePolicy":
        data = data or {}
        return cls(
            create_before_destroy=bool(data.get("create_before_destroy", False)),
            prevent_destroy=bool(data.get("prevent_destroy", False)),
            ignore_changes=frozenset(data.get("ignore_changes", ())),
        )


@dataclass
class ResourceDeclaration:
    """A resource block as read from a file, before graph building."""
    resource_type: str     # e.g. "aws_lb"
    name: str              # logical name in the configuration
    attributes: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    lifecycle: Dict[str, Any] = field(default_factory=dict)
    source_file: str = ""

    @property
    def address(self) -> str:
        return f"{self.resource_type}.{self.name}"


class _NoDefault:
    def __repr__(self) -> str:
        return "(required)"


NO_DEFAULT = _NoDefault()


@dataclass
class Configuration:
    resources: List[ResourceDeclaration] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)   # name -> default or NO_DEFAULT
    outputs: Dict[str, Any] = field(default_factory=dict)     # name -> value expression

    def merge(self, other: "Configuration", source: str = "configuration") -> None:
        for kind, mine, theirs in (("variable", self.variables, other.variables),
                                   ("output", self.outputs, other.outputs)):
            for name in theirs:
                if name in mine:
                    raise ParseError(source, f"{kind} '{name}' is declared more than once")
        self.resources.extend(other.resources)
        self.variables.update(other.variables)
        self.outputs.update(other.outputs)


@dataclass(frozen=True)
class Reference:
    """``${type.name.attr}`` inside an attribute value."""
    address: str
    attribute: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.address}.{self.attribute}" if self.attribute else self.address


@dataclass(frozen=True)
class ResourceNode:
    resource_type: str
    name: str
    attributes: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    lifecycle: LifecyclePolicy = LifecyclePolicy()
    depends_on: Tuple[str, ...] = ()                 # explicit
    references: Tuple[Reference, ...] = ()           # implicit, from attributes
    index: int = 0                                   # declaration order
    source_file: str = ""

    @property
    def address(self) -> str:
        return f"{self.resource_type}.{self.name}"

    @property
    def dependencies(self) -> FrozenSet[str]:
        return frozenset(self.depends_on) | {r.address for r in self.references}


@dataclass(frozen=True)
class DependencyEdge:
    source: str            # dependent address
    target: str            # address the source depends on
    explicit: bool = False
