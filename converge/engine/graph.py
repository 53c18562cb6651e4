"""
Resource graph builder.

Turns a parsed Configuration into typed ResourceNodes and dependency
edges, substitutes variables, validates every reference and checks the
graph is acyclic.
"""
import heapq
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Set, Tuple

from converge import expressions
from converge.errors import CycleError, ParseError, UnresolvedReferenceError
from converge.models.resource import (
    NO_DEFAULT,
    Configuration,
    DependencyEdge,
    LifecyclePolicy,
    ResourceDeclaration,
    ResourceNode,
)
from converge.providers.base import ResourceSchema

SchemaLookup = Callable[[str], ResourceSchema]


@dataclass(frozen=True)
class ResourceGraph:
    nodes: Dict[str, ResourceNode]
    edges: List[DependencyEdge]
    outputs: Dict[str, Any] = field(default_factory=dict)
    order: Tuple[str, ...] = ()

    def dependencies(self, address: str) -> List[str]:
        return sorted({e.target for e in self.edges if e.source == address})

    def dependents(self, address: str) -> List[str]:
        return sorted({e.source for e in self.edges if e.target == address})

    def transitive_dependents(self, address: str) -> Set[str]:
        found: Set[str] = set()
        stack = [address]
        while stack:
            for dep in self.dependents(stack.pop()):
                if dep not in found:
                    found.add(dep)
                    stack.append(dep)
        return found


def topological_order(
    items: Iterable[Hashable],
    prerequisites: Mapping[Hashable, Iterable[Hashable]],
    priority: Callable[[Hashable], Any],
    internal: bool = False,
) -> List[Hashable]:
    """
    Kahn's algorithm. Among ready items the one with the lowest
    ``priority`` goes first. Raises CycleError naming the items left over.
    """
    items = list(items)
    in_degree = {item: 0 for item in items}
    successors: Dict[Hashable, List[Hashable]] = {item: [] for item in items}
    for item in items:
        for pre in set(prerequisites.get(item, ())):
            if pre not in in_degree:
                continue
            in_degree[item] += 1
            successors[pre].append(item)

    ready = [(priority(item), n, item) for n, item in enumerate(items) if in_degree[item] == 0]
    heapq.heapify(ready)
    position = {item: n for n, item in enumerate(items)}
    ordered: List[Hashable] = []

    while ready:
        _, _, item = heapq.heappop(ready)
        ordered.append(item)
        for succ in successors[item]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                heapq.heappush(ready, (priority(succ), position[succ], succ))

    if len(ordered) != len(items):
        raise CycleError([str(i) for i in items if in_degree[i] > 0], internal=internal)
    return ordered


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _lifecycle(decl: ResourceDeclaration) -> LifecyclePolicy:
    raw = decl.lifecycle or {}
    ignore = raw.get("ignore_changes") or []
    if isinstance(ignore, str):
        ignore = [ignore]
    return LifecyclePolicy(
        create_before_destroy=_as_bool(raw.get("create_before_destroy", False)),
        prevent_destroy=_as_bool(raw.get("prevent_destroy", False)),
        ignore_changes=frozenset(expressions.strip_interpolation(str(i)) for i in ignore),
    )


class _VariableResolver:
    def __init__(self, declared: Mapping[str, Any], overrides: Mapping[str, Any]):
        for name in overrides:
            if name not in declared:
                raise UnresolvedReferenceError("variables", f"var.{name}", "is not declared")
        self.values = dict(declared)
        self.values.update(overrides)

    def __call__(self, where: str) -> Callable[[expressions.Token], Any]:
        def resolve(tok: expressions.Token) -> Any:
            if tok.is_variable:
                if tok.name not in self.values:
                    raise UnresolvedReferenceError(where, f"var.{tok.name}")
                value = self.values[tok.name]
                if value is NO_DEFAULT:
                    raise UnresolvedReferenceError(where, f"var.{tok.name}", "has no value")
                return value
            if tok.root in expressions.FOREIGN_ROOTS:
                raise UnresolvedReferenceError(
                    where, tok.text, f"uses '{tok.root}' values, which are not supported"
                )
            return expressions.KEEP
        return resolve


def _check_reference(
    where: str,
    ref,
    decls: Mapping[str, Tuple[int, ResourceDeclaration]],
    attributes: Mapping[str, Dict[str, Any]],
    schema_for: SchemaLookup,
) -> None:
    if ref.address not in decls:
        raise UnresolvedReferenceError(where, str(ref))
    if ref.attribute is None:
        return
    target = decls[ref.address][1]
    if ref.attribute in attributes[ref.address]:
        return
    if ref.attribute in schema_for(target.resource_type).computed:
        return
    raise UnresolvedReferenceError(
        where, str(ref), f"is not an attribute or output of {ref.address}"
    )


def build(
    config: Configuration,
    variables: Optional[Mapping[str, Any]] = None,
    schema_for: Optional[SchemaLookup] = None,
) -> ResourceGraph:
    """Build and validate the resource graph. Pure; raises BuildError subclasses."""
    schema_for = schema_for or ResourceSchema
    resolver = _VariableResolver(config.variables, variables or {})

    decls: Dict[str, Tuple[int, ResourceDeclaration]] = {}
    for index, decl in enumerate(config.resources):
        if decl.address in decls:
            first = decls[decl.address][1]
            raise ParseError(
                decl.source_file or "configuration",
                f"duplicate resource {decl.address} (first declared in {first.source_file or 'configuration'})",
            )
        decls[decl.address] = (index, decl)

    attributes = {
        address: expressions.substitute(decl.attributes, resolver(address))
        for address, (_, decl) in decls.items()
    }

    nodes: Dict[str, ResourceNode] = {}
    edges: List[DependencyEdge] = []
    for address, (index, decl) in decls.items():
        refs = expressions.references(attributes[address])
        for ref in refs:
            _check_reference(address, ref, decls, attributes, schema_for)
            if ref.address == address:
                raise CycleError([address])

        explicit: List[str] = []
        for raw in decl.depends_on:
            target = expressions.strip_interpolation(raw)
            if target not in decls:
                raise UnresolvedReferenceError(f"{address}.depends_on", target)
            if target == address:
                raise CycleError([address])
            if target not in explicit:
                explicit.append(target)

        implicit = []
        for ref in refs:
            if ref.address not in implicit:
                implicit.append(ref.address)
        edges.extend(DependencyEdge(address, t) for t in implicit)
        edges.extend(DependencyEdge(address, t, explicit=True) for t in explicit if t not in implicit)

        nodes[address] = ResourceNode(
            resource_type=decl.resource_type,
            name=decl.name,
            attributes=attributes[address],
            lifecycle=_lifecycle(decl),
            depends_on=tuple(explicit),
            references=tuple(refs),
            index=index,
            source_file=decl.source_file,
        )

    outputs: Dict[str, Any] = {}
    for name, expr in config.outputs.items():
        value = expressions.substitute(expr, resolver(f"output.{name}"))
        for ref in expressions.references(value):
            _check_reference(f"output.{name}", ref, decls, attributes, schema_for)
        outputs[name] = value

    prereqs = {address: node.dependencies for address, node in nodes.items()}
    order = topological_order(nodes, prereqs, priority=lambda a: nodes[a].index)
    return ResourceGraph(nodes=nodes, edges=edges, outputs=outputs, order=tuple(order))
