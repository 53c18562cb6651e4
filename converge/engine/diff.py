"""
Diff engine: desired graph vs. recorded state, one ChangeSet per resource.
"""
from typing import Any, Callable, Dict, List, Mapping, Optional

from rich.console import Console

from converge import expressions
from converge.engine.graph import ResourceGraph
from converge.errors import ProtectedResourceError
from converge.models.change import UNKNOWN, Action, AttributeDiff, ChangeSet, DiffKind
from converge.models.resource import LifecyclePolicy, ResourceNode
from converge.models.state import StateRecord
from converge.providers.base import Provider, ResourceSchema

console = Console(stderr=True)

SchemaLookup = Callable[[str], ResourceSchema]


def refresh(state: Mapping[str, StateRecord], provider: Provider) -> Dict[str, StateRecord]:
    """
    Read every recorded resource from the provider.

    Returns updated copies; the store is not written. Resources that no
    longer exist remotely keep their record with an empty remote id, so
    they are planned for creation, or dropped from state once they leave
    the configuration.
    """
    refreshed: Dict[str, StateRecord] = {}
    for identity, record in state.items():
        live = provider.read(record.resource_type, record.remote_id) if record.remote_id else None
        if live is None:
            if record.remote_id:
                console.print(f"[yellow]Drift:[/yellow] {identity} no longer exists remotely")
            refreshed[identity] = StateRecord(
                resource_type=record.resource_type,
                remote_id="",
                dependencies=list(record.dependencies),
                lifecycle=record.lifecycle,
                deposed_id=record.deposed_id,
            )
            continue
        refreshed[identity] = StateRecord(
            resource_type=record.resource_type,
            remote_id=live.remote_id,
            attributes=dict(live.attributes),
            outputs=dict(live.outputs),
            dependencies=list(record.dependencies),
            lifecycle=record.lifecycle,
            deposed_id=record.deposed_id,
        )
    return refreshed


def resolve_attributes(
    node: ResourceNode,
    lookup: Callable[[str, str], Any],
) -> Dict[str, Any]:
    """Resolve ``${type.name.attr}`` references; ``lookup`` may return UNKNOWN."""
    def resolve(tok: expressions.Token) -> Any:
        if not tok.is_resource or tok.attribute is None:
            return expressions.KEEP
        return lookup(tok.reference().address, tok.attribute)

    return {key: expressions.substitute(value, resolve) for key, value in node.attributes.items()}


def _compare(
    desired: Mapping[str, Any],
    recorded: Mapping[str, Any],
    schema: ResourceSchema,
    lifecycle: LifecyclePolicy,
) -> List[AttributeDiff]:
    diffs: List[AttributeDiff] = []
    for key, new in desired.items():
        if lifecycle.ignores(key):
            continue
        forces = schema.forces_replacement(key)
        if key not in recorded or recorded[key] is None:
            if new is not None:
                diffs.append(AttributeDiff(key, DiffKind.ADDED, None, new, forces))
        elif new is None:
            diffs.append(AttributeDiff(key, DiffKind.REMOVED, recorded[key], None, forces))
        elif new is UNKNOWN or new != recorded[key]:
            diffs.append(AttributeDiff(key, DiffKind.CHANGED, recorded[key], new, forces))
    for key, old in recorded.items():
        if key in desired or old is None or lifecycle.ignores(key) or key in schema.computed:
            continue
        diffs.append(AttributeDiff(key, DiffKind.REMOVED, old, None, schema.forces_replacement(key)))
    return diffs


def _destroy_change(address: str, record: StateRecord, reason: str) -> ChangeSet:
    return ChangeSet(
        address=address,
        resource_type=record.resource_type,
        action=Action.DESTROY,
        diffs=[
            AttributeDiff(k, DiffKind.REMOVED, v, None)
            for k, v in record.attributes.items()
            if v is not None
        ],
        lifecycle=record.lifecycle,
        deposed_id=record.deposed_id,
        reason=reason,
    )


def diff(
    graph: ResourceGraph,
    state: Mapping[str, StateRecord],
    schema_for: Optional[SchemaLookup] = None,
    destroy: bool = False,
) -> List[ChangeSet]:
    """
    Classify every resource as create / no-op / update / replace / destroy.

    Nodes are visited in dependency order so a reference to a dependency
    that is about to change is known to be ``(known after apply)``.
    Raises ProtectedResourceError before producing any destroy or replace
    of a ``prevent_destroy`` resource.
    """
    schema_for = schema_for or ResourceSchema

    if destroy:
        return _diff_destroy(graph, state)

    changes: Dict[str, ChangeSet] = {}
    resolved: Dict[str, Dict[str, Any]] = {}

    def lookup(address: str, attribute: str) -> Any:
        if attribute in resolved.get(address, {}):
            return resolved[address][attribute]
        change = changes.get(address)
        record = state.get(address)
        if change is None or record is None or change.action in (Action.CREATE, Action.REPLACE):
            return UNKNOWN
        if not record.has(attribute):
            return UNKNOWN
        return record.value(attribute)

    for address in graph.order:
        node = graph.nodes[address]
        schema = schema_for(node.resource_type)
        resolved[address] = desired = resolve_attributes(node, lookup)
        record = state.get(address)

        if record is None or not record.remote_id:
            changes[address] = ChangeSet(
                address=address,
                resource_type=node.resource_type,
                action=Action.CREATE,
                diffs=[
                    AttributeDiff(k, DiffKind.ADDED, None, v, schema.forces_replacement(k))
                    for k, v in desired.items()
                    if v is not None
                ],
                lifecycle=node.lifecycle,
                deposed_id=record.deposed_id if record else None,
                reason="not in state",
            )
            continue

        diffs = _compare(desired, record.attributes, schema, node.lifecycle)
        if not diffs:
            action, reason = Action.NOOP, "up to date"
        elif any(d.forces_replacement for d in diffs):
            if node.lifecycle.prevent_destroy:
                raise ProtectedResourceError(address, "replaced")
            forcing = ", ".join(d.name for d in diffs if d.forces_replacement)
            action, reason = Action.REPLACE, f"{forcing} forces replacement"
        else:
            action, reason = Action.UPDATE, "updatable in place"

        changes[address] = ChangeSet(
            address=address,
            resource_type=node.resource_type,
            action=action,
            diffs=diffs,
            lifecycle=node.lifecycle,
            deposed_id=record.deposed_id,
            reason=reason,
        )

    ordered = [changes[a] for a in graph.nodes]
    for address in sorted(state):
        if address in graph.nodes:
            continue
        record = state[address]
        if record.lifecycle.prevent_destroy:
            raise ProtectedResourceError(address, "destroyed")
        ordered.append(_destroy_change(address, record, "not in configuration"))
    return ordered


def _diff_destroy(graph: ResourceGraph, state: Mapping[str, StateRecord]) -> List[ChangeSet]:
    def position(address: str):
        node = graph.nodes.get(address)
        return (0, node.index, address) if node else (1, 0, address)

    ordered: List[ChangeSet] = []
    for address in sorted(state, key=position):
        record = state[address]
        node = graph.nodes.get(address)
        if record.lifecycle.prevent_destroy or (node is not None and node.lifecycle.prevent_destroy):
            raise ProtectedResourceError(address, "destroyed")
        ordered.append(_destroy_change(address, record, "destroy requested"))
    return ordered
