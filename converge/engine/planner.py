"""
Plan builder: turns change sets into ordered, dependency-annotated operations.

For "A depends on B":

- B is created/updated before A is created/updated.
- A's old instance is destroyed before B's old instance.
- Destroy-before-create replace of X destroys X before creating it again;
  create-before-destroy replace creates first and destroys the deposed
  object last, after every dependent has moved to the new instance.
- The new instance of a create-before-destroy B exists before any
  dependent of B is destroyed.
- A resource leaving the configuration is destroyed before the resources
  it used are changed, unless that change is a create-before-destroy
  replacement.
"""
from typing import Dict, List, Mapping, Optional, Set

from converge.engine.graph import ResourceGraph, topological_order
from converge.models.change import Action, ChangeSet
from converge.models.plan import Operation, Plan, Step
from converge.models.state import StateRecord

_STEP_RANK = {"deposed-leftover": 0, Step.DESTROY: 1, Step.CREATE: 2, Step.UPDATE: 2, "deposed": 3}


def _create_before_destroy(
    graph: ResourceGraph, by_address: Mapping[str, ChangeSet]
) -> Set[str]:
    """Replaced resources that must be replaced create-before-destroy."""
    replaced = {a for a, c in by_address.items() if c.action == Action.REPLACE}
    cbd = {a for a in replaced if by_address[a].lifecycle.create_before_destroy}
    # a CBD dependent forces CBD on the replaced resources it depends on
    changed = True
    while changed:
        changed = False
        for address in list(cbd):
            for dep in graph.dependencies(address):
                if dep in replaced and dep not in cbd:
                    cbd.add(dep)
                    changed = True
    # a left-over deposed object occupies the deposed slot
    return {a for a in cbd if not by_address[a].deposed_id}


def build_plan(
    graph: ResourceGraph,
    changes: List[ChangeSet],
    state: Mapping[str, StateRecord],
    destroy: bool = False,
    recorded: Optional[Mapping[str, StateRecord]] = None,
    serial: Optional[int] = None,
    lineage: Optional[str] = None,
) -> Plan:
    """
    ``state`` is what the changes were diffed against (possibly refreshed);
    ``recorded`` is the stored state at planning time, defaulting to ``state``.
    ``serial`` and ``lineage`` identify that stored state so the executor can
    refuse the plan once someone else has written to it.
    """
    by_address = {c.address: c for c in changes}
    cbd = _create_before_destroy(graph, by_address)

    apply_op: Dict[str, Operation] = {}
    destroy_op: Dict[str, Operation] = {}
    leftover_op: Dict[str, Operation] = {}

    for change in changes:
        address, rtype = change.address, change.resource_type
        if change.action == Action.CREATE:
            apply_op[address] = Operation(address, rtype, Step.CREATE, Action.CREATE)
        elif change.action == Action.UPDATE:
            apply_op[address] = Operation(address, rtype, Step.UPDATE, Action.UPDATE)
        elif change.action == Action.REPLACE:
            apply_op[address] = Operation(address, rtype, Step.CREATE, Action.REPLACE)
            destroy_op[address] = Operation(
                address, rtype, Step.DESTROY, Action.REPLACE, deposed=address in cbd
            )
        elif change.action == Action.DESTROY:
            destroy_op[address] = Operation(address, rtype, Step.DESTROY, Action.DESTROY)
        if change.deposed_id:
            leftover_op[address] = Operation(address, rtype, Step.DESTROY, Action.DESTROY, deposed=True)

    prereqs: Dict[str, Set[str]] = {}

    def before(first: Optional[Operation], then: Optional[Operation]) -> None:
        if first is not None and then is not None and first.key != then.key:
            prereqs.setdefault(then.key, set()).add(first.key)

    def new_deps(address: str) -> List[str]:
        return graph.dependencies(address) if address in graph.nodes and not destroy else []

    def old_deps(address: str) -> List[str]:
        record = state.get(address)
        return list(record.dependencies) if record else []

    def destroys(address: str) -> List[Operation]:
        return [op for op in (destroy_op.get(address), leftover_op.get(address)) if op is not None]

    for address, change in by_address.items():
        own_apply = apply_op.get(address)

        # replacement order of the resource itself
        if change.action == Action.REPLACE:
            if address in cbd:
                before(own_apply, destroy_op[address])
            else:
                before(destroy_op[address], own_apply)
        # left-over deposed objects are cleaned up first
        if address in leftover_op:
            before(leftover_op[address], own_apply)
            before(leftover_op[address], destroy_op.get(address))

        for dep in new_deps(address):
            before(apply_op.get(dep), own_apply)

        for dep in set(old_deps(address)) | set(new_deps(address)):
            dep_change = by_address.get(dep)
            if dep_change is None:
                continue
            for mine in destroys(address):
                for theirs in destroys(dep):
                    before(mine, theirs)
            dep_destroy = destroy_op.get(dep)
            if dep_destroy is not None and (
                dep_change.action == Action.DESTROY or dep in cbd
            ):
                before(own_apply, dep_destroy)
            if dep in cbd:
                for mine in destroys(address):
                    before(apply_op.get(dep), mine)
            elif change.action == Action.DESTROY:
                before(destroy_op.get(address), apply_op.get(dep))

    operations = (
        list(leftover_op.values()) + list(destroy_op.values()) + list(apply_op.values())
    )
    by_key = {op.key: op for op in operations}
    orphan_rank = {a: n for n, a in enumerate(sorted(a for a in by_address if a not in graph.nodes))}

    def priority(key: str):
        op = by_key[key]
        node = graph.nodes.get(op.address)
        position = (0, node.index) if node else (1, orphan_rank[op.address])
        if op.step == Step.DESTROY and op.deposed:
            rank = _STEP_RANK["deposed-leftover" if op.address in leftover_op else "deposed"]
        else:
            rank = _STEP_RANK[op.step]
        return position + (rank,)

    keys = topological_order(list(by_key), prereqs, priority=priority, internal=True)
    return Plan(
        changes=list(changes),
        operations=[by_key[k] for k in keys],
        dependencies={k: frozenset(prereqs.get(k, ())) for k in keys},
        nodes=dict(graph.nodes),
        destroy=destroy,
        recorded=dict(state if recorded is None else recorded),
        serial=serial,
        lineage=lineage,
    )


def dependency_edges(graph: ResourceGraph, state: Mapping[str, StateRecord]) -> List[Dict[str, object]]:
    """Configured edges plus the recorded edges of resources leaving the configuration."""
    edges: List[Dict[str, object]] = [
        {"source": e.source, "target": e.target, "explicit": e.explicit} for e in graph.edges
    ]
    for address in sorted(state):
        if address in graph.nodes:
            continue
        for target in state[address].dependencies:
            edges.append({"source": address, "target": target, "explicit": False})
    return edges
