"""
Markdown + Mermaid plan report generator.
"""
import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from jinja2 import Environment

from converge import __version__
from converge.engine.executor import ExecutionResult
from converge.models.change import UNKNOWN, Action, ChangeSet
from converge.models.plan import Plan

_ACTION_SYMBOL = {
    "create": "+",
    "update": "~",
    "replace": "-/+",
    "destroy": "-",
    "no-op": " ",
}

_ACTION_EMOJI = {
    "create": "🟢",
    "update": "🟡",
    "replace": "🟠",
    "destroy": "🔴",
    "no-op": "⚪",
}

_ACTION_STYLE = {
    "create": "fill:#88cc00,color:#000",
    "update": "fill:#ffcc00,color:#000",
    "replace": "fill:#ff8800,color:#fff",
    "destroy": "fill:#ff4444,color:#fff",
}


def _sanitize_node_id(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)


def _fmt(value: Any) -> str:
    if value is UNKNOWN:
        return "(known after apply)"
    if value is None:
        return "null"
    return json.dumps(value, sort_keys=True)


def _build_mermaid(plan: Plan, edges: List[Dict[str, Any]]) -> str:
    lines = ["flowchart LR"]
    for change in plan.changes:
        node_id = _sanitize_node_id(change.address)
        label = f"{_ACTION_SYMBOL[change.action.value].strip() or '='} {change.address}"
        if change.action == Action.DESTROY:
            lines.append(f"    {node_id}[/{label}/]")
        else:
            lines.append(f"    {node_id}[{label}]")

    added = set()
    for edge in edges:
        key = (edge["source"], edge["target"])
        if key in added:
            continue
        added.add(key)
        arrow = "-.->" if edge["explicit"] else "-->"
        lines.append(
            f"    {_sanitize_node_id(edge['source'])} {arrow} {_sanitize_node_id(edge['target'])}"
        )

    for change in plan.changes:
        style = _ACTION_STYLE.get(change.action.value)
        if style:
            lines.append(f"    style {_sanitize_node_id(change.address)} {style}")
    return "\n".join(lines)


_TEMPLATE = """\
# {% if result %}Apply{% else %}Plan{% endif %} Report

**Generated:** {{ generated }}
**Source:** {{ source }}
**Tool:** converge v{{ version }}
{% if plan.destroy %}**Mode:** destroy
{% endif %}
---

## Summary

{{ counts["create"] }} to add, {{ counts["update"] }} to change, {{ counts["replace"] }} to replace, {{ counts["destroy"] }} to destroy, {{ counts["no-op"] }} unchanged.
{% if plan.is_empty %}
No changes. Infrastructure matches the configuration.
{% endif %}

---

## Resource Changes

| # | Resource | Action | Reason |
|---|----------|--------|--------|
{% for c in plan.changes %}| {{ loop.index }} | `{{ c.address }}` | {{ icon[c.action.value] }} {{ c.action.value }} | {{ c.reason }} |
{% endfor %}
{% for c in changed %}
### {{ icon[c.action.value] }} `{{ c.address }}` ({{ c.action.value }})

{% if c.deposed_id %}Deposed object `{{ c.deposed_id }}` will be destroyed.

{% endif %}| Attribute | Before | After | Forces replacement |
|-----------|--------|-------|--------------------|
{% for d in c.diffs %}| `{{ d.name }}` | `{{ fmt(d.old) }}` | `{{ fmt(d.new) }}` | {{ "yes" if d.forces_replacement else "" }} |
{% endfor %}
{% endfor %}
---

## Execution Order

{% for op in plan.operations %}{{ loop.index }}. `{{ op.key }}`{% if plan.dependencies[op.key] %} (after {{ plan.dependencies[op.key] | sort | join(", ") }}){% endif %}
{% endfor %}
{% if result %}
---

## Results

| Operation | Status | Attempts | Detail |
|-----------|--------|----------|--------|
{% for r in result.results.values() %}| `{{ r.operation.key }}` | {{ r.status.value }} | {{ r.attempts }} | {{ r.error or r.note or "" }} |
{% endfor %}
{% endif %}
## Dependency Graph

```mermaid
{{ mermaid }}
```
"""


def build_report(
    plan: Plan,
    edges: List[Dict[str, Any]],
    source_path: str,
    result: Optional[ExecutionResult] = None,
    ascii_mode: bool = False,
) -> str:
    counts = plan.summary()
    changed: List[ChangeSet] = [c for c in plan.changes if c.action != Action.NOOP]
    icon = {k: f"[{_ACTION_SYMBOL[k].strip() or '='}]" for k in _ACTION_SYMBOL} if ascii_mode else _ACTION_EMOJI

    env = Environment(autoescape=False)
    template = env.from_string(_TEMPLATE)

    return template.render(
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        plan=plan,
        counts=counts,
        changed=changed,
        icon=icon,
        fmt=_fmt,
        result=result,
        mermaid=_build_mermaid(plan, edges),
    )
