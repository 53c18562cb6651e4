"""
JSON plan report generator.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from converge import __version__
from converge.engine.executor import ExecutionResult
from converge.models.plan import Plan


def build_report(
    plan: Plan,
    edges: List[Dict[str, Any]],
    source_path: str,
    result: Optional[ExecutionResult] = None,
) -> str:
    report = {
        "meta": {
            "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "source": source_path,
            "tool": "converge",
            "version": __version__,
        },
        "plan": plan.to_dict(),
        "graph": {"edges": edges},
    }
    if result is not None:
        report["result"] = {
            "ok": result.ok,
            "cancelled": result.cancelled,
            "counts": result.counts(),
            "operations": [r.to_dict() for r in result.results.values()],
        }
    return json.dumps(report, indent=2, default=str)
