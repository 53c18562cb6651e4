from typing import Any, Dict, List

import hcl2
from rich.console import Console

from converge.errors import ParseError
from converge.models.resource import NO_DEFAULT, Configuration, ResourceDeclaration

console = Console(stderr=True)

# Resource-level meta-arguments that are not resource attributes
_META_ARGS = {"depends_on", "lifecycle", "count", "for_each", "provider", "provisioner", "connection"}
_IGNORED_BLOCKS = {"terraform", "provider", "locals", "data", "module"}


def _unquote(val: Any) -> Any:
    # Newer python-hcl2 releases keep the quotes around string literals and labels
    if isinstance(val, str) and len(val) >= 2 and val[0] == val[-1] == '"':
        return val[1:-1]
    return val


def _unwrap(val: Any) -> Any:
    """
    python-hcl2 wraps single-element blocks in a list.
    Recursively unwrap single-element lists that contain dicts and drop
    the parser's line metadata.
    """
    if isinstance(val, list):
        if len(val) == 1 and isinstance(val[0], dict):
            return _unwrap(val[0])
        return [_unwrap(v) for v in val]
    if isinstance(val, dict):
        return {
            _unquote(k): _unwrap(v)
            for k, v in val.items()
            if not (isinstance(k, str) and k.startswith("__"))
        }
    return _unquote(val)


def _blocks(data: Dict[str, Any], kind: str) -> List[Dict[str, Any]]:
    """Return the labelled block mappings of one top-level kind."""
    raw = data.get(kind)
    if raw is None:
        return []
    if isinstance(raw, dict):
        return [raw]
    return [b for b in raw if isinstance(b, dict)]


def _labelled(block: Dict[str, Any]):
    for label, body in block.items():
        label = _unquote(label)
        if isinstance(body, list):
            # several blocks with the same label, or hcl2's single-block list
            for item in body:
                yield label, item
        else:
            yield label, body


def from_mapping(data: Dict[str, Any], filepath: str) -> Configuration:
    """Build a Configuration from a loaded Terraform-shaped mapping."""
    if not isinstance(data, dict):
        raise ParseError(filepath, "top level must be a mapping")

    config = Configuration()
    for kind in sorted(_IGNORED_BLOCKS):
        if data.get(kind):
            console.print(f"[yellow]Warning:[/yellow] {filepath}: '{kind}' blocks are ignored")

    for block in _blocks(data, "resource"):
        for resource_type, instances in _labelled(block):
            if not isinstance(instances, dict):
                raise ParseError(filepath, f"resource '{resource_type}' has no body")
            for name, raw_props in instances.items():
                name = _unquote(name)
                props = _unwrap(raw_props) if isinstance(raw_props, (dict, list)) else {}
                if not isinstance(props, dict):
                    raise ParseError(filepath, f"resource '{resource_type}.{name}' must be a block")
                for unsupported in ("count", "for_each"):
                    if unsupported in props:
                        raise ParseError(
                            filepath, f"{resource_type}.{name}: '{unsupported}' is not supported"
                        )
                depends_on = props.get("depends_on") or []
                if isinstance(depends_on, str):
                    depends_on = [depends_on]
                lifecycle = props.get("lifecycle") or {}
                if not isinstance(lifecycle, dict):
                    raise ParseError(filepath, f"{resource_type}.{name}: lifecycle must be a block")
                config.resources.append(ResourceDeclaration(
                    resource_type=resource_type,
                    name=name,
                    attributes={k: v for k, v in props.items() if k not in _META_ARGS},
                    depends_on=[str(d) for d in depends_on],
                    lifecycle=lifecycle,
                    source_file=filepath,
                ))

    for block in _blocks(data, "variable"):
        for name, body in _labelled(block):
            body = _unwrap(body) if body else {}
            if isinstance(body, dict) and "default" in body:
                config.variables[name] = body["default"]
            else:
                config.variables.setdefault(name, NO_DEFAULT)

    for block in _blocks(data, "output"):
        for name, body in _labelled(block):
            body = _unwrap(body)
            if not isinstance(body, dict) or "value" not in body:
                raise ParseError(filepath, f"output '{name}' has no value")
            config.outputs[name] = body["value"]

    return config


def parse_file(filepath: str) -> Configuration:
    try:
        with open(filepath) as fh:
            data = hcl2.load(fh)
    except OSError as exc:
        raise ParseError(filepath, str(exc)) from exc
    except Exception as exc:
        # python-hcl2 surfaces lark errors of several types
        raise ParseError(filepath, f"invalid HCL: {exc}") from exc
    return from_mapping(data, filepath)
