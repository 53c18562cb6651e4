"""
Reference scanning and substitution for ``${...}`` expressions.

Only plain traversals are understood (``var.name``, ``type.name.attr``).
Anything else inside an interpolation is kept verbatim with the traversals
it contains substituted.
"""
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, NamedTuple, Optional

from converge.models.change import UNKNOWN
from converge.models.resource import Reference

_TOKEN_RE = re.compile(
    r"(?<![\w.\"'])([A-Za-z_][\w-]*)\.([A-Za-z_][\w-]*)(?:\.([A-Za-z_][\w-]*))?"
)

# Roots that never name a managed resource
RESERVED_ROOTS = {"var", "local", "data", "module", "path", "terraform", "count", "each", "self"}
# Roots we recognise but do not evaluate
FOREIGN_ROOTS = {"local", "data", "module"}


class KeepType:
    def __repr__(self) -> str:
        return "KEEP"


KEEP = KeepType()

Resolver = Callable[["Token"], Any]


@dataclass(frozen=True)
class Token:
    root: str
    name: str
    attribute: Optional[str]
    text: str

    @property
    def is_variable(self) -> bool:
        return self.root == "var"

    @property
    def is_resource(self) -> bool:
        return self.root not in RESERVED_ROOTS

    def reference(self) -> Reference:
        return Reference(address=f"{self.root}.{self.name}", attribute=self.attribute)


class _Span(NamedTuple):
    start: int
    end: int
    inner: str


def _spans(text: str) -> Iterator[_Span]:
    """Yield balanced ``${...}`` spans, honouring nested braces."""
    pos = 0
    while True:
        start = text.find("${", pos)
        if start == -1:
            return
        if start > 0 and text[start - 1] == "$":   # "$${" is a literal
            pos = start + 2
            continue
        depth = 0
        i = start + 1
        while i < len(text):
            ch = text[i]
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    break
            i += 1
        if depth != 0:
            return
        yield _Span(start, i + 1, text[start + 2:i])
        pos = i + 1


def _token(match: "re.Match") -> Token:
    return Token(match.group(1), match.group(2), match.group(3), match.group(0))


def strip_interpolation(text: str) -> str:
    """``"${aws_lb.web}"`` -> ``"aws_lb.web"``; other strings unchanged."""
    text = text.strip()
    if text.startswith("${") and text.endswith("}"):
        return text[2:-1].strip()
    return text


def tokens(value: Any) -> List[Token]:
    """All traversals inside interpolations of a (possibly nested) value."""
    found: List[Token] = []
    if isinstance(value, str):
        for span in _spans(value):
            found.extend(_token(m) for m in _TOKEN_RE.finditer(span.inner))
    elif isinstance(value, list):
        for item in value:
            found.extend(tokens(item))
    elif isinstance(value, dict):
        for v in value.values():
            found.extend(tokens(v))
    return found


def references(value: Any) -> List[Reference]:
    seen = []
    for tok in tokens(value):
        if tok.is_resource:
            ref = tok.reference()
            if ref not in seen:
                seen.append(ref)
    return seen


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


class _UnknownFound(Exception):
    pass


def _render(text: str, resolve: Resolver) -> Any:
    spans = list(_spans(text))
    if not spans:
        return text

    def lookup(tok: Token) -> Any:
        val = resolve(tok)
        if val is UNKNOWN:
            raise _UnknownFound()
        return val

    # A string that is exactly one traversal keeps the value's own type
    if len(spans) == 1 and spans[0].start == 0 and spans[0].end == len(text):
        m = _TOKEN_RE.fullmatch(spans[0].inner.strip())
        if m:
            val = lookup(_token(m))
            return text if val is KEEP else val

    out: List[str] = []
    pos = 0
    for span in spans:
        out.append(text[pos:span.start])
        m = _TOKEN_RE.fullmatch(span.inner.strip())
        val = lookup(_token(m)) if m else KEEP
        if m and val is not KEEP:
            out.append(_stringify(val))
        else:
            def repl(match: "re.Match") -> str:
                v = lookup(_token(match))
                return match.group(0) if v is KEEP else json.dumps(v)
            out.append("${" + _TOKEN_RE.sub(repl, span.inner) + "}")
        pos = span.end
    out.append(text[pos:])
    return "".join(out)


def _walk(value: Any, resolve: Resolver) -> Any:
    if isinstance(value, str):
        return _render(value, resolve)
    if isinstance(value, list):
        return [_walk(v, resolve) for v in value]
    if isinstance(value, dict):
        return {k: _walk(v, resolve) for k, v in value.items()}
    return value


def substitute(value: Any, resolve: Resolver) -> Any:
    """
    Replace traversals in ``value`` using ``resolve``.

    ``resolve`` returns the replacement, ``KEEP`` to leave the traversal in
    place, or ``UNKNOWN``; a single unknown makes the whole value unknown.
    """
    try:
        return _walk(value, resolve)
    except _UnknownFound:
        return UNKNOWN
