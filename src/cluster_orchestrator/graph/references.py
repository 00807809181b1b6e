"""
Expression handling for declaration attributes.

Supported expressions, always wrapped in ${...}
var.NAME                      a declaration variable
each.key, each.value          the current for_each element
TYPE.NAME.ATTR                an attribute of a single resource
TYPE.NAME[KEY].ATTR           an attribute of one for_each instance
                              KEY is "quoted", bare, or each.key

A string that is exactly one expression evaluates to the referenced value and
keeps its type. A string mixing text and expressions is interpolated as text.

Resolution happens in two phases.
Local expressions (var and each) are substituted when the builder expands
declarations. Resource references stay in the attributes and are resolved by
the planner against recorded state, and by the executor against published
outputs.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from cluster_orchestrator.core.errors import UnresolvedReferenceError
from cluster_orchestrator.core.types import ResourceAddress, unquote_key

EXPR_RE = re.compile(r"""\$\{\s*((?:"(?:[^"\\]|\\.)*"|'[^']*'|[^}"'])+?)\s*\}""")

REF_RE = re.compile(
    r"""^(?P<type>[A-Za-z_][\w-]*)\.(?P<name>[A-Za-z_][\w-]*)
        (?:\[\s*(?P<key>"(?:[^"\\]|\\.)*"|'[^']*'|[\w.-]+)\s*\])?
        \.(?P<attr>[A-Za-z_]\w*)$""",
    re.VERBOSE,
)

EACH_KEY_IN_BRACKETS_RE = re.compile(r"\[\s*each\.(key|value)\s*\]")


class _Unknown:
    """Placeholder for a value that is only known after apply."""

    _instance: Optional["_Unknown"] = None

    def __new__(cls) -> "_Unknown":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __bool__(self) -> bool:
        return False


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class ParsedReference:
    """A resource reference found inside an expression."""

    type: str
    name: str
    key: Optional[str]
    attribute: str

    @property
    def address(self) -> ResourceAddress:
        return ResourceAddress(type=self.type, name=self.name, key=self.key)


@dataclass(frozen=True)
class EachContext:
    key: str
    value: Any


def parse_reference(expr: str) -> Optional[ParsedReference]:
    """Parse a resource reference expression. Return None if expr is not one."""
    m = REF_RE.match(expr.strip())
    if m is None:
        return None
    if m.group("type") in {"var", "each"}:
        return None

    key = m.group("key")
    if key is not None:
        try:
            key = unquote_key(key)
        except ValueError:
            return None

    return ParsedReference(
        type=m.group("type"), name=m.group("name"), key=key, attribute=m.group("attr")
    )


def _walk(value: Any, fn: Callable[[str], Any]) -> Any:
    if isinstance(value, str):
        return fn(value)
    if isinstance(value, dict):
        return {k: _walk(v, fn) for k, v in value.items()}
    if isinstance(value, list):
        return [_walk(v, fn) for v in value]
    return value


def _evaluate_string(text: str, evaluate: Callable[[str], Any]) -> Any:
    """
    Evaluate every expression in text.

    evaluate returns the value for one expression body, or None to leave the
    expression untouched for a later phase.
    """
    whole = EXPR_RE.fullmatch(text)
    if whole is not None:
        result = evaluate(whole.group(1))
        return text if result is None else result[0]

    parts: List[str] = []
    unknown = False
    pos = 0
    for m in EXPR_RE.finditer(text):
        parts.append(text[pos : m.start()])
        result = evaluate(m.group(1))
        if result is None:
            parts.append(m.group(0))
        elif result[0] is UNKNOWN:
            unknown = True
        else:
            parts.append(_to_text(result[0]))
        pos = m.end()
    parts.append(text[pos:])

    if unknown:
        return UNKNOWN
    return "".join(parts)


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def substitute_locals(
    value: Any,
    variables: Dict[str, Any],
    each: Optional[EachContext],
    where: str,
) -> Any:
    """
    Substitute var and each expressions inside value.

    Resource references are kept, but an each.key or each.value used as an
    instance key inside them is replaced with the literal key.

    where names the declaration for error messages.
    """

    def evaluate(expr: str) -> Optional[tuple]:
        expr = expr.strip()
        if expr.startswith("var."):
            name = expr[len("var.") :]
            if name not in variables:
                raise UnresolvedReferenceError(f"unknown variable {name!r}", address=where)
            return (variables[name],)

        if expr in {"each.key", "each.value"}:
            if each is None:
                raise UnresolvedReferenceError(
                    f"{expr} used outside a for_each declaration", address=where
                )
            return (each.key if expr == "each.key" else each.value,)

        return None

    def rewrite_keys(text: str) -> str:
        def repl_expr(m: re.Match) -> str:
            body = m.group(1)
            if EACH_KEY_IN_BRACKETS_RE.search(body) is None:
                return m.group(0)
            if each is None:
                raise UnresolvedReferenceError(
                    "each.key used outside a for_each declaration", address=where
                )

            def repl_key(km: re.Match) -> str:
                raw = each.key if km.group(1) == "key" else each.value
                return f"[{json.dumps(str(raw), ensure_ascii=False)}]"

            return "${" + EACH_KEY_IN_BRACKETS_RE.sub(repl_key, body) + "}"

        return EXPR_RE.sub(repl_expr, text)

    return _walk(value, lambda s: _evaluate_string(rewrite_keys(s), evaluate))


def find_references(value: Any, where: str) -> List[ParsedReference]:
    """
    Return every resource reference inside value, in order of appearance.

    Raises UnresolvedReferenceError for expressions that are neither resource
    references nor already substituted locals.
    """

    found: List[ParsedReference] = []

    def collect(text: str) -> str:
        for m in EXPR_RE.finditer(text):
            ref = parse_reference(m.group(1))
            if ref is None:
                raise UnresolvedReferenceError(
                    f"unsupported expression ${{{m.group(1)}}}", address=where
                )
            found.append(ref)
        return text

    _walk(value, collect)
    return found


def resolve_references(value: Any, lookup: Callable[[ResourceAddress, str], Any]) -> Any:
    """
    Resolve resource references with lookup(address, attribute).

    lookup may return UNKNOWN. A whole-string reference then yields UNKNOWN, and
    an interpolated string containing it becomes UNKNOWN as a whole.
    """

    def evaluate(expr: str) -> Optional[tuple]:
        ref = parse_reference(expr)
        if ref is None:
            return None
        return (lookup(ref.address, ref.attribute),)

    return _walk(value, lambda s: _evaluate_string(s, evaluate))


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False
