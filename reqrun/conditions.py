"""Conditional execution (``when``) of a request.

A ``when`` clause is parsed once at load time and evaluated just before the
request would be materialized. Accepted shapes:

    when: "store.role == admin"
    when: "TOKEN exists"
    when: {left: store.status, operator: "<", right: 400}
    when: {all: [...], any: [...]}

``store.NAME`` reads extracted values only; any other name uses the normal
variable lookup. String comparisons are case-insensitive unless
``caseSensitive: true``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from .exceptions import ConfigError
from .models import NOT_FOUND
from .templating import STORE_PREFIX, TOKEN_START, TemplateResolver, stringify
from .variables import VariableScope

OPERATORS = ("==", "!=", ">=", "<=", ">", "<", "contains", "matches", "exists", "not-exists")
UNARY_OPERATORS = ("exists", "not-exists")

_UNARY_RE = re.compile(r"^(.+?)\s+(exists|not-exists)$", re.IGNORECASE)
_BINARY_RE = re.compile(r"^(.+?)\s*(==|!=|>=|<=|>|<|\bcontains\b|\bmatches\b)\s*(.+)$", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class Condition:
    left: str
    operator: str
    right: Any = None
    case_sensitive: bool = False

    def describe(self) -> str:
        if self.operator in UNARY_OPERATORS:
            return f"{self.left} {self.operator}"
        return f"{self.left} {self.operator} {self.right!r}"


@dataclass(frozen=True, slots=True)
class WhenClause:
    all: tuple[Condition, ...] = ()
    any: tuple[Condition, ...] = ()


def _parse_right(text: str) -> Any:
    if text == "true":
        return True
    if text == "false":
        return False
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        pass
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        return text[1:-1]
    return text


def parse_condition(raw: Any) -> Condition:
    """Parse one condition from its string shorthand or mapping form.

    Raises:
        ConfigError: If the syntax or operator is not recognized.
    """
    if isinstance(raw, str):
        text = raw.strip()
        m = _UNARY_RE.match(text)
        if m:
            return Condition(m.group(1).strip(), m.group(2).lower())
        m = _BINARY_RE.match(text)
        if not m:
            raise ConfigError(f'Invalid condition syntax: "{raw}"')
        return Condition(m.group(1).strip(), m.group(2).lower(), _parse_right(m.group(3).strip()))
    if isinstance(raw, dict):
        left = raw.get("left")
        operator = str(raw.get("operator", "")).lower()
        if not left or operator not in OPERATORS:
            raise ConfigError(f"Invalid condition: {raw!r}")
        if operator not in UNARY_OPERATORS and "right" not in raw:
            raise ConfigError(f"Condition operator '{operator}' requires 'right'")
        return Condition(str(left), operator, raw.get("right"), bool(raw.get("caseSensitive", False)))
    raise ConfigError(f"Invalid condition: {raw!r}")


def parse_when(raw: Any) -> WhenClause | None:
    """Parse a ``when`` value. None means "always run"."""
    if raw is None:
        return None
    if isinstance(raw, dict) and ("all" in raw or "any" in raw):
        all_raw = raw.get("all") or []
        any_raw = raw.get("any") or []
        if not isinstance(all_raw, list) or not isinstance(any_raw, list):
            raise ConfigError("'all' and 'any' must be lists of conditions")
        return WhenClause(
            all=tuple(parse_condition(c) for c in all_raw),
            any=tuple(parse_condition(c) for c in any_raw),
        )
    return WhenClause(all=(parse_condition(raw),))


def _left_value(name: str, scope: VariableScope) -> Any:
    if name.startswith(STORE_PREFIX):
        return scope.lookup_session(name[len(STORE_PREFIX):])
    return scope.lookup(name)


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None or value is NOT_FOUND:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _equal(left: Any, right: Any, case_sensitive: bool) -> bool:
    ln, rn = _number(left), _number(right)
    if ln is not None and rn is not None:
        return ln == rn
    if left is NOT_FOUND:
        return False
    a, b = stringify(left), stringify(right)
    return a == b if case_sensitive else a.lower() == b.lower()


def evaluate_condition(cond: Condition, scope: VariableScope, resolver: TemplateResolver | None = None) -> bool:
    left = _left_value(cond.left, scope)
    right = cond.right
    if resolver is not None and isinstance(right, str) and TOKEN_START in right:
        right = resolver.resolve_text(right, scope)
    op = cond.operator
    if op == "exists":
        return left is not NOT_FOUND and left is not None and left != ""
    if op == "not-exists":
        return left is NOT_FOUND or left is None or left == ""
    if op == "==":
        return _equal(left, right, cond.case_sensitive)
    if op == "!=":
        return not _equal(left, right, cond.case_sensitive)
    if op in (">", "<", ">=", "<="):
        ln, rn = _number(left), _number(right)
        if ln is None or rn is None:
            return False
        return {">": ln > rn, "<": ln < rn, ">=": ln >= rn, "<=": ln <= rn}[op]
    text = stringify(left)
    needle = stringify(right)
    if op == "contains":
        return needle in text if cond.case_sensitive else needle.lower() in text.lower()
    # matches
    try:
        return re.search(needle, text, 0 if cond.case_sensitive else re.IGNORECASE) is not None
    except re.error:
        return False


def evaluate_when(
    clause: WhenClause | None,
    scope: VariableScope,
    resolver: TemplateResolver | None = None,
) -> tuple[bool, str]:
    """Return (should_run, reason). The reason names the first condition that blocked the run."""
    if clause is None:
        return True, ""
    for cond in clause.all:
        if not evaluate_condition(cond, scope, resolver):
            return False, f"condition not met: {cond.describe()}"
    if clause.any and not any(evaluate_condition(c, scope, resolver) for c in clause.any):
        return False, "no condition met: " + " | ".join(c.describe() for c in clause.any)
    return True, ""
