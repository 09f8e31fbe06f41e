"""Response validation against an ExpectationSpec.

The raw expectation body (a JSON-like tree mixing literals, ``"*"`` wildcards,
regex strings and numeric ranges) is classified once into matcher objects;
comparison then dispatches on matcher type. Every mismatch is collected, so one
validation call reports all failing fields.

Body rules:
- ``"*"``: any value, but the key must be present
- regex-looking string (``^...``, ``...$``, ``\\d``, ``[``, ``*``, ``+``, ``?``): ``re.search`` on the text value
- range string (``"> 0"``, ``">= 1, < 10"``): numeric comparison
- ``"null"`` or null: the actual value must be null
- other scalar: exact equality, type included (ints and floats compare as numbers)
- object: partial match, extra actual keys ignored
- selector keys applied to an actual array: ``[0]``, ``[-1]`` (one element),
  ``slice(a,b)`` (a sub-array), ``*`` or ``[*]`` (every element, or the whole
  array when the expected value is itself an array)
- array: same length, element-wise in order, each element matched by these rules
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Union

import orjson

from .models import NOT_FOUND, CapturedResponse, ExpectationSpec, Mismatch
from .templating import stringify

WILDCARD = "*"
NULL_TEXT = "null"
_REGEX_HINTS = ("\\d", "\\w", "\\s", "[", "*", "+", "?")
_COMPARISON_RE = re.compile(r"^(>=|<=|>|<)\s*(-?[\d.]+)$")
_SPAN_RE = re.compile(r"^(-?[\d.]+)\s*-\s*(-?[\d.]+)$")
_RANGE_LIST_RE = re.compile(r"^(>=?|<=?)\s*-?[\d.]+(\s*,\s*(>=?|<=?)\s*-?[\d.]+)*$")
_INDEX_SELECTOR_RE = re.compile(r"^\[(-?\d+)\]$")
_SLICE_SELECTOR_RE = re.compile(r"^slice\((\d+)(?:,\s*(\d+))?\)$")


@dataclass(frozen=True, slots=True)
class Literal:
    value: Any


@dataclass(frozen=True, slots=True)
class Wildcard:
    pass


@dataclass(frozen=True, slots=True)
class Pattern:
    source: str
    regex: re.Pattern[str]


@dataclass(frozen=True, slots=True)
class Range:
    source: str
    bounds: tuple[tuple[str, float], ...]

    def contains(self, number: float) -> bool:
        return all(_compare(number, op, limit) for op, limit in self.bounds)


@dataclass(frozen=True, slots=True)
class Selector:
    """Array selector key. ``index`` picks one element; otherwise a slice (``start``/``stop``) or every element."""

    source: str
    index: int | None = None
    start: int | None = None
    stop: int | None = None
    is_slice: bool = False

    @property
    def every(self) -> bool:
        return self.index is None and not self.is_slice

    def select(self, items: list[Any]) -> Any:
        if self.index is not None:
            try:
                return items[self.index]
            except IndexError:
                return NOT_FOUND
        if self.is_slice:
            return items[self.start:self.stop]
        return items


@dataclass(frozen=True, slots=True)
class ObjectMatcher:
    fields: tuple[tuple[str, Selector | None, "Matcher"], ...]


@dataclass(frozen=True, slots=True)
class ArrayMatcher:
    items: tuple["Matcher", ...]


Matcher = Union[Literal, Wildcard, Pattern, Range, ObjectMatcher, ArrayMatcher]


def _compare(value: float, op: str, limit: float) -> bool:
    if op == ">":
        return value > limit
    if op == ">=":
        return value >= limit
    if op == "<":
        return value < limit
    return value <= limit


def is_regex_pattern(text: str) -> bool:
    return text.startswith("^") or text.endswith("$") or any(h in text for h in _REGEX_HINTS)


def parse_range(text: str, allow_span: bool = False) -> Range | None:
    """Parse ``"> 5"``, ``">= 1, < 10"`` (and ``"10-50"`` when allow_span). None if not a range."""
    src = text.strip()
    if allow_span:
        m = _SPAN_RE.match(src)
        if m:
            try:
                return Range(src, ((">=", float(m.group(1))), ("<=", float(m.group(2)))))
            except ValueError:
                return None
    if not _RANGE_LIST_RE.match(src):
        return None
    bounds: list[tuple[str, float]] = []
    for piece in src.split(","):
        m = _COMPARISON_RE.match(piece.strip())
        if not m:
            return None
        try:
            bounds.append((m.group(1), float(m.group(2))))
        except ValueError:
            return None
    return Range(src, tuple(bounds))


def parse_selector(key: str) -> Selector | None:
    """Array selector for an expected-body key, or None for an ordinary field name."""
    if key in (WILDCARD, "[*]"):
        return Selector(key)
    m = _INDEX_SELECTOR_RE.match(key)
    if m:
        return Selector(key, index=int(m.group(1)))
    m = _SLICE_SELECTOR_RE.match(key)
    if m:
        stop = int(m.group(2)) if m.group(2) is not None else None
        return Selector(key, start=int(m.group(1)), stop=stop, is_slice=True)
    return None


def compile_expectation(raw: Any) -> Matcher:
    """Classify a raw expectation tree into matchers (one pass, done before comparing)."""
    if isinstance(raw, dict):
        return ObjectMatcher(tuple((str(k), parse_selector(str(k)), compile_expectation(v)) for k, v in raw.items()))
    if isinstance(raw, list):
        return ArrayMatcher(tuple(compile_expectation(v) for v in raw))
    if isinstance(raw, str):
        if raw == WILDCARD:
            return Wildcard()
        if raw == NULL_TEXT:
            return Literal(None)
        rng = parse_range(raw)
        if rng is not None:
            return rng
        if is_regex_pattern(raw):
            try:
                return Pattern(raw, re.compile(raw))
            except re.error:
                return Literal(raw)
    return Literal(raw)


def _render(value: Any) -> str:
    try:
        return orjson.dumps(value).decode("utf-8")
    except TypeError:
        return repr(value)


def _same_value(expected: Any, actual: Any) -> bool:
    if isinstance(expected, bool) or isinstance(actual, bool):
        return type(expected) is type(actual) and expected == actual
    if isinstance(expected, (int, float)) and isinstance(actual, (int, float)):
        return expected == actual
    return type(expected) is type(actual) and expected == actual


def _child(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def match_body(matcher: Matcher, actual: Any, path: str = "") -> list[Mismatch]:
    """Compare ``actual`` to a compiled matcher, returning every mismatch found."""
    where = path or "body"
    if isinstance(matcher, Wildcard):
        return []
    if isinstance(matcher, Literal):
        if _same_value(matcher.value, actual):
            return []
        return [Mismatch(where, matcher.value, actual,
                         f"Expected {where} to be {_render(matcher.value)}, got {_render(actual)}")]
    if isinstance(matcher, Pattern):
        if actual is not None and matcher.regex.search(stringify(actual)):
            return []
        return [Mismatch(where, matcher.source, actual,
                         f"Expected {where} to match pattern {matcher.source}, got {_render(actual)}")]
    if isinstance(matcher, Range):
        number = _as_number(actual)
        if number is not None and matcher.contains(number):
            return []
        return [Mismatch(where, matcher.source, actual,
                         f"Expected {where} to be in range {matcher.source}, got {_render(actual)}")]
    if isinstance(matcher, ObjectMatcher):
        if isinstance(actual, list) and all(sel is not None for _, sel, _ in matcher.fields):
            return _match_selected(matcher, actual, where)
        if not isinstance(actual, dict):
            return [Mismatch(where, "object", actual, f"Expected {where} to be an object, got {_render(actual)}")]
        mismatches: list[Mismatch] = []
        for key, _, sub in matcher.fields:
            child = _child(path, key)
            if key not in actual:
                mismatches.append(Mismatch(child, _describe(sub), None, f"Expected {child} to be present"))
                continue
            mismatches.extend(match_body(sub, actual[key], child))
        return mismatches
    # ArrayMatcher
    if not isinstance(actual, list):
        return [Mismatch(where, "array", actual, f"Expected {where} to be an array, got {_render(actual)}")]
    mismatches = []
    if len(actual) != len(matcher.items):
        mismatches.append(Mismatch(
            where, len(matcher.items), len(actual),
            f"Expected {where} to have {len(matcher.items)} items, got {len(actual)}",
        ))
    for i, (sub, item) in enumerate(zip(matcher.items, actual)):
        mismatches.extend(match_body(sub, item, f"{where}[{i}]"))
    return mismatches


def _match_selected(matcher: ObjectMatcher, actual: list[Any], where: str) -> list[Mismatch]:
    mismatches: list[Mismatch] = []
    for _, selector, sub in matcher.fields:
        child = f"{where}{selector.source}" if selector.source.startswith("[") else f"{where}.{selector.source}"
        if selector.every and not isinstance(sub, ArrayMatcher):
            for i, item in enumerate(actual):
                mismatches.extend(match_body(sub, item, f"{where}[{i}]"))
            continue
        selected = selector.select(actual)
        if selected is NOT_FOUND:
            mismatches.append(Mismatch(child, _describe(sub), None, f"Expected {child} to be present"))
            continue
        mismatches.extend(match_body(sub, selected, child))
    return mismatches


def _describe(matcher: Matcher) -> Any:
    if isinstance(matcher, Literal):
        return matcher.value
    if isinstance(matcher, Wildcard):
        return WILDCARD
    if isinstance(matcher, (Pattern, Range)):
        return matcher.source
    if isinstance(matcher, ObjectMatcher):
        return {k: _describe(v) for k, _, v in matcher.fields}
    return [_describe(v) for v in matcher.items]


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def validate_status(actual: int, expected: int | frozenset[int] | None) -> list[Mismatch]:
    if expected is None:
        return []
    allowed = expected if isinstance(expected, frozenset) else frozenset((expected,))
    if actual in allowed:
        return []
    shown = " or ".join(str(s) for s in sorted(allowed))
    return [Mismatch("status", expected if isinstance(expected, int) else sorted(allowed), actual,
                     f"Expected status {shown}, got {actual}")]


def validate_headers(response: CapturedResponse, expected: dict[str, str]) -> list[Mismatch]:
    mismatches: list[Mismatch] = []
    for name, value in expected.items():
        actual = response.header(name)
        if actual is None:
            mismatches.append(Mismatch(f"headers.{name}", value, None, f"Expected header {name} to be present"))
        elif actual != value:
            mismatches.append(Mismatch(f"headers.{name}", value, actual,
                                       f'Expected header {name}="{value}", got "{actual}"'))
    return mismatches


def validate_response(
    response: CapturedResponse,
    expect: ExpectationSpec,
    body_matcher: Matcher | None = None,
) -> list[Mismatch]:
    """Check a response against an expectation. Empty list means the response passes.

    Args:
        response: Captured response
        expect: Expectation (templates already resolved)
        body_matcher: Pre-compiled body matcher; compiled from ``expect.body`` when omitted
    """
    mismatches = validate_status(response.status_code, expect.status)
    if expect.headers:
        mismatches.extend(validate_headers(response, expect.headers))
    if expect.has_body:
        matcher = body_matcher if body_matcher is not None else compile_expectation(expect.body)
        mismatches.extend(match_body(matcher, response.body))
    if expect.response_time is not None:
        rng = parse_range(expect.response_time, allow_span=True)
        if rng is None or not rng.contains(response.elapsed_ms):
            mismatches.append(Mismatch(
                "responseTime", expect.response_time, round(response.elapsed_ms, 2),
                f"Expected response time to match {expect.response_time}ms, got {response.elapsed_ms:.2f}ms",
            ))
    if expect.failure and not mismatches and response.status_code < 400:
        mismatches.append(Mismatch(
            "status", ">= 400", response.status_code,
            f"Expected request to fail (4xx/5xx) but got status {response.status_code}",
        ))
    return mismatches
