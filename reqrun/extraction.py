"""Response selectors for request chaining.

Selector forms (all address the captured response):
- ``$.data.token``, ``$.items[0].id``, ``$`` : JSON body, JSON-path-like
- ``body.data.token``, ``body.items.0.id`` : JSON body, dot notation
- ``headers.content-type`` : response header (case-insensitive)
- ``status`` : HTTP status code
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from .logging_config import get_logger
from .models import NOT_FOUND, CapturedResponse

logger = get_logger("extraction")

# "name", "[0]", "[-1]"; dots separate names
_SEGMENT_RE = re.compile(r"\[(-?\d+)\]|([^.\[\]]+)")


def parse_path(path: str) -> list[str | int]:
    """Split ``a.b[0].c`` / ``a.b.0.c`` into segments. Bracketed indexes become ints."""
    segments: list[str | int] = []
    for m in _SEGMENT_RE.finditer(path):
        index, name = m.groups()
        segments.append(int(index) if index is not None else name)
    return segments


def walk_path(value: Any, path: str | list[str | int]) -> Any:
    """Follow ``path`` into nested dicts/lists. Returns NOT_FOUND when any step is missing."""
    segments = parse_path(path) if isinstance(path, str) else path
    current = value
    for seg in segments:
        if isinstance(current, Mapping):
            key = str(seg)
            if key not in current:
                return NOT_FOUND
            current = current[key]
        elif isinstance(current, list):
            if isinstance(seg, str):
                if not re.fullmatch(r"-?\d+", seg):
                    return NOT_FOUND
                seg = int(seg)
            if not -len(current) <= seg < len(current):
                return NOT_FOUND
            current = current[seg]
        else:
            return NOT_FOUND
    return current


def select(response: CapturedResponse, selector: str) -> Any:
    """Evaluate one selector against a response. Returns NOT_FOUND when nothing matches."""
    s = selector.strip()
    if s in ("$", "body"):
        return response.body
    if s.startswith("$."):
        return walk_path(response.body, s[2:])
    if s.startswith("$["):
        return walk_path(response.body, s[1:])
    if s.startswith("body."):
        return walk_path(response.body, s[5:])
    if s == "status":
        return response.status_code
    if s.startswith("headers."):
        value = response.header(s[8:])
        return NOT_FOUND if value is None else value
    return walk_path(response.body, s)


def extract_values(
    response: CapturedResponse,
    extract: Mapping[str, str],
) -> tuple[dict[str, Any], list[str]]:
    """Apply every ``name -> selector`` pair.

    Returns:
        (values found, one warning per selector that matched nothing).
        Missing selections are reported, never written as empty values.
    """
    found: dict[str, Any] = {}
    warnings: list[str] = []
    for name, selector in extract.items():
        value = select(response, str(selector))
        if value is NOT_FOUND:
            msg = f"Extraction of '{name}' found nothing at '{selector}'"
            logger.warning(msg)
            warnings.append(msg)
            continue
        found[name] = value
    return found, warnings
