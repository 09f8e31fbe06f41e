"""Template resolution for ``${...}`` expressions.

Supported forms:
- ``${NAME}``                     plain lookup
- ``${NAME:default}``             literal default when NAME is absent (default may nest ``${...}``)
- ``${NAME:upper}`` / ``lower``   case transform, empty string when NAME is absent
- ``${COND:match:then:else}``     ``then`` when COND's text equals ``match``, else ``else``
- ``${store.NAME}``               extracted (session) values only
- generators: ``UUID``, ``UUID:short``, ``TIMESTAMP``, ``DATE:FMT``, ``TIME:FMT``,
  ``RANDOM:a-b``, ``RANDOM:string:N``, ``RANDOM:hex:N``

Resolution runs to a fixpoint: each pass substitutes every top-level expression,
and substituted text may itself contain expressions for the next pass. Text still
holding an expression after ``max_passes`` raises UnresolvedReferenceError (this
also catches reference cycles). Branches and defaults are only expanded when chosen.
"""

from __future__ import annotations

import random
import re
import string
import time
import uuid
from datetime import datetime
from typing import Any

import orjson

from .exceptions import UnresolvedReferenceError
from .logging_config import get_logger
from .models import NOT_FOUND, AuthSpec, ConcreteRequest, ExpectationSpec, RequestSpec, ResolverPolicy
from .variables import VariableScope

logger = get_logger("templating")

TOKEN_START = "${"
STORE_PREFIX = "store."
GENERATORS = frozenset({"UUID", "DATE", "TIME", "RANDOM", "TIMESTAMP", "CURRENT_TIME"})
TRANSFORMS = {"upper": str.upper, "lower": str.lower}
DEFAULT_DATE_FORMAT = "YYYY-MM-DD"
DEFAULT_TIME_FORMAT = "HH:mm:ss"

_ALNUM = string.ascii_letters + string.digits
_HEX = "0123456789abcdef"
_DATETIME_TOKENS = {"YYYY": "%Y", "MM": "%m", "DD": "%d", "HH": "%H", "mm": "%M", "ss": "%S"}
_DATETIME_TOKEN_RE = re.compile("|".join(_DATETIME_TOKENS))
_RANGE_RE = re.compile(r"^(-?\d+)-(-?\d+)$")
_SIZED_RE = re.compile(r"^(string|hex):(\d+)$")
_SCHEME_RE = re.compile(r"[A-Za-z][A-Za-z0-9+.\-]*$")
_PORT_RE = re.compile(r"\d+(?:[/?#].*)?$")


def stringify(value: Any) -> str:
    """Text form of a variable value when it is embedded in a larger string."""
    if value is None or value is NOT_FOUND:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return orjson.dumps(value).decode("utf-8")


def find_expressions(text: str) -> list[tuple[int, int, str]]:
    """Top-level ``${...}`` spans as (start, end, body), honouring nested braces.

    An unterminated ``${`` is left alone as literal text.
    """
    refs: list[tuple[int, int, str]] = []
    i = 0
    n = len(text)
    while i < n:
        if text.startswith(TOKEN_START, i):
            start = i
            i += 2
            depth = 1
            while i < n and depth:
                if text[i] == "{":
                    depth += 1
                elif text[i] == "}":
                    depth -= 1
                i += 1
            if depth == 0:
                refs.append((start, i, text[start + 2:i - 1]))
            else:
                break
        else:
            i += 1
    return refs


def split_expression(body: str) -> list[str]:
    """Split an expression body on top-level colons.

    Colons inside nested ``${...}`` are kept, and so are the colons of URLs in
    defaults and branches: a ``//`` fragment rejoins the scheme before it, and a
    numeric port fragment rejoins a preceding URL authority.
    """
    raw: list[str] = []
    depth = 0
    current: list[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if body.startswith(TOKEN_START, i):
            depth += 1
            current.append(TOKEN_START)
            i += 2
            continue
        if ch == "}" and depth:
            depth -= 1
        elif ch == ":" and not depth:
            raw.append("".join(current))
            current = []
            i += 1
            continue
        current.append(ch)
        i += 1
    raw.append("".join(current))

    parts: list[str] = []
    for frag in raw:
        if parts and frag.startswith("//") and _SCHEME_RE.fullmatch(parts[-1]):
            parts[-1] = f"{parts[-1]}:{frag}"
        elif parts and "//" in parts[-1] and _PORT_RE.fullmatch(frag):
            parts[-1] = f"{parts[-1]}:{frag}"
        else:
            parts.append(frag)
    return parts


def format_datetime(fmt: str, now: datetime | None = None) -> str:
    """Replace YYYY, MM, DD, HH, mm, ss in ``fmt``; other characters pass through."""
    now = now or datetime.now()
    return _DATETIME_TOKEN_RE.sub(lambda m: now.strftime(_DATETIME_TOKENS[m.group(0)]), fmt)


def generate(name: str, arg: str, expression: str) -> str:
    """Evaluate a built-in generator. Every call yields a fresh value."""
    if name == "UUID":
        if not arg:
            return str(uuid.uuid4())
        if arg == "short":
            return uuid.uuid4().hex[:8]
    elif name in ("TIMESTAMP", "CURRENT_TIME") and not arg:
        return str(int(time.time() * 1000))
    elif name == "DATE":
        return format_datetime(arg or DEFAULT_DATE_FORMAT)
    elif name == "TIME":
        return format_datetime(arg or DEFAULT_TIME_FORMAT)
    elif name == "RANDOM":
        m = _RANGE_RE.match(arg)
        if m:
            low, high = int(m.group(1)), int(m.group(2))
            if low > high:
                low, high = high, low
            return str(random.randint(low, high))
        m = _SIZED_RE.match(arg)
        if m:
            alphabet = _ALNUM if m.group(1) == "string" else _HEX
            return "".join(random.choices(alphabet, k=int(m.group(2))))
    raise UnresolvedReferenceError(f"Unknown generator expression {expression}", expression=expression)


class TemplateResolver:
    """Expands ``${...}`` expressions against a VariableScope.

    Stateless apart from its policy; one instance can serve concurrent requests.
    """

    def __init__(self, policy: ResolverPolicy | None = None) -> None:
        self.policy = policy or ResolverPolicy()

    def resolve(
        self,
        value: Any,
        scope: VariableScope,
        *,
        strict: bool | None = None,
        diagnostics: list[str] | None = None,
    ) -> Any:
        """Resolve a string or a structured value leaf by leaf. Mapping keys are not expanded."""
        if isinstance(value, str):
            return self.resolve_text(value, scope, strict=strict, diagnostics=diagnostics)
        if isinstance(value, dict):
            return {k: self.resolve(v, scope, strict=strict, diagnostics=diagnostics) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve(v, scope, strict=strict, diagnostics=diagnostics) for v in value]
        return value

    def resolve_text(
        self,
        text: str,
        scope: VariableScope,
        *,
        strict: bool | None = None,
        diagnostics: list[str] | None = None,
    ) -> Any:
        """Expand ``text`` to a fixpoint.

        A text that is exactly one expression keeps the type of the value it
        resolves to (number, bool, object); anything else yields a string.

        Raises:
            UnresolvedReferenceError: On a mandatory missing name, an unknown
                generator, or when expansion has not settled after max_passes.
        """
        strict = self.policy.strict if strict is None else strict
        current: Any = text
        for _ in range(self.policy.max_passes):
            if not isinstance(current, str) or TOKEN_START not in current:
                return current
            refs = find_expressions(current)
            if not refs:
                return current
            if len(refs) == 1 and refs[0][0] == 0 and refs[0][1] == len(current):
                current = self._evaluate(refs[0][2], scope, strict, diagnostics)
                continue
            out: list[str] = []
            last = 0
            for start, end, body in refs:
                out.append(current[last:start])
                out.append(stringify(self._evaluate(body, scope, strict, diagnostics)))
                last = end
            out.append(current[last:])
            current = "".join(out)
        if isinstance(current, str):
            refs = find_expressions(current)
            if refs:
                expression = current[refs[0][0]:refs[0][1]]
                raise UnresolvedReferenceError(
                    f"Expression {expression} did not resolve within {self.policy.max_passes} passes",
                    expression=expression,
                )
        return current

    def _evaluate(
        self,
        body: str,
        scope: VariableScope,
        strict: bool,
        diagnostics: list[str] | None,
    ) -> Any:
        expression = f"${{{body}}}"
        parts = split_expression(body)
        head = parts[0].strip()
        if TOKEN_START in head:
            head = stringify(self.resolve_text(head, scope, strict=strict, diagnostics=diagnostics)).strip()
        rest = body[len(parts[0]) + 1:] if len(parts) > 1 else ""

        if head in GENERATORS:
            return generate(head, rest, expression)

        value = self._lookup(head, scope)

        if len(parts) == 1:
            if value is not NOT_FOUND:
                return value
            if strict:
                raise UnresolvedReferenceError(f"Unresolved variable '{head}'", expression=expression)
            msg = f"Unresolved variable '{head}' replaced with empty string"
            logger.warning(msg)
            if diagnostics is not None:
                diagnostics.append(msg)
            return ""

        if len(parts) == 2 and parts[1] in TRANSFORMS:
            return TRANSFORMS[parts[1]](stringify(value))

        if len(parts) == 4:
            match = parts[1]
            if TOKEN_START in match:
                match = stringify(self.resolve_text(match, scope, strict=strict, diagnostics=diagnostics))
            if value is not NOT_FOUND and stringify(value) == match:
                return parts[2]
            return parts[3]

        return rest if value is NOT_FOUND else value

    @staticmethod
    def _lookup(name: str, scope: VariableScope) -> Any:
        if name.startswith(STORE_PREFIX):
            return scope.lookup_session(name[len(STORE_PREFIX):])
        return scope.lookup(name)

    def materialize(
        self,
        spec: RequestSpec,
        scope: VariableScope,
    ) -> tuple[ConcreteRequest, ExpectationSpec, tuple[str, ...]]:
        """Build the concrete request (and its resolved expectation) from a spec.

        The URL is resolved strictly when ``policy.strict_url`` is set.

        Returns:
            (concrete request, expectation with templates expanded, diagnostics)

        Raises:
            UnresolvedReferenceError: If a mandatory reference cannot be resolved.
        """
        diagnostics: list[str] = []
        strict_url = self.policy.strict or self.policy.strict_url
        url = stringify(self.resolve_text(spec.url, scope, strict=strict_url, diagnostics=diagnostics))
        method = stringify(self.resolve_text(spec.method, scope, diagnostics=diagnostics)).upper() or "GET"
        headers = {
            k: stringify(self.resolve(v, scope, diagnostics=diagnostics)) for k, v in spec.headers.items()
        }
        params = {
            k: stringify(self.resolve(v, scope, diagnostics=diagnostics)) for k, v in spec.params.items()
        }
        body = self.resolve(spec.body, scope, diagnostics=diagnostics)
        auth = spec.auth
        if auth is not None:
            auth = AuthSpec(
                type=auth.type,
                username=stringify(self.resolve_text(auth.username, scope, diagnostics=diagnostics)),
                password=stringify(self.resolve_text(auth.password, scope, diagnostics=diagnostics)),
                token=stringify(self.resolve_text(auth.token, scope, diagnostics=diagnostics)),
            )
        expect = spec.expect
        if expect.headers or expect.has_body:
            expect = ExpectationSpec(
                status=expect.status,
                headers={k: stringify(self.resolve(v, scope, diagnostics=diagnostics)) for k, v in expect.headers.items()},
                body=self.resolve(expect.body, scope, diagnostics=diagnostics),
                has_body=expect.has_body,
                response_time=expect.response_time,
                failure=expect.failure,
            )
        request = ConcreteRequest(
            name=spec.name,
            method=method,
            url=url,
            headers=headers,
            params=params,
            body=body,
            timeout_ms=spec.timeout_ms,
            auth=auth,
            follow_redirects=spec.follow_redirects,
            max_redirects=spec.max_redirects,
        )
        return request, expect, tuple(diagnostics)
