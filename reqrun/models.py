"""Data models for the reqrun request runner.

Specs (RequestSpec, CollectionSpec, RunPlan) are built once from the loaded
document and never change afterwards. Outcomes are created once per request
and are read-only after they reach the scheduler's stream.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import orjson

from .exceptions import ConfigError

# Default per-request timeout (milliseconds)
DEFAULT_TIMEOUT_MS = 30_000.0
# Default template expansion pass limit
DEFAULT_MAX_PASSES = 10
# Redirect hop limit when a request does not set maxRedirects
DEFAULT_MAX_REDIRECTS = 20


class ExecutionMode(str, Enum):
    """How requests inside a collection (or collections inside a run) are scheduled."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class OutcomeStatus(str, Enum):
    """Final state of one request."""

    PASSED = "passed"
    FAILED = "failed"  # Retries exhausted: transport error or validation mismatch
    ERROR = "error"  # Fatal before dispatch: unresolved reference, bad config
    SKIPPED = "skipped"  # Never dispatched: stop policy or false `when` condition


class ErrorKind(str, Enum):
    UNRESOLVED_REFERENCE = "unresolved_reference"
    TRANSPORT = "transport"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    CONDITION = "condition"
    UNEXPECTED = "unexpected"


@dataclass(slots=True, frozen=True)
class ResolverPolicy:
    """Template resolution policy.

    strict: unresolved plain ``${NAME}`` anywhere is an error (default: warn, empty string).
    strict_url: unresolved plain ``${NAME}`` inside a URL is an error.
    """

    max_passes: int = DEFAULT_MAX_PASSES
    strict: bool = False
    strict_url: bool = True


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Bounded retry: ``count`` extra attempts, fixed ``delay_ms`` between them."""

    count: int = 0
    delay_ms: float = 0.0

    @property
    def max_attempts(self) -> int:
        return self.count + 1


@dataclass(slots=True, frozen=True)
class AuthSpec:
    """Request authentication. ``basic`` uses username/password, ``bearer`` uses token."""

    type: str
    username: str = ""
    password: str = ""
    token: str = ""


@dataclass(slots=True)
class ExpectationSpec:
    """Expected response. ``has_body`` distinguishes "no body check" from "expect null"."""

    status: int | frozenset[int] | None = None
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    has_body: bool = False
    response_time: str | None = None  # Range pattern in ms, e.g. "< 1000"
    failure: bool = False  # Negative test: a 4xx/5xx response is the expected result


@dataclass(slots=True)
class RequestSpec:
    """A request as declared, defaults already merged. Fields may hold ``${...}`` expressions.

    config_error is set by the loader when a per-request value is malformed;
    the scheduler reports such a request as an error without dispatching it.
    """

    name: str
    url: str
    method: str = "GET"
    headers: dict[str, Any] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    timeout_ms: float = DEFAULT_TIMEOUT_MS
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    extract: dict[str, str] = field(default_factory=dict)
    expect: ExpectationSpec = field(default_factory=ExpectationSpec)
    variables: dict[str, Any] = field(default_factory=dict)
    when: Any = None
    auth: AuthSpec | None = None
    follow_redirects: bool = True
    max_redirects: int = DEFAULT_MAX_REDIRECTS
    config_error: str | None = None


@dataclass(slots=True)
class CollectionSpec:
    name: str
    requests: list[RequestSpec]
    variables: dict[str, Any] = field(default_factory=dict)
    execution: ExecutionMode = ExecutionMode.SEQUENTIAL
    max_concurrent: int | None = None  # None = all requests at once in parallel mode
    continue_on_error: bool = False
    description: str = ""


@dataclass(slots=True)
class RunPlan:
    """Everything the scheduler needs for one run."""

    collections: list[CollectionSpec]
    global_variables: dict[str, Any] = field(default_factory=dict)
    variables_file: str | None = None
    collection_execution: ExecutionMode = ExecutionMode.SEQUENTIAL
    max_concurrent_collections: int | None = None
    continue_on_error: bool = False
    http2: bool = False
    policy: ResolverPolicy = field(default_factory=ResolverPolicy)

    @property
    def request_count(self) -> int:
        return sum(len(c.requests) for c in self.collections)


class ConcreteRequest:
    """A fully materialized request, ready for the transport.

    Uses __slots__: one instance per dispatch. Prepared headers and body bytes
    are computed once and cached, since retries resend the same request.
    """

    __slots__ = (
        "name", "method", "url", "headers", "params", "body", "timeout_ms",
        "auth", "follow_redirects", "max_redirects", "_prepared",
    )

    def __init__(
        self,
        name: str,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        body: Any = None,
        timeout_ms: float = DEFAULT_TIMEOUT_MS,
        auth: AuthSpec | None = None,
        follow_redirects: bool = True,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
    ) -> None:
        self.name = name
        self.method = method
        self.url = url
        self.headers = headers if headers is not None else {}
        self.params = params if params is not None else {}
        self.body = body
        self.timeout_ms = timeout_ms
        self.auth = auth
        self.follow_redirects = follow_redirects
        self.max_redirects = max_redirects
        self._prepared: tuple[dict[str, str], bytes | None] | None = None

    def prepare(self) -> tuple[dict[str, str], bytes | None]:
        """Return (headers, body bytes). Structured bodies are JSON with a default Content-Type.

        Raises:
            ConfigError: If a header cannot be sent as ASCII or the body cannot be encoded as JSON.
        """
        if self._prepared is not None:
            return self._prepared
        h = dict(self.headers)
        lowered = {k.lower() for k in h}
        if self.auth is not None and self.auth.type == "bearer" and "authorization" not in lowered:
            h["Authorization"] = f"Bearer {self.auth.token}"
        for key, value in h.items():
            try:
                key.encode("ascii")
                value.encode("ascii")
            except UnicodeEncodeError:
                raise ConfigError(
                    f"Header {key!r} must be ASCII, got {value!r}",
                    context={"request": self.name},
                ) from None
        if self.body is None:
            content = None
        elif isinstance(self.body, bytes):
            content = self.body
        elif isinstance(self.body, str):
            content = self.body.encode("utf-8")
        else:
            try:
                content = orjson.dumps(self.body, option=orjson.OPT_NON_STR_KEYS)
            except orjson.JSONEncodeError as e:
                raise ConfigError(
                    f"Body cannot be encoded as JSON: {e}",
                    context={"request": self.name},
                    original_error=e,
                ) from e
        if content is not None and "content-type" not in lowered:
            h["Content-Type"] = "application/json"
        self._prepared = (h, content)
        return self._prepared

    def __repr__(self) -> str:
        return f"ConcreteRequest(name={self.name!r}, method={self.method!r}, url={self.url!r})"


@dataclass(slots=True, frozen=True)
class CapturedResponse:
    status_code: int
    headers: dict[str, str]
    body: Any
    elapsed_ms: float

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass(slots=True, frozen=True)
class Mismatch:
    """One failed expectation: where, what was wanted, what was found."""

    path: str
    expected: Any
    actual: Any
    message: str

    def __str__(self) -> str:
        return self.message


class Outcome:
    """Result of one request. The most allocated object of a run; __slots__ keeps it small."""

    __slots__ = (
        "request_name", "collection", "method", "url", "status", "attempts",
        "elapsed_ms", "response", "error", "error_kind", "mismatches",
        "extracted", "diagnostics",
    )

    def __init__(
        self,
        request_name: str,
        collection: str,
        status: OutcomeStatus,
        method: str = "",
        url: str = "",
        attempts: int = 0,
        elapsed_ms: float = 0.0,
        response: CapturedResponse | None = None,
        error: str | None = None,
        error_kind: ErrorKind | None = None,
        mismatches: tuple[Mismatch, ...] = (),
        extracted: dict[str, Any] | None = None,
        diagnostics: tuple[str, ...] = (),
    ) -> None:
        self.request_name = request_name
        self.collection = collection
        self.status = status
        self.method = method
        self.url = url
        self.attempts = attempts
        self.elapsed_ms = elapsed_ms
        self.response = response
        self.error = error
        self.error_kind = error_kind
        self.mismatches = mismatches
        self.extracted = extracted if extracted is not None else {}
        self.diagnostics = diagnostics

    @property
    def passed(self) -> bool:
        return self.status is OutcomeStatus.PASSED

    @property
    def reason(self) -> str:
        """Human-readable reason for a non-passing outcome ("" when passed)."""
        if self.mismatches:
            return "; ".join(m.message for m in self.mismatches)
        return self.error or ""

    def __repr__(self) -> str:
        return (
            f"Outcome(name={self.request_name!r}, status={self.status.value}, "
            f"attempts={self.attempts}, time_ms={self.elapsed_ms:.2f})"
        )


@dataclass(slots=True)
class RunSummary:
    """Final aggregate of a run."""

    total: int
    passed: int
    failed: int
    errors: int
    skipped: int
    elapsed_ms: float
    avg_ms: float = 0.0
    p50_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0

    @property
    def success_rate_pct(self) -> float:
        executed = self.total - self.skipped
        if executed == 0:
            return 100.0
        return 100.0 * self.passed / executed

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.errors == 0


class _NotFound:
    """Sentinel for a failed lookup. Distinct from None, which is a valid JSON value."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "NOT_FOUND"

    def __bool__(self) -> bool:
        return False


NOT_FOUND: Any = _NotFound()
