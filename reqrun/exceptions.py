"""Custom exceptions for the reqrun request runner.

All reqrun-specific exceptions inherit from ReqrunError for unified error handling.
Each exception preserves the original cause chain for debugging.

Validation mismatches are not exceptions: they are recorded as data on the
request Outcome so a single run surfaces every mismatch at once.
"""

from __future__ import annotations

from typing import Any


class ReqrunError(Exception):
    """Base exception for all reqrun errors.

    Attributes:
        message: Human-readable error description
        context: Optional dictionary with additional debugging context
        original_error: Original exception that caused this error (if any)
    """

    def __init__(
        self,
        message: str,
        *args: object,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, *args)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Return formatted error message with context if available."""
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            base = f"{base} [{ctx_str}]"
        if self.original_error:
            base = f"{base} (caused by: {type(self.original_error).__name__}: {self.original_error})"
        return base

    def with_context(self, **kwargs: Any) -> "ReqrunError":
        """Add context to this error and return self for chaining."""
        self.context.update(kwargs)
        return self


class ConfigError(ReqrunError):
    """Raised when configuration is invalid or a file cannot be loaded.

    Common causes:
    - Document or variables file not found
    - Invalid YAML/JSON syntax
    - Malformed retry/concurrency values (e.g. negative counts)
    """


class UnresolvedReferenceError(ReqrunError):
    """Raised when template expansion cannot produce a final value.

    Common causes:
    - A mandatory variable (strict mode, or inside a URL) is absent
    - Expansion did not settle within the configured pass limit (cycles)
    """

    def __init__(self, message: str, expression: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.expression = expression


class TransportError(ReqrunError):
    """Raised when the target cannot be reached.

    Common causes:
    - Request timeout
    - Connection refused / reset
    - DNS resolution failure
    """

    def __init__(self, message: str, url: str = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.url = url


class RunnerError(ReqrunError):
    """Raised when a run cannot start (e.g. the document has no requests)."""
