"""Bounded retry of one concrete request.

State machine per request:

    PENDING -> DISPATCHING -> VALIDATING -> PASSED
                    |              |
                    v              v
              FAILED_ATTEMPT <-----+
                    |
                    +-> DISPATCHING   (attempts remain, after a fixed delay)
                    +-> EXHAUSTED

A transport error and a validation mismatch are the same kind of failed
attempt. The attempt budget is ``retry.count + 1`` and the delay between
attempts is constant.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from .exceptions import TransportError
from .logging_config import get_logger
from .models import CapturedResponse, ConcreteRequest, ErrorKind, ExpectationSpec, Mismatch, RetryPolicy
from .transport import Dispatch
from .validation import compile_expectation, validate_response

logger = get_logger("retry")


class AttemptState(str, Enum):
    PENDING = "pending"
    DISPATCHING = "dispatching"
    VALIDATING = "validating"
    PASSED = "passed"
    FAILED_ATTEMPT = "failed_attempt"
    EXHAUSTED = "exhausted"


@dataclass(slots=True)
class RetryResult:
    """What the controller hands back to the scheduler. Mismatches are from the final attempt only."""

    passed: bool
    attempts: int
    elapsed_ms: float
    response: CapturedResponse | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    mismatches: tuple[Mismatch, ...] = field(default_factory=tuple)


class RetryController:
    """Drive dispatch + validation of one request until it passes or the budget is spent.

    Args:
        request: Materialized request
        expect: Expectation with templates resolved
        policy: Retry count and fixed delay
        dispatch: Transport callable; raises TransportError on network failure
        sleep: Delay primitive (``asyncio.sleep``; injectable for tests)
    """

    def __init__(
        self,
        request: ConcreteRequest,
        expect: ExpectationSpec,
        policy: RetryPolicy,
        dispatch: Dispatch,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.request = request
        self.expect = expect
        self.policy = policy
        self.state = AttemptState.PENDING
        self.history: list[AttemptState] = [AttemptState.PENDING]
        self.attempts = 0
        self._dispatch = dispatch
        self._sleep = sleep
        self._matcher = compile_expectation(expect.body) if expect.has_body else None

    def _transition(self, state: AttemptState) -> None:
        self.state = state
        self.history.append(state)

    async def run(self) -> RetryResult:
        start_ns = time.perf_counter_ns()
        max_attempts = self.policy.max_attempts
        while True:
            self._transition(AttemptState.DISPATCHING)
            self.attempts += 1
            response: CapturedResponse | None = None
            mismatches: list[Mismatch] = []
            try:
                response = await self._dispatch(self.request)
            except TransportError as e:
                error = e.message
                kind = ErrorKind.TRANSPORT
                logger.debug("Attempt %d/%d of %s failed: %s", self.attempts, max_attempts, self.request.name, error)
            else:
                self._transition(AttemptState.VALIDATING)
                mismatches = validate_response(response, self.expect, self._matcher)
                if not mismatches:
                    self._transition(AttemptState.PASSED)
                    return RetryResult(
                        passed=True,
                        attempts=self.attempts,
                        elapsed_ms=(time.perf_counter_ns() - start_ns) / 1_000_000,
                        response=response,
                    )
                error = f"{len(mismatches)} expectation(s) not met"
                kind = ErrorKind.VALIDATION
            self._transition(AttemptState.FAILED_ATTEMPT)

            if self.attempts >= max_attempts:
                self._transition(AttemptState.EXHAUSTED)
                return RetryResult(
                    passed=False,
                    attempts=self.attempts,
                    elapsed_ms=(time.perf_counter_ns() - start_ns) / 1_000_000,
                    response=response,
                    error=error,
                    error_kind=kind,
                    mismatches=tuple(mismatches),
                )
            logger.info(
                "Retrying %s (%d/%d) in %gms: %s",
                self.request.name, self.attempts, self.policy.count, self.policy.delay_ms, error,
            )
            if self.policy.delay_ms > 0:
                await self._sleep(self.policy.delay_ms / 1000.0)
