"""Run aggregation: outcome counts, wall-clock time and latency percentiles.

Latency percentiles stream through a T-Digest, so memory stays bounded no
matter how many requests a run holds. Only dispatched outcomes contribute
latency; skipped and pre-dispatch errors are counted but not timed.
"""

from __future__ import annotations

import time

from tdigest import TDigest

from .logging_config import get_logger
from .models import Outcome, OutcomeStatus, RunSummary

logger = get_logger("summary")


def _percentile_from_digest(digest: TDigest, p: float) -> float:
    """Get percentile from T-Digest. Returns 0.0 if empty."""
    try:
        return digest.percentile(p) or 0.0
    except (ValueError, IndexError, ZeroDivisionError):
        return 0.0


class SummaryCollector:
    """Accumulates outcomes as they stream in and produces the final RunSummary."""

    __slots__ = ("_counts", "_digest", "_timed", "_sum_ms", "_start", "_end", "outcomes")

    def __init__(self, keep_outcomes: bool = True) -> None:
        self._counts = {status: 0 for status in OutcomeStatus}
        self._digest = TDigest()
        self._timed = 0
        self._sum_ms = 0.0
        self._start = time.perf_counter()
        self._end: float | None = None
        self.outcomes: list[Outcome] | None = [] if keep_outcomes else None

    def add(self, outcome: Outcome) -> None:
        self._counts[outcome.status] += 1
        if outcome.attempts > 0:
            self._timed += 1
            self._sum_ms += outcome.elapsed_ms
            self._digest.update(outcome.elapsed_ms)
        if self.outcomes is not None:
            self.outcomes.append(outcome)

    def set_start_time(self, t: float) -> None:
        self._start = t

    def set_end_time(self, t: float) -> None:
        self._end = t

    def summary(self) -> RunSummary:
        end = self._end if self._end is not None else time.perf_counter()
        total = sum(self._counts.values())
        agg = RunSummary(
            total=total,
            passed=self._counts[OutcomeStatus.PASSED],
            failed=self._counts[OutcomeStatus.FAILED],
            errors=self._counts[OutcomeStatus.ERROR],
            skipped=self._counts[OutcomeStatus.SKIPPED],
            elapsed_ms=(end - self._start) * 1000.0,
        )
        if self._timed:
            agg.avg_ms = self._sum_ms / self._timed
            agg.p50_ms = _percentile_from_digest(self._digest, 50)
            agg.p95_ms = _percentile_from_digest(self._digest, 95)
            agg.p99_ms = _percentile_from_digest(self._digest, 99)
        logger.debug(
            "Summary: total=%d passed=%d failed=%d errors=%d skipped=%d",
            agg.total, agg.passed, agg.failed, agg.errors, agg.skipped,
        )
        return agg
