"""Execution scheduler: ordering, bounded concurrency, failure policy, extraction.

One supervising task walks the collections and pushes Outcomes onto a queue in
completion order; ``Scheduler.stream`` yields them and ``Scheduler.run`` folds
them into a RunSummary.

Sequential collections run requests strictly in declared order, and extraction
writes land in the shared store before the next request resolves its templates.
Parallel collections run up to ``max_concurrent`` requests at once on a pool of
worker tasks; chaining through extracted values is only reliable in sequential
mode. When ``continue_on_error`` is off, the first failure stops new work: in
sequential mode immediately, in parallel mode after in-flight requests finish.
Requests that never start are reported as skipped.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable

from .conditions import evaluate_when
from .exceptions import ConfigError, UnresolvedReferenceError
from .extraction import extract_values
from .logging_config import get_logger
from .models import (
    CollectionSpec,
    ErrorKind,
    ExecutionMode,
    Outcome,
    OutcomeStatus,
    RequestSpec,
    RunPlan,
    RunSummary,
)
from .retry import RetryController
from .summary import SummaryCollector
from .templating import TemplateResolver
from .transport import Dispatch
from .variables import VariableStore

logger = get_logger("scheduler")

SKIP_AFTER_FAILURE = "not run: an earlier request failed"
SKIP_AFTER_COLLECTION_FAILURE = "not run: an earlier collection failed"
_FAILING = (OutcomeStatus.FAILED, OutcomeStatus.ERROR)


async def run_pool(
    count: int,
    limit: int,
    run_one: Callable[[int], Awaitable[bool]],
    stop_on_failure: bool,
) -> list[int]:
    """Run items ``0..count-1`` with at most ``limit`` in flight.

    Each worker takes the next index until the list is drained or the stop event
    is set. In-flight work is never cancelled; only new work stops.

    Args:
        count: Number of items
        limit: Worker count (maximum concurrency)
        run_one: Runs one item; returns False on failure
        stop_on_failure: Stop taking new items after the first failure

    Returns:
        Indices that were never started, in order.
    """
    stop = asyncio.Event()
    started: set[int] = set()
    next_index = 0

    async def worker() -> None:
        nonlocal next_index
        while not stop.is_set() and next_index < count:
            i = next_index
            next_index += 1
            started.add(i)
            ok = await run_one(i)
            if not ok and stop_on_failure:
                stop.set()

    workers = [asyncio.create_task(worker()) for _ in range(max(0, min(limit, count)))]
    if workers:
        await asyncio.gather(*workers)
    return [i for i in range(count) if i not in started]


class Scheduler:
    """Runs a RunPlan against a dispatcher.

    Args:
        plan: Loaded plan
        dispatch: Transport callable (see ``transport.HttpTransport``)
        store: Variable store for this run (a fresh one by default)
        resolver: Template resolver (built from ``plan.policy`` by default)
        sleep: Delay primitive for retries
    """

    def __init__(
        self,
        plan: RunPlan,
        dispatch: Dispatch,
        store: VariableStore | None = None,
        resolver: TemplateResolver | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.plan = plan
        self.store = store if store is not None else VariableStore()
        self.resolver = resolver or TemplateResolver(plan.policy)
        self._dispatch = dispatch
        self._sleep = sleep
        self._variables_loaded = False

    async def _load_variables(self) -> None:
        """File-sourced globals first, then declared globals (declared ones win)."""
        if self._variables_loaded:
            return
        if self.plan.variables_file:
            await asyncio.to_thread(self.store.load_file, self.plan.variables_file)
        self.store.define(self.plan.global_variables)
        self._variables_loaded = True

    def _check_plan(self) -> None:
        if self.plan.max_concurrent_collections is not None and self.plan.max_concurrent_collections < 1:
            raise ConfigError("maxConcurrentCollections must be >= 1")
        for c in self.plan.collections:
            if c.max_concurrent is not None and c.max_concurrent < 1:
                raise ConfigError("maxConcurrent must be >= 1", context={"collection": c.name})

    async def stream(self) -> AsyncIterator[Outcome]:
        """Yield Outcomes in completion order until the run ends.

        Raises:
            ConfigError: If the plan or its variables file is invalid (before any request runs).
        """
        self._check_plan()
        await self._load_variables()
        queue: asyncio.Queue[Outcome | None] = asyncio.Queue()
        task = asyncio.create_task(self._supervise(queue))
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield item
            await task
        finally:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def run(self, on_outcome: Callable[[Outcome], None] | None = None) -> tuple[RunSummary, list[Outcome]]:
        """Run the whole plan. Returns the aggregate and every Outcome in completion order."""
        collector = SummaryCollector()
        collector.set_start_time(time.perf_counter())
        async for outcome in self.stream():
            collector.add(outcome)
            if on_outcome is not None:
                on_outcome(outcome)
        collector.set_end_time(time.perf_counter())
        return collector.summary(), list(collector.outcomes or [])

    async def _supervise(self, queue: asyncio.Queue[Outcome | None]) -> None:
        emit = queue.put_nowait
        try:
            collections = self.plan.collections
            stop_on_failure = not self.plan.continue_on_error
            if self.plan.collection_execution is ExecutionMode.PARALLEL:
                limit = self.plan.max_concurrent_collections or len(collections)

                async def run_one(i: int) -> bool:
                    return await self.run_collection(collections[i], emit)

                unstarted = await run_pool(len(collections), limit, run_one, stop_on_failure)
                for i in unstarted:
                    self._skip_requests(collections[i], collections[i].requests, SKIP_AFTER_COLLECTION_FAILURE, emit)
                return
            halted = False
            for collection in collections:
                if halted:
                    self._skip_requests(collection, collection.requests, SKIP_AFTER_COLLECTION_FAILURE, emit)
                    continue
                ok = await self.run_collection(collection, emit)
                if not ok and stop_on_failure:
                    halted = True
        finally:
            queue.put_nowait(None)

    async def run_collection(self, collection: CollectionSpec, emit: Callable[[Outcome], None]) -> bool:
        """Run one collection under its own execution mode. Returns False if any request failed."""
        requests = collection.requests
        logger.info(
            "Running collection %s: %d request(s), %s%s",
            collection.name, len(requests), collection.execution.value,
            f", max_concurrent={collection.max_concurrent}" if collection.execution is ExecutionMode.PARALLEL else "",
        )
        if collection.execution is ExecutionMode.PARALLEL:
            failed = False

            async def run_one(i: int) -> bool:
                nonlocal failed
                outcome = await self.execute(collection, requests[i])
                emit(outcome)
                if outcome.status in _FAILING:
                    failed = True
                    return False
                return True

            limit = collection.max_concurrent or len(requests)
            unstarted = await run_pool(len(requests), limit, run_one, not collection.continue_on_error)
            self._skip_requests(collection, [requests[i] for i in unstarted], SKIP_AFTER_FAILURE, emit)
            return not failed

        failed = False
        for i, spec in enumerate(requests):
            outcome = await self.execute(collection, spec)
            emit(outcome)
            if outcome.status in _FAILING:
                failed = True
                if not collection.continue_on_error:
                    logger.info("Stopping collection %s after failure of %s", collection.name, spec.name)
                    self._skip_requests(collection, requests[i + 1:], SKIP_AFTER_FAILURE, emit)
                    break
        return not failed

    def _skip_requests(
        self,
        collection: CollectionSpec,
        specs: list[RequestSpec],
        reason: str,
        emit: Callable[[Outcome], None],
    ) -> None:
        for spec in specs:
            emit(Outcome(
                request_name=spec.name,
                collection=collection.name,
                status=OutcomeStatus.SKIPPED,
                method=spec.method,
                url=spec.url,
                error=reason,
            ))

    async def execute(self, collection: CollectionSpec, spec: RequestSpec) -> Outcome:
        """Materialize, dispatch with retries, validate and extract for one request.

        Never raises for a fault of this one request: a request that cannot be
        built or sent becomes an ``error`` Outcome and the run goes on.
        """
        base = {"request_name": spec.name, "collection": collection.name, "method": spec.method, "url": spec.url}
        try:
            return await self._execute(collection, spec, base)
        except ConfigError as e:
            logger.warning("Request %s cannot be sent: %s", spec.name, e.message)
            return Outcome(status=OutcomeStatus.ERROR, error=e.message,
                           error_kind=ErrorKind.CONFIGURATION, **base)
        except Exception as e:  # noqa: BLE001
            logger.exception("Unexpected error while running %s", spec.name)
            return Outcome(status=OutcomeStatus.ERROR, error=f"{type(e).__name__}: {e}",
                           error_kind=ErrorKind.UNEXPECTED, **base)

    async def _execute(self, collection: CollectionSpec, spec: RequestSpec, base: dict) -> Outcome:
        if spec.config_error:
            logger.warning("Request %s has invalid configuration: %s", spec.name, spec.config_error)
            return Outcome(status=OutcomeStatus.ERROR, error=spec.config_error,
                           error_kind=ErrorKind.CONFIGURATION, **base)

        scope = self.store.scope(collection.variables, spec.variables)
        try:
            should_run, reason = evaluate_when(spec.when, scope, self.resolver)
            if not should_run:
                logger.info("Skipping %s: %s", spec.name, reason)
                return Outcome(status=OutcomeStatus.SKIPPED, error=reason, error_kind=ErrorKind.CONDITION, **base)
            request, expect, diagnostics = self.resolver.materialize(spec, scope)
        except UnresolvedReferenceError as e:
            logger.warning("Cannot resolve %s: %s", spec.name, e.message)
            return Outcome(status=OutcomeStatus.ERROR, error=e.message,
                           error_kind=ErrorKind.UNRESOLVED_REFERENCE, **base)

        base["method"] = request.method
        base["url"] = request.url
        request.prepare()
        result = await RetryController(request, expect, spec.retry, self._dispatch, sleep=self._sleep).run()
        if not result.passed:
            return Outcome(
                status=OutcomeStatus.FAILED,
                attempts=result.attempts,
                elapsed_ms=result.elapsed_ms,
                response=result.response,
                error=result.error,
                error_kind=result.error_kind,
                mismatches=result.mismatches,
                diagnostics=diagnostics,
                **base,
            )

        extracted: dict = {}
        if spec.extract and result.response is not None:
            extracted, warnings = extract_values(result.response, spec.extract)
            if extracted:
                self.store.write_many(extracted)
            diagnostics = diagnostics + tuple(warnings)
        return Outcome(
            status=OutcomeStatus.PASSED,
            attempts=result.attempts,
            elapsed_ms=result.elapsed_ms,
            response=result.response,
            extracted=extracted,
            diagnostics=diagnostics,
            **base,
        )

