"""Run glue: load a document, open the HTTP client, drive the scheduler, print outcomes."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path

import httpx
from rich.console import Console

from .config import apply_overrides, load_plan
from .console import print_outcome, print_report
from .exceptions import RunnerError
from .logging_config import get_logger
from .models import ExecutionMode, Outcome, RunPlan, RunSummary
from .scheduler import Scheduler
from .transport import HttpTransport, create_client
from .variables import VariableStore

logger = get_logger("runner")


async def run_plan(
    plan: RunPlan,
    on_outcome: Callable[[Outcome], None] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    environ: Mapping[str, str] | None = None,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> tuple[RunSummary, list[Outcome]]:
    """Execute a loaded plan over one shared HTTP client.

    Args:
        plan: Loaded (and overridden) plan
        on_outcome: Called with each Outcome as it completes
        transport: Custom httpx transport (tests pass ``httpx.MockTransport``)
        environ: Process environment fallback for variable lookup (``os.environ`` by default)
        sleep: Delay primitive for retries

    Raises:
        RunnerError: If the plan holds no requests
        ConfigError: If the plan or its variables file is invalid
    """
    if plan.request_count == 0:
        raise RunnerError("No requests to run")

    logger.info(
        "Starting run: collections=%d, requests=%d, collection_execution=%s, http2=%s",
        len(plan.collections), plan.request_count, plan.collection_execution.value, plan.http2,
    )
    client = await create_client(http2=plan.http2, transport=transport)
    async with client:
        scheduler = Scheduler(plan, HttpTransport(client), store=VariableStore(environ), sleep=sleep)
        summary, outcomes = await scheduler.run(on_outcome)
    logger.info(
        "Run finished: total=%d, passed=%d, failed=%d, errors=%d, skipped=%d, elapsed=%.0fms",
        summary.total, summary.passed, summary.failed, summary.errors, summary.skipped, summary.elapsed_ms,
    )
    return summary, outcomes


async def run_file(
    path: str | Path,
    variables: dict[str, str] | None = None,
    execution: ExecutionMode | None = None,
    max_concurrent: int | None = None,
    continue_on_error: bool | None = None,
    strict: bool | None = None,
    live: bool = True,
    transport: httpx.AsyncBaseTransport | None = None,
    environ: Mapping[str, str] | None = None,
) -> RunSummary:
    """Load a request document, apply command-line overrides, run it and print results.

    With ``live`` each outcome is printed as it completes, followed by the
    failure details and the summary table.
    """
    plan = await asyncio.to_thread(load_plan, path)
    plan = apply_overrides(
        plan,
        variables=variables,
        execution=execution,
        max_concurrent=max_concurrent,
        continue_on_error=continue_on_error,
        strict=strict,
    )
    console = Console()
    on_outcome = (lambda o: print_outcome(console, o)) if live else None
    summary, outcomes = await run_plan(plan, on_outcome=on_outcome, transport=transport, environ=environ)
    if live:
        print_report(console, summary, outcomes)
    return summary
