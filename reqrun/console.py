"""Rich terminal output: one line per outcome, failure details, summary table."""

from __future__ import annotations

from rich.console import Console
from rich.table import Table
from rich.text import Text

from .models import Outcome, OutcomeStatus, RunSummary

STATUS_STYLES = {
    OutcomeStatus.PASSED: ("PASS", "bold green"),
    OutcomeStatus.FAILED: ("FAIL", "bold red"),
    OutcomeStatus.ERROR: ("ERR ", "bold magenta"),
    OutcomeStatus.SKIPPED: ("SKIP", "yellow"),
}


def format_outcome(outcome: Outcome) -> Text:
    """Single line for one outcome: status tag, collection/request, method URL, HTTP status and timing."""
    label, style = STATUS_STYLES[outcome.status]
    line = Text()
    line.append(f"{label} ", style=style)
    line.append(f"{outcome.collection} / ", style="dim")
    line.append(outcome.request_name, style="bold")
    if outcome.method or outcome.url:
        line.append(f"  {outcome.method} {outcome.url}", style="cyan")
    if outcome.response is not None:
        line.append(f"  {outcome.response.status_code}")
    if outcome.attempts:
        line.append(f"  {outcome.elapsed_ms:.0f}ms", style="dim")
    if outcome.attempts > 1:
        line.append(f"  ({outcome.attempts} attempts)", style="dim")
    if outcome.status is OutcomeStatus.SKIPPED and outcome.error:
        line.append(f"  {outcome.error}", style="dim")
    return line


def print_outcome(console: Console, outcome: Outcome) -> None:
    console.print(format_outcome(outcome))


def build_failures_table(outcomes: list[Outcome]) -> Table | None:
    """Table of failed and errored requests with their reasons. None when everything passed."""
    bad = [o for o in outcomes if o.status in (OutcomeStatus.FAILED, OutcomeStatus.ERROR)]
    if not bad:
        return None
    table = Table(title="Failures", title_style="bold red", show_lines=True)
    table.add_column("Request", style="bold")
    table.add_column("Kind", style="magenta")
    table.add_column("Reason")
    for o in bad:
        reason = "\n".join(m.message for m in o.mismatches) if o.mismatches else (o.error or "")
        kind = o.error_kind.value if o.error_kind is not None else "-"
        table.add_row(f"{o.collection} / {o.request_name}", kind, reason)
    return table


def build_summary_table(summary: RunSummary) -> Table:
    """Two-column grid with counts, elapsed time and latency percentiles."""
    table = Table.grid(padding=(0, 2))
    table.add_column(style="cyan")
    table.add_column(style="green")
    table.add_row("Total requests", str(summary.total))
    table.add_row("Passed", str(summary.passed))
    table.add_row("Failed", str(summary.failed))
    table.add_row("Errors", str(summary.errors))
    table.add_row("Skipped", str(summary.skipped))
    table.add_row("Success rate %", f"{summary.success_rate_pct:.2f}%")
    table.add_row("Elapsed (ms)", f"{summary.elapsed_ms:.1f}")
    table.add_row("Avg response (ms)", f"{summary.avg_ms:.1f}")
    table.add_row("P50 (ms)", f"{summary.p50_ms:.1f}")
    table.add_row("P95 (ms)", f"{summary.p95_ms:.1f}")
    table.add_row("P99 (ms)", f"{summary.p99_ms:.1f}")
    return table


def print_report(console: Console, summary: RunSummary, outcomes: list[Outcome]) -> None:
    failures = build_failures_table(outcomes)
    if failures is not None:
        console.print()
        console.print(failures)
    console.print()
    console.print(build_summary_table(summary))
    if summary.ok:
        console.print("[green]All requests passed[/green]")
    else:
        console.print(f"[red]{summary.failed + summary.errors} request(s) did not pass[/red]")
