#!/usr/bin/env python3
"""
📊 Progress Aggregation
=======================
All progress events from every simulated client funnel through one queue
into a single drain task, which is the only code that mutates the counters.

Producers call `record()` (never blocks, never awaits). Display is handled by
a ProgressReporter; RichProgressReporter draws rich progress bars.
"""

import asyncio
import json
import statistics
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn

console = Console()

INITIAL_CHANGE_ID = 0


# =============================================================================
# EVENTS
# =============================================================================

@dataclass(frozen=True)
class ChangeEvent:
    """A change id read from the autoupdate stream (0 = connected)."""
    change_id: int


@dataclass(frozen=True)
class Tick:
    """One finished login ("login") or burst request ("request")."""
    kind: str
    latency_ms: float = 0.0


@dataclass(frozen=True)
class Failure:
    """A failure of one unit of work: "auth", "request" or "stream"."""
    kind: str
    message: str = ""


Event = Union[ChangeEvent, Tick, Failure]


def bucket_label(change_id: int) -> str:
    if change_id == INITIAL_CHANGE_ID:
        return "initial connection"
    return f"update batch {change_id}"


class ProgressSink:
    """Anything that accepts progress events."""

    def record(self, event: Event) -> None:
        raise NotImplementedError


# =============================================================================
# REPORTERS
# =============================================================================

class ProgressReporter:
    """Display hooks, called only from the aggregator's drain task."""

    def start(self):
        pass

    def stop(self):
        pass

    def bucket_created(self, change_id: int, label: str):
        pass

    def bucket_incremented(self, change_id: int, count: int):
        pass

    def ticked(self, kind: str, total_ticks: int):
        pass


class NullReporter(ProgressReporter):
    """Draws nothing."""


class RichProgressReporter(ProgressReporter):
    """
    Live progress bars.

    With `expected_ticks` set (browser mode) a single bar counts every login
    and request tick. Every change id gets its own bar sized to the number
    of consumers.
    """

    def __init__(self, bar_total: int, expected_ticks: Optional[int] = None):
        self.bar_total = bar_total
        self.expected_ticks = expected_ticks
        self.progress = Progress(
            TextColumn("[bold cyan]{task.description:<22}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=console,
        )
        self._tasks: Dict[Any, Any] = {}

    def start(self):
        if self.expected_ticks is not None:
            self._tasks["ticks"] = self.progress.add_task("browser requests", total=self.expected_ticks)
        self.progress.start()

    def stop(self):
        self.progress.stop()

    def bucket_created(self, change_id: int, label: str):
        self._tasks[change_id] = self.progress.add_task(label, total=self.bar_total)

    def bucket_incremented(self, change_id: int, count: int):
        self.progress.update(self._tasks[change_id], completed=count)

    def ticked(self, kind: str, total_ticks: int):
        if "ticks" in self._tasks:
            self.progress.update(self._tasks["ticks"], completed=total_ticks)


# =============================================================================
# AGGREGATOR
# =============================================================================

def _percentile(values: List[float], p: float) -> float:
    if not values:
        return 0
    sorted_values = sorted(values)
    idx = int(len(sorted_values) * p)
    return sorted_values[min(idx, len(sorted_values) - 1)]


class ProgressAggregator(ProgressSink):
    """
    Single owner of the progress counters.

    Buckets (change id -> count) are created on first occurrence and never
    removed. All mutation happens in `run()`, which drains the event queue in
    arrival order; `record()` only enqueues.
    """

    def __init__(self, reporter: Optional[ProgressReporter] = None):
        self.reporter = reporter or NullReporter()
        self._queue: "asyncio.Queue[Optional[Event]]" = asyncio.Queue()
        self._buckets: Dict[int, int] = {}
        self._labels: Dict[int, str] = {}
        self._ticks: Counter = Counter()
        self._failures: Counter = Counter()
        self._latencies: Dict[str, List[float]] = defaultdict(list)
        self._changed = asyncio.Condition()
        self._closed = False

    def record(self, event: Event) -> None:
        if self._closed:
            raise RuntimeError("progress aggregator is closed")
        self._queue.put_nowait(event)

    async def run(self):
        """Drain the queue until close() is called. Run this exactly once."""
        self.reporter.start()
        try:
            while True:
                event = await self._queue.get()
                if event is None:
                    break
                self._apply(event)
                # Wake waiters once the backlog is drained.
                if self._queue.empty():
                    async with self._changed:
                        self._changed.notify_all()
        finally:
            self.reporter.stop()
            async with self._changed:
                self._changed.notify_all()

    def _apply(self, event: Event):
        if isinstance(event, ChangeEvent):
            cid = event.change_id
            if cid not in self._buckets:
                label = bucket_label(cid)
                self._buckets[cid] = 0
                self._labels[cid] = label
                self.reporter.bucket_created(cid, label)
            self._buckets[cid] += 1
            self.reporter.bucket_incremented(cid, self._buckets[cid])
        elif isinstance(event, Tick):
            self._ticks[event.kind] += 1
            if event.latency_ms > 0:
                self._latencies[event.kind].append(event.latency_ms)
            self.reporter.ticked(event.kind, sum(self._ticks.values()))
        elif isinstance(event, Failure):
            self._failures[event.kind] += 1
        else:
            console.print(f"[yellow]Skipping unknown progress event: {event!r}[/yellow]")

    def close(self):
        """Stop accepting events; run() returns once the backlog is drained."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def wait_for(self, predicate, timeout: Optional[float] = None) -> bool:
        """Wait until predicate(self) is true. Returns False on timeout."""
        async def _wait():
            async with self._changed:
                await self._changed.wait_for(lambda: predicate(self))

        try:
            await asyncio.wait_for(_wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def buckets(self) -> Dict[int, int]:
        return dict(self._buckets)

    def labels(self) -> Dict[int, str]:
        return dict(self._labels)

    def ticks(self) -> Dict[str, int]:
        return dict(self._ticks)

    def failures(self) -> Dict[str, int]:
        return dict(self._failures)

    @property
    def total_ticks(self) -> int:
        return sum(self._ticks.values())

    @property
    def total_failures(self) -> int:
        return sum(self._failures.values())

    def latency_stats(self) -> Dict[str, Dict[str, float]]:
        stats = {}
        for kind, values in sorted(self._latencies.items()):
            stats[kind] = {
                "average": round(statistics.mean(values), 2),
                "min": round(min(values), 2),
                "max": round(max(values), 2),
                "p50": round(_percentile(values, 0.50), 2),
                "p95": round(_percentile(values, 0.95), 2),
            }
        return stats


# =============================================================================
# SUMMARY
# =============================================================================

@dataclass
class RunSummary:
    """What a finished run looked like."""
    mode: str
    clients: int
    target: str
    aggregator: ProgressAggregator
    start_time: float = field(default_factory=time.time)
    end_time: float = 0

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time if self.end_time else time.time() - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        agg = self.aggregator
        return {
            "mode": self.mode,
            "clients": self.clients,
            "target": self.target,
            "duration_seconds": round(self.duration, 2),
            "ticks": agg.ticks(),
            "failures": agg.failures(),
            "buckets": {str(cid): count for cid, count in sorted(agg.buckets().items())},
            "latency_ms": agg.latency_stats(),
        }

    def generate_report(self, output_path: Optional[str] = None) -> str:
        """JSON report; written to output_path when given."""
        report = self.to_dict()
        report["timestamp"] = datetime.now(timezone.utc).isoformat()
        json_str = json.dumps(report, indent=2)

        if output_path:
            Path(output_path).write_text(json_str)
            console.print(f"[green]Report saved to: {output_path}[/green]")

        return json_str

    def print_summary(self):
        agg = self.aggregator
        failures = agg.failures()
        border = "green" if not failures else "yellow"

        lines = [
            f"[cyan]Mode:[/cyan]        {self.mode}",
            f"[cyan]Clients:[/cyan]     {self.clients:,}",
            f"[cyan]Target:[/cyan]      {self.target}",
            f"[cyan]Run for:[/cyan]     {self.duration:.2f}s",
            "",
            f"[green]Ticks:[/green]       {agg.total_ticks:,} {self._format_counts(agg.ticks())}",
            f"[red]Failures:[/red]    {agg.total_failures:,} {self._format_counts(failures)}",
        ]
        for kind, stats in agg.latency_stats().items():
            lines.append(
                f"[dim]{kind} latency:[/dim] avg={stats['average']:.1f}ms "
                f"p50={stats['p50']:.1f}ms p95={stats['p95']:.1f}ms max={stats['max']:.1f}ms"
            )
        buckets = agg.buckets()
        if buckets:
            lines.append("")
            lines.append("[bold]Change ids:[/bold]")
            labels = agg.labels()
            for cid, count in sorted(buckets.items()):
                lines.append(f"  {labels[cid]:<22} {count:,}/{self.clients:,}")

        console.print(Panel("\n".join(lines), title="📊 Final Results", border_style=border))

    @staticmethod
    def _format_counts(counts: Dict[str, int]) -> str:
        if not counts:
            return ""
        return "(" + ", ".join(f"{kind}: {count:,}" for kind, count in sorted(counts.items())) + ")"
