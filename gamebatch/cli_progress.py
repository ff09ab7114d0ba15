"""Console rendering and progress helpers for the gamebatch CLI."""
from __future__ import annotations

from typing import Any, Dict, Iterable, Optional
import time

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from .models import BatchItem, BatchSummary
from .utils.events import ProgressUpdate, Severity, SlotProgress, StatusUpdate

console = Console()

FAILURE_LIMIT = 10


def _echo(message: str) -> None:
    console.print(message)


def _human_size(value: int) -> str:
    size = float(max(value, 0))
    units = ["B", "KB", "MB", "GB", "TB"]
    unit_idx = 0
    while size >= 1024.0 and unit_idx < len(units) - 1:
        size /= 1024.0
        unit_idx += 1
    if unit_idx == 0:
        return f"{int(size)} {units[unit_idx]}"
    return f"{size:.2f} {units[unit_idx]}"


def format_eta(seconds: float) -> str:
    """Render seconds as "1h 02m", "3m 05s" or "42s"."""
    seconds = int(max(seconds, 0))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


def render_configuration_summary(config: Dict[str, Any]) -> None:
    """Render startup configuration summary."""
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column(style="white")

    for key, value in config.items():
        rendered = "-" if value is None else str(value)
        table.add_row(key, rendered)

    panel = Panel(
        table,
        title="[bold green]gamebatch[/bold green]",
        subtitle="[dim]crack / zip / upload[/dim]",
        border_style="blue",
    )
    console.print(panel)


class BatchProgressDisplay:
    """Event-based console display for a batch process."""

    def __init__(self, items: Iterable[BatchItem]):
        self._names: Dict[str, str] = {item.item_id: item.name for item in items}
        self._slot_tasks: Dict[int, TaskID] = {}
        self._overall_task_id: Optional[TaskID] = None
        self._live: Optional[Live] = None

        self._meta_progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold cyan]{task.fields[label]}", justify="left"),
            BarColumn(bar_width=42),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("[dim]{task.fields[detail]}", justify="left"),
            expand=False,
            console=console,
        )
        self._slot_progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold green]{task.fields[label]}", justify="left"),
            BarColumn(bar_width=32),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            DownloadColumn(),
            TransferSpeedColumn(),
            expand=False,
            console=console,
        )

    def _name(self, item_id: str) -> str:
        return self._names.get(item_id, item_id)

    def _emit_timeline(self, status: str, name: str, text: str) -> None:
        stamp = time.strftime("%H:%M:%S")
        palette = {
            "DONE": "green",
            "FAIL": "red",
            "WARN": "yellow",
            "INFO": "blue",
        }
        color = palette.get(status, "white")
        _echo(f"[dim]{stamp}[/dim] [{color}]{status:<4}[/{color}] {name}: {text}")

    def start(self) -> None:
        if self._live is not None:
            return
        self._live = Live(
            Group(self._meta_progress, self._slot_progress),
            console=console,
            refresh_per_second=8,
            vertical_overflow="visible",
        )
        self._live.start()
        self._overall_task_id = self._meta_progress.add_task(
            "overall",
            label="Overall",
            total=100,
            completed=0,
            detail="estimating...",
        )

    def stop(self) -> None:
        if self._live is None:
            return
        self._live.stop()
        self._live = None

    def on_status(self, update: StatusUpdate) -> None:
        status = {
            Severity.SUCCESS: "DONE",
            Severity.ERROR: "FAIL",
            Severity.WARNING: "WARN",
        }.get(update.severity, "INFO")
        self._emit_timeline(status, self._name(update.item_id), update.text)

    def on_progress(self, update: ProgressUpdate) -> None:
        self.start()
        detail = f"ETA {format_eta(update.eta_seconds)}"
        if update.phase:
            detail = f"{update.phase} - {detail}"
        self._meta_progress.update(self._overall_task_id, completed=update.percent, detail=detail)

    def on_slot_claimed(self, slot: SlotProgress) -> None:
        self.start()
        self._slot_tasks[slot.index] = self._slot_progress.add_task(
            "upload",
            label=f"[{slot.index + 1}] {self._name(slot.item_id)[:50]}",
            total=max(slot.total_bytes, 1),
        )

    def on_slot_progress(self, slot: SlotProgress) -> None:
        task_id = self._slot_tasks.get(slot.index)
        if task_id is not None:
            self._slot_progress.update(task_id, completed=slot.bytes_done)

    def on_slot_released(self, slot: SlotProgress) -> None:
        task_id = self._slot_tasks.pop(slot.index, None)
        if task_id is not None:
            self._slot_progress.remove_task(task_id)

    def on_error(self, error: Exception) -> None:
        self.stop()
        _echo(f"[red]Error:[/red] {error}")

    def on_finish(self, summary: BatchSummary) -> None:
        self.stop()
        render_summary(summary)


def render_summary(summary: BatchSummary) -> None:
    """Print the result panel, failures and links."""
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column(style="white")
    table.add_row("Items", str(summary.total_items))
    table.add_row("Result", summary.summary_line())
    table.add_row("Succeeded", str(summary.succeeded))
    table.add_row("Duration", format_eta(summary.duration))
    border = "red" if summary.has_failures else "green"
    console.print(Panel(table, title="[bold]Batch finished[/bold]", border_style=border))

    if summary.failures:
        _echo("[bold red]Failures[/bold red]")
        _echo(summary.failure_report(FAILURE_LIMIT))

    if summary.upload_results:
        _echo("[bold green]Links[/bold green]")
        for result in summary.upload_results:
            size = f" ({_human_size(result.archive_size)})" if result.archive_size else ""
            _echo(f"{result.item_name}{size}: {result.final_url}")
