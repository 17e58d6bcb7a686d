"""Operator status display using rich."""

from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.text import Text

from ..domain.models import DrainResult, SyncQueueEntry, SyncStatus


class StatusConsole:
    """Minimal console for queue and bulk sync status."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def show_banner(self) -> None:
        """Show application banner."""
        banner = Text("fieldsync", style="bold blue")
        banner.append(" • local-first field data sync", style="dim")
        self.console.print(Panel(banner, border_style="blue"))

    def validate_config(self, errors: List[str]) -> bool:
        """Show configuration validation results."""
        if errors:
            self.console.print("❌ [red bold]Configuration Error[/red bold]")
            for error in errors:
                self.console.print(f"   • {error}", style="red")
            return False
        self.console.print("✅ [green]Configuration validated[/green]")
        return True

    def show_health(self, health: Dict[str, Dict[str, str]]) -> None:
        for name, check in health.items():
            if name == "overall":
                continue
            icon = "✅" if check["status"] == "healthy" else "⚠️ "
            self.console.print(f"{icon} [bold]{name}[/bold]: {check['message']}")

    def show_drain_result(self, result: DrainResult) -> None:
        if result.skipped:
            self.console.print("⏭  [yellow]Drain skipped, another drain is running[/yellow]")
            return

        if result.attempted == 0:
            summary = "[green]queue up-to-date[/green]"
        else:
            summary = (
                f"[green bold]{result.duration_seconds:.2f}s[/green bold] • "
                f"[white]{result.attempted} attempted[/white] • "
                f"[green]{result.succeeded} synced[/green]"
            )
            if result.failed_transient:
                summary += f" • [yellow]{result.failed_transient} will retry[/yellow]"
            if result.failed_permanent:
                summary += f" • [red]{result.failed_permanent} rejected[/red]"
        self.console.print(Panel(summary, border_style="green", title="Drain Summary"))

    def show_queue_summary(self, summary: Dict[str, Any]) -> None:
        """Show backlog counts as a two-column table."""
        table = Table(title="Sync Queue", show_header=False, box=None)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right")

        table.add_row("Pending entries", str(summary.get("pending", 0)))
        table.add_row("Retrying", str(summary.get("retrying", 0)))
        non_retryable = summary.get("non_retryable", 0)
        table.add_row(
            "Rejected (needs action)",
            Text(str(non_retryable), style="red" if non_retryable else "green"),
        )
        table.add_row("Unsynced records", str(summary.get("unsynced_records", 0)))
        table.add_row("Oldest entry", str(summary.get("oldest_entry") or "-"))
        table.add_row("Active bulk syncs", str(summary.get("active_checkpoints", 0)))

        self.console.print(table)

    def show_failed_entries(self, entries: List[SyncQueueEntry]) -> None:
        if not entries:
            return

        self.console.print("\n[red bold]Rejected entries:[/red bold]")
        table = Table(show_header=True, box=None, width=120)
        table.add_column("Entry", width=12, style="cyan")
        table.add_column("Path", width=50, overflow="ellipsis")
        table.add_column("Tries", width=6, justify="right")
        table.add_column("Error", width=50, overflow="ellipsis", style="dim")

        for entry in entries:
            table.add_row(entry.id[:12], entry.path, str(entry.retry_count), entry.last_error or "")

        self.console.print(table)

    def show_sync_status(self, status: SyncStatus) -> None:
        """Show one bulk sync job with recommendations."""
        if status.completed:
            state = "[green]completed[/green]"
        elif status.stale:
            state = "[red]stale[/red]"
        else:
            state = "[yellow]in progress[/yellow]"

        body = (
            f"{state} • [bold]{status.progress:.1f}%[/bold] "
            f"({status.processed_records}/{status.total_records})"
        )
        if status.failed_records:
            body += f" • [red]{len(status.failed_records)} failed[/red]"
        if status.last_error:
            body += f"\n[dim]{status.last_error}[/dim]"
        for hint in status.recommendations:
            body += f"\n→ {hint}"

        self.console.print(Panel(body, title=f"{status.job_kind} • {status.checkpoint_id}"))

    def show_error(self, error: str) -> None:
        """Show error message."""
        self.console.print(f"\n❌ [red bold]Error:[/red bold] {error}")

    def show_warning(self, message: str) -> None:
        """Show warning message."""
        self.console.print(f"⚠️  [yellow]{message}[/yellow]")

    @contextmanager
    def progress_spinner(self, description: str):
        """Context manager for showing a spinner with description."""
        with Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            console=self.console,
            transient=True,
        ) as progress:
            task = progress.add_task(description, total=None)
            try:
                yield progress
            finally:
                progress.remove_task(task)
