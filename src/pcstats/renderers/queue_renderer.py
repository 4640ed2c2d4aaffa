"""
Queue status renderer.

Presentation of the durable queue's observability surface:
- CLI rendering (Rich panel)
- Plain-text summary for logs
"""

from typing import Optional

from rich.panel import Panel
from rich.table import Table

from pcstats.storage.queue import QueueStats
from pcstats.utils.formatting import fmt_bytes, fmt_duration


class QueueRenderer:
    """Renders `QueueStats` for operators."""

    NAME = "Offline Queue"

    def __init__(self, stats: QueueStats, stuck_retry_threshold: int, healthy: Optional[bool] = None):
        self.stats = stats
        self.stuck_retry_threshold = stuck_retry_threshold
        self.healthy = healthy

    def get_panel_renderable(self) -> Panel:
        """Return a Rich Panel for CLI display."""
        s = self.stats

        table = Table.grid(padding=(0, 2))
        table.add_column(justify="left", style="bold green")
        table.add_column(justify="left", style="white")

        table.add_row("Pending batches", str(s.depth))
        table.add_row("Size on disk", fmt_bytes(s.total_bytes))
        table.add_row(
            "Oldest batch",
            s.oldest_timestamp.isoformat() if s.oldest_timestamp else "-",
        )
        table.add_row("Oldest age", fmt_duration(s.oldest_age_sec))

        stuck_style = "red" if s.stuck_count else "white"
        table.add_row(
            f"Retried > {self.stuck_retry_threshold}x",
            f"[{stuck_style}]{s.stuck_count}[/{stuck_style}]",
        )
        if self.healthy is not None:
            table.add_row(
                "Local storage",
                "[green]OK[/green]" if self.healthy else "[red]FAULTING[/red]",
            )

        border = "red" if s.stuck_count else "cyan"
        return Panel(
            table,
            title=f"[bold cyan]{self.NAME}[/bold cyan]",
            title_align="center",
            border_style=border,
            width=72,
        )

    def log_summary(self) -> str:
        s = self.stats
        return (
            f"depth={s.depth} bytes={s.total_bytes} "
            f"oldest_age={fmt_duration(s.oldest_age_sec)} "
            f"stuck(>{self.stuck_retry_threshold})={s.stuck_count}"
        )
