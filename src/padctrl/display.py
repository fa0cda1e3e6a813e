"""
Display manager for Rich-based REPL output and live updates.

Renders store snapshots as tables, shows connectivity and command feedback,
and drives the toggle-able live view.
"""

import logging
from typing import Any, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .errors import DeviceApiError
from .poller import parse_duration
from .store import ExerciseTarget, SessionStats, StoreSnapshot

logger = logging.getLogger(__name__)


class DisplayManager:
    """Manages console output with Rich library."""

    def __init__(self, console: Optional[Console] = None):
        """Initialize display manager.

        Args:
            console: Rich Console instance (creates one if None)
        """
        self.console = console or Console()
        self.live_enabled = False
        self._live: Optional[Live] = None
        self._live_snapshot = StoreSnapshot()

    def print_banner(self) -> None:
        """Print startup banner."""
        panel = Panel(
            "[bold cyan]PadCtrl - Walking Pad Dashboard[/bold cyan]\n"
            "[dim]Type 'help' for commands, 'quit' to exit[/dim]",
            expand=False,
        )
        self.console.print(panel)

    def print_status(self, snapshot: StoreSnapshot) -> None:
        """Display one-time status table.

        Args:
            snapshot: Current store snapshot
        """
        self.console.print(self.render_snapshot(snapshot))

    def print_error(self, message: str) -> None:
        """Print red error message.

        Args:
            message: Error message text
        """
        self.console.print(f"[red]Error:[/red] {message}", highlight=False)

    def print_info(self, message: str) -> None:
        """Print cyan info message.

        Args:
            message: Info message text
        """
        self.console.print(f"[cyan]Info:[/cyan] {message}", highlight=False)

    def print_success(self, message: str) -> None:
        self.console.print(f"[green]✓[/green] {message}", highlight=False)

    def notify_connection_lost(self, error: DeviceApiError) -> None:
        """Show the once-per-outage connectivity notification."""
        self.console.print(
            Panel(
                f"[bold red]Connection Lost[/bold red]\n"
                f"Attempting to reconnect to the walking pad...\n[dim]{error}[/dim]",
                expand=False,
                border_style="red",
            )
        )

    def notify_connection_restored(self) -> None:
        self.console.print("[green]✓[/green] Reconnected to walking pad", highlight=False)

    def print_help(self, commands: list) -> None:
        """Display command reference.

        Args:
            commands: List of Command objects
        """
        table = Table(title="Available Commands", show_header=True)
        table.add_column("Command", style="cyan")
        table.add_column("Aliases", style="magenta")
        table.add_column("Description", style="white")
        table.add_column("Usage", style="yellow")

        for cmd in commands:
            aliases = ", ".join(cmd.aliases) if cmd.aliases else "-"
            table.add_row(cmd.name, aliases, cmd.description, cmd.usage)

        self.console.print(table)
        self.console.print(
            "[dim]Keyboard shortcuts: Ctrl+C to interrupt, Ctrl+D to exit[/dim]"
        )

    def print_history(self, history: Any) -> None:
        """Display session history returned by the API."""
        if not history:
            self.print_info("No saved sessions")
            return

        rows = history if isinstance(history, list) else [history]
        table = Table(title="Session History", show_header=True, header_style="bold cyan")
        keys: list[str] = []
        for row in rows:
            if isinstance(row, dict):
                keys.extend(k for k in row if k not in keys)
        if not keys:
            self.console.print(history)
            return

        for key in keys:
            table.add_column(key.replace("_", " ").title())
        for row in rows:
            if isinstance(row, dict):
                table.add_row(*(str(row.get(k, "-")) for k in keys))
        self.console.print(table)

    def start_live(self, snapshot: Optional[StoreSnapshot] = None) -> None:
        """Start live display refresh mode."""
        if self.live_enabled:
            return

        self.live_enabled = True
        if snapshot is not None:
            self._live_snapshot = snapshot
        self._live = Live(
            self.render_snapshot(self._live_snapshot),
            console=self.console,
            refresh_per_second=2,
        )
        self._live.start()
        self.console.print("[dim]Live display enabled ['live' to disable][/dim]")

    def stop_live(self) -> None:
        """Stop live display refresh mode."""
        if not self.live_enabled:
            return

        self.live_enabled = False
        if self._live is not None:
            self._live.stop()
            self._live = None

    def update_live(self, snapshot: StoreSnapshot) -> None:
        """Update live display with a new store snapshot.

        Used as a store listener, so it is called after every commit.
        """
        self._live_snapshot = snapshot
        if not self.live_enabled or self._live is None:
            return

        try:
            self._live.update(self.render_snapshot(snapshot))
        except Exception as e:
            logger.error(f"Live update error: {e}")

    def toggle_live(self, snapshot: Optional[StoreSnapshot] = None) -> bool:
        """Toggle live display on/off.

        Returns:
            New live display state (True = on, False = off)
        """
        if self.live_enabled:
            self.stop_live()
        else:
            self.start_live(snapshot)
        return self.live_enabled

    def render_snapshot(self, snapshot: StoreSnapshot) -> Group:
        """Build the status table plus connectivity and error lines."""
        parts: list[Any] = [self.format_status_table(snapshot)]

        if snapshot.is_reconnecting:
            parts.append(
                Text(
                    f"Reconnecting to device... ({snapshot.consecutive_failures} failed polls)",
                    style="yellow",
                )
            )
        if snapshot.error is not None:
            parts.append(Text(f"Last error: {snapshot.error}", style="red"))

        return Group(*parts)

    def format_status_table(self, snapshot: StoreSnapshot) -> Table:
        """Create Rich Table for status display.

        Args:
            snapshot: Store snapshot

        Returns:
            Rich Table object
        """
        stats: SessionStats = snapshot.stats
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="yellow")

        table.add_row("Connection", self.format_connection(snapshot))
        table.add_row("Mode", snapshot.mode.value.upper())
        table.add_row("Belt", "RUNNING" if snapshot.is_running else "STOPPED")
        table.add_row("Speed", self.format_speed(stats.current_speed))
        table.add_row("Distance", self.format_distance(stats.distance))
        table.add_row("Time", stats.duration)
        table.add_row("Steps", f"{stats.steps:,}")
        table.add_row("Calories", self.format_energy(stats.calories))
        if snapshot.target is not None:
            table.add_row("Target", self.format_target(snapshot.target, stats))
        if snapshot.last_update is not None:
            table.add_row("Updated", snapshot.last_update.strftime("%H:%M:%S"))

        return table

    @staticmethod
    def format_connection(snapshot: StoreSnapshot) -> str:
        if snapshot.is_reconnecting:
            return "RECONNECTING"
        if snapshot.is_connected:
            return "CONNECTED"
        return "DISCONNECTED"

    @staticmethod
    def format_speed(km_h: float) -> str:
        """Format speed value.

        Args:
            km_h: Speed in km/h

        Returns:
            Formatted speed string
        """
        return f"{km_h:.1f} km/h"

    @staticmethod
    def format_distance(km: float) -> str:
        """Format distance value intelligently.

        Args:
            km: Distance in kilometers

        Returns:
            Formatted distance (m below 1 km, otherwise km)
        """
        if km < 1:
            return f"{int(round(km * 1000))} m"
        return f"{km:.2f} km"

    @staticmethod
    def format_energy(kcal: int) -> str:
        return f"{kcal} kcal"

    @staticmethod
    def format_target(target: ExerciseTarget, stats: SessionStats) -> str:
        """Format target with progress, e.g. '1.20 / 5 km (24%)'."""
        current = {
            "distance": stats.distance,
            "steps": stats.steps,
            "calories": stats.calories,
            "duration": parse_duration(stats.duration) / 60,
        }[target.type.value]
        pct = min(100.0, 100.0 * current / target.value) if target.value else 0.0
        if isinstance(current, float):
            current_str = f"{current:.2f}"
        else:
            current_str = f"{current:,}"
        return f"{current_str} / {target.value:g} {target.unit} ({pct:.0f}%)"
