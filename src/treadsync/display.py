"""
Display manager for Rich-based REPL output and live updates.

Renders telemetry, recorded workouts and per-device connection details.
"""

import logging
from typing import Any, List, Optional

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from .models import Advertisement
from .recorder import WorkoutSession

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
        self._live_data: dict[str, Any] = {}

    def print_banner(self, device_kind: str) -> None:
        panel = Panel(
            f"[bold cyan]TreadSync - {device_kind} treadmill bridge[/bold cyan]\n"
            "[dim]Type 'help' for commands, 'quit' to exit[/dim]",
            expand=False,
        )
        self.console.print(panel)

    def print_status(self, data: dict) -> None:
        """Display one-time telemetry table.

        Args:
            data: Dictionary with status, speed, distance, time, steps, calories
        """
        self.console.print(self.format_status_table(data))

    def print_error(self, message: str) -> None:
        self.console.print(f"[red]Error:[/red] {message}", highlight=False)

    def print_info(self, message: str) -> None:
        self.console.print(f"[cyan]Info:[/cyan] {message}", highlight=False)

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
        self.console.print("[dim]Keyboard shortcuts: Ctrl+C to interrupt, Ctrl+D to exit[/dim]")

    def print_sessions(self, sessions: List[WorkoutSession], current: Optional[WorkoutSession] = None) -> None:
        """Display recorded workouts, oldest first.

        Args:
            sessions: Completed workouts
            current: Workout in progress, if any
        """
        if not sessions and current is None:
            self.print_info("No workouts recorded yet")
            return

        table = Table(title="Workouts", show_header=True, header_style="bold cyan")
        table.add_column("#", style="dim")
        table.add_column("Start", style="cyan")
        table.add_column("Stop", style="cyan")
        table.add_column("Duration", style="yellow")
        table.add_column("Steps", style="yellow")

        rows = list(sessions) + ([current] if current is not None else [])
        for number, session in enumerate(rows, start=1):
            stop = f"{session.stop:%H:%M:%S}" if session.stop else "[green]running[/green]"
            table.add_row(
                str(number),
                f"{session.start:%Y-%m-%d %H:%M:%S}",
                stop,
                self.format_time(int(session.duration_s)),
                f"{session.steps:,}",
            )
        self.console.print(table)

    def print_device_info(self, entries: List[dict]) -> None:
        for entry in entries:
            self.console.print(f"[bold cyan]Device: {entry.get('kind', '?')}[/bold cyan]")
            for key, value in entry.items():
                if key != "kind":
                    self.console.print(f"  {key}: {value}")
            self.console.print()

    def print_scan_results(self, results: List[Advertisement]) -> None:
        if not results:
            self.print_info("No treadmills found")
            return

        table = Table(title="Nearby Treadmills", show_header=True, header_style="bold cyan")
        table.add_column("Address", style="cyan")
        table.add_column("Name", style="white")
        table.add_column("Services", style="yellow")
        for adv in results:
            services = ", ".join(uuid[4:8].upper() for uuid in adv.service_uuids) or "-"
            table.add_row(adv.address, adv.name or "Unknown", services)
        self.console.print(table)

    # ---------- Live display ----------

    def start_live(self) -> None:
        """Start live display refresh mode."""
        if self.live_enabled:
            return

        self.live_enabled = True
        self._live_data = {
            "status": "Connecting...",
            "speed": 0.0,
            "distance": 0.0,
            "time": 0,
            "steps": 0,
            "calories": 0,
        }
        self._live = Live(self.format_status_table(self._live_data), console=self.console, refresh_per_second=2)
        self._live.start()
        self.console.print("[dim]Live display enabled ['live' to disable][/dim]")

    def stop_live(self) -> None:
        if not self.live_enabled:
            return

        self.live_enabled = False
        if self._live is not None:
            self._live.stop()
            self._live = None

    def update_live(self, data: dict) -> None:
        """Update live display with new telemetry.

        Args:
            data: Status dictionary, possibly partial
        """
        if not self.live_enabled or self._live is None:
            return

        self._live_data.update(data)
        try:
            self._live.update(self.format_status_table(self._live_data))
        except Exception as e:
            logger.error(f"Live update error: {e}")

    def toggle_live(self) -> bool:
        """Toggle live display on/off.

        Returns:
            New live display state (True = on, False = off)
        """
        if self.live_enabled:
            self.stop_live()
        else:
            self.start_live()
        return self.live_enabled

    def format_status_table(self, data: dict) -> Table:
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="yellow")

        table.add_row("Status", data.get("status", "UNKNOWN"))
        table.add_row("Speed", self.format_speed(data.get("speed", 0.0)))
        table.add_row("Distance", self.format_distance(data.get("distance", 0.0)))
        table.add_row("Time", self.format_time(data.get("time", 0)))
        table.add_row("Steps", f"{data.get('steps', 0):,}")
        table.add_row("Calories", self.format_energy(data.get("calories", 0)))

        return table

    @staticmethod
    def format_time(seconds: int) -> str:
        """Convert seconds to H:MM:SS, or MM:SS under an hour."""
        seconds = int(seconds)
        hours, rest = divmod(seconds, 3600)
        mins, secs = divmod(rest, 60)
        if hours:
            return f"{hours}:{mins:02d}:{secs:02d}"
        return f"{mins}:{secs:02d}"

    @staticmethod
    def format_speed(km_h: Optional[float]) -> str:
        return f"{km_h or 0.0:.1f} km/h"

    @staticmethod
    def format_distance(meters: float) -> str:
        """Format distance value intelligently.

        Args:
            meters: Distance in meters

        Returns:
            Formatted distance (km if >1000m, otherwise m)
        """
        if meters >= 1000:
            return f"{meters / 1000:.2f} km"
        return f"{meters:.0f} m"

    @staticmethod
    def format_energy(kcal: Optional[int]) -> str:
        return f"{kcal or 0} kcal"
