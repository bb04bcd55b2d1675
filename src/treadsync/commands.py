"""
Command definitions and auto-completion for REPL.
"""

from dataclasses import dataclass
from typing import Any, List

from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from .models import DeviceKind


@dataclass
class Command:
    """Command definition with metadata."""

    name: str
    aliases: List[str]
    description: str
    usage: str
    handler: str
    takes_device: bool = False


COMMANDS = [
    Command(
        name="status",
        aliases=["st"],
        description="Show current telemetry",
        usage="status",
        handler="cmd_status",
    ),
    Command(
        name="live",
        aliases=["l"],
        description="Toggle live display mode",
        usage="live",
        handler="cmd_live",
    ),
    Command(
        name="reset",
        aliases=["r"],
        description="Reset the treadmill console now",
        usage="reset [device]",
        handler="cmd_reset",
        takes_device=True,
    ),
    Command(
        name="sessions",
        aliases=["ss", "history"],
        description="List recorded workouts",
        usage="sessions",
        handler="cmd_sessions",
    ),
    Command(
        name="info",
        aliases=["i"],
        description="Show connection and diagnostic information",
        usage="info",
        handler="cmd_info",
    ),
    Command(
        name="help",
        aliases=["h", "?"],
        description="Show all available commands",
        usage="help",
        handler="cmd_help",
    ),
    Command(
        name="quit",
        aliases=["q", "exit"],
        description="Exit the REPL",
        usage="quit",
        handler="cmd_quit",
    ),
]


def get_command(name: str) -> Command | None:
    """Get command by name or alias.

    Args:
        name: Command name or alias

    Returns:
        Command object if found, None otherwise
    """
    for cmd in COMMANDS:
        if cmd.name == name or name in cmd.aliases:
            return cmd
    return None


class CommandCompleter(Completer):
    """Auto-completion for command names and device arguments."""

    def __init__(self) -> None:
        self._all_names = set()
        for cmd in COMMANDS:
            self._all_names.add(cmd.name)
            self._all_names.update(cmd.aliases)
        self._device_names = sorted(kind.value for kind in DeviceKind)

    def get_completions(self, document: Document, complete_event) -> Any:  # type: ignore[no-untyped-def]
        text = document.text_before_cursor.lstrip()
        if not text:
            return

        parts = text.split()
        if len(parts) == 1 and not text.endswith(" "):
            partial_cmd = parts[0].lower()
            for name in sorted(self._all_names):
                if name.startswith(partial_cmd):
                    yield Completion(name, start_position=-len(partial_cmd), display=name)
            return

        cmd = get_command(parts[0].lower())
        if cmd is None or not cmd.takes_device:
            return
        partial = "" if text.endswith(" ") else parts[-1].lower()
        for name in self._device_names:
            if name.startswith(partial):
                yield Completion(name, start_position=-len(partial), display=name)
