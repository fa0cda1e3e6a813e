"""
Command definitions and auto-completion for REPL.

Defines all available commands with metadata and provides a completer
for prompt_toolkit auto-completion.
"""

from dataclasses import dataclass
from typing import Any, List, Optional

from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from .core import SPEED_MAX, Settings
from .store import DeviceMode, TargetType


@dataclass
class Command:
    """Command definition with metadata."""

    name: str
    aliases: List[str]
    description: str
    usage: str
    handler: str


# Define all available commands
COMMANDS = [
    Command(
        name="poll",
        aliases=["p"],
        description="Toggle background status polling",
        usage="poll [on|off]",
        handler="cmd_poll",
    ),
    Command(
        name="start",
        aliases=["s"],
        description="Start a walking session",
        usage="start [km/h]",
        handler="cmd_start",
    ),
    Command(
        name="end",
        aliases=["e", "finish"],
        description="Stop the belt and save the session",
        usage="end",
        handler="cmd_end",
    ),
    Command(
        name="stop",
        aliases=["x"],
        description="Emergency stop (does not save)",
        usage="stop",
        handler="cmd_stop",
    ),
    Command(
        name="speed",
        aliases=["sp"],
        description="Set belt speed in km/h",
        usage="speed <km/h>",
        handler="cmd_speed",
    ),
    Command(
        name="mode",
        aliases=["m"],
        description="Set pad mode",
        usage="mode <standby|manual|auto>",
        handler="cmd_mode",
    ),
    Command(
        name="target",
        aliases=["t"],
        description="Set or clear the exercise target",
        usage="target <distance|steps|calories|duration> <value> | target clear",
        handler="cmd_target",
    ),
    Command(
        name="save",
        aliases=[],
        description="Save the current session",
        usage="save",
        handler="cmd_save",
    ),
    Command(
        name="history",
        aliases=["hist"],
        description="Show saved sessions",
        usage="history",
        handler="cmd_history",
    ),
    Command(
        name="status",
        aliases=["st"],
        description="Refresh and show current status",
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
        aliases=[],
        description="Clear local session state",
        usage="reset",
        handler="cmd_reset",
    ),
    Command(
        name="info",
        aliases=["i"],
        description="Show connection and debug information",
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

ARGUMENT_CHOICES = {
    "mode": [m.value for m in DeviceMode],
    "target": [t.value for t in TargetType] + ["clear"],
    "poll": ["on", "off"],
}


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


def suggested_speeds(speed_max: float = SPEED_MAX) -> list[str]:
    """Speeds offered by completion: 0.5 km/h steps up to speed_max."""
    speeds = []
    tenths = 5
    while tenths <= round(speed_max * 10):
        speeds.append(f"{tenths / 10:.1f}")
        tenths += 5
    return speeds


class CommandCompleter(Completer):
    """Auto-completion for commands and arguments."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        """Initialize completer.

        Args:
            settings: Shared settings; speed suggestions follow its speed_max
        """
        self._command_names = set()
        self._command_aliases = set()
        self._settings = settings or Settings()

        for cmd in COMMANDS:
            self._command_names.add(cmd.name)
            self._command_aliases.update(cmd.aliases)

    def get_completions(self, document: Document, complete_event) -> Any:  # type: ignore[no-untyped-def]
        """Get completion suggestions for current input.

        Args:
            document: Current input document
            complete_event: Completion event

        Yields:
            Completion objects for matching commands/arguments
        """
        text = document.text_before_cursor.lstrip()
        parts = text.split()

        # If no text yet, suggest nothing (avoid spam)
        if not text:
            return

        # Trailing space means the user is starting a new word
        if text.endswith(" "):
            parts.append("")

        # First part: complete command name
        if len(parts) <= 1:
            partial_cmd = parts[0].lower() if parts else ""
            all_names = self._command_names | self._command_aliases

            for name in sorted(all_names):
                if name.startswith(partial_cmd):
                    completion = name[len(partial_cmd) :]
                    yield Completion(
                        completion,
                        start_position=0,
                        display=f"({name})",
                    )
            return

        # Second part: argument suggestions
        cmd = get_command(parts[0].lower())
        if cmd is None or len(parts) > 2:
            return

        partial = parts[-1].lower()
        if cmd.name in ("speed", "start"):
            choices = suggested_speeds(self._settings.speed_max)
        else:
            choices = ARGUMENT_CHOICES.get(cmd.name, [])

        for choice in choices:
            if choice.startswith(partial):
                yield Completion(
                    choice[len(partial) :],
                    start_position=0,
                    display=choice,
                )
