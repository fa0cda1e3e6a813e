"""
Main REPL application for walking pad control.

Interactive command loop with async support, auto-completion,
and live status display. This module is also the composition root: it builds
the client, store, poller and controller and wires them together.
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.history import InMemoryHistory

from .client import DeviceClient
from .commands import COMMANDS, CommandCompleter, get_command
from .controller import PadController
from .core import Settings
from .display import DisplayManager
from .errors import DeviceApiError
from .poller import StatusPoller
from .store import ExerciseTarget, SessionStore

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False) -> None:
    """Configure root logging; PADCTRL_LOG_LEVEL overrides the default level."""
    level_name = os.environ.get("PADCTRL_LOG_LEVEL", "DEBUG" if verbose else "INFO")
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
    )
    # aiohttp access noise is only useful when debugging
    logging.getLogger("aiohttp").setLevel(max(level, logging.WARNING))


class PadApp:
    """Wires the synchronization layer together for one dashboard session."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or Settings.from_env()
        self.client = DeviceClient.from_settings(self.settings)
        self.store = SessionStore()
        self.poller = StatusPoller(self.client, self.store, self.settings)
        self.controller = PadController(
            self.client, self.store, self.poller, self.settings
        )

    async def close(self) -> None:
        """Stop polling and release the HTTP session."""
        await self.poller.shutdown()
        await self.client.close()


class PadCtrlREPL:
    """Interactive REPL for walking pad control."""

    def __init__(self, app: Optional[PadApp] = None) -> None:
        """Initialize REPL with app services and display manager."""
        self.app = app or PadApp()
        self.controller = self.app.controller
        self.store = self.app.store
        self.poller = self.app.poller
        self.display = DisplayManager()
        self.running = False
        self.session: PromptSession

        # Set up callbacks
        self.poller.set_on_connection_lost(self.display.notify_connection_lost)
        self.poller.set_on_connection_restored(self.display.notify_connection_restored)
        self._unsubscribe = self.store.subscribe(self.display.update_live)

        # Create prompt session with auto-completion
        self.session = PromptSession(
            completer=CommandCompleter(self.app.settings),
            history=InMemoryHistory(),
            enable_history_search=True,
        )

    async def run(self) -> None:
        """Run the main REPL loop."""
        self.running = True
        self.display.print_banner()

        # Initial status fetch, then keep polling like a mounted dashboard
        self.display.console.print(f"Connecting to {self.app.settings.api_url}...")
        if await self.poller.refresh():
            self.display.console.print("✓ Connected successfully\n")
        else:
            self.display.console.print(
                "⚠ Pad API not reachable yet, polling will keep retrying.\n"
            )
        self.poller.start(immediate=False)

        try:
            while self.running:
                try:
                    prompt_text = self._get_prompt()
                    text = await self.session.prompt_async(prompt_text)

                    if text.strip():
                        await self._handle_input(text.strip())

                except KeyboardInterrupt:
                    # Just show new prompt on Ctrl+C
                    self.display.console.print()
                    continue

        except EOFError:
            # End of input (Ctrl+D)
            await self.cmd_quit([])
        finally:
            self.running = False
            self._unsubscribe()
            self.display.stop_live()
            await self.app.close()

    def _get_prompt(self) -> FormattedText:
        """Get dynamic prompt based on connection state.

        Returns:
            FormattedText for prompt_toolkit
        """
        snapshot = self.store.snapshot()
        if snapshot.is_reconnecting:
            label = "reconnecting"
        elif snapshot.is_connected:
            label = snapshot.mode.value
        else:
            label = "disconnected"
        return FormattedText([("class:prompt", f"[{label}] > ")])

    async def _handle_input(self, text: str) -> None:
        """Parse and dispatch command.

        Args:
            text: Raw user input text
        """
        parts = text.split(maxsplit=1)
        if not parts:
            return

        cmd_name = parts[0].lower()
        args = parts[1].split() if len(parts) > 1 else []

        cmd = get_command(cmd_name)
        if not cmd:
            self.display.print_error(
                f"Unknown command: {cmd_name}. Type 'help' for available commands."
            )
            return

        handler_name = cmd.handler
        if not hasattr(self, handler_name):
            self.display.print_error(f"Handler not found: {handler_name}")
            return

        handler = getattr(self, handler_name)

        try:
            await handler(args)
        except DeviceApiError as e:
            self.display.print_error(str(e))
        except Exception as e:
            self.display.print_error(f"Command failed: {e}")
            logger.exception("Command exception")

    # ========== Command Handlers ==========

    async def cmd_poll(self, args: list) -> None:
        """Toggle background polling."""
        wanted = args[0].lower() if args else None
        if wanted not in (None, "on", "off"):
            self.display.print_error("Usage: poll [on|off]")
            return

        enable = not self.poller.is_active if wanted is None else wanted == "on"
        if enable:
            self.poller.start()
            self.display.print_info("Polling enabled")
        else:
            self.poller.stop()
            self.display.print_info("Polling disabled")

    async def cmd_start(self, args: list) -> None:
        """Start a walking session."""
        speed = None
        if args:
            try:
                speed = float(args[0])
            except ValueError:
                self.display.print_error(f"Invalid speed: {args[0]}")
                return

        await self.controller.start_session(speed)
        self.display.print_success("Session started")

    async def cmd_end(self, args: list) -> None:
        """Stop the belt and save the session."""
        result = await self.controller.end_session()
        self.display.print_success("Session saved")
        if isinstance(result, dict) and isinstance(result.get("data"), dict):
            data = result["data"]
            self.display.print_info(
                f"Saved {data.get('steps', 0)} steps, "
                f"{data.get('distance', 0)} km in {data.get('duration', 0)}"
            )

    async def cmd_stop(self, args: list) -> None:
        """Emergency stop."""
        await self.controller.emergency_stop()
        self.display.print_success("Belt stopped")

    async def cmd_speed(self, args: list) -> None:
        """Set belt speed in km/h."""
        if not args:
            self.display.print_error("Usage: speed <km/h>")
            self.display.print_info(
                f"Range: {self.controller.speed_min}-{self.controller.speed_max} km/h"
            )
            return

        try:
            speed = float(args[0])
        except ValueError:
            self.display.print_error(f"Invalid speed: {args[0]}")
            return

        await self.controller.set_speed(speed)
        self.display.print_success(f"Speed set to {speed:.1f} km/h")

    async def cmd_mode(self, args: list) -> None:
        """Set pad mode."""
        if not args:
            self.display.print_error("Usage: mode <standby|manual|auto>")
            return

        await self.controller.set_mode(args[0].lower())
        self.display.print_success(f"Mode is now {self.store.mode.value}")

    async def cmd_target(self, args: list) -> None:
        """Set or clear the exercise target."""
        if args and args[0].lower() == "clear":
            await self.controller.set_target(None)
            self.display.print_info("Target cleared")
            return

        if len(args) != 2:
            self.display.print_error(
                "Usage: target <distance|steps|calories|duration> <value> | target clear"
            )
            return

        try:
            target = ExerciseTarget(type=args[0].lower(), value=float(args[1]))
        except ValueError:
            self.display.print_error(f"Invalid target: {' '.join(args)}")
            return

        await self.controller.set_target(target)
        self.display.print_success(f"Target set: {target.value:g} {target.unit}")

    async def cmd_save(self, args: list) -> None:
        await self.controller.save_session()
        self.display.print_success("Session saved")

    async def cmd_history(self, args: list) -> None:
        history = await self.controller.get_history()
        self.display.print_history(history)

    async def cmd_status(self, args: list) -> None:
        """Refresh and show current status."""
        await self.poller.refresh()
        self.display.print_status(self.store.snapshot())

    async def cmd_live(self, args: list) -> None:
        """Toggle live display mode."""
        enabled = self.display.toggle_live(self.store.snapshot())
        if not enabled:
            self.display.print_info("Live display disabled")

    async def cmd_reset(self, args: list) -> None:
        self.controller.reset_session()
        self.display.print_info("Session state cleared")

    async def cmd_info(self, args: list) -> None:
        """Show connection and debug information."""
        settings = self.app.settings
        snapshot = self.store.snapshot()

        self.display.console.print("[bold cyan]API[/bold cyan]")
        self.display.console.print(f"  URL: {settings.api_url}")
        self.display.console.print(f"  Request timeout: {settings.request_timeout}s")
        self.display.console.print(f"  Request attempts: {settings.request_attempts}")

        self.display.console.print()
        self.display.console.print("[bold cyan]Speed Settings[/bold cyan]")
        self.display.console.print(
            f"  Range: {self.controller.speed_min}-{self.controller.speed_max} km/h"
        )
        self.display.console.print(f"  Step: {self.controller.SPEED_STEP} km/h")
        self.display.console.print(f"  Start speed: {settings.start_speed} km/h")

        self.display.console.print()
        self.display.console.print("[bold cyan]Debug Information[/bold cyan]")
        self.display.console.print(f"  Poller state: {self.poller.state.value}")
        self.display.console.print(f"  Next poll in: {self.poller.next_delay():.1f}s")
        self.display.console.print(f"  Connected: {snapshot.is_connected}")
        self.display.console.print(f"  Reconnecting: {snapshot.is_reconnecting}")
        self.display.console.print(f"  Consecutive failures: {snapshot.consecutive_failures}")
        self.display.console.print(f"  Last update: {snapshot.last_update}")
        self.display.console.print(f"  Last error: {snapshot.error!r}")
        self.display.console.print(f"  Live enabled: {self.display.live_enabled}")

    async def cmd_help(self, args: list) -> None:
        """Show all available commands."""
        self.display.print_help(COMMANDS)

    async def cmd_quit(self, args: list) -> None:
        """Exit the REPL."""
        if self.display.live_enabled:
            self.display.stop_live()

        self.display.console.print("[cyan]Goodbye![/cyan]")
        self.running = False


async def run_cli_command(
    command: str, value: Optional[str] = None, settings: Optional[Settings] = None
) -> None:
    """Run a single CLI command and exit."""
    app = PadApp(settings)
    display = DisplayManager()
    controller = app.controller

    try:
        if command == "start":
            await controller.start_session()
            display.print_success("Session started")

        elif command == "end":
            await controller.end_session()
            display.print_success("Session ended and saved")

        elif command == "stop":
            await controller.emergency_stop()
            display.print_success("Belt stopped")

        elif command == "speed":
            await controller.set_speed(float(value or 0))
            display.print_success(f"Speed set to {float(value or 0):.1f} km/h")

        elif command == "mode":
            await controller.set_mode(value or "")
            display.print_success(f"Mode set to {value}")

        elif command == "status":
            if not await app.poller.refresh():
                display.print_error(str(app.store.error))
                sys.exit(1)
            display.print_status(app.store.snapshot())

        else:
            display.print_error(f"Unknown command: {command}")
            sys.exit(1)

    except DeviceApiError as e:
        display.print_error(str(e))
        sys.exit(1)

    finally:
        await app.close()


def main() -> None:
    """Entry point for the REPL application."""
    parser = argparse.ArgumentParser(
        description="Walking pad control dashboard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  padctrl                        # Start interactive REPL
  padctrl --start                # Start a session at the configured start speed
  padctrl --speed 3.5            # Change belt speed
  padctrl --mode manual          # Switch to manual mode
  padctrl --end                  # Stop the belt and save the session
  padctrl --stop                 # Emergency stop without saving
  padctrl --status               # Show device status
  padctrl --api-url http://pad.local:5678/api --status
        """,
    )

    parser.add_argument("--start", action="store_true", help="Start a session")
    parser.add_argument("--end", action="store_true", help="Stop and save the session")
    parser.add_argument("--stop", action="store_true", help="Emergency stop")
    parser.add_argument("--status", action="store_true", help="Show device status")
    parser.add_argument("--speed", type=str, metavar="KMH", help="Set belt speed")
    parser.add_argument(
        "--mode", choices=["standby", "manual", "auto"], help="Set pad mode"
    )
    parser.add_argument(
        "--api-url", help="Pad API base URL (default: $PADCTRL_API_URL)"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    args = parser.parse_args()
    configure_logging(args.verbose)

    try:
        settings = Settings.from_env(api_url=args.api_url)
    except ValueError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    # Check which command was requested
    commands: list[tuple[str, Optional[str]]] = []
    if args.start:
        commands.append(("start", None))
    if args.end:
        commands.append(("end", None))
    if args.stop:
        commands.append(("stop", None))
    if args.status:
        commands.append(("status", None))
    if args.speed is not None:
        commands.append(("speed", args.speed))
    if args.mode is not None:
        commands.append(("mode", args.mode))

    # If no CLI commands, start REPL
    if not commands:
        try:
            repl = PadCtrlREPL(PadApp(settings))
            asyncio.run(repl.run())
        except KeyboardInterrupt:
            print("\nInterrupted")
            sys.exit(0)
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    else:
        if len(commands) > 1:
            print("Error: Only one command can be specified at a time", file=sys.stderr)
            sys.exit(1)

        command, value = commands[0]
        if command == "speed":
            try:
                float(value or "")
            except ValueError:
                print(f"Error: invalid speed: {value}", file=sys.stderr)
                sys.exit(1)

        try:
            asyncio.run(run_cli_command(command, value, settings))
        except KeyboardInterrupt:
            print("\nInterrupted")
            sys.exit(1)


if __name__ == "__main__":
    main()
