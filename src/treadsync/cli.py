"""
Main REPL application for the treadmill bridge.

Interactive command loop running alongside the polling controller, plus a
headless monitor mode and a one-shot scan.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.history import InMemoryHistory
from prompt_toolkit.patch_stdout import patch_stdout

from .commands import COMMANDS, CommandCompleter, get_command
from .config import Settings, load_settings
from .controller import TreadmillController
from .core import CONSOLE_NAME_PREFIX, FTMS_SERVICE_UUID, VENDOR_SERVICE_UUID
from .display import DisplayManager
from .models import DeviceKind, TelemetrySample

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
    )


class TreadSyncREPL:
    """Interactive REPL over a running TreadmillController."""

    def __init__(self, controller: TreadmillController) -> None:
        self.controller = controller
        self.display = DisplayManager()
        self.running = False
        self.session: PromptSession = PromptSession(
            completer=CommandCompleter(),
            history=InMemoryHistory(),
            enable_history_search=True,
        )
        self._update_task: Optional[asyncio.Task] = None

    async def run(self) -> None:
        """Run the main REPL loop."""
        self.running = True
        self.display.print_banner(self.controller.device.kind.value)
        self.controller.start()
        self._update_task = asyncio.create_task(self._update_loop())

        try:
            with patch_stdout():
                while self.running:
                    try:
                        text = await self.session.prompt_async(self._get_prompt)
                        if text.strip():
                            await self._handle_input(text.strip())
                    except KeyboardInterrupt:
                        self.display.console.print()
                        continue
        except EOFError:
            await self.cmd_quit([])
        finally:
            self.running = False
            if self._update_task:
                self._update_task.cancel()
                try:
                    await self._update_task
                except asyncio.CancelledError:
                    pass
            await self.controller.stop()

    def _get_prompt(self) -> FormattedText:
        device = self.controller.device
        if device.is_connected:
            label = device.kind.value
            if self.controller.recorder.current is not None:
                label += " *"
        else:
            label = device.state.value
        return FormattedText([("class:prompt", f"[{label}] > ")])

    async def _handle_input(self, text: str) -> None:
        """Parse and dispatch command.

        Args:
            text: Raw user input text
        """
        parts = text.split(maxsplit=1)
        cmd_name = parts[0].lower()
        args = parts[1].split() if len(parts) > 1 else []

        cmd = get_command(cmd_name)
        if not cmd:
            self.display.print_error(f"Unknown command: {cmd_name}. Type 'help' for available commands.")
            return

        handler = getattr(self, cmd.handler, None)
        if handler is None:
            self.display.print_error(f"Handler not found: {cmd.handler}")
            return

        try:
            await handler(args)
        except Exception as e:
            self.display.print_error(f"Command failed: {e}")
            logger.exception("Command exception")

    async def _update_loop(self) -> None:
        """Background task feeding recorder events to the live display."""
        try:
            async for event, sample in self.controller.get_updates():
                if event == "ended" and not self.display.live_enabled:
                    self.display.print_info("Workout ended")
                if self.display.live_enabled:
                    self.display.update_live(self.controller.get_status())
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Update loop error: {e}")

    # ========== Command Handlers ==========

    async def cmd_status(self, args: list) -> None:
        self.display.print_status(self.controller.get_status())

    async def cmd_live(self, args: list) -> None:
        if self.display.toggle_live():
            self.display.update_live(self.controller.get_status())
        else:
            self.display.print_info("Live display disabled")

    async def cmd_reset(self, args: list) -> None:
        """Queue a console reset for one device kind or all of them."""
        kind = None
        if args:
            try:
                kind = DeviceKind(args[0].lower())
            except ValueError:
                self.display.print_error(f"Unknown device: {args[0]}")
                return

        if not self.controller.is_connected:
            self.display.print_error("Not connected, reset will run once a device connects")
        count = self.controller.request_reset(kind)
        if count:
            self.display.print_info(f"Reset requested for {count} device(s)")
        else:
            self.display.print_error("No matching device")

    async def cmd_sessions(self, args: list) -> None:
        recorder = self.controller.recorder
        self.display.print_sessions(recorder.sessions, recorder.current)

    async def cmd_info(self, args: list) -> None:
        self.display.print_device_info(self.controller.get_info())
        self.display.console.print("[bold cyan]Debug Information[/bold cyan]")
        self.display.console.print(f"  Running: {self.controller.is_running}")
        self.display.console.print(f"  Poll errors: {self.controller.poll_errors}")
        self.display.console.print(f"  Live enabled: {self.display.live_enabled}")

    async def cmd_help(self, args: list) -> None:
        self.display.print_help(COMMANDS)

    async def cmd_quit(self, args: list) -> None:
        if self.display.live_enabled:
            self.display.stop_live()
        self.display.console.print("[cyan]Goodbye![/cyan]")
        self.running = False


async def run_monitor(controller: TreadmillController) -> None:
    """Headless mode: poll and log session events until interrupted."""

    def on_event(event: str, sample: TelemetrySample) -> None:
        if event == "started":
            logger.info("Workout started")
        elif event == "ended":
            logger.info(f"Workout ended ({sample.steps} steps, {sample.distance_m:.0f} m)")
        else:
            logger.debug(f"Telemetry: {sample.as_dict()}")

    controller.recorder.add_listener(on_event)
    try:
        await controller.run()
    finally:
        await controller.stop()


async def run_scan(display: DisplayManager, timeout: float) -> None:
    """List nearby devices that look like supported treadmills."""
    from .ble import scan_for_treadmills

    display.print_info(f"Scanning for {timeout:.0f}s...")
    wanted = {FTMS_SERVICE_UUID, VENDOR_SERVICE_UUID}
    results = [
        adv
        for adv in await scan_for_treadmills(timeout)
        if wanted & {uuid.lower() for uuid in adv.service_uuids}
        or (adv.name or "").startswith(CONSOLE_NAME_PREFIX)
    ]
    display.print_scan_results(results)


def build_settings(args: argparse.Namespace) -> Settings:
    settings = load_settings(args.config)
    return settings.with_overrides(
        device=args.device,
        request_port=args.request_port,
        response_port=args.response_port,
        log_level="DEBUG" if args.verbose else None,
    )


def main() -> None:
    """Entry point for the treadsync command."""
    parser = argparse.ArgumentParser(
        description="Treadmill session bridge",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  treadsync                              # Start interactive REPL
  treadsync --monitor                    # Log workouts without a prompt
  treadsync --scan                       # List nearby treadmills
  treadsync --device polling_console     # Talk to a request/response console
  treadsync --device serial_snoop --request-port /dev/ttyUSB0 --response-port /dev/ttyUSB1
        """,
    )
    parser.add_argument("--monitor", action="store_true", help="Run headless and log session events")
    parser.add_argument("--scan", action="store_true", help="List nearby treadmills and exit")
    parser.add_argument(
        "--device",
        choices=[kind.value for kind in DeviceKind],
        help="Treadmill protocol (overrides config)",
    )
    parser.add_argument("--config", type=Path, help="Path to config.json")
    parser.add_argument("--request-port", help="Serial port carrying console requests")
    parser.add_argument("--response-port", help="Serial port carrying motor responses")
    parser.add_argument("--scan-timeout", type=float, default=10.0, help="Seconds to scan with --scan")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log raw frames")

    args = parser.parse_args()
    if args.monitor and args.scan:
        print("Error: Only one of --monitor and --scan can be given", file=sys.stderr)
        sys.exit(1)

    settings = build_settings(args)
    configure_logging(settings.log_level)

    try:
        if args.scan:
            asyncio.run(run_scan(DisplayManager(), args.scan_timeout))
        elif args.monitor:
            asyncio.run(run_monitor(TreadmillController(settings)))
        else:
            asyncio.run(TreadSyncREPL(TreadmillController(settings)).run())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
