"""
interfaces/console.py — AIRAssist console front end

Interactive terminal client for the voice assistant.
Uses rich for rendering and aioconsole for async input, so conversation
events keep printing while the prompt waits.

Features:
  - Typed text is sent as a text message (queued when offline)
  - Assistant replies, system notices and delivery state rendered live
  - /listen, /stop, /auto, /scan, /connect, /disconnect, /clear, /status, /help
  - /set section.field value persists a settings override
  - Graceful Ctrl+C / Ctrl+D handling

Usage:
    airassist
    airassist --log-level DEBUG
"""

from __future__ import annotations

import asyncio
from typing import Optional

import aioconsole
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich import box

from airassist.app import AirAssistApp
from airassist.audio.capture import CaptureEvent, CaptureEventKind
from airassist.conversation.models import (
    ConversationEvent,
    ConversationEventKind,
    DeliveryState,
    Message,
    Sender,
)
from airassist.core.events import Subscription
from airassist.exceptions import AirAssistError, CapabilityError
from airassist.observability.logger import get_logger

log = get_logger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

_HELP_TEXT = """
## AIRAssist Commands

| Command | Description |
|---------|-------------|
| `<message>` | Send a text message to the assistant |
| `/listen` | Start recording (stops on silence) |
| `/stop` | Stop recording now, or stop the spoken reply |
| `/cancel` | Discard the current recording |
| `/auto <on\\|off>` | Toggle auto-listen after each reply |
| `/scan` | Scan for headsets |
| `/connect <id>` | Connect to a headset by address |
| `/disconnect` | Disconnect the current headset |
| `/devices` | Show discovered and previously used headsets |
| `/clear` | Clear conversation history |
| `/status` | Show session, headset and conversation state |
| `/set <section.field> <value>` | Change and save a setting, e.g. `/set audio.voice nova` |
| `/help` | Show this help message |
| `/quit` / Ctrl+D | Exit AIRAssist |
"""

_DELIVERY_MARKS = {
    DeliveryState.SENT: "[dim]✓[/]",
    DeliveryState.QUEUED: "[yellow]⏳[/]",
    DeliveryState.DELIVERED: "[green]✓✓[/]",
    DeliveryState.FAILED: "[red]✗[/]",
}

_STATE_COLOURS = {
    "idle": "green",
    "recording": "red",
    "awaiting_response": "yellow",
    "speaking": "cyan",
}


# ── Console Runner ────────────────────────────────────────────────────────────


class ConsoleInterface:
    """Async REPL on top of a started AirAssistApp."""

    def __init__(self, app: AirAssistApp, console: Optional[Console] = None):
        self.app = app
        self.console = console or Console()
        self._watchers: list[asyncio.Task] = []
        self._subs: list[Subscription] = []
        self._shutdown = asyncio.Event()

    @property
    def _coordinator(self):
        return self.app.coordinator

    # ── Startup ───────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the app, then run the REPL until the user quits."""
        with self.console.status("[dim]Starting AIRAssist...[/]"):
            await self.app.start()
        self._print_banner()
        self._start_watchers()
        try:
            await self._repl_loop()
        finally:
            await self._cleanup()

    def _start_watchers(self) -> None:
        conv_sub = self._coordinator.events()
        capture_sub = self.app.capture.events()
        self._subs = [conv_sub, capture_sub]
        self._watchers = [
            asyncio.create_task(self._watch_conversation(conv_sub)),
            asyncio.create_task(self._watch_capture(capture_sub)),
        ]

    def _print_banner(self) -> None:
        settings = self.app.settings
        self.console.print(
            Panel(
                f"[bold cyan]AIRAssist[/]  ·  {settings.user.user_name}\n"
                f"[dim]{settings.server.url}[/]\n"
                f"[dim]Type a message, or /listen to speak. /help for commands.[/]",
                box=box.ROUNDED,
            )
        )
        for message in self._coordinator.log.messages()[-10:]:
            self._render_message(message)

    def _print_help(self) -> None:
        self.console.print(Markdown(_HELP_TEXT))

    # ── REPL Loop ─────────────────────────────────────────────────────────────

    async def _repl_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                user_input = await aioconsole.ainput(self._build_prompt())
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/]")
                break

            user_input = user_input.strip()
            if not user_input:
                continue
            if user_input.lower() in ("/quit", "/exit", "exit", "quit"):
                self.console.print("[dim]Goodbye.[/]")
                break

            try:
                await self._dispatch(user_input)
            except CapabilityError as e:
                self.console.print(f"[red]❌ {e}[/]")
            except AirAssistError as e:
                self.console.print(f"[yellow]⚠ {e}[/]")

    def _build_prompt(self) -> str:
        state = self._coordinator.state.value
        session = self.app.session.state.value
        colours = {"green": "\033[32m", "red": "\033[31m", "yellow": "\033[33m", "cyan": "\033[36m"}
        colour = colours[_STATE_COLOURS.get(state, "green")]
        reset = "\033[0m"
        return f"{colour}AIRAssist[{state}][{session}]{reset}> "

    # ── Command Dispatch ──────────────────────────────────────────────────────

    async def _dispatch(self, raw: str) -> None:
        """Route input to the correct handler."""
        if not raw.startswith("/"):
            await self._coordinator.send_text(raw)
            return

        parts = raw.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        handlers = {
            "/help":       lambda _: self._print_help(),
            "/listen":     lambda _: self._cmd_listen(),
            "/stop":       lambda _: self._cmd_stop(),
            "/cancel":     lambda _: self._coordinator.cancel_listening(),
            "/auto":       self._cmd_auto,
            "/scan":       lambda _: self._cmd_scan(),
            "/connect":    self._cmd_connect,
            "/disconnect": lambda _: self._cmd_disconnect(),
            "/devices":    lambda _: self._cmd_devices(),
            "/clear":      lambda _: self._cmd_clear(),
            "/status":     lambda _: self._cmd_status(),
            "/set":        self._cmd_set,
        }
        handler = handlers.get(cmd)
        if handler is None:
            self.console.print(f"[yellow]Unknown command: {cmd}. Type /help for commands.[/]")
            return
        result = handler(arg)
        if asyncio.iscoroutine(result):
            await result

    # ── Commands ──────────────────────────────────────────────────────────────

    async def _cmd_listen(self) -> None:
        if not await self._coordinator.start_listening():
            self.console.print(
                f"[dim]Can't listen while {self._coordinator.state.value.replace('_', ' ')}.[/]"
            )
            return
        self.console.print("[red]● Listening...[/] [dim](/stop to send now)[/]")

    async def _cmd_stop(self) -> None:
        state = self._coordinator.state.value
        if state == "recording":
            await self._coordinator.stop_listening()
        elif state == "speaking":
            await self._coordinator.stop_speaking()
        else:
            self.console.print("[dim]Nothing to stop.[/]")

    async def _cmd_auto(self, arg: str) -> None:
        value = arg.lower()
        if value not in ("on", "off"):
            self.console.print("[yellow]Usage: /auto <on|off>[/]")
            return
        await self.app.update_settings({"behavior": {"auto_listen": value == "on"}})
        self.console.print(f"[dim]Auto-listen {value}.[/]")

    async def _cmd_scan(self) -> None:
        devices = self.app.devices
        if devices is None:
            self.console.print("[dim]No headset adapter configured.[/]")
            return
        self.console.print("[dim]Scanning for headsets...[/]")
        found = 0
        async for device in devices.scan():
            found += 1
            self.console.print(f"  [cyan]{device.id}[/]  {device.label}")
        self.console.print(f"[dim]Scan finished: {found} device(s).[/]")

    async def _cmd_connect(self, arg: str) -> None:
        if not arg:
            self.console.print("[yellow]Usage: /connect <device-id>[/]")
            return
        if self.app.devices is None:
            self.console.print("[dim]No headset adapter configured.[/]")
            return
        with self.console.status(f"[dim]Connecting to {arg}...[/]"):
            device = await self.app.devices.connect(arg)
        self.console.print(f"[green]✓ Connected to {device.label}[/]")

    async def _cmd_disconnect(self) -> None:
        devices = self.app.devices
        connected = devices.get_connected() if devices is not None else None
        if connected is None:
            self.console.print("[dim]No headset connected.[/]")
            return
        await devices.disconnect(connected.id)
        self.console.print(f"[dim]Disconnected from {connected.label}.[/]")

    def _cmd_devices(self) -> None:
        devices = self.app.devices
        if devices is None:
            self.console.print("[dim]No headset adapter configured.[/]")
            return
        connected = devices.get_connected()
        table = Table(box=box.SIMPLE, show_header=True, header_style="bold")
        table.add_column("Address", style="cyan")
        table.add_column("Name")
        table.add_column("Source", style="dim")
        seen: set[str] = set()
        for device in devices.discovered:
            seen.add(device.id)
            mark = " [green]●[/]" if connected and connected.id == device.id else ""
            table.add_row(device.id, device.label + mark, "scan")
        for device in devices.history:
            if device.id in seen:
                continue
            mark = " [green]●[/]" if connected and connected.id == device.id else ""
            table.add_row(device.id, device.label + mark, "history")
        if not table.row_count:
            self.console.print("[dim]No headsets known yet. Try /scan.[/]")
            return
        self.console.print(table)

    async def _cmd_clear(self) -> None:
        await self._coordinator.clear_conversation()
        self.console.print("[dim]✓ Conversation history cleared.[/]")

    def _cmd_status(self) -> None:
        snap = self.app.session.snapshot()
        devices = self.app.devices
        connected = devices.get_connected() if devices is not None else None
        coordinator = self._coordinator
        text = (
            f"**Session:** {snap.state.value} (epoch {snap.epoch})  \n"
            f"**Conversation:** {coordinator.state.value}  \n"
            f"**Auto-listen:** {'on' if coordinator.auto_listen else 'off'}  \n"
            f"**Headset:** {connected.label if connected else (devices.state.value if devices else 'n/a')}  \n"
            f"**Queued messages:** {len(coordinator.queue)}  \n"
            f"**Messages in log:** {len(coordinator.log)}"
        )
        self.console.print(Markdown(text))

    async def _cmd_set(self, arg: str) -> None:
        key, _, raw_value = arg.partition(" ")
        section, _, field = key.partition(".")
        if not section or not field or not raw_value.strip():
            self.console.print("[yellow]Usage: /set <section.field> <value>[/]")
            return
        # YAML scalars: "true" → bool, "0.05" → float, anything else → str
        value = yaml.safe_load(raw_value.strip())
        try:
            await self.app.update_settings({section: {field: value}})
        except ValidationError as e:
            self.console.print(f"[red]❌ Invalid value for {key}: {e.errors()[0]['msg']}[/]")
            return
        self.console.print(f"[dim]✓ {key} = {value!r} (saved)[/]")

    # ── Rendering ─────────────────────────────────────────────────────────────

    async def _watch_conversation(self, sub: Subscription[ConversationEvent]) -> None:
        async for event in sub:
            if event.kind is ConversationEventKind.MESSAGE_ADDED and event.message is not None:
                self._render_message(event.message)
            elif (
                event.kind is ConversationEventKind.MESSAGE_UPDATED
                and event.message is not None
                and event.message.delivery_state is DeliveryState.FAILED
            ):
                self.console.print(f"[red]✗ Not delivered:[/] {event.message.text}")

    async def _watch_capture(self, sub: Subscription[CaptureEvent]) -> None:
        async for event in sub:
            if event.kind is CaptureEventKind.PARTIAL_TRANSCRIPT and event.text:
                self.console.print(f"[dim italic]… {event.text}[/]")
            elif event.kind is CaptureEventKind.SILENCE_DETECTED:
                self.console.print("[dim]Silence detected, sending.[/]")

    def _render_message(self, message: Message) -> None:
        if message.sender is Sender.ASSISTANT:
            if not message.text.strip():
                return
            self.console.print(
                Panel(Markdown(message.text), title="assistant", title_align="left", border_style="cyan")
            )
        elif message.sender is Sender.SYSTEM:
            self.console.print(f"[dim]· {message.text}[/]")
        else:
            mark = _DELIVERY_MARKS.get(message.delivery_state, "")
            self.console.print(f"[bold]you:[/] {message.text} {mark}")

    # ── Cleanup ───────────────────────────────────────────────────────────────

    async def _cleanup(self) -> None:
        for sub in self._subs:
            sub.close()
        for task in self._watchers:
            task.cancel()
        await asyncio.gather(*self._watchers, return_exceptions=True)
        self._watchers = []
        await self.app.shutdown()


# ── Public entry point ────────────────────────────────────────────────────────


async def run_console(app: AirAssistApp, log) -> None:
    """Entry point called from main.py."""
    ui = ConsoleInterface(app)
    log.info("console.starting")
    try:
        await ui.start()
    except KeyboardInterrupt:
        log.info("console.interrupted")
    finally:
        log.info("console.stopped")
