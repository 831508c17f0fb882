"""
interfaces/gateway_cli.py — Command-line Client over the Gateway

A thin shell around DesktopSession for poking at a running gateway from a
terminal. Results are rendered with Rich on stdout; logs stay on stderr.

    clawdesk status
    clawdesk call sessions.list '{"limit": 5}'
    clawdesk chat "What's on my calendar?"
    clawdesk watch chat.stream chat.done
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from clawdesk.exceptions import GatewayError
from clawdesk.gateway.events import WILDCARD
from clawdesk.gateway.protocol import EventName
from clawdesk.observability.logger import get_logger
from clawdesk.session import DesktopSession

log = get_logger(__name__)


class GatewayCLI:
    """One-shot gateway commands. Each returns a process exit code."""

    def __init__(
        self,
        session: DesktopSession,
        *,
        console: Optional[Console] = None,
        ready_timeout: float = 10.0,
    ) -> None:
        self._session = session
        self._ready_timeout = ready_timeout
        self.console = console or Console()

    async def run(self, command: str, args: list[str]) -> int:
        handlers = {
            "status": self.cmd_status,
            "call": self.cmd_call,
            "chat": self.cmd_chat,
            "watch": self.cmd_watch,
        }
        handler = handlers.get(command)
        if handler is None:
            self.console.print(f"[red]Unknown command: {command}[/]")
            return 2

        await self._session.start()
        try:
            if not await self._wait_ready():
                return 1
            return await handler(args)
        except GatewayError as e:
            self.console.print(f"[red]❌ {e}[/]")
            log.error("gateway_cli.error", command=command, error=str(e), error_type=type(e).__name__)
            return 1
        finally:
            await self._session.close()

    async def _wait_ready(self) -> bool:
        conn = self._session.connection
        try:
            authenticated = await conn.wait_ready(timeout=self._ready_timeout)
        except asyncio.TimeoutError:
            self.console.print(
                f"[red]❌ Gateway at {conn.url} did not become ready within "
                f"{self._ready_timeout:g}s.[/]"
            )
            return False
        if not authenticated:
            self.console.print("[red]❌ Gateway rejected the connect handshake (check the token).[/]")
            return False
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────────

    async def cmd_status(self, args: list[str]) -> int:
        conn = self._session.connection
        table = Table(box=box.SIMPLE, show_header=False)
        table.add_row("Gateway", conn.url)
        table.add_row("State", conn.state.value)
        table.add_row("Authenticated", "yes" if conn.authenticated else "no")
        if isinstance(conn.server_info, dict):
            for key, value in conn.server_info.items():
                table.add_row(str(key), _short(value))
        self.console.print(Panel(table, title="🦞 ClawDesk", border_style="bright_cyan"))
        return 0

    async def cmd_call(self, args: list[str]) -> int:
        if not args:
            self.console.print("[dim]Usage: clawdesk call <method> [params-json][/]")
            return 2
        method = args[0]
        params: dict[str, Any] = {}
        if len(args) > 1:
            try:
                params = json.loads(args[1])
            except ValueError as e:
                self.console.print(f"[red]Params are not valid JSON: {e}[/]")
                return 2
            if not isinstance(params, dict):
                self.console.print("[red]Params must be a JSON object.[/]")
                return 2

        result = await self._session.connection.request(method, params)
        self.console.print_json(json.dumps(result))
        return 0

    async def cmd_chat(self, args: list[str]) -> int:
        message = " ".join(args).strip()
        if not message:
            self.console.print("[dim]Usage: clawdesk chat <message>[/]")
            return 2

        sub = self._session.events.subscribe(
            EventName.CHAT_STREAM.value,
            lambda _event, payload: self.console.print(
                str((payload or {}).get("delta") or ""), end="", markup=False, highlight=False
            ),
        )
        try:
            chat = self._session.chat
            done = asyncio.ensure_future(chat.wait_done())
            try:
                await chat.send(message)
                reply = await done
            finally:
                done.cancel()
        finally:
            sub.cancel()
        self.console.print()
        self.console.print(Markdown(reply.content))
        return 0

    async def cmd_watch(self, args: list[str]) -> int:
        names = args or [WILDCARD]
        subs = [self._session.events.subscribe(name, self._print_event) for name in names]
        self.console.print(f"[dim]Watching {', '.join(names)} — Ctrl+C to stop.[/]")
        try:
            await asyncio.Event().wait()
        finally:
            for sub in subs:
                sub.cancel()
        return 0

    def _print_event(self, event: str, payload: Any) -> None:
        self.console.print(f"[cyan]{event}[/] {json.dumps(payload)}", highlight=False)


def _short(value: Any, limit: int = 60) -> str:
    text = value if isinstance(value, str) else json.dumps(value)
    return text if len(text) <= limit else text[: limit - 1] + "…"


# ─────────────────────────────────────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────────────────────────────────────

async def run_gateway_cli(session: DesktopSession, command: str, args: list[str]) -> int:
    """Entry point for the gateway CLI."""
    return await GatewayCLI(session).run(command, args)
