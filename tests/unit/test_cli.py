"""
tests/unit/test_cli.py — Gateway CLI Tests

Runs GatewayCLI commands against the in-memory gateway and checks exit
codes and rendered output.
"""

import asyncio
import io

import pytest
from rich.console import Console

from clawdesk.config.settings import Settings
from clawdesk.interfaces.gateway_cli import GatewayCLI
from clawdesk.main import build_parser
from clawdesk.session import DesktopSession


def make_cli(tmp_path, gateway, ready_timeout: float = 1.0):
    settings = Settings(gateway={"token": "t", "openclaw_config_path": str(tmp_path / "absent.json")})
    session = DesktopSession(settings, transport_factory=gateway)
    out = io.StringIO()
    cli = GatewayCLI(session, console=Console(file=out, width=120, color_system=None), ready_timeout=ready_timeout)
    return cli, out


async def answer(gateway, method, payload, *, events=()):
    """Wait for `method` to be sent, respond, then push any follow-up events."""
    for _ in range(200):
        if gateway.transports and gateway.current.requests(method):
            break
        await asyncio.sleep(0.005)
    t = gateway.current
    t.respond(t.requests(method)[0]["id"], payload)
    for name, event_payload in events:
        t.event(name, event_payload)


class TestCommands:
    @pytest.mark.asyncio
    async def test_status(self, tmp_path, fake_gateway):
        cli, out = make_cli(tmp_path, fake_gateway)
        assert await cli.run("status", []) == 0
        text = out.getvalue()
        assert "ws://127.0.0.1:18789" in text
        assert "ready" in text
        assert "hello-ok" in text

    @pytest.mark.asyncio
    async def test_call_prints_json_payload(self, tmp_path, fake_gateway):
        cli, out = make_cli(tmp_path, fake_gateway)
        responder = asyncio.create_task(answer(fake_gateway, "models.list", {"models": ["claude"]}))
        assert await cli.run("call", ["models.list", '{"provider": "anthropic"}']) == 0
        await responder
        assert fake_gateway.current.requests("models.list")[0]["params"] == {"provider": "anthropic"}
        assert '"claude"' in out.getvalue()
        assert fake_gateway.current.closed

    @pytest.mark.asyncio
    async def test_call_with_bad_params(self, tmp_path, fake_gateway):
        cli, out = make_cli(tmp_path, fake_gateway)
        assert await cli.run("call", ["models.list", "{nope"]) == 2
        assert "not valid JSON" in out.getvalue()

    @pytest.mark.asyncio
    async def test_call_server_error_exit_code(self, tmp_path, fake_gateway):
        cli, out = make_cli(tmp_path, fake_gateway)

        async def reject():
            for _ in range(200):
                if fake_gateway.transports and fake_gateway.current.requests("agents.delete"):
                    break
                await asyncio.sleep(0.005)
            t = fake_gateway.current
            t.fail(t.requests("agents.delete")[0]["id"], code="not_found", message="No such agent")

        responder = asyncio.create_task(reject())
        assert await cli.run("call", ["agents.delete"]) == 1
        await responder
        assert "No such agent" in out.getvalue()

    @pytest.mark.asyncio
    async def test_chat_streams_reply(self, tmp_path, fake_gateway):
        cli, out = make_cli(tmp_path, fake_gateway)
        responder = asyncio.create_task(answer(
            fake_gateway,
            "chat.send",
            {"runId": "r1"},
            events=[
                ("chat.stream", {"delta": "Hi "}),
                ("chat.stream", {"delta": "there"}),
                ("chat.done", {"text": "Hi there"}),
            ],
        ))
        assert await cli.run("chat", ["hello", "claw"]) == 0
        await responder
        assert fake_gateway.current.requests("chat.send")[0]["params"]["message"] == "hello claw"
        assert "Hi there" in out.getvalue()

    @pytest.mark.asyncio
    async def test_unknown_command(self, tmp_path, fake_gateway):
        cli, out = make_cli(tmp_path, fake_gateway)
        assert await cli.run("dance", []) == 2
        assert fake_gateway.attempts == 0

    @pytest.mark.asyncio
    async def test_rejected_handshake(self, tmp_path, fake_gateway):
        fake_gateway.handshake = "auth_failed"
        cli, out = make_cli(tmp_path, fake_gateway)
        assert await cli.run("status", []) == 1
        assert "rejected" in out.getvalue()

    @pytest.mark.asyncio
    async def test_gateway_not_ready(self, tmp_path, fake_gateway):
        fake_gateway.refuse = True
        cli, out = make_cli(tmp_path, fake_gateway, ready_timeout=0.05)
        assert await cli.run("status", []) == 1
        assert "did not become ready" in out.getvalue()


class TestParser:
    def test_parses_command_and_args(self):
        args = build_parser().parse_args(["call", "health", "{}", "--url", "ws://127.0.0.1:1"])
        assert args.command == "call"
        assert args.args == ["health", "{}"]
        assert args.url == "ws://127.0.0.1:1"

    def test_rejects_unknown_command(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["dance"])
