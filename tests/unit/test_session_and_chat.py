"""
tests/unit/test_session_and_chat.py — DesktopSession and ChatChannel Tests
"""

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from clawdesk.config.settings import ConfigError, Settings
from clawdesk.exceptions import GatewayRequestError
from clawdesk.gateway import chat as chat_module
from clawdesk.gateway.chat import ChatChannel, default_session_key
from clawdesk.gateway.gateway_client import ConnectionState, GatewayConnection
from clawdesk.gateway.reconnect import ExponentialBackoff, FixedDelay
from clawdesk.session import DesktopSession, build_connection, build_reconnect_policy


def make_settings(tmp_path, **gateway) -> Settings:
    gateway.setdefault("openclaw_config_path", str(tmp_path / "absent.json"))
    return Settings(gateway=gateway)


# ─────────────────────────────────────────────────────────────────────────────
# Session wiring
# ─────────────────────────────────────────────────────────────────────────────

class TestBuildConnection:
    def test_fixed_policy_by_default(self, tmp_path):
        policy = build_reconnect_policy(make_settings(tmp_path))
        assert isinstance(policy, FixedDelay)
        assert policy.delay == 3.0

    def test_exponential_policy(self, tmp_path):
        settings = make_settings(tmp_path, reconnect={"strategy": "exponential", "base_delay": 2, "max_delay": 20})
        policy = build_reconnect_policy(settings)
        assert isinstance(policy, ExponentialBackoff)
        assert (policy.base_delay, policy.max_delay) == (2, 20)

    def test_connection_uses_settings(self, tmp_path, fake_gateway):
        settings = make_settings(tmp_path, url="ws://127.0.0.1:19999", token="tok")
        conn = build_connection(settings, transport_factory=fake_gateway)
        assert isinstance(conn, GatewayConnection)
        assert conn.url == "ws://127.0.0.1:19999"
        assert conn.state is ConnectionState.DISCONNECTED

    def test_missing_token_raises(self, tmp_path):
        with pytest.raises(ConfigError):
            build_connection(make_settings(tmp_path))


class TestDesktopSession:
    @pytest.mark.asyncio
    async def test_lifecycle(self, tmp_path, fake_gateway):
        statuses = []
        session = DesktopSession(
            make_settings(tmp_path, token="tok"),
            on_status=statuses.append,
            transport_factory=fake_gateway,
        )
        assert not session.started
        with pytest.raises(RuntimeError):
            session.connection

        await session.start()
        assert await session.connection.wait_ready(timeout=1.0) is True
        assert fake_gateway.current.sent[0]["params"]["auth"] == {"token": "tok"}

        await session.close()
        await session.close()
        assert not session.started
        assert statuses == [True, False]
        assert session.events.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_explicit_token_overrides_settings(self, tmp_path, fake_gateway):
        session = DesktopSession(make_settings(tmp_path), token="cli-token", transport_factory=fake_gateway)
        async with session:
            await session.connection.wait_ready(timeout=1.0)
            assert fake_gateway.current.sent[0]["params"]["auth"]["token"] == "cli-token"

    @pytest.mark.asyncio
    async def test_start_without_token_fails_before_connecting(self, tmp_path, fake_gateway):
        session = DesktopSession(make_settings(tmp_path), transport_factory=fake_gateway)
        with pytest.raises(ConfigError):
            await session.start()
        assert fake_gateway.attempts == 0
        assert not session.started


# ─────────────────────────────────────────────────────────────────────────────
# Chat
# ─────────────────────────────────────────────────────────────────────────────

class TestChatChannel:
    def test_default_session_key(self):
        assert default_session_key(date(2026, 10, 19)) == "desktop-session-2026-10-19"

    def test_default_session_key_follows_utc_date(self, monkeypatch):
        class LateEvening(datetime):
            @classmethod
            def now(cls, tz=None):
                local = datetime(2026, 10, 19, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
                return local.astimezone(tz)

        monkeypatch.setattr(chat_module, "datetime", LateEvening)
        assert default_session_key() == "desktop-session-2026-10-20"

    @pytest.mark.asyncio
    async def test_send_builds_chat_params(self, tmp_path, fake_gateway, settle):
        async with DesktopSession(make_settings(tmp_path, token="t"), transport_factory=fake_gateway) as session:
            await session.connection.wait_ready(timeout=1.0)
            t = fake_gateway.current
            task = asyncio.create_task(session.chat.send("hello", ["/tmp/a.png"]))
            await settle()
            req = t.requests("chat.send")[0]
            params = req["params"]
            assert params["message"] == "hello"
            assert params["attachments"] == ["/tmp/a.png"]
            assert params["sessionKey"].startswith("desktop-session-")
            assert len(params["idempotencyKey"]) == 36
            t.respond(req["id"], {"runId": "r1"})
            assert await task == {"runId": "r1"}

            msgs = session.chat.messages
            assert [(m.role, m.content) for m in msgs] == [("user", "hello")]
            assert msgs[0].attachments == ["/tmp/a.png"]

    @pytest.mark.asyncio
    async def test_idempotency_keys_differ(self, tmp_path, fake_gateway, settle):
        async with DesktopSession(make_settings(tmp_path, token="t"), transport_factory=fake_gateway) as session:
            await session.connection.wait_ready(timeout=1.0)
            t = fake_gateway.current
            tasks = [
                asyncio.create_task(session.chat.send("one", session_key="k")),
                asyncio.create_task(session.chat.send("two", session_key="k")),
            ]
            await settle()
            reqs = t.requests("chat.send")
            assert {r["params"]["sessionKey"] for r in reqs} == {"k"}
            assert reqs[0]["params"]["idempotencyKey"] != reqs[1]["params"]["idempotencyKey"]
            for r in reqs:
                t.respond(r["id"], None)
            await asyncio.gather(*tasks)

    @pytest.mark.asyncio
    async def test_stream_then_done_builds_transcript(self, tmp_path, fake_gateway, settle):
        async with DesktopSession(make_settings(tmp_path, token="t"), transport_factory=fake_gateway) as session:
            await session.connection.wait_ready(timeout=1.0)
            chat = session.chat
            t = fake_gateway.current
            done = asyncio.create_task(chat.wait_done(timeout=1.0))
            await settle()

            t.event("chat.stream", {"delta": "Hel"})
            t.event("chat.stream", {"delta": "lo"})
            t.event("chat.stream", {})
            await settle()
            assert chat.streaming == "Hello"

            t.event("chat.done", {"text": "Hello!"})
            reply = await done
            assert reply.role == "agent"
            assert reply.content == "Hello!"
            assert chat.streaming == ""
            assert chat.messages[-1] is reply

    @pytest.mark.asyncio
    async def test_failed_send_records_error_and_raises(self, tmp_path, fake_gateway, settle):
        async with DesktopSession(make_settings(tmp_path, token="t"), transport_factory=fake_gateway) as session:
            await session.connection.wait_ready(timeout=1.0)
            t = fake_gateway.current
            task = asyncio.create_task(session.chat.send("hi"))
            await settle()
            t.fail(t.requests("chat.send")[0]["id"], code="rate_limited", message="slow down")
            with pytest.raises(GatewayRequestError):
                await task
            last = session.chat.messages[-1]
            assert last.role == "agent"
            assert last.content == "Error: slow down"

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, tmp_path, fake_gateway):
        async with DesktopSession(make_settings(tmp_path, token="t"), transport_factory=fake_gateway) as session:
            with pytest.raises(ValueError):
                await session.chat.send("   ")
            assert session.chat.messages == []

    @pytest.mark.asyncio
    async def test_close_stops_listening(self, tmp_path, fake_gateway, settle):
        async with DesktopSession(make_settings(tmp_path, token="t"), transport_factory=fake_gateway) as session:
            await session.connection.wait_ready(timeout=1.0)
            chat = ChatChannel(session.connection)
            chat.close()
            fake_gateway.current.event("chat.stream", {"delta": "x"})
            await settle()
            assert chat.streaming == ""
            assert session.chat.streaming == "x"
