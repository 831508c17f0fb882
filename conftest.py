"""
Root test conftest — isolate gateway environment variables so that settings
tests are not affected by a real token or config in the developer's or CI
environment, and provide an in-memory gateway transport for connection tests.
"""
import asyncio
import json

import pytest

_GATEWAY_ENV_VARS = [
    "OPENCLAW_GATEWAY_TOKEN",
    "CLAWDESK_CONFIG",
    "CLAWDESK_GATEWAY__URL",
    "CLAWDESK_GATEWAY__TOKEN",
    "CLAWDESK_LOGGING__LEVEL",
]


@pytest.fixture(autouse=True)
def _isolate_gateway_env(monkeypatch):
    """Remove gateway env vars for every test and disable .env file loading
    so a local developer .env never leaks a real token into tests."""
    for var in _GATEWAY_ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import clawdesk.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_prefix="CLAWDESK_",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)


# ─────────────────────────────────────────────────────────────────────────────
# In-memory transport
# ─────────────────────────────────────────────────────────────────────────────

_CLOSED = object()


class FakeTransport:
    """
    Stands in for a websockets ClientConnection: records sent frames, yields
    fed frames to `async for`, and ends iteration when closed or dropped.
    """

    def __init__(self, handshake: str | None = "ok"):
        self.sent: list[dict] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._handshake = handshake

    async def send(self, raw: str) -> None:
        if self.closed:
            raise ConnectionResetError("transport closed")
        frame = json.loads(raw)
        self.sent.append(frame)
        if frame.get("method") == "connect" and self._handshake is not None:
            if self._handshake == "ok":
                self.respond(frame["id"], payload={"type": "hello-ok", "protocol": 3})
            else:
                self.fail(frame["id"], code=self._handshake, message="invalid token")

    async def close(self) -> None:
        self.drop()

    def drop(self) -> None:
        """Simulate the gateway going away."""
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_CLOSED)

    def explode(self, exc: BaseException) -> None:
        """Make the next read raise `exc`."""
        self._inbox.put_nowait(exc)

    def feed(self, frame: dict | str) -> None:
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def respond(self, req_id: str, payload=None) -> None:
        self.feed({"kind": "res", "id": req_id, "ok": True, "payload": payload})

    def fail(self, req_id: str, code: str = "bad_request", message: str = "nope") -> None:
        self.feed({"kind": "res", "id": req_id, "ok": False, "error": {"code": code, "message": message}})

    def event(self, name: str, payload=None, seq: int | None = None) -> None:
        frame = {"kind": "event", "event": name, "payload": payload}
        if seq is not None:
            frame["seq"] = seq
        self.feed(frame)

    def requests(self, method: str | None = None) -> list[dict]:
        return [f for f in self.sent if method is None or f["method"] == method]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeGateway:
    """Transport factory handing out FakeTransports; `refuse` makes opens fail."""

    def __init__(self, handshake: str | None = "ok"):
        self.handshake = handshake
        self.transports: list[FakeTransport] = []
        self.refuse = False
        self.attempts = 0

    async def __call__(self, url: str, **kwargs) -> FakeTransport:
        self.attempts += 1
        if self.refuse:
            raise ConnectionRefusedError(f"connect to {url} refused")
        transport = FakeTransport(self.handshake)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def settle():
    """Yield control to the event loop until queued callbacks have run."""
    async def _settle(rounds: int = 10) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)
    return _settle
