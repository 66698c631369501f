"""Pytest configuration and fixtures for nitro_aura_core tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest

from nitro_aura_core.errors import TransportError
from nitro_aura_core.session import NitroRpcSession, SessionStatus, StatusEvent
from nitro_aura_core.signing import SigningCapability, TypedDataPayload
from nitro_aura_core.transport import RpcWsMessage, RpcWsMessageType

TEST_ADDRESS = "0x1111111111111111111111111111111111111111"
TEST_URL = "ws://clearnode.test/ws"


class FakeSigner(SigningCapability):
    """Deterministic signer that records what it was asked to sign.

    ``fail_on`` holds payload kinds that raise: "typed", "text" or "json".
    """

    def __init__(self, address: str = TEST_ADDRESS, fail_on: set[str] | None = None):
        self._address = address
        self.fail_on = fail_on or set()
        self.payloads: list[Any] = []

    @property
    def address(self) -> str:
        return self._address

    @staticmethod
    def kind(payload: Any) -> str:
        if isinstance(payload, TypedDataPayload):
            return "typed"
        if isinstance(payload, str):
            return "text"
        return "json"

    async def sign(self, payload: Any) -> str:
        kind = self.kind(payload)
        self.payloads.append(payload)
        if kind in self.fail_on:
            raise RuntimeError(f"{kind} signing unavailable")
        if kind == "typed":
            return f"typed:{payload.message['challenge']}"
        if kind == "text":
            return f"text:{payload}"
        return f"json:{json.dumps(payload)}"


class FakeWsClient:
    """In-memory stand-in for RpcWsClient.

    Frames sent by the session are recorded in ``sent`` and handed to the
    optional ``server`` callback, which may ``push`` replies.
    """

    def __init__(
        self,
        server: Callable[[FakeWsClient, dict[str, Any]], None] | None = None,
        *,
        connect_error: BaseException | None = None,
        connect_gate: asyncio.Event | None = None,
        close_gate: asyncio.Event | None = None,
    ) -> None:
        self.server = server
        self.connect_error = connect_error
        self.connect_gate = connect_gate
        self.close_gate = close_gate
        self.close_started = False
        self.sent: list[dict[str, Any]] = []
        self.connected = False
        self.closed = False
        self._queue: asyncio.Queue[RpcWsMessage] = asyncio.Queue()

    async def connect(self, url: str, *, ping_interval: float | None = 20, timeout: float = 15.0) -> None:
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def close(self) -> None:
        self.close_started = True
        if self.close_gate is not None:
            await self.close_gate.wait()
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(RpcWsMessage(RpcWsMessageType.CLOSED))

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.closed:
            raise TransportError("WebSocket send failed")
        self.sent.append(payload)
        if self.server is not None:
            self.server(self, payload)

    def push(self, data: Any) -> None:
        self._queue.put_nowait(RpcWsMessage(RpcWsMessageType.TEXT, json.dumps(data)))

    def push_raw(self, text: str) -> None:
        self._queue.put_nowait(RpcWsMessage(RpcWsMessageType.TEXT, text))

    def drop(self) -> None:
        """Simulate the peer closing the connection."""
        self.closed = True
        self._queue.put_nowait(RpcWsMessage(RpcWsMessageType.CLOSED))

    def sent_methods(self) -> list[str]:
        return [frame["req"][1] for frame in self.sent]

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        while True:
            msg = await self._queue.get()
            yield msg
            if msg.type is not RpcWsMessageType.TEXT:
                return


class ClearingNodeStub:
    """Scripted clearing node answering the handshake and requests.

    Args:
        challenge: Payload placed in the auth_challenge response.
        verify_ok: Whether auth_verify succeeds.
        responses: Method name -> payload; methods missing here get no reply.
    """

    def __init__(
        self,
        *,
        challenge: Any = None,
        verify_ok: bool = True,
        responses: dict[str, Any] | None = None,
        errors: dict[str, tuple[int, str]] | None = None,
    ) -> None:
        self.challenge = {"challenge_message": "abc"} if challenge is None else challenge
        self.verify_ok = verify_ok
        self.responses = responses or {}
        self.errors = errors or {}

    def __call__(self, ws: FakeWsClient, frame: dict[str, Any]) -> None:
        request_id, method, _params, _ts = frame["req"]
        if method == "auth_request":
            ws.push({"res": [request_id, "auth_challenge", self.challenge, 0], "sig": []})
        elif method == "auth_verify":
            if self.verify_ok:
                ws.push({"res": [request_id, "auth_verify", {"success": True}, 0], "sig": []})
            else:
                ws.push({"err": [request_id, 401, "invalid signature", 0]})
        elif method in self.errors:
            code, message = self.errors[method]
            ws.push({"err": [request_id, code, message, 0]})
        elif method in self.responses:
            ws.push({"res": [request_id, method, self.responses[method], 0], "sig": []})


class FakeTransportFactory:
    """Builds FakeWsClient instances; records every socket it creates."""

    def __init__(self, server: ClearingNodeStub | None = None) -> None:
        self.server = server or ClearingNodeStub()
        self.created: list[FakeWsClient] = []
        self.connect_errors: list[BaseException] = []
        self.close_gates: list[asyncio.Event] = []
        self.connect_gate: asyncio.Event | None = None

    def fail_next(self, count: int, error: BaseException | None = None) -> None:
        for _ in range(count):
            self.connect_errors.append(error or TransportError("connection refused"))

    def hold_next_close(self, gate: asyncio.Event) -> None:
        """Make the next socket's ``close()`` hang until ``gate`` is set."""
        self.close_gates.append(gate)

    def __call__(self) -> FakeWsClient:
        error = self.connect_errors.pop(0) if self.connect_errors else None
        close_gate = self.close_gates.pop(0) if self.close_gates else None
        client = FakeWsClient(
            self.server,
            connect_error=error,
            connect_gate=self.connect_gate,
            close_gate=close_gate,
        )
        self.created.append(client)
        return client

    @property
    def latest(self) -> FakeWsClient:
        return self.created[-1]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def signer() -> FakeSigner:
    return FakeSigner()


@pytest.fixture
def transport() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
async def make_session(signer: FakeSigner, transport: FakeTransportFactory):
    """Build sessions wired to the fake transport; closes them afterwards."""
    sessions: list[NitroRpcSession] = []

    def _make(**kwargs: Any) -> NitroRpcSession:
        kwargs.setdefault("ws_client_factory", transport)
        session = NitroRpcSession(TEST_URL, kwargs.pop("signer", signer), **kwargs)
        sessions.append(session)
        return session

    yield _make

    for session in sessions:
        await session.close()


def record_statuses(session: NitroRpcSession) -> list[StatusEvent]:
    events: list[StatusEvent] = []
    session.on_status_change(events.append)
    return events


def statuses(events: list[StatusEvent]) -> list[SessionStatus]:
    return [event.status for event in events]
