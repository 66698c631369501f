"""Authenticated, auto-reconnecting RPC session with the clearing node.

This module provides the one client used by both the long-running game
server and interactive wallet setup. It handles:
- Connection management and challenge-response authentication
- Request/response multiplexing over a single WebSocket
- Keepalive pings while connected
- Reconnection with linear backoff after unexpected disconnects
- Status and notification fan-out to observers

Everything runs on one asyncio event loop; a session is never shared across
loops or threads.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .broadcaster import Broadcaster, Observer, Subscription
from .challenge import ChallengeParseFailure, parse_challenge
from .config import ClientSettings
from .correlator import DEFAULT_REQUEST_TIMEOUT, RequestCorrelator
from .errors import (
    ConfigurationError,
    ConnectionClosedError,
    HandshakeError,
    NitroRpcError,
    NotConnectedError,
    ReconnectExhaustedError,
    TransportError,
)
from .keepalive import DEFAULT_KEEPALIVE_INTERVAL, KeepaliveScheduler
from .protocol import (
    AUTH_CHALLENGE,
    AUTH_VERIFY,
    Allowance,
    ErrorFrame,
    InboundFrame,
    NotificationFrame,
    ResponseFrame,
    build_auth_request,
    build_auth_verify,
    build_ping,
    frame_method,
    parse_frame,
)
from .reconnect import DEFAULT_BASE_DELAY, DEFAULT_MAX_ATTEMPTS, ReconnectPolicy
from .signing import EthAccountSigner, SigningCapability, sign_auth_challenge
from .transport import RpcWsClient, RpcWsMessageType

_LOGGER = logging.getLogger(__name__)

DEFAULT_HANDSHAKE_TIMEOUT = 10.0
DEFAULT_ALLOWANCES: tuple[Allowance, ...] = (Allowance("usdc", "100000000000"),)


class SessionStatus(Enum):
    """Lifecycle states of a session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    AUTH_FAILED = "auth_failed"
    RECONNECTING = "reconnecting"
    RECONNECT_FAILED = "reconnect_failed"


@dataclass(frozen=True)
class StatusEvent:
    """A status transition, broadcast to status observers."""

    status: SessionStatus
    previous: SessionStatus
    timestamp: datetime
    error: BaseException | None = None


class NitroRpcSession:
    """Authenticated RPC session with a clearing node.

    Usage:
        session = NitroRpcSession("wss://clearnet.example/ws", EthAccountSigner(key))
        session.on_status_change(my_status_handler)
        session.on_message(my_notification_handler)
        await session.connect()
        channels = await session.send_request("get_channels", [{"participant": session.identity}])
        await session.close()
    """

    def __init__(
        self,
        url: str,
        signer: SigningCapability,
        *,
        app_name: str = "Nitro Aura",
        session_key: str | None = None,
        allowances: Sequence[Allowance] = DEFAULT_ALLOWANCES,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL,
        reconnect_base_delay: float = DEFAULT_BASE_DELAY,
        max_reconnect_attempts: int = DEFAULT_MAX_ATTEMPTS,
        connect_timeout: float = 15.0,
        ws_client_factory: Callable[[], RpcWsClient] = RpcWsClient,
    ) -> None:
        """Initialize session.

        Args:
            url: Clearing-node WebSocket endpoint
            signer: Signing capability; its address is the session identity
            app_name: Application name declared in the auth request
            session_key: Session key address (defaults to the identity)
            allowances: Allowance set declared for the session key
            request_timeout: Default per-request timeout (seconds)
            handshake_timeout: Authentication timeout (seconds)
            keepalive_interval: Keepalive ping interval (seconds)
            reconnect_base_delay: Linear backoff step (seconds)
            max_reconnect_attempts: Attempts before giving up
            connect_timeout: WebSocket open timeout (seconds)
            ws_client_factory: Builds the transport for each connection
        """
        self.url = url
        self.identity = signer.address
        self._signer = signer
        self._app_name = app_name
        self._session_key = session_key or self.identity
        self._allowances = tuple(allowances)
        self._handshake_timeout = handshake_timeout
        self._connect_timeout = connect_timeout
        self._ws_client_factory = ws_client_factory

        # Connection state
        self._ws: RpcWsClient | None = None
        self._status = SessionStatus.DISCONNECTED
        self._listen_task: asyncio.Task[None] | None = None
        self._connect_task: asyncio.Task[bool] | None = None
        self._handshake: asyncio.Future[None] | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._close_requested = False

        self._correlator = RequestCorrelator(signer, default_timeout=request_timeout)
        self._keepalive = KeepaliveScheduler(
            self._send_ping, interval=keepalive_interval, label=self.identity
        )
        self._reconnect = ReconnectPolicy(
            base_delay=reconnect_base_delay, max_attempts=max_reconnect_attempts
        )

        self._status_events: Broadcaster[StatusEvent] = Broadcaster("status")
        self._messages: Broadcaster[dict[str, Any]] = Broadcaster("message")

        _LOGGER.info("[%s] RPC session created for %s", self.identity, url)

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        signer: SigningCapability | None = None,
        **kwargs: Any,
    ) -> NitroRpcSession:
        """Build a session from validated settings.

        Raises:
            ConfigurationError: No signer given and no private key configured
        """
        if signer is None:
            if settings.server_private_key is None:
                raise ConfigurationError("SERVER_PRIVATE_KEY is not set")
            try:
                signer = EthAccountSigner(settings.server_private_key.get_secret_value())
            except (ValueError, TypeError) as err:
                raise ConfigurationError("SERVER_PRIVATE_KEY is not a valid key") from err
        return cls(
            settings.ws_url,
            signer,
            app_name=settings.app_name,
            session_key=settings.session_key,
            allowances=settings.allowances,
            request_timeout=settings.request_timeout,
            handshake_timeout=settings.handshake_timeout,
            keepalive_interval=settings.keepalive_interval,
            reconnect_base_delay=settings.reconnect_base_delay,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            **kwargs,
        )

    async def __aenter__(self) -> NitroRpcSession:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        """Check if session is connected and authenticated."""
        return self._status is SessionStatus.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect.attempts

    @property
    def keepalive_active(self) -> bool:
        return self._keepalive.running

    @property
    def pending_requests(self) -> int:
        return self._correlator.pending_count

    async def connect(self) -> bool:
        """Connect and authenticate.

        A no-op while already connecting, authenticating or connected. When a
        reconnect is scheduled, it is brought forward.

        Returns:
            True if the session ended up connected, False otherwise
        """
        if self._status in (
            SessionStatus.CONNECTING,
            SessionStatus.AUTHENTICATING,
            SessionStatus.CONNECTED,
        ):
            _LOGGER.debug("[%s] Already connected or connecting", self.identity)
            return self.is_connected

        self._close_requested = False
        self._cancel_reconnect()
        if self._status is SessionStatus.RECONNECT_FAILED:
            self._reconnect.reset()
        return await self._open()

    async def close(self) -> None:
        """Close the session and stop reconnecting.

        Timers are cancelled and pending requests settled before the first
        suspension point, so the status is ``disconnected`` as soon as this
        coroutine starts running.
        """
        _LOGGER.info("[%s] Closing session", self.identity)
        self._close_requested = True
        self._cancel_reconnect()
        self._keepalive.stop()

        connect_task = self._connect_task
        self._connect_task = None
        if (
            connect_task is not None
            and not connect_task.done()
            and connect_task is not asyncio.current_task()
        ):
            connect_task.cancel()

        ws = self._ws
        listen_task = self._listen_task
        self._detach(ws, ConnectionClosedError("Session closed"))
        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(ConnectionClosedError("Session closed"))
        self._correlator.fail_all(lambda: ConnectionClosedError("Session closed"))
        self._set_status(SessionStatus.DISCONNECTED)

        if listen_task is not None and listen_task is not asyncio.current_task():
            try:
                await listen_task
            except asyncio.CancelledError:
                pass
        if ws is not None:
            await self._close_socket(ws)

    # -------------------------------------------------------------------------
    # Public API: Observers
    # -------------------------------------------------------------------------

    def on_status_change(self, observer: Observer[StatusEvent]) -> Subscription[StatusEvent]:
        """Register an observer for status transitions.

        Returns a handle whose ``unsubscribe()`` detaches the observer.
        """
        return self._status_events.subscribe(observer)

    def on_message(
        self, observer: Observer[dict[str, Any]]
    ) -> Subscription[dict[str, Any]]:
        """Register an observer for unsolicited inbound messages (verbatim)."""
        return self._messages.subscribe(observer)

    # -------------------------------------------------------------------------
    # Public API: Requests
    # -------------------------------------------------------------------------

    async def send_request(
        self,
        method: str,
        params: Any = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a signed request and wait for its payload.

        Raises:
            NotConnectedError: The session is not connected
            RequestTimeoutError: No answer in time
            RequestRejectedError: The clearing node returned an error envelope
            ConnectionClosedError: The connection went away first
        """
        ws = self._ws
        if self._status is not SessionStatus.CONNECTED or ws is None:
            raise NotConnectedError(
                f"Cannot send {method}: session is {self._status.value}"
            )
        _LOGGER.debug("[%s] Sending request %s", self.identity, method)

        async def transmit(envelope: dict[str, Any]) -> None:
            # Signing may have outlived the connection the request was meant for.
            if self._ws is not ws or self._status is not SessionStatus.CONNECTED:
                raise ConnectionClosedError(f"Connection lost before {method} was sent")
            await ws.send_json(envelope)

        return await self._correlator.request(
            method,
            [] if params is None else params,
            transmit,
            timeout=timeout,
        )

    # -------------------------------------------------------------------------
    # Internal: Connection State Machine
    # -------------------------------------------------------------------------

    def _set_status(
        self, status: SessionStatus, error: BaseException | None = None
    ) -> None:
        """Update status and notify observers."""
        if self._status is status:
            return
        previous = self._status
        _LOGGER.debug("[%s] State: %s → %s", self.identity, previous.value, status.value)
        self._status = status
        if status is not SessionStatus.CONNECTED:
            self._keepalive.stop()
        self._status_events.publish(
            StatusEvent(status, previous, datetime.now(tz=UTC), error)
        )

    async def _open(self) -> bool:
        """Open a fresh transport and run the handshake over it."""
        # At most one live socket per session.
        previous = self._ws
        if previous is not None:
            self._detach(previous, ConnectionClosedError("Superseded by a new connection"))
        self._set_status(SessionStatus.CONNECTING)
        if previous is not None:
            await self._close_socket(previous)
            if self._close_requested:
                return False

        ws = self._ws_client_factory()
        self._ws = ws

        _LOGGER.info(
            "[%s] Connecting to %s (attempt #%d)",
            self.identity,
            self.url,
            self._reconnect.attempts + 1,
        )
        try:
            await ws.connect(self.url, timeout=self._connect_timeout)
        except TransportError as err:
            _LOGGER.warning("[%s] Connection failed: %s", self.identity, err)
            if self._detach(ws, err) and not self._close_requested:
                self._schedule_reconnect(err)
            return False

        if self._ws is not ws or self._close_requested:
            await self._close_socket(ws)
            return False

        self._set_status(SessionStatus.AUTHENTICATING)
        loop = asyncio.get_running_loop()
        handshake: asyncio.Future[None] = loop.create_future()
        self._handshake = handshake
        self._listen_task = loop.create_task(self._listen(ws))

        error: HandshakeError | None = None
        try:
            await self._send_auth_request(ws)
            await asyncio.wait_for(handshake, timeout=self._handshake_timeout)
        except TimeoutError:
            error = HandshakeError(
                f"Authentication timed out after {self._handshake_timeout:g}s"
            )
        except HandshakeError as err:
            error = err
        except (TransportError, ConnectionClosedError) as err:
            # Connection dropped mid-handshake; the listener or close() owns recovery.
            _LOGGER.debug("[%s] Handshake interrupted: %s", self.identity, err)
            return False
        finally:
            if self._handshake is handshake:
                self._handshake = None

        if self._ws is not ws or self._close_requested:
            return False

        if error is not None:
            _LOGGER.error("[%s] Authentication failed: %s", self.identity, error)
            self._set_status(SessionStatus.AUTH_FAILED, error)
            await self._drop_transport(ws, error)
            return False

        self._reconnect.reset()
        self._set_status(SessionStatus.CONNECTED)
        self._keepalive.start()
        _LOGGER.info("[%s] Authenticated with clearing node", self.identity)
        return True

    def _detach(self, ws: RpcWsClient | None, error: BaseException) -> bool:
        """Forget everything tied to ``ws``; return False if it was already superseded."""
        if ws is None or self._ws is not ws:
            return False
        self._ws = None
        self._keepalive.stop()

        listen_task = self._listen_task
        self._listen_task = None
        if listen_task is not None and listen_task is not asyncio.current_task():
            listen_task.cancel()

        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(error)

        dropped = self._correlator.fail_all(
            lambda: ConnectionClosedError(f"Connection lost: {error}")
        )
        if dropped:
            _LOGGER.warning(
                "[%s] Failed %d pending request(s) after connection loss",
                self.identity,
                dropped,
            )
        return True

    async def _drop_transport(self, ws: RpcWsClient, error: BaseException) -> None:
        """Tear down ``ws`` after a failure and engage the reconnect path.

        The status moves on before the socket close is awaited.
        """
        if not self._detach(ws, error):
            return
        if not self._close_requested:
            self._schedule_reconnect(error)
        await self._close_socket(ws)

    async def _close_socket(self, ws: RpcWsClient) -> None:
        try:
            await asyncio.wait_for(ws.close(), timeout=2.0)
        except TimeoutError:
            _LOGGER.warning("[%s] WebSocket close timed out", self.identity)
        except Exception as err:
            _LOGGER.debug("[%s] WebSocket close failed: %s", self.identity, err)

    def _schedule_reconnect(self, error: BaseException) -> None:
        """Schedule reconnection with linear backoff, or give up."""
        if self._close_requested or self._reconnect_handle is not None:
            return

        delay = self._reconnect.next_delay()
        if delay is None:
            exhausted = ReconnectExhaustedError(self._reconnect.max_attempts)
            exhausted.__cause__ = error
            _LOGGER.error("[%s] %s", self.identity, exhausted)
            self._set_status(SessionStatus.RECONNECT_FAILED, exhausted)
            return

        _LOGGER.info(
            "[%s] Reconnecting in %.1fs (attempt %d/%d)",
            self.identity,
            delay,
            self._reconnect.attempts,
            self._reconnect.max_attempts,
        )
        self._set_status(SessionStatus.RECONNECTING, error)
        self._reconnect_handle = asyncio.get_running_loop().call_later(
            delay, self._reconnect_now
        )

    def _reconnect_now(self) -> None:
        self._reconnect_handle = None
        if self._close_requested:
            return
        self._connect_task = asyncio.get_running_loop().create_task(self._open())

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    # -------------------------------------------------------------------------
    # Internal: Message Listener
    # -------------------------------------------------------------------------

    async def _listen(self, ws: RpcWsClient) -> None:
        """Process frames from ``ws`` in receipt order until it closes."""
        error: TransportError | None = None
        message_count = 0

        try:
            async for msg in ws:
                if msg.type is RpcWsMessageType.TEXT:
                    message_count += 1
                    try:
                        data = RpcWsClient.decode_json(msg)
                    except (ValueError, NitroRpcError) as err:
                        _LOGGER.warning("[%s] Invalid message: %s", self.identity, err)
                        continue
                    await self._handle_message(ws, data)
                elif msg.type is RpcWsMessageType.CLOSED:
                    _LOGGER.info("[%s] WebSocket closed by clearing node", self.identity)
                    error = TransportError("WebSocket closed by peer")
                    break
                else:
                    _LOGGER.error("[%s] WebSocket error", self.identity)
                    error = TransportError("WebSocket receive error")
                    break
            else:
                error = TransportError("WebSocket stream ended")
        except asyncio.CancelledError:
            _LOGGER.debug(
                "[%s] Listener cancelled (%d messages)", self.identity, message_count
            )
            raise
        except Exception as err:
            _LOGGER.exception("[%s] Unexpected listener error: %s", self.identity, err)
            error = TransportError(f"Listener failed: {err}")

        if self._ws is ws:
            await self._drop_transport(ws, error or TransportError("WebSocket closed"))

    async def _handle_message(self, ws: RpcWsClient, data: Any) -> None:
        try:
            frame = parse_frame(data)
        except ValueError as err:
            _LOGGER.warning("[%s] Invalid frame: %s", self.identity, err)
            return

        if self._handshake is not None and not self._handshake.done():
            if await self._handle_handshake_frame(ws, frame):
                return

        if self._correlator.dispatch(frame):
            return

        if isinstance(frame, ErrorFrame):
            _LOGGER.debug(
                "[%s] Dropping error for unknown request %s", self.identity, frame.request_id
            )
            return

        self._messages.publish(frame.raw)

    # -------------------------------------------------------------------------
    # Internal: Authentication
    # -------------------------------------------------------------------------

    async def _send_auth_request(self, ws: RpcWsClient) -> None:
        frame = build_auth_request(
            self._correlator.next_id(),
            address=self.identity,
            session_key=self._session_key,
            app_name=self._app_name,
            allowances=self._allowances,
        )
        try:
            await ws.send_json(frame)
        except TransportError as err:
            raise HandshakeError(f"Could not send auth request: {err}") from err
        _LOGGER.debug("[%s] Auth request sent", self.identity)

    async def _handle_handshake_frame(self, ws: RpcWsClient, frame: InboundFrame) -> bool:
        """Advance the handshake; return True if the frame belonged to it."""
        if isinstance(frame, ErrorFrame):
            self._fail_handshake(
                HandshakeError(f"Authentication rejected: {frame.message}")
            )
            return True

        method = frame_method(frame)
        if method not in (AUTH_CHALLENGE, AUTH_VERIFY):
            return False

        payload = frame.payload if isinstance(frame, ResponseFrame) else frame.raw
        if method == AUTH_CHALLENGE:
            await self._answer_challenge(ws, payload)
            return True

        rejection = _verify_rejection(payload)
        if rejection is not None:
            self._fail_handshake(HandshakeError(f"Authentication rejected: {rejection}"))
        elif self._handshake is not None and not self._handshake.done():
            self._handshake.set_result(None)
        return True

    async def _answer_challenge(self, ws: RpcWsClient, payload: Any) -> None:
        result = parse_challenge(payload)
        if isinstance(result, ChallengeParseFailure):
            self._fail_handshake(HandshakeError(f"Invalid auth challenge: {result.reason}"))
            return

        _LOGGER.debug("[%s] Auth challenge received, signing", self.identity)
        try:
            signature = await sign_auth_challenge(
                self._signer,
                app_name=self._app_name,
                challenge=result.value,
                session_key=self._session_key,
                allowances=self._allowances,
            )
            await ws.send_json(
                build_auth_verify(
                    self._correlator.next_id(),
                    address=self.identity,
                    challenge=result.value,
                    signature=signature,
                )
            )
        except HandshakeError as err:
            self._fail_handshake(err)
        except TransportError as err:
            self._fail_handshake(HandshakeError(f"Could not send auth verify: {err}"))

    def _fail_handshake(self, error: HandshakeError) -> None:
        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(error)

    # -------------------------------------------------------------------------
    # Internal: Keepalive
    # -------------------------------------------------------------------------

    async def _send_ping(self) -> None:
        ws = self._ws
        if ws is None or self._status is not SessionStatus.CONNECTED:
            return
        frame = await self._correlator.sign(build_ping(self._correlator.next_id()))
        await ws.send_json(frame)


def _verify_rejection(payload: Any) -> str | None:
    """Return the rejection reason carried by an auth_verify payload, if any."""
    if isinstance(payload, list) and payload:
        payload = payload[0]
    if isinstance(payload, dict):
        if payload.get("error"):
            return str(payload["error"])
        if payload.get("success") is False:
            return "verification unsuccessful"
    return None
