"""WebSocket client wrapper for the clearing-node transport."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import NitroRpcError, TransportError
from .ws import connect_websocket

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class RpcWsMessageType(Enum):
    """Normalized WebSocket message types."""

    TEXT = "text"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class RpcWsMessage:
    """Normalized WebSocket message payload."""

    type: RpcWsMessageType
    data: str | None = None


class RpcWsClient:
    """Wrapper around the websockets library owning one duplex connection."""

    def __init__(self) -> None:
        self._ws: ClientConnection | None = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    async def connect(
        self,
        url: str,
        *,
        ping_interval: float | None = 20,
        timeout: float = 15.0,
    ) -> None:
        """Connect to the clearing-node websocket."""
        self._ws = await connect_websocket(
            url,
            ping_interval=ping_interval,
            timeout=timeout,
        )

    async def close(self) -> None:
        """Close the websocket connection."""
        if self._ws is not None:
            await self._ws.close()

    async def send_json(self, payload: dict[str, Any]) -> None:
        """Send a JSON payload to the websocket.

        Raises:
            TransportError: If not connected or the socket refused the frame
        """
        if self._ws is None:
            raise TransportError("WebSocket is not connected")
        try:
            await self._ws.send(json.dumps(payload, separators=(",", ":")))
        except (ConnectionClosed, WebSocketException, OSError) as err:
            raise TransportError("WebSocket send failed") from err

    def __aiter__(self) -> AsyncIterator[RpcWsMessage]:
        if self._ws is None:
            raise TransportError("WebSocket is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[RpcWsMessage]:
        if self._ws is None:
            raise TransportError("WebSocket is not connected")

        try:
            async for msg in self._ws:
                normalized = self._normalize_message(msg)
                if normalized is None:
                    continue
                yield normalized
        except ConnectionClosed:
            yield RpcWsMessage(type=RpcWsMessageType.CLOSED)
        except Exception:
            yield RpcWsMessage(type=RpcWsMessageType.ERROR)
        else:
            # Normal iteration completion means the peer closed gracefully.
            yield RpcWsMessage(type=RpcWsMessageType.CLOSED)

    @staticmethod
    def _normalize_message(msg: Any) -> RpcWsMessage | None:
        """Normalize raw frames into RpcWsMessage."""
        if isinstance(msg, (bytes, bytearray, memoryview)):
            try:
                return RpcWsMessage(RpcWsMessageType.TEXT, bytes(msg).decode("utf-8"))
            except UnicodeDecodeError:
                return None
        if isinstance(msg, str):
            return RpcWsMessage(RpcWsMessageType.TEXT, msg)
        return RpcWsMessage(RpcWsMessageType.TEXT, str(msg))

    @staticmethod
    def decode_json(message: RpcWsMessage) -> Any:
        """Decode a TEXT message payload into JSON."""
        if message.type is not RpcWsMessageType.TEXT:
            raise NitroRpcError("Only TEXT messages can be decoded")
        if not isinstance(message.data, str):
            raise NitroRpcError("Message data is not a string")
        return json.loads(message.data)
