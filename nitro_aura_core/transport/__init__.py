"""Transport layer for the Nitro Aura RPC client.

This package contains the socket IO only; framing and authentication live
one level up.

Components:
- ws: WebSocket connection opening
- ws_client: WebSocket message iteration and JSON sending
"""

from .ws import connect_websocket
from .ws_client import RpcWsClient, RpcWsMessage, RpcWsMessageType

__all__ = [
    "RpcWsClient",
    "RpcWsMessage",
    "RpcWsMessageType",
    "connect_websocket",
]
