"""Opening the clearing-node WebSocket."""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import urlsplit

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import (
    InvalidHandshake,
    InvalidStatus,
    InvalidURI,
    WebSocketException,
)

from ..errors import (
    TransportError,
    TransportHandshakeError,
    TransportTimeout,
)

_LOGGER = logging.getLogger(__name__)

USER_AGENT = "nitro-aura-core"
CLOSE_TIMEOUT = 5.0
WS_SCHEMES = ("ws", "wss")


async def connect_websocket(
    url: str,
    *,
    ping_interval: float | None = 20,
    timeout: float = 15.0,
) -> ClientConnection:
    """Open a WebSocket connection to the clearing node.

    Args:
        url: Full ws:// or wss:// endpoint
        ping_interval: Interval for protocol-level ping frames (None disables)
        timeout: Connection timeout in seconds

    Raises:
        TransportTimeout: The connection did not open in time
        TransportHandshakeError: Bad URL, or the node refused the HTTP upgrade
        TransportError: Any other socket failure
    """
    scheme = urlsplit(url).scheme
    if scheme not in WS_SCHEMES:
        raise TransportHandshakeError(f"Unsupported clearing-node URL scheme {scheme!r}")

    _LOGGER.debug("Opening WebSocket to %s", url)
    try:
        return await asyncio.wait_for(
            connect(
                url,
                ping_interval=ping_interval,
                close_timeout=CLOSE_TIMEOUT,
                max_size=None,
                user_agent_header=USER_AGENT,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise TransportTimeout(f"WebSocket connection to {url} timed out") from err
    except InvalidStatus as err:
        raise TransportHandshakeError(
            f"Clearing node refused the upgrade with HTTP {err.response.status_code}"
        ) from err
    except (InvalidHandshake, InvalidURI) as err:
        raise TransportHandshakeError(f"WebSocket handshake with {url} failed: {err}") from err
    except (OSError, WebSocketException) as err:
        raise TransportError(f"WebSocket connection to {url} failed: {err}") from err
