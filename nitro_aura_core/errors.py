"""Error types for the Nitro Aura clearing-node RPC client."""

from __future__ import annotations


class NitroRpcError(Exception):
    """Base error for Nitro Aura RPC client failures."""


class ConfigurationError(NitroRpcError):
    """Client settings are missing or invalid."""


class TransportError(NitroRpcError):
    """Socket-level failure talking to the clearing node."""


class TransportTimeout(TransportError):
    """Timeout while opening the WebSocket connection."""


class TransportHandshakeError(TransportError):
    """WebSocket upgrade handshake failed."""


class HandshakeError(NitroRpcError):
    """Challenge-response authentication failed."""


class SigningError(NitroRpcError):
    """The signing capability could not sign a request."""


class NotConnectedError(NitroRpcError):
    """Request attempted while the session is not connected."""


class ConnectionClosedError(NitroRpcError):
    """Connection went away before the request was answered."""


class RequestTimeoutError(NitroRpcError):
    """No response arrived before the request deadline."""

    def __init__(self, request_id: int, method: str, timeout: float) -> None:
        super().__init__(
            f"Request {request_id} ({method}) timed out after {timeout:g}s"
        )
        self.request_id = request_id
        self.method = method
        self.timeout = timeout


class RequestRejectedError(NitroRpcError):
    """Clearing node answered the request with an error envelope."""

    def __init__(self, code: int | str | None, message: str) -> None:
        super().__init__(f"Error {code}: {message}")
        self.code = code
        self.message = message


class ReconnectExhaustedError(NitroRpcError):
    """Reconnection attempts exceeded the configured maximum."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Gave up reconnecting after {attempts} attempt(s)")
        self.attempts = attempts
