"""Protocol helpers for clearing-node RPC frames.

Outbound frames are ``{"req": [id, method, params, ts], "sig": [...]}``.
Inbound frames are responses ``{"res": [id, method, payload, ts]}``, errors
``{"err": [id, code, message, ts]}``, or anything else, which is treated as an
unsolicited notification.
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

AUTH_REQUEST = "auth_request"
AUTH_CHALLENGE = "auth_challenge"
AUTH_VERIFY = "auth_verify"
PING = "ping"
GET_CHANNELS = "get_channels"


@dataclass(frozen=True)
class Allowance:
    """Spending allowance declared for the session key.

    Attributes:
        asset: Asset symbol (e.g., "usdc").
        amount: Amount in base units, as a decimal string.
    """

    asset: str
    amount: str

    def to_wire(self) -> dict[str, str]:
        return {"asset": self.asset, "amount": self.amount}


def now_ms() -> int:
    """Current epoch time in milliseconds."""
    return int(time.time() * 1000)


def build_request(
    request_id: int,
    method: str,
    params: Any,
    *,
    signatures: Iterable[str] = (),
    timestamp_ms: int | None = None,
) -> dict[str, Any]:
    """Build a generic request envelope.

    Args:
        request_id: Session-unique monotonically increasing id.
        method: RPC method name.
        params: JSON-serializable parameters.
        signatures: Signatures over the ``req`` array, if already computed.
        timestamp_ms: Optional epoch milliseconds override.
    """
    return {
        "req": [
            request_id,
            method,
            params,
            timestamp_ms if timestamp_ms is not None else now_ms(),
        ],
        "sig": list(signatures),
    }


def signing_payload(envelope: dict[str, Any]) -> list[Any]:
    """Return the part of a request envelope that gets signed."""
    return envelope["req"]


def build_auth_request(
    request_id: int,
    *,
    address: str,
    session_key: str,
    app_name: str,
    allowances: Sequence[Allowance],
    timestamp_ms: int | None = None,
) -> dict[str, Any]:
    """Construct the unsigned auth_request frame opening a handshake."""
    if not address:
        raise ValueError("address is required for auth_request frames")
    return build_request(
        request_id,
        AUTH_REQUEST,
        [
            {
                "address": address,
                "session_key": session_key,
                "app_name": app_name,
                "allowances": [allowance.to_wire() for allowance in allowances],
            }
        ],
        timestamp_ms=timestamp_ms,
    )


def build_auth_verify(
    request_id: int,
    *,
    address: str,
    challenge: str,
    signature: str,
    timestamp_ms: int | None = None,
) -> dict[str, Any]:
    """Construct the signed auth_verify frame answering a challenge."""
    return build_request(
        request_id,
        AUTH_VERIFY,
        [{"address": address, "challenge": challenge}],
        signatures=[signature],
        timestamp_ms=timestamp_ms,
    )


def build_ping(request_id: int, *, timestamp_ms: int | None = None) -> dict[str, Any]:
    """Construct a keepalive ping frame; the caller attaches the signature."""
    return build_request(request_id, PING, [], timestamp_ms=timestamp_ms)


# --------------------------------------------------------------------------
# Inbound frames
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class ResponseFrame:
    """Successful response to a request."""

    request_id: Any
    method: str
    payload: Any
    timestamp: int | None
    raw: dict[str, Any]


@dataclass(frozen=True)
class ErrorFrame:
    """Error envelope answering a request."""

    request_id: Any
    code: Any
    message: str
    timestamp: int | None
    raw: dict[str, Any]


@dataclass(frozen=True)
class NotificationFrame:
    """Any other tagged message, forwarded verbatim to observers."""

    tag: str | None
    raw: dict[str, Any]


InboundFrame = ResponseFrame | ErrorFrame | NotificationFrame


def _unpack(field: str, value: Any) -> tuple[Any, Any, Any, int | None]:
    if not isinstance(value, list) or len(value) < 3:
        raise ValueError(f"'{field}' must be an array of at least 3 items")
    timestamp = value[3] if len(value) > 3 else None
    return value[0], value[1], value[2], timestamp


def parse_frame(message: Any) -> InboundFrame:
    """Classify a decoded inbound message.

    Raises:
        ValueError: The message is not an object, or its ``res``/``err``
            array is malformed.
    """
    if not isinstance(message, dict):
        raise ValueError(f"Frame must be an object, got {type(message).__name__}")

    if "res" in message:
        request_id, method, payload, timestamp = _unpack("res", message["res"])
        if not isinstance(method, str):
            raise ValueError("Response method must be a string")
        return ResponseFrame(request_id, method, payload, timestamp, message)

    if "err" in message:
        request_id, code, text, timestamp = _unpack("err", message["err"])
        return ErrorFrame(request_id, code, str(text), timestamp, message)

    tag = message.get("type", message.get("method"))
    return NotificationFrame(tag if isinstance(tag, str) else None, message)


def frame_method(frame: InboundFrame) -> str | None:
    """Return the method/tag a frame carries, if any."""
    if isinstance(frame, ResponseFrame):
        return frame.method
    if isinstance(frame, NotificationFrame):
        return frame.tag
    return None
