"""Authenticated RPC client core for Nitro Aura clearing-node sessions."""

__version__ = "0.1.0"

from .broadcaster import Broadcaster, Subscription
from .challenge import (
    ChallengeParseFailure,
    ChallengeToken,
    parse_challenge,
)
from .channels import ChannelDirectory
from .config import ClientSettings, load_settings
from .correlator import RequestCorrelator
from .errors import (
    ConfigurationError,
    ConnectionClosedError,
    HandshakeError,
    NitroRpcError,
    NotConnectedError,
    ReconnectExhaustedError,
    RequestRejectedError,
    RequestTimeoutError,
    SigningError,
    TransportError,
    TransportHandshakeError,
    TransportTimeout,
)
from .keepalive import KeepaliveScheduler
from .protocol import (
    Allowance,
    build_auth_request,
    build_auth_verify,
    build_ping,
    build_request,
    parse_frame,
)
from .reconnect import ReconnectPolicy
from .session import NitroRpcSession, SessionStatus, StatusEvent
from .signing import EthAccountSigner, SigningCapability, TypedDataPayload
from .transport import RpcWsClient, RpcWsMessage, RpcWsMessageType

__all__ = [
    "Allowance",
    "Broadcaster",
    "ChallengeParseFailure",
    "ChallengeToken",
    "ChannelDirectory",
    "ClientSettings",
    "ConfigurationError",
    "ConnectionClosedError",
    "EthAccountSigner",
    "HandshakeError",
    "KeepaliveScheduler",
    "NitroRpcError",
    "NitroRpcSession",
    "NotConnectedError",
    "ReconnectExhaustedError",
    "ReconnectPolicy",
    "RequestCorrelator",
    "RequestRejectedError",
    "RequestTimeoutError",
    "RpcWsClient",
    "RpcWsMessage",
    "RpcWsMessageType",
    "SessionStatus",
    "SigningCapability",
    "SigningError",
    "StatusEvent",
    "Subscription",
    "TransportError",
    "TransportHandshakeError",
    "TransportTimeout",
    "TypedDataPayload",
    "__version__",
    "build_auth_request",
    "build_auth_verify",
    "build_ping",
    "build_request",
    "load_settings",
    "parse_challenge",
    "parse_frame",
]
