"""Signing capability consumed by the RPC session.

The session only ever calls ``sign(payload)``. A payload is either a
``TypedDataPayload`` (signed as EIP-712 typed data) or anything else, which is
keccak-256 hashed and signed without a message prefix: strings as UTF-8 text,
other structures as compact JSON.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak, to_checksum_address

from .errors import HandshakeError
from .protocol import Allowance

_LOGGER = logging.getLogger(__name__)

EIP712_DOMAIN_FIELDS: list[dict[str, str]] = [{"name": "name", "type": "string"}]

AUTH_TYPES: dict[str, list[dict[str, str]]] = {
    "AuthVerify": [
        {"name": "address", "type": "address"},
        {"name": "challenge", "type": "string"},
        {"name": "session_key", "type": "address"},
        {"name": "allowances", "type": "Allowance[]"},
    ],
    "Allowance": [
        {"name": "asset", "type": "string"},
        {"name": "amount", "type": "uint256"},
    ],
}


@dataclass(frozen=True)
class TypedDataPayload:
    """Structured payload signed with the typed-data scheme."""

    domain: dict[str, Any]
    primary_type: str
    message: dict[str, Any]
    types: dict[str, list[dict[str, str]]] = field(default_factory=dict)

    def to_eip712(self) -> dict[str, Any]:
        return {
            "types": {"EIP712Domain": EIP712_DOMAIN_FIELDS, **self.types},
            "primaryType": self.primary_type,
            "domain": self.domain,
            "message": self.message,
        }


class SigningCapability(ABC):
    """Produces signatures for one identity.

    Implementations must be deterministic for a given key and payload and
    must not mutate shared state.
    """

    @property
    @abstractmethod
    def address(self) -> str:
        """Identity the signatures belong to."""

    @abstractmethod
    async def sign(self, payload: Any) -> str:
        """Sign a string or structured payload, returning a 0x-prefixed hex signature."""


def canonical_json(payload: Any) -> str:
    """Compact JSON encoding used when hashing structured payloads."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def _to_hex(signature: bytes) -> str:
    sig_hex = signature.hex()
    if not sig_hex.startswith("0x"):
        sig_hex = "0x" + sig_hex
    return sig_hex


class EthAccountSigner(SigningCapability):
    """Signing capability backed by a local secp256k1 key."""

    def __init__(self, private_key: str) -> None:
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    async def sign(self, payload: Any) -> str:
        if isinstance(payload, TypedDataPayload):
            signable = encode_typed_data(full_message=payload.to_eip712())
            signed = self._account.sign_message(signable)
            return _to_hex(signed.signature)

        text = payload if isinstance(payload, str) else canonical_json(payload)
        signed = self._account.unsafe_sign_hash(keccak(text=text))
        return _to_hex(signed.signature)


# --------------------------------------------------------------------------
# Handshake signing
# --------------------------------------------------------------------------


def auth_typed_data(
    *,
    app_name: str,
    address: str,
    challenge: str,
    session_key: str,
    allowances: Sequence[Allowance],
) -> TypedDataPayload:
    """Typed-data structure proving control of ``address`` for one challenge."""
    return TypedDataPayload(
        domain={"name": app_name},
        primary_type="AuthVerify",
        types=AUTH_TYPES,
        message={
            "address": to_checksum_address(address),
            "challenge": challenge,
            "session_key": to_checksum_address(session_key),
            "allowances": [
                {"asset": allowance.asset, "amount": int(allowance.amount)}
                for allowance in allowances
            ],
        },
    )


def fallback_auth_message(address: str, challenge: str) -> str:
    """Plain message signed when the typed-data scheme is unavailable."""
    return f"Authentication challenge for {address}: {challenge}"


async def sign_auth_challenge(
    signer: SigningCapability,
    *,
    app_name: str,
    challenge: str,
    session_key: str,
    allowances: Sequence[Allowance],
) -> str:
    """Sign a handshake challenge, falling back from typed data to a message hash.

    Raises:
        HandshakeError: Both signing schemes failed.
    """
    address = signer.address
    try:
        payload = auth_typed_data(
            app_name=app_name,
            address=address,
            challenge=challenge,
            session_key=session_key,
            allowances=allowances,
        )
        return await signer.sign(payload)
    except Exception as typed_err:
        _LOGGER.warning(
            "[%s] Typed-data signing failed, falling back to message hash: %s",
            address,
            typed_err,
        )
        try:
            return await signer.sign(fallback_auth_message(address, challenge))
        except Exception as fallback_err:
            raise HandshakeError(
                "Both typed-data and fallback signing failed: "
                f"typed-data: {typed_err}; fallback: {fallback_err}"
            ) from fallback_err
