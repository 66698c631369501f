"""Challenge token extraction for the authentication handshake.

The clearing node has shipped the challenge in several shapes over time::

    [{"challenge_message": "uuid"}]
    {"challenge": "uuid"}
    {"token": "uuid"}
    "uuid"

``parse_challenge`` folds all of them into a single parse step that yields
either a ``ChallengeToken`` or a ``ChallengeParseFailure``. Nothing that fails
to parse is ever handed to the signer as a token.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

CHALLENGE_KEYS: tuple[str, ...] = ("challenge_message", "challenge", "token")
# Wrappers a tagged challenge notification may nest its token under.
CONTAINER_KEYS: tuple[str, ...] = ("body", "data", "params", "payload")
MAX_DEPTH = 4


@dataclass(frozen=True)
class ChallengeToken:
    """Opaque challenge token, valid for one handshake attempt."""

    value: str


@dataclass(frozen=True)
class ChallengeParseFailure:
    """Explanation of why no token could be extracted."""

    reason: str


ChallengeParseResult = ChallengeToken | ChallengeParseFailure


def parse_challenge(value: Any) -> ChallengeParseResult:
    """Extract the challenge token from a handshake payload."""
    return _parse(value, 0)


def _parse(value: Any, depth: int) -> ChallengeParseResult:
    if depth > MAX_DEPTH:
        return ChallengeParseFailure("challenge payload nested too deeply")

    if isinstance(value, str):
        return _parse_string(value)

    if isinstance(value, dict):
        for key in CHALLENGE_KEYS:
            if key in value:
                return _parse(value[key], depth + 1)
        for key in CONTAINER_KEYS:
            if key in value:
                return _parse(value[key], depth + 1)
        return ChallengeParseFailure(
            f"no challenge key in object with keys {sorted(value)}"
        )

    if isinstance(value, (list, tuple)):
        if not value:
            return ChallengeParseFailure("challenge array is empty")
        return _parse(value[0], depth + 1)

    return ChallengeParseFailure(
        f"unsupported challenge payload type {type(value).__name__}"
    )


def _parse_string(value: str) -> ChallengeParseResult:
    token = value.strip()
    if not token:
        return ChallengeParseFailure("challenge token is empty")
    # Serialized structures are never tokens.
    if "{" in token or "[" in token:
        return ChallengeParseFailure("challenge token contains structured data")
    return ChallengeToken(token)
