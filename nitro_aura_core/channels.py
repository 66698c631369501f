"""Channel lookup performed once a session authenticates.

The clearing node is asked for the identity's channels whenever the session
reaches ``connected``. When none exists, an injected creator is invoked; how
a channel is actually opened on chain is its business, not ours.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from .errors import NitroRpcError
from .protocol import GET_CHANNELS
from .session import NitroRpcSession, SessionStatus, StatusEvent

if TYPE_CHECKING:
    from .broadcaster import Subscription

_LOGGER = logging.getLogger(__name__)

ChannelCreator = Callable[[str], Awaitable[dict[str, Any] | None]]


def valid_channels(response: Any) -> list[dict[str, Any]]:
    """Filter a get_channels payload down to real channel entries.

    The node answers ``[]`` or ``[null]`` when the participant has none.
    """
    if not isinstance(response, list):
        return []
    return [channel for channel in response if isinstance(channel, dict)]


class ChannelDirectory:
    """Tracks the session identity's active channel."""

    def __init__(
        self,
        session: NitroRpcSession,
        *,
        creator: ChannelCreator | None = None,
    ) -> None:
        self._session = session
        self._creator = creator
        self.channel: dict[str, Any] | None = None
        self._subscriptions: list[Subscription[Any]] = [
            session.on_status_change(self._on_status_change),
            session.on_message(self._on_message),
        ]

    def detach(self) -> None:
        """Stop following the session."""
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

    async def get_channels(self, identity: str | None = None) -> list[dict[str, Any]]:
        """Fetch the channels ``identity`` participates in."""
        participant = identity or self._session.identity
        response = await self._session.send_request(
            GET_CHANNELS, [{"participant": participant}]
        )
        return valid_channels(response)

    async def ensure_channel(self) -> dict[str, Any] | None:
        """Return the active channel, asking the creator for one if none exists."""
        channels = await self.get_channels()
        if channels:
            _LOGGER.info(
                "[%s] Found %d existing channel(s)", self._session.identity, len(channels)
            )
            self.channel = channels[0]
            return self.channel

        if self._creator is None:
            _LOGGER.info("[%s] No channel found", self._session.identity)
            return None

        _LOGGER.info("[%s] No channel found, creating one", self._session.identity)
        result = await self._creator(self._session.identity)
        if result:
            self.channel = result.get("channel", result)
        return self.channel

    async def _on_status_change(self, event: StatusEvent) -> None:
        if event.status is not SessionStatus.CONNECTED:
            return
        try:
            await self.ensure_channel()
        except NitroRpcError as err:
            _LOGGER.warning(
                "[%s] Channel lookup failed, continuing: %s", self._session.identity, err
            )
        except Exception as err:
            _LOGGER.exception(
                "[%s] Channel creation failed: %s", self._session.identity, err
            )

    def _on_message(self, message: dict[str, Any]) -> None:
        if message.get("type") == "channel_created" and isinstance(
            message.get("channel"), dict
        ):
            _LOGGER.info("[%s] Channel created", self._session.identity)
            self.channel = message["channel"]
