"""Periodic signed liveness messages while a session is connected."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

_LOGGER = logging.getLogger(__name__)

DEFAULT_KEEPALIVE_INTERVAL = 30.0


class KeepaliveScheduler:
    """Runs ``send_ping`` every ``interval`` seconds until stopped.

    A failed tick is logged and the loop carries on; the scheduler never
    tears the connection down itself.
    """

    def __init__(
        self,
        send_ping: Callable[[], Awaitable[None]],
        *,
        interval: float = DEFAULT_KEEPALIVE_INTERVAL,
        label: str = "",
    ) -> None:
        self._send_ping = send_ping
        self._interval = interval
        self._label = label
        self._task: asyncio.Task[None] | None = None
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self.failures = 0
        self._task = asyncio.get_running_loop().create_task(self._loop())

    def stop(self) -> None:
        """Cancel the loop. Safe to call from synchronous code."""
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval)
                try:
                    await self._send_ping()
                except asyncio.CancelledError:
                    raise
                except Exception as err:
                    self.failures += 1
                    _LOGGER.warning(
                        "[%s] Keepalive ping failed (%d so far): %s",
                        self._label,
                        self.failures,
                        err,
                    )
        except asyncio.CancelledError:
            _LOGGER.debug("[%s] Keepalive cancelled", self._label)
