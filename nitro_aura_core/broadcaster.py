"""Publish/subscribe fan-out for session status and inbound messages."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Observer = Callable[[T], Awaitable[None] | None]


@dataclass(eq=False)
class Subscription(Generic[T]):
    """Handle returned by ``subscribe``; call ``unsubscribe`` to detach."""

    _broadcaster: Broadcaster[T]
    observer: Observer[T]

    @property
    def active(self) -> bool:
        return self in self._broadcaster._subscriptions

    def unsubscribe(self) -> None:
        self._broadcaster._remove(self)


class Broadcaster(Generic[T]):
    """Delivers published events to every current subscriber.

    Observers may be plain callables or coroutine functions. Coroutines are
    scheduled as tasks on the running loop; observer failures are logged and
    never reach the publisher.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._subscriptions: list[Subscription[T]] = []
        self._tasks: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, observer: Observer[T]) -> Subscription[T]:
        subscription = Subscription(self, observer)
        self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription[T]) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    def publish(self, event: T) -> None:
        # Snapshot so observers may unsubscribe while being notified.
        for subscription in list(self._subscriptions):
            try:
                result = subscription.observer(event)
            except Exception as err:
                _LOGGER.exception("%s observer error: %s", self._name, err)
                continue
            if inspect.isawaitable(result):
                self._schedule(result)

    def _schedule(self, awaitable: Awaitable[None]) -> None:
        async def _run() -> None:
            await awaitable

        try:
            task = asyncio.get_running_loop().create_task(_run())
        except RuntimeError:
            _LOGGER.error("%s observer returned a coroutine outside an event loop", self._name)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            _LOGGER.error(
                "%s async observer error: %s", self._name, err, exc_info=err
            )

    async def drain(self) -> None:
        """Wait for scheduled async observers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
