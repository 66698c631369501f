"""Request/response correlation over one multiplexed connection."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .errors import (
    NitroRpcError,
    RequestRejectedError,
    RequestTimeoutError,
    SigningError,
)
from .protocol import (
    ErrorFrame,
    InboundFrame,
    ResponseFrame,
    build_request,
    signing_payload,
)
from .signing import SigningCapability

_LOGGER = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 10.0


@dataclass(slots=True)
class PendingRequest:
    """An outstanding request awaiting settlement."""

    request_id: int
    method: str
    future: asyncio.Future[Any]
    timeout: float
    timer: asyncio.TimerHandle | None = None


class RequestCorrelator:
    """Assigns request ids, signs requests and matches inbound answers.

    Every tracked request is settled exactly once: by a response, an error
    envelope, its timeout, or ``fail_all``. Settlement and removal from the
    pending table happen together.
    """

    def __init__(
        self,
        signer: SigningCapability,
        *,
        default_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self._signer = signer
        self._default_timeout = default_timeout
        self._next_id = 1
        self._pending: dict[int, PendingRequest] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def next_id(self) -> int:
        """Allocate the next request id (unique for the correlator's lifetime)."""
        request_id = self._next_id
        self._next_id += 1
        return request_id

    async def sign(self, envelope: dict[str, Any]) -> dict[str, Any]:
        """Attach a signature over the envelope's ``req`` array.

        Raises:
            SigningError: The signer failed
        """
        try:
            signature = await self._signer.sign(signing_payload(envelope))
        except NitroRpcError:
            raise
        except Exception as err:
            raise SigningError(f"Could not sign {envelope['req'][1]}: {err}") from err
        envelope["sig"] = [signature]
        return envelope

    async def request(
        self,
        method: str,
        params: Any,
        transmit: Callable[[dict[str, Any]], Awaitable[None]],
        *,
        timeout: float | None = None,
    ) -> Any:
        """Sign, send and await one request.

        Raises:
            RequestTimeoutError: No answer before the deadline
            RequestRejectedError: The peer answered with an error envelope
            TransportError: The frame could not be sent
            SigningError: The signer failed
        """
        request_id = self.next_id()
        envelope = await self.sign(build_request(request_id, method, params))
        future = self.track(request_id, method, timeout=timeout)

        try:
            await transmit(envelope)
        except Exception as err:
            self.reject(request_id, err)

        return await future

    def track(
        self, request_id: int, method: str, *, timeout: float | None = None
    ) -> asyncio.Future[Any]:
        """Record a pending request and arm its timeout."""
        loop = asyncio.get_running_loop()
        timeout = self._default_timeout if timeout is None else timeout
        future: asyncio.Future[Any] = loop.create_future()
        pending = PendingRequest(request_id, method, future, timeout)
        pending.timer = loop.call_later(timeout, self._expire, request_id)
        self._pending[request_id] = pending
        future.add_done_callback(lambda _fut: self._discard(request_id, _fut))
        return future

    def resolve(self, request_id: Any, payload: Any) -> bool:
        pending = self._pop(request_id)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.set_result(payload)
        return True

    def reject(self, request_id: Any, error: BaseException) -> bool:
        pending = self._pop(request_id)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.set_exception(error)
        return True

    def dispatch(self, frame: InboundFrame) -> bool:
        """Settle the request a frame answers; return True if it was tracked."""
        if isinstance(frame, ResponseFrame):
            return self.resolve(frame.request_id, frame.payload)
        if isinstance(frame, ErrorFrame):
            return self.reject(
                frame.request_id, RequestRejectedError(frame.code, frame.message)
            )
        return False

    def fail_all(self, error_factory: Callable[[], BaseException]) -> int:
        """Settle every pending request with a fresh error; return the count."""
        request_ids = list(self._pending)
        for request_id in request_ids:
            self.reject(request_id, error_factory())
        return len(request_ids)

    def _expire(self, request_id: int) -> None:
        pending = self._pending.get(request_id)
        if pending is None:
            return
        _LOGGER.warning(
            "Request %d (%s) timed out after %.1fs",
            request_id,
            pending.method,
            pending.timeout,
        )
        self.reject(
            request_id,
            RequestTimeoutError(request_id, pending.method, pending.timeout),
        )

    def _pop(self, request_id: Any) -> PendingRequest | None:
        try:
            pending = self._pending.pop(request_id)
        except (KeyError, TypeError):
            return None
        if pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _discard(self, request_id: int, future: asyncio.Future[Any]) -> None:
        # Caller cancelled the await; drop the entry so nothing settles it later.
        pending = self._pending.get(request_id)
        if pending is not None and pending.future is future:
            self._pop(request_id)
