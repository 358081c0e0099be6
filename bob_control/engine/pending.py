"""In-flight request state and the send/timeout/cancel race.

``race_request`` settles exactly once from three sources: the agent
send finishing, the room timeout, or the request's cancellation
trigger. The losers are disarmed before it returns: the timer is
owned by ``asyncio.wait`` and the loser tasks are cancelled and
awaited, so nothing fires late.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import TypeVar

from .errors import RequestCancelledError, RequestTimeoutError
from .models import _make_id

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PendingRequest:
    """The one outstanding send of a room."""
    id: str = field(default_factory=_make_id)
    started_at: float = field(default_factory=time.time)
    # Set when the agent's own error event was already reported to the room.
    error_reported: bool = False
    # Set when reset or destroy took the request over from the sender.
    superseded: bool = False
    _cancelled: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def cancel(self) -> bool:
        """Fire the cancellation trigger. Returns False if already fired."""
        if self._cancelled.is_set():
            return False
        self._cancelled.set()
        return True

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def wait_cancelled(self) -> None:
        await self._cancelled.wait()

    @property
    def elapsed(self) -> float:
        return time.time() - self.started_at


async def race_request(
    send: Awaitable[T],
    pending: PendingRequest,
    *,
    timeout: float | None,
) -> T:
    """Await *send* against a timeout and *pending*'s cancellation.

    Returns the send result, re-raises the send's exception, or raises
    RequestTimeoutError / RequestCancelledError. A send that completes
    in the same loop iteration as a cancel or timeout wins. A timeout
    of None or <= 0 disables the timer.
    """
    send_task = asyncio.ensure_future(send)
    cancel_task = asyncio.ensure_future(pending.wait_cancelled())
    wait_timeout = timeout if timeout and timeout > 0 else None
    try:
        done, _ = await asyncio.wait(
            {send_task, cancel_task},
            timeout=wait_timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        losers = [t for t in (send_task, cancel_task) if not t.done()]
        for task in losers:
            task.cancel()
        if losers:
            await asyncio.gather(*losers, return_exceptions=True)

    if send_task.done() and not send_task.cancelled():
        return send_task.result()
    if cancel_task in done:
        logger.debug("Request %s cancelled after %.2fs", pending.id[:8], pending.elapsed)
        raise RequestCancelledError()
    logger.debug("Request %s timed out after %.2fs", pending.id[:8], pending.elapsed)
    raise RequestTimeoutError(timeout or 0)
