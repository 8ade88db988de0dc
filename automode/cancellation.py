"""
Cancellation Tokens
===================

Cooperative cancellation for a single feature run. One token is shared by
every agent call, wait and sleep in the run; firing it aborts whichever of
those is in flight.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from automode.errors import FeatureCancelledError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """
    One-shot cancellation signal backed by an asyncio.Event.

    Example:
        token = CancellationToken()
        result = await token.race(call_provider())
    """

    def __init__(self, feature_id: str | None = None):
        self.feature_id = feature_id
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "Feature stopped by user") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        _logger.debug("Cancellation requested for %s: %s", self.feature_id, reason)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise FeatureCancelledError(self._reason or "Feature stopped by user", self.feature_id)

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` unless the token fires first.

        When the token wins, the awaitable's task is cancelled and
        FeatureCancelledError is raised.
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if work.done():
                return work.result()
            work.cancel()
            try:
                await work
            except asyncio.CancelledError:
                pass
            except FeatureCancelledError:
                pass
            raise FeatureCancelledError(self._reason or "Feature stopped by user", self.feature_id)
        finally:
            if not waiter.done():
                waiter.cancel()
            if not work.done():
                work.cancel()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds``. Returns False if cancelled while sleeping."""
        if self.is_cancelled:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False
