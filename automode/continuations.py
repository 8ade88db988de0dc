"""
Continuation Registry
=====================

Keyed one-shot futures for runs suspended on human input (plan approval,
wizard answers). A controller registers before it announces that it is
waiting, so an answer can never arrive for an entry that does not exist yet.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from automode.errors import FeatureCancelledError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PendingContinuation(Generic[T]):
    """A suspended wait plus the context needed to validate its answer."""

    feature_id: str
    future: asyncio.Future
    context: dict[str, Any] = field(default_factory=dict)


class ContinuationRegistry(Generic[T]):
    """Map of feature id to a single pending continuation."""

    def __init__(self, name: str):
        self.name = name
        self._pending: dict[str, PendingContinuation[T]] = {}

    def __contains__(self, feature_id: str) -> bool:
        return feature_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def keys(self) -> list[str]:
        return list(self._pending)

    def get(self, feature_id: str) -> PendingContinuation[T] | None:
        return self._pending.get(feature_id)

    def register(self, feature_id: str, **context: Any) -> asyncio.Future:
        """
        Create the pending entry for ``feature_id`` and return its future.

        A stale entry for the same feature is cancelled first.
        """
        if feature_id in self._pending:
            _logger.warning("Replacing stale %s entry for %s", self.name, feature_id)
            self.cancel(feature_id)
        future = asyncio.get_running_loop().create_future()
        self._pending[feature_id] = PendingContinuation(feature_id, future, dict(context))
        _logger.debug("Registered %s for %s", self.name, feature_id)
        return future

    def resolve(self, feature_id: str, value: T) -> bool:
        """Settle the entry with ``value`` and remove it. False if none was pending."""
        pending = self._pending.pop(feature_id, None)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.set_result(value)
        return True

    def cancel(self, feature_id: str, message: str = "Feature stopped by user") -> bool:
        """Reject the entry with FeatureCancelledError and remove it."""
        pending = self._pending.pop(feature_id, None)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.set_exception(FeatureCancelledError(message, feature_id))
        _logger.debug("Cancelled %s for %s", self.name, feature_id)
        return True

    def discard(self, feature_id: str, future: asyncio.Future) -> None:
        """Drop the entry only if it still belongs to ``future``."""
        pending = self._pending.get(feature_id)
        if pending is not None and pending.future is future:
            del self._pending[feature_id]
