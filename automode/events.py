"""
Auto Mode Events
================

The orchestrator is a pure event producer. Every event goes through one
call, ``emit("auto-mode:event", {"type": <event type>, ...})``, and
subscribers (the WebSocket endpoint, tests) decide what to do with it.

High-frequency event types are throttled per type:

- auto_mode_progress: at most one per 100 ms
- auto_mode_idle: at most one per 60 s

Completion-class events are never throttled.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import Any, Callable

_logger = logging.getLogger(__name__)

AUTO_MODE_EVENT = "auto-mode:event"


class AutoModeEventType(str, Enum):
    AUTO_MODE_STARTED = "auto_mode_started"
    AUTO_MODE_STOPPED = "auto_mode_stopped"
    AUTO_MODE_IDLE = "auto_mode_idle"
    AUTO_MODE_ERROR = "auto_mode_error"
    FEATURE_START = "auto_mode_feature_start"
    FEATURE_COMPLETE = "auto_mode_feature_complete"
    PROGRESS = "auto_mode_progress"
    TOOL = "auto_mode_tool"
    PLANNING_STARTED = "planning_started"
    PLAN_APPROVAL_REQUIRED = "plan_approval_required"
    PLAN_APPROVED = "plan_approved"
    PLAN_AUTO_APPROVED = "plan_auto_approved"
    PLAN_REVISION_REQUESTED = "plan_revision_requested"
    PLAN_REJECTED = "plan_rejected"
    TASK_STARTED = "auto_mode_task_started"
    TASK_COMPLETE = "auto_mode_task_complete"
    PHASE_COMPLETE = "auto_mode_phase_complete"
    PIPELINE_STEP_STARTED = "pipeline_step_started"
    PIPELINE_STEP_COMPLETE = "pipeline_step_complete"
    WIZARD_QUESTION = "auto_mode_wizard_question"
    WIZARD_COMPLETE = "auto_mode_wizard_complete"


# Event types that end a feature run (exactly one per run)
COMPLETION_EVENT_TYPES = frozenset({
    AutoModeEventType.FEATURE_COMPLETE.value,
    AutoModeEventType.AUTO_MODE_ERROR.value,
})

# Minimum seconds between two emissions of the same event type
DEFAULT_THROTTLE_CONFIG: dict[str, float] = {
    AutoModeEventType.PROGRESS.value: 0.1,
    AutoModeEventType.AUTO_MODE_IDLE.value: 60.0,
}

EventCallback = Callable[[str, dict[str, Any]], Any]


class EventThrottler:
    """
    Per-type minimum interval between emissions.

    Attributes:
        intervals: event type -> minimum seconds between emissions
    """

    def __init__(self, intervals: dict[str, float] | None = None):
        self.intervals = dict(DEFAULT_THROTTLE_CONFIG if intervals is None else intervals)
        self._last_emit: dict[str, float] = {}

    def should_throttle(self, event_type: str) -> bool:
        """True if the event should be dropped."""
        if event_type in COMPLETION_EVENT_TYPES:
            return False
        interval = self.intervals.get(event_type)
        if not interval:
            return False

        now = time.monotonic()
        last = self._last_emit.get(event_type)
        if last is not None and now - last < interval:
            _logger.debug("Throttling %s event", event_type)
            return True
        self._last_emit[event_type] = now
        return False

    def reset(self) -> None:
        self._last_emit.clear()


class EventEmitter:
    """
    Fan-out of emitted events to subscribers.

    Subscribers may be plain functions or coroutine functions. A failing
    subscriber is logged and never affects the producer.

    Usage:
        emitter = EventEmitter()
        unsubscribe = emitter.subscribe(lambda kind, payload: print(kind, payload))
        emitter.emit("auto-mode:event", {"type": "auto_mode_started"})
        unsubscribe()
    """

    def __init__(self, throttle_config: dict[str, float] | None = None):
        self._subscribers: list[EventCallback] = []
        self._throttler = EventThrottler(throttle_config)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            self.unsubscribe(callback)

        return unsubscribe

    def unsubscribe(self, callback: EventCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        throttle_key = payload.get("type", event_type) if event_type == AUTO_MODE_EVENT else event_type
        if self._throttler.should_throttle(str(throttle_key)):
            return

        for callback in list(self._subscribers):
            try:
                result = callback(event_type, payload)
                if inspect.isawaitable(result):
                    self._schedule(result)
            except Exception as e:
                _logger.warning("Event subscriber failed for %s: %s", event_type, e)

    def _schedule(self, awaitable) -> None:
        async def runner():
            try:
                await awaitable
            except Exception as e:
                _logger.warning("Async event subscriber failed: %s", e)

        task = asyncio.get_running_loop().create_task(runner())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class AutoModeEvents:
    """Wraps an emitter so every event goes out as ``auto-mode:event``."""

    def __init__(self, emitter: EventEmitter):
        self.emitter = emitter

    def emit(self, event_type: AutoModeEventType, **data: Any) -> None:
        payload = {"type": AutoModeEventType(event_type).value}
        payload.update({k: v for k, v in data.items() if v is not None})
        self.emitter.emit(AUTO_MODE_EVENT, payload)
