"""
Auto-Loop Scheduler
===================

Background loop that keeps admitting ready features while capacity allows.

Each iteration:
1. at capacity (running count >= max concurrency): wait and retry
2. load features in a schedulable status, order them by dependencies and
   keep those whose prerequisites are done
3. admit the first one that is not already running (fire-and-forget)
4. wait a short interval; with nothing ready, emit idle and wait longer

The running-feature map of the orchestrator is the only capacity
accounting. An iteration that raises is logged and the loop carries on.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from automode.cancellation import CancellationToken
from automode.config import AutoModeConfig
from automode.dependency_resolver import are_dependencies_satisfied, resolve_dependencies
from automode.errors import AlreadyRunningError, AutoLoopAlreadyRunningError, classify_error
from automode.events import AutoModeEvents, AutoModeEventType
from automode.feature_store import FeatureStore
from automode.models import SCHEDULABLE_STATUSES, AutoLoopState, Feature

if TYPE_CHECKING:
    from automode.orchestrator import AutoModeOrchestrator

_logger = logging.getLogger(__name__)


class AutoLoopScheduler:
    def __init__(
        self,
        orchestrator: "AutoModeOrchestrator",
        store: FeatureStore,
        events: AutoModeEvents,
        config: AutoModeConfig,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.events = events
        self.config = config
        self.state: AutoLoopState | None = None
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self.state is not None and self.state.is_running

    def start(
        self,
        project_path: str,
        max_concurrency: int | None = None,
        use_worktrees: bool = True,
    ) -> None:
        """
        Start the loop for ``project_path``.

        Raises:
            AutoLoopAlreadyRunningError: If a loop is already running
        """
        if self.is_running:
            raise AutoLoopAlreadyRunningError()

        limit = max_concurrency or self.config.max_concurrency
        self.state = AutoLoopState(
            project_path=project_path,
            max_concurrency=limit,
            cancel_token=CancellationToken(),
            use_worktrees=use_worktrees,
        )
        self.events.emit(
            AutoModeEventType.AUTO_MODE_STARTED,
            message=f"Auto mode started with max {limit} concurrent features",
            projectPath=project_path,
        )
        _logger.info("Auto loop started for %s (max %d)", project_path, limit)
        self._task = asyncio.get_running_loop().create_task(self._supervise(self.state))

    async def stop(self) -> int:
        """Stop admitting work. Returns how many features are still running."""
        state = self.state
        was_running = state is not None and state.is_running
        if state is not None:
            state.is_running = False
            state.cancel_token.cancel("Auto mode stopped")

        if was_running:
            self.events.emit(
                AutoModeEventType.AUTO_MODE_STOPPED,
                message="Auto mode stopped",
                projectPath=state.project_path,
            )
            _logger.info("Auto loop stopped for %s", state.project_path)
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        return self.orchestrator.running_count

    async def ready_features(self, project_path: str) -> list[Feature]:
        """Schedulable features with satisfied dependencies, in dependency order."""
        features = await self.store.load_all_features(project_path)
        candidates = [f for f in features if f.status in SCHEDULABLE_STATUSES]
        resolution = resolve_dependencies(candidates)
        if resolution["circular_dependencies"]:
            _logger.warning("Circular feature dependencies: %s", resolution["circular_dependencies"])

        return [f for f in resolution["ordered_features"] if are_dependencies_satisfied(f, features)]

    async def _supervise(self, state: AutoLoopState) -> None:
        try:
            await self._run(state)
        except Exception as exc:
            _logger.error("Auto loop crashed", exc_info=True)
            info = classify_error(exc)
            self.events.emit(
                AutoModeEventType.AUTO_MODE_ERROR,
                error=info.message,
                errorType=info.type.value,
                projectPath=state.project_path,
            )
        finally:
            state.is_running = False

    async def _run(self, state: AutoLoopState) -> None:
        token = state.cancel_token
        while state.is_running and not token.is_cancelled:
            try:
                if self.orchestrator.running_count >= state.max_concurrency:
                    await token.sleep(self.config.capacity_wait)
                    continue

                ready = await self.ready_features(state.project_path)
                if not ready:
                    self.events.emit(
                        AutoModeEventType.AUTO_MODE_IDLE,
                        message="No pending features - auto mode idle",
                        projectPath=state.project_path,
                    )
                    await token.sleep(self.config.idle_wait)
                    continue

                feature = next((f for f in ready if not self.orchestrator.is_feature_running(f.id)), None)
                if feature is not None:
                    try:
                        self.orchestrator.start_feature(
                            state.project_path,
                            feature.id,
                            use_worktrees=state.use_worktrees,
                            is_auto_mode=True,
                        )
                        _logger.info("Auto loop admitted feature %s", feature.id)
                    except AlreadyRunningError:
                        _logger.debug("Feature %s was admitted elsewhere", feature.id)

                await token.sleep(self.config.admit_wait)
            except Exception:
                _logger.error("Auto loop iteration failed", exc_info=True)
                await token.sleep(self.config.error_wait)
