"""
Auto Mode Router
================

API endpoints for the feature execution orchestrator:

- POST /api/auto-mode/start, /stop - auto loop control
- POST /api/auto-mode/run-feature, /stop-feature, /resume-feature,
  /follow-up-feature - single feature runs
- POST /api/auto-mode/approve-plan, /wizard-answer - human-in-the-loop input
- POST /api/auto-mode/context-exists, /analyze-project
- GET  /api/auto-mode/status, /running-agents
- WS   /api/auto-mode/events - live ``auto-mode:event`` stream

Runs are started in the background; these endpoints return as soon as a
run is admitted. Progress arrives over the event stream.
"""

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect

from automode.orchestrator import AutoModeOrchestrator

from ..exceptions import BadRequestError
from ..schemas import (
    ActionResponse,
    AnalyzeProjectRequest,
    ApprovePlanRequest,
    ApprovePlanResponse,
    AutoModeStatusResponse,
    ContextExistsResponse,
    FeatureRefRequest,
    FollowUpFeatureRequest,
    ResumeFeatureRequest,
    RunFeatureRequest,
    RunningAgentsResponse,
    StartAutoModeRequest,
    StopAutoModeResponse,
    StopFeatureRequest,
    StopFeatureResponse,
    WizardAnswerRequest,
    WizardAnswerResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auto-mode", tags=["auto-mode"])

# Events buffered per WebSocket client before new ones are dropped
EVENT_QUEUE_SIZE = 1000

# Fire-and-forget analysis tasks, referenced until they finish
_background_tasks: set[asyncio.Task] = set()


def get_orchestrator(request: Request) -> AutoModeOrchestrator:
    return request.app.state.orchestrator


# ============================================================================
# Auto loop
# ============================================================================

@router.post("/start", response_model=ActionResponse)
async def start_auto_mode(
    body: StartAutoModeRequest,
    orchestrator: AutoModeOrchestrator = Depends(get_orchestrator),
) -> ActionResponse:
    await orchestrator.start_auto_loop(body.project_path, body.max_concurrency, body.use_worktrees)
    return ActionResponse(success=True, message="Auto mode started")


@router.post("/stop", response_model=StopAutoModeResponse)
async def stop_auto_mode(
    orchestrator: AutoModeOrchestrator = Depends(get_orchestrator),
) -> StopAutoModeResponse:
    running = await orchestrator.stop_auto_loop()
    return StopAutoModeResponse(success=True, running_features=running)


@router.get("/status", response_model=AutoModeStatusResponse)
async def get_status(
    orchestrator: AutoModeOrchestrator = Depends(get_orchestrator),
) -> AutoModeStatusResponse:
    status = orchestrator.get_status()
    return AutoModeStatusResponse(
        is_running=status["isRunning"],
        running_features=status["runningFeatures"],
        running_count=status["runningCount"],
        auto_loop_running=status["autoLoopRunning"],
    )


@router.get("/running-agents", response_model=RunningAgentsResponse)
async def get_running_agents(
    orchestrator: AutoModeOrchestrator = Depends(get_orchestrator),
) -> RunningAgentsResponse:
    return RunningAgentsResponse(agents=orchestrator.get_running_agents())


# ============================================================================
# Feature runs
# ============================================================================

@router.post("/run-feature", response_model=ActionResponse)
async def run_feature(
    body: RunFeatureRequest,
    orchestrator: AutoModeOrchestrator = Depends(get_orchestrator),
) -> ActionResponse:
    orchestrator.start_feature(body.project_path, body.feature_id, use_worktrees=body.use_worktrees)
    return ActionResponse(success=True, message=f"Feature {body.feature_id} started")


@router.post("/stop-feature", response_model=StopFeatureResponse)
async def stop_feature(
    body: StopFeatureRequest,
    orchestrator: AutoModeOrchestrator = Depends(get_orchestrator),
) -> StopFeatureResponse:
    stopped = await orchestrator.stop_feature(body.feature_id)
    return StopFeatureResponse(success=True, stopped=stopped)


@router.post("/resume-feature", response_model=ActionResponse)
async def resume_feature(
    body: ResumeFeatureRequest,
    orchestrator: AutoModeOrchestrator = Depends(get_orchestrator),
) -> ActionResponse:
    orchestrator.start_resume(body.project_path, body.feature_id, use_worktrees=body.use_worktrees)
    return ActionResponse(success=True, message=f"Feature {body.feature_id} resumed")


@router.post("/follow-up-feature", response_model=ActionResponse)
async def follow_up_feature(
    body: FollowUpFeatureRequest,
    orchestrator: AutoModeOrchestrator = Depends(get_orchestrator),
) -> ActionResponse:
    orchestrator.start_follow_up(
        body.project_path,
        body.feature_id,
        body.prompt,
        image_paths=body.image_paths,
        use_worktrees=body.use_worktrees,
    )
    return ActionResponse(success=True, message=f"Follow-up started for {body.feature_id}")


# ============================================================================
# Human-in-the-loop
# ============================================================================

@router.post("/approve-plan", response_model=ApprovePlanResponse)
async def approve_plan(
    body: ApprovePlanRequest,
    orchestrator: AutoModeOrchestrator = Depends(get_orchestrator),
) -> ApprovePlanResponse:
    result = await orchestrator.resolve_plan_approval(
        body.feature_id,
        body.approved,
        edited_plan=body.edited_plan,
        feedback=body.feedback,
        project_path_fallback=body.project_path,
    )
    if not result["success"]:
        raise BadRequestError(result["error"], details={"feature_id": body.feature_id})

    message = "Plan approved - implementation continuing" if body.approved else "Plan rejected"
    return ApprovePlanResponse(success=True, approved=body.approved, message=message)


@router.post("/wizard-answer", response_model=WizardAnswerResponse)
async def wizard_answer(
    body: WizardAnswerRequest,
    orchestrator: AutoModeOrchestrator = Depends(get_orchestrator),
) -> WizardAnswerResponse:
    result = await orchestrator.submit_wizard_answer(
        body.project_path, body.feature_id, body.question_id, body.answer
    )
    if not result["success"]:
        raise BadRequestError(result["error"], details={"feature_id": body.feature_id})
    return WizardAnswerResponse(
        success=True,
        questions_remaining=result["questionsRemaining"],
        wizard_complete=result["wizardComplete"],
    )


# ============================================================================
# Utilities
# ============================================================================

@router.post("/context-exists", response_model=ContextExistsResponse)
async def context_exists(
    body: FeatureRefRequest,
    orchestrator: AutoModeOrchestrator = Depends(get_orchestrator),
) -> ContextExistsResponse:
    exists = await orchestrator.context_exists(body.project_path, body.feature_id)
    return ContextExistsResponse(success=True, exists=exists)


@router.post("/analyze-project", response_model=ActionResponse)
async def analyze_project(
    body: AnalyzeProjectRequest,
    orchestrator: AutoModeOrchestrator = Depends(get_orchestrator),
) -> ActionResponse:
    task = asyncio.create_task(orchestrator.analyze_project(body.project_path))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return ActionResponse(success=True, message="Project analysis started")


# ============================================================================
# Event stream
# ============================================================================

@router.websocket("/events")
async def events_websocket(websocket: WebSocket) -> None:
    """
    Stream every orchestrator event to the client as
    ``{"type": "auto-mode:event", "payload": {...}}``.

    Clients may send ``{"type": "ping"}`` and get ``{"type": "pong"}`` back.
    """
    orchestrator: AutoModeOrchestrator = websocket.app.state.orchestrator
    await websocket.accept()

    queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)

    def on_event(event_type: str, payload: dict[str, Any]) -> None:
        try:
            queue.put_nowait((event_type, payload))
        except asyncio.QueueFull:
            logger.warning("Event queue full for WebSocket client, dropping %s", payload.get("type"))

    unsubscribe = orchestrator.events.emitter.subscribe(on_event)

    async def send_events() -> None:
        while True:
            event_type, payload = await queue.get()
            await websocket.send_json({"type": event_type, "payload": payload})

    sender = asyncio.create_task(send_events())
    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_json({"type": "pong"})

    except WebSocketDisconnect:
        logger.info("Auto mode event WebSocket disconnected")

    finally:
        unsubscribe()
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("Event sender ended: %s", e)
