from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from ..core.errors import InvalidTransition, NotFoundError
from ..core.identity import Identity, get_identity, require_roles, resolve_user_id
from ..core.logging import get_logger
from ..core.rate_limit import rate_limit_dependency
from ..dependencies import (
    get_activity_metrics,
    get_activity_stream,
    get_budget_guard,
    get_cost_tracker,
    get_orchestrator,
)
from ..orchestration.activity import ActivityStream
from ..orchestration.orchestrator import Orchestrator
from ..schemas.approvals import ApprovalModel, ApprovalResponseRequest
from ..schemas.budget import BudgetResponse, BudgetStatusModel
from ..schemas.metrics import ActivityMetricsResponse, ActivitySummaryResponse, DailyActivityModel, TopEventModel
from ..schemas.projects import LibraryCreateRequest, LibraryModel, ProjectModel
from ..schemas.runs import (
    ActivityEventModel,
    ArtifactModel,
    RunCreateRequest,
    RunCreatedResponse,
    RunDetail,
    RunModel,
    TaskDetail,
)
from ..services.activity_metrics import ActivityMetrics
from ..services.budget_guard import ResourceBudgetGuard
from ..services.cost_tracker import CostTracker

logger = get_logger(name=__name__)

router = APIRouter()

rate_limit_run_submission = rate_limit_dependency("run_submission")
rate_limit_approval_response = rate_limit_dependency("approval_response")

require_submitter = require_roles("user", "admin")
require_reader = require_roles("user", "approver", "admin")
require_approver = require_roles("approver", "admin")

MAX_RUN_EVENTS = 500


async def _extract_json_body(request: Request) -> dict[str, Any]:
    payload = await request.json()
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Request body must be a JSON object")
    return payload


def _not_found(exc: NotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


async def _submit_run(request: Request, orchestrator: Orchestrator, identity: Identity) -> RunCreatedResponse:
    raw_payload = await _extract_json_body(request)
    try:
        payload = RunCreateRequest(**raw_payload)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.errors()) from exc

    user_id = resolve_user_id(identity, payload.user_id)
    run = await orchestrator.create_run(
        user_id,
        payload.query,
        payload.project_id,
        preferences=payload.preferences,
    )
    await orchestrator.schedule_run(run.id)
    logger.info("run_submitted", run_id=run.id, task_id=run.task_id, user_id=user_id)
    return RunCreatedResponse(run_id=run.id, task_id=run.task_id, status=run.status.value)


@router.post("/ask", response_model=RunCreatedResponse, status_code=status.HTTP_202_ACCEPTED, tags=["runs"])
async def ask(
    request: Request,
    identity: Identity = Depends(require_submitter),
    _: None = Depends(rate_limit_run_submission),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> RunCreatedResponse:
    return await _submit_run(request, orchestrator, identity)


@router.post("/runs", response_model=RunCreatedResponse, status_code=status.HTTP_202_ACCEPTED, tags=["runs"])
async def create_run(
    request: Request,
    _: None = Depends(rate_limit_run_submission),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    identity: Identity = Depends(get_identity),
) -> RunCreatedResponse:
    return await _submit_run(request, orchestrator, identity)


@router.get("/runs", response_model=list[RunModel], tags=["runs"])
async def list_runs(
    user_id: str | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    identity: Identity = Depends(get_identity),
) -> list[RunModel]:
    runs = await orchestrator.list_runs(user_id or identity.subject)
    return [RunModel.from_domain(run) for run in runs]


@router.get("/runs/{run_id}", response_model=RunDetail, tags=["runs"])
async def get_run(run_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> RunDetail:
    run = await orchestrator.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
    termination = await orchestrator.get_termination(run_id)
    return RunDetail.from_run(run, termination)


@router.get("/runs/{run_id}/artifacts", response_model=list[ArtifactModel], tags=["runs"])
async def get_run_artifacts(run_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> list[ArtifactModel]:
    try:
        artifacts = await orchestrator.get_run_artifacts(run_id)
    except NotFoundError as exc:
        raise _not_found(exc) from None
    return [ArtifactModel.from_domain(artifact) for artifact in artifacts]


@router.get("/runs/{run_id}/events", response_model=list[ActivityEventModel], tags=["runs"])
async def get_run_events(
    run_id: str,
    limit: int = Query(default=MAX_RUN_EVENTS, ge=1, le=MAX_RUN_EVENTS),
    direction: Literal["forward", "backward"] = Query(default="forward"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[ActivityEventModel]:
    try:
        entries = await orchestrator.list_run_events(run_id, limit=limit, direction=direction)
    except NotFoundError as exc:
        raise _not_found(exc) from None
    return [ActivityEventModel.from_domain(entry) for entry in entries]


@router.get("/artifacts/{artifact_id}", response_model=ArtifactModel, tags=["runs"])
async def get_artifact(artifact_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> ArtifactModel:
    artifact = await orchestrator.get_artifact(artifact_id)
    if artifact is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Artifact not found")
    return ArtifactModel.from_domain(artifact)


@router.get("/task/{task_id}", response_model=TaskDetail, tags=["tasks"])
async def get_task(task_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> TaskDetail:
    task = await orchestrator.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return TaskDetail.from_domain(task)


@router.get("/projects", response_model=list[ProjectModel], tags=["projects"])
async def list_projects(
    user_id: str | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    identity: Identity = Depends(require_submitter),
) -> list[ProjectModel]:
    projects = await orchestrator.list_projects(resolve_user_id(identity, user_id))
    return [ProjectModel.from_domain(project) for project in projects]


@router.get("/libraries", response_model=list[LibraryModel], tags=["libraries"])
async def list_libraries(
    search: str | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[LibraryModel]:
    libraries = await orchestrator.list_libraries(search)
    return [LibraryModel.from_domain(library) for library in libraries]


@router.post("/libraries", response_model=LibraryModel, status_code=status.HTTP_201_CREATED, tags=["libraries"])
async def create_library(request: Request, orchestrator: Orchestrator = Depends(get_orchestrator)) -> LibraryModel:
    raw_payload = await _extract_json_body(request)
    try:
        payload = LibraryCreateRequest(**raw_payload)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.errors()) from exc
    library = await orchestrator.create_library(
        payload.name,
        payload.folder_path,
        description=payload.description,
        auto_scan=payload.auto_scan,
    )
    return LibraryModel.from_domain(library)


@router.post("/libraries/{library_id}/rescan", response_model=LibraryModel, tags=["libraries"])
async def rescan_library(library_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> LibraryModel:
    try:
        library = await orchestrator.rescan_library(library_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Library not found") from None
    return LibraryModel.from_domain(library)


@router.get("/approvals/pending", response_model=list[ApprovalModel], tags=["approvals"])
async def list_pending_approvals(
    user_id: str | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    identity: Identity = Depends(require_reader),
) -> list[ApprovalModel]:
    approvals = await orchestrator.get_pending_approvals(resolve_user_id(identity, user_id))
    return [ApprovalModel.from_domain(approval) for approval in approvals]


@router.post("/approvals/{approval_id}/respond", response_model=ApprovalModel, tags=["approvals"])
async def respond_to_approval(
    approval_id: str,
    request: Request,
    identity: Identity = Depends(require_approver),
    _: None = Depends(rate_limit_approval_response),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ApprovalModel:
    raw_payload = await _extract_json_body(request)
    try:
        payload = ApprovalResponseRequest(**raw_payload)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.errors()) from exc
    try:
        approval = await orchestrator.respond_to_approval(approval_id, payload.approved, payload.notes)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Approval not found") from None
    except InvalidTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from None
    logger.info(
        "approval_responded",
        approval_id=approval_id,
        approved=payload.approved,
        responder=identity.subject,
        roles=list(identity.roles),
    )
    return ApprovalModel.from_domain(approval)


@router.get("/budget", response_model=BudgetResponse, tags=["budget"])
async def get_budget(
    user_id: str | None = None,
    cost_tracker: CostTracker = Depends(get_cost_tracker),
    budget_guard: ResourceBudgetGuard = Depends(get_budget_guard),
    identity: Identity = Depends(get_identity),
) -> BudgetResponse:
    resolved = resolve_user_id(identity, user_id)
    budget_status = await cost_tracker.get_budget_status(resolved)
    return BudgetResponse(
        user_id=resolved,
        status=BudgetStatusModel(**budget_status.to_dict()),
        spend=await cost_tracker.get_usage_report(resolved),
        quotas=await budget_guard.get_usage_report("user", resolved),
    )


@router.get("/metrics/activity", response_model=ActivityMetricsResponse, tags=["metrics"])
async def get_activity_metrics_report(
    user_id: str | None = None,
    days: int = Query(default=7, ge=1),
    identity: Identity = Depends(require_submitter),
    metrics: ActivityMetrics = Depends(get_activity_metrics),
) -> ActivityMetricsResponse:
    resolved = resolve_user_id(identity, user_id)
    snapshot = await metrics.daily(resolved, days)
    return ActivityMetricsResponse(
        user_id=resolved,
        days=[
            DailyActivityModel(date=day.date, activity=day.activity, errors=day.errors, runs=day.runs)
            for day in snapshot
        ],
    )


@router.get("/metrics/summary", response_model=ActivitySummaryResponse, tags=["metrics"])
async def get_activity_summary(
    user_id: str | None = None,
    identity: Identity = Depends(require_submitter),
    metrics: ActivityMetrics = Depends(get_activity_metrics),
) -> ActivitySummaryResponse:
    summary = await metrics.summary(resolve_user_id(identity, user_id))
    payload = summary.to_dict()
    payload["top_events"] = [TopEventModel(**entry) for entry in payload["top_events"]]
    return ActivitySummaryResponse(**payload)


@router.websocket("/ws/activity")
async def activity_socket(
    websocket: WebSocket,
    run_id: str | None = None,
    activity: ActivityStream = Depends(get_activity_stream),
) -> None:
    await websocket.accept()
    outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=1000)

    async def _forward(payload: dict[str, Any]) -> None:
        if run_id is not None and payload.get("run_id") != run_id:
            return
        if outbox.full():
            logger.warning("activity_socket_backpressure", run_id=run_id)
            return
        outbox.put_nowait(payload)

    async def _pump() -> None:
        while True:
            payload = await outbox.get()
            await websocket.send_json(payload)

    activity.subscribe(_forward)
    sender = asyncio.create_task(_pump())
    logger.info("activity_socket_connected", run_id=run_id)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("activity_socket_disconnected", run_id=run_id)
    finally:
        activity.unsubscribe(_forward)
        sender.cancel()
        with suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            await sender
