from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from ..core.errors import InvalidTransition
from .enums import (
    AgentType,
    ApprovalStatus,
    ApprovalTrigger,
    ApprovalType,
    ExecutionPath,
    ModelTier,
    ProjectStatus,
    RiskLevel,
    RunStatus,
    ScanStatus,
    StepStatus,
    TaskStatus,
    TaskType,
    TerminationReason,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex}"


class VersionedModel(BaseModel):
    """Aggregate persisted as a whole document; ``version`` guards concurrent writers."""

    version: int = Field(default=0, ge=0)


STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.IN_PROGRESS}),
    StepStatus.IN_PROGRESS: frozenset({StepStatus.COMPLETED, StepStatus.FAILED}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.FAILED: frozenset(),
}

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PLANNING: frozenset({TaskStatus.EXECUTING, TaskStatus.FAILED}),
    TaskStatus.EXECUTING: frozenset({TaskStatus.APPROVAL_NEEDED, TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.APPROVAL_NEEDED: frozenset({TaskStatus.EXECUTING, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}

RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.CREATED: frozenset({RunStatus.EXECUTING, RunStatus.TERMINATED}),
    RunStatus.EXECUTING: frozenset({RunStatus.WAITING_APPROVAL, RunStatus.TERMINATED}),
    RunStatus.WAITING_APPROVAL: frozenset({RunStatus.EXECUTING, RunStatus.TERMINATED}),
    RunStatus.TERMINATED: frozenset(),
}


def _check_transition(kind: str, current: Any, target: Any, allowed: dict[Any, frozenset[Any]]) -> None:
    if target not in allowed[current]:
        raise InvalidTransition(f"{kind} cannot move from {current.value} to {target.value}")


class StepResultRecord(BaseModel):
    success: bool
    outputs: dict[str, Any] = Field(default_factory=dict)
    artifacts: list[str] = Field(default_factory=list)
    explanation: str | None = None
    tokens_used: int = Field(default=0, ge=0)
    duration_ms: int = Field(default=0, ge=0)
    model_used: str | None = None
    execution_path: ExecutionPath = ExecutionPath.DIRECT
    workflow_error: dict[str, Any] | None = None


class Step(BaseModel):
    id: str = Field(min_length=1)
    description: str
    agent: AgentType
    status: StepStatus = StepStatus.PENDING
    depends_on: list[str] = Field(default_factory=list)
    require_approval: bool = False
    approval_type: ApprovalType | None = None
    risk: RiskLevel | None = None
    result: StepResultRecord | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def advance(self, status: StepStatus) -> None:
        if status is self.status:
            return
        _check_transition(f"Step {self.id}", self.status, status, STEP_TRANSITIONS)
        self.status = status
        now = utcnow()
        if status is StepStatus.IN_PROGRESS:
            self.started_at = now
        else:
            self.completed_at = now

    def record_result(self, result: StepResultRecord) -> None:
        if self.result is not None:
            raise InvalidTransition(f"Step {self.id} already has a result")
        self.result = result


class ModelPreferences(BaseModel):
    prefer_cloud: bool = False
    prefer_local: bool = False
    max_cost_per_request: float | None = Field(default=None, ge=0.0)


class ExecutionPlan(BaseModel):
    estimated_duration: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Artifact(BaseModel):
    id: str
    task_id: str
    step_id: str | None = None
    type: str = "other"
    name: str
    content: str = ""
    format: str = "text"
    created_at: datetime = Field(default_factory=utcnow)


class Task(VersionedModel):
    id: str = Field(default_factory=lambda: new_id("task"))
    project_id: str
    user_id: str
    type: TaskType = TaskType.MIXED
    query: str
    status: TaskStatus = TaskStatus.PLANNING
    todo_list: list[Step] = Field(default_factory=list)
    execution_plan: ExecutionPlan = Field(default_factory=ExecutionPlan)
    current_step: str | None = None
    steps_completed: list[str] = Field(default_factory=list)
    tokens_used: int = Field(default=0, ge=0)
    artifacts: list[Artifact] = Field(default_factory=list)
    model_preferences: ModelPreferences = Field(default_factory=ModelPreferences)
    summary: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    def advance(self, status: TaskStatus) -> None:
        if status is self.status:
            return
        _check_transition(f"Task {self.id}", self.status, status, TASK_TRANSITIONS)
        self.status = status
        self.updated_at = utcnow()
        if status is TaskStatus.COMPLETED:
            self.completed_at = self.updated_at

    def step(self, step_id: str) -> Step | None:
        for candidate in self.todo_list:
            if candidate.id == step_id:
                return candidate
        return None

    def mark_step_completed(self, step_id: str) -> None:
        if step_id not in self.steps_completed:
            self.steps_completed.append(step_id)


class Run(VersionedModel):
    id: str = Field(default_factory=lambda: new_id("run"))
    task_id: str
    project_id: str
    user_id: str
    status: RunStatus = RunStatus.CREATED
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    terminated_at: datetime | None = None
    termination_reason: TerminationReason | None = None
    termination_details: str | None = None
    total_tokens: int = Field(default=0, ge=0)
    total_duration_ms: int = Field(default=0, ge=0)

    @property
    def is_terminated(self) -> bool:
        return self.status is RunStatus.TERMINATED

    def advance(self, status: RunStatus) -> None:
        if status is self.status:
            return
        _check_transition(f"Run {self.id}", self.status, status, RUN_TRANSITIONS)
        self.status = status
        self.updated_at = utcnow()
        if status is RunStatus.EXECUTING and self.started_at is None:
            self.started_at = self.updated_at
        elif status is RunStatus.TERMINATED:
            self.terminated_at = self.updated_at


class ApiCallPreview(BaseModel):
    method: str
    url: str
    description: str = ""


class ApprovalPreview(BaseModel):
    files: list[str] | None = None
    commands: list[str] | None = None
    workflow: dict[str, Any] | None = None
    api_calls: list[ApiCallPreview] | None = None


class Approval(VersionedModel):
    id: str = Field(default_factory=lambda: new_id("approval"))
    run_id: str
    task_id: str
    project_id: str
    step_id: str
    user_id: str
    type: ApprovalType
    description: str
    risk_level: RiskLevel
    risk_factors: list[str] = Field(default_factory=list)
    trigger: ApprovalTrigger = ApprovalTrigger.STATIC
    preview: ApprovalPreview = Field(default_factory=ApprovalPreview)
    status: ApprovalStatus = ApprovalStatus.PENDING
    response_notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    responded_at: datetime | None = None
    expires_at: datetime | None = None

    def is_pending(self, now: datetime | None = None) -> bool:
        if self.status is not ApprovalStatus.PENDING:
            return False
        if self.expires_at is not None:
            return self.expires_at > (now or utcnow())
        return True


class TerminationRecord(BaseModel):
    run_id: str
    task_id: str
    project_id: str
    user_id: str
    reason: TerminationReason
    details: str
    last_step_id: str | None = None
    last_agent: AgentType | None = None
    total_steps_planned: int = Field(ge=0)
    steps_completed: int = Field(ge=0)
    total_tokens: int = Field(default=0, ge=0)
    total_duration_ms: int = Field(default=0, ge=0)
    started_at: datetime
    terminated_at: datetime


class Project(VersionedModel):
    id: str = Field(default_factory=lambda: new_id("proj"))
    name: str
    type: TaskType = TaskType.MIXED
    status: ProjectStatus = ProjectStatus.ACTIVE
    owner_id: str | None = None
    threads: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)


class Library(VersionedModel):
    id: str = Field(default_factory=lambda: f"lib-{uuid4().hex[:10]}")
    name: str = Field(min_length=1)
    folder_path: str = Field(min_length=1)
    description: str | None = None
    document_count: int = 0
    chunk_count: int = 0
    total_size_bytes: int = 0
    last_scanned: datetime = Field(default_factory=utcnow)
    scan_status: ScanStatus = ScanStatus.IDLE
    processed_count: int | None = None
    total_files: int | None = None
    auto_scan: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ModelDecision(BaseModel):
    selected_model: str
    tier: ModelTier
    reasoning: list[str] = Field(default_factory=list)
    cost_estimate: float = 0.0
    fallback_chain: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)


class ExecutionRecord(BaseModel):
    task_id: str
    agent: AgentType
    model_used: str
    success: bool
    tokens_used: int = 0
    duration_ms: int = 0
    timestamp: datetime = Field(default_factory=utcnow)


class ExecutionHistory(VersionedModel):
    records: list[ExecutionRecord] = Field(default_factory=list)


__all__ = [
    "ApiCallPreview",
    "Approval",
    "ApprovalPreview",
    "Artifact",
    "ExecutionHistory",
    "ExecutionPlan",
    "ExecutionRecord",
    "Library",
    "ModelDecision",
    "ModelPreferences",
    "Project",
    "RUN_TRANSITIONS",
    "Run",
    "STEP_TRANSITIONS",
    "Step",
    "StepResultRecord",
    "TASK_TRANSITIONS",
    "Task",
    "TerminationRecord",
    "VersionedModel",
    "new_id",
    "utcnow",
]
