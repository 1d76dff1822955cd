from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ..orchestration.activity import ActivityStreamEntry
from ..orchestration.state import Artifact, ModelPreferences, Run, Step, Task, TerminationRecord


class RunCreateRequest(BaseModel):
    query: str = Field(..., min_length=1)
    user_id: str | None = Field(default=None, description="Falls back to the X-User-Id header.")
    project_id: str | None = None
    preferences: ModelPreferences = Field(default_factory=ModelPreferences)


class RunCreatedResponse(BaseModel):
    run_id: str
    task_id: str
    status: str


class TerminationModel(BaseModel):
    reason: str
    details: str
    last_step_id: str | None = None
    last_agent: str | None = None
    total_steps_planned: int
    steps_completed: int
    total_tokens: int
    total_duration_ms: int
    started_at: datetime
    terminated_at: datetime

    @classmethod
    def from_domain(cls, record: TerminationRecord) -> "TerminationModel":
        return cls(
            reason=record.reason.value,
            details=record.details,
            last_step_id=record.last_step_id,
            last_agent=record.last_agent.value if record.last_agent else None,
            total_steps_planned=record.total_steps_planned,
            steps_completed=record.steps_completed,
            total_tokens=record.total_tokens,
            total_duration_ms=record.total_duration_ms,
            started_at=record.started_at,
            terminated_at=record.terminated_at,
        )


class RunModel(BaseModel):
    run_id: str
    task_id: str
    project_id: str
    user_id: str
    status: str
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    terminated_at: datetime | None = None
    termination_reason: str | None = None
    termination_details: str | None = None
    total_tokens: int = 0
    total_duration_ms: int = 0

    @classmethod
    def from_domain(cls, run: Run) -> "RunModel":
        return cls(
            run_id=run.id,
            task_id=run.task_id,
            project_id=run.project_id,
            user_id=run.user_id,
            status=run.status.value,
            created_at=run.created_at,
            updated_at=run.updated_at,
            started_at=run.started_at,
            terminated_at=run.terminated_at,
            termination_reason=run.termination_reason.value if run.termination_reason else None,
            termination_details=run.termination_details,
            total_tokens=run.total_tokens,
            total_duration_ms=run.total_duration_ms,
        )


class RunDetail(RunModel):
    termination: TerminationModel | None = None

    @classmethod
    def from_run(cls, run: Run, termination: TerminationRecord | None) -> "RunDetail":
        base = RunModel.from_domain(run)
        return cls(
            **base.model_dump(),
            termination=TerminationModel.from_domain(termination) if termination else None,
        )


class StepModel(BaseModel):
    id: str
    description: str
    agent: str
    status: str
    depends_on: list[str] = Field(default_factory=list)
    require_approval: bool = False
    result: dict[str, Any] | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_domain(cls, step: Step) -> "StepModel":
        return cls(
            id=step.id,
            description=step.description,
            agent=step.agent.value,
            status=step.status.value,
            depends_on=list(step.depends_on),
            require_approval=step.require_approval,
            result=step.result.model_dump(mode="json") if step.result else None,
            error=step.error,
            started_at=step.started_at,
            completed_at=step.completed_at,
        )


class ArtifactModel(BaseModel):
    id: str
    task_id: str
    step_id: str | None = None
    type: str
    name: str
    content: str = ""
    format: str = "text"
    created_at: datetime

    @classmethod
    def from_domain(cls, artifact: Artifact) -> "ArtifactModel":
        return cls(**artifact.model_dump())


class TaskDetail(BaseModel):
    task_id: str
    project_id: str
    user_id: str
    query: str
    status: str
    todo_list: list[StepModel] = Field(default_factory=list)
    steps_completed: list[str] = Field(default_factory=list)
    current_step: str | None = None
    tokens_used: int = 0
    artifacts: list[ArtifactModel] = Field(default_factory=list)
    estimated_duration: str | None = None
    summary: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_domain(cls, task: Task) -> "TaskDetail":
        return cls(
            task_id=task.id,
            project_id=task.project_id,
            user_id=task.user_id,
            query=task.query,
            status=task.status.value,
            todo_list=[StepModel.from_domain(step) for step in task.todo_list],
            steps_completed=list(task.steps_completed),
            current_step=task.current_step,
            tokens_used=task.tokens_used,
            artifacts=[ArtifactModel.from_domain(artifact) for artifact in task.artifacts],
            estimated_duration=task.execution_plan.estimated_duration,
            summary=task.summary,
            created_at=task.created_at,
            updated_at=task.updated_at,
            completed_at=task.completed_at,
        )


class ActivityEventModel(BaseModel):
    id: str
    event_type: str
    category: str | None = None
    outcome: str | None = None
    severity: str | None = None
    run_id: str | None = None
    task_id: str | None = None
    timestamp: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_domain(cls, entry: ActivityStreamEntry) -> "ActivityEventModel":
        fields = entry.fields
        return cls(
            id=entry.id,
            event_type=fields.get("event_type", "unknown"),
            category=fields.get("event_category"),
            outcome=fields.get("event_outcome"),
            severity=fields.get("event_severity"),
            run_id=fields.get("run_id"),
            task_id=fields.get("task_id"),
            timestamp=fields.get("timestamp"),
            details=dict(entry.details),
        )


__all__ = [
    "ActivityEventModel",
    "ArtifactModel",
    "RunCreateRequest",
    "RunCreatedResponse",
    "RunDetail",
    "RunModel",
    "StepModel",
    "TaskDetail",
    "TerminationModel",
]
