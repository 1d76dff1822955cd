from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from .enums import AgentType, ExecutionPath, TerminationReason
from .state import StepResultRecord


@dataclass(frozen=True, slots=True)
class StepSuccess:
    outputs: dict[str, Any]
    execution_path: ExecutionPath
    artifacts: list[str] = field(default_factory=list)
    explanation: str | None = None
    tokens_used: int = 0
    duration_ms: int = 0
    model_used: str | None = None
    workflow_error: dict[str, Any] | None = None

    def to_record(self) -> StepResultRecord:
        return StepResultRecord(
            success=True,
            outputs=dict(self.outputs),
            artifacts=list(self.artifacts),
            explanation=self.explanation,
            tokens_used=self.tokens_used,
            duration_ms=self.duration_ms,
            model_used=self.model_used,
            execution_path=self.execution_path,
            workflow_error=self.workflow_error,
        )


@dataclass(frozen=True, slots=True)
class StepFailure:
    reason: TerminationReason
    message: str
    tokens_used: int = 0
    duration_ms: int = 0


StepOutcome = Union[StepSuccess, StepFailure]


@dataclass(frozen=True, slots=True)
class Completed:
    total_tokens: int
    total_duration_ms: int
    last_step_id: str | None = None
    last_agent: AgentType | None = None
    details: str = "Task completed successfully"


@dataclass(frozen=True, slots=True)
class Failed:
    reason: TerminationReason
    details: str
    total_tokens: int
    total_duration_ms: int
    last_step_id: str | None = None
    last_agent: AgentType | None = None


@dataclass(frozen=True, slots=True)
class Suspended:
    approval_id: str
    step_id: str
    agent: AgentType
    total_tokens: int
    total_duration_ms: int


TaskOutcome = Union[Completed, Failed, Suspended]


__all__ = [
    "Completed",
    "Failed",
    "StepFailure",
    "StepOutcome",
    "StepSuccess",
    "Suspended",
    "TaskOutcome",
]
