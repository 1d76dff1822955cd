from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ..orchestration.state import Approval


class ApprovalResponseRequest(BaseModel):
    approved: bool
    notes: str | None = Field(default=None, max_length=2000)


class ApprovalModel(BaseModel):
    approval_id: str
    run_id: str
    task_id: str
    project_id: str
    step_id: str
    user_id: str
    type: str
    description: str
    risk_level: str
    risk_factors: list[str] = Field(default_factory=list)
    trigger: str
    preview: dict[str, Any] = Field(default_factory=dict)
    status: str
    response_notes: str | None = None
    created_at: datetime
    responded_at: datetime | None = None
    expires_at: datetime | None = None

    @classmethod
    def from_domain(cls, approval: Approval) -> "ApprovalModel":
        return cls(
            approval_id=approval.id,
            run_id=approval.run_id,
            task_id=approval.task_id,
            project_id=approval.project_id,
            step_id=approval.step_id,
            user_id=approval.user_id,
            type=approval.type.value,
            description=approval.description,
            risk_level=approval.risk_level.value,
            risk_factors=list(approval.risk_factors),
            trigger=approval.trigger.value,
            preview=approval.preview.model_dump(mode="json", exclude_none=True),
            status=approval.status.value,
            response_notes=approval.response_notes,
            created_at=approval.created_at,
            responded_at=approval.responded_at,
            expires_at=approval.expires_at,
        )


__all__ = ["ApprovalModel", "ApprovalResponseRequest"]
