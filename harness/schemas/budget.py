from __future__ import annotations

from pydantic import BaseModel, Field


class BudgetStatusModel(BaseModel):
    daily_spend: float
    monthly_spend: float
    daily_remaining: float
    monthly_remaining: float
    daily_warning: bool
    monthly_warning: bool
    can_use_cloud: bool


class BudgetResponse(BaseModel):
    user_id: str
    status: BudgetStatusModel
    spend: dict[str, dict[str, float]] = Field(default_factory=dict)
    quotas: dict[str, dict[str, float]] = Field(default_factory=dict)


__all__ = ["BudgetResponse", "BudgetStatusModel"]
