from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class DailyActivityModel(BaseModel):
    date: str
    activity: dict[str, int] = Field(default_factory=dict)
    errors: dict[str, int] = Field(default_factory=dict)
    runs: dict[str, int] = Field(default_factory=dict)


class ActivityMetricsResponse(BaseModel):
    user_id: str
    days: list[DailyActivityModel]


class TopEventModel(BaseModel):
    event: str
    count: int
    taxonomy: dict[str, Any] | None = None


class ActivitySummaryResponse(BaseModel):
    user_id: str
    date: str
    total_events: int
    total_errors: int
    total_runs: int
    error_rate: float
    top_events: list[TopEventModel] = Field(default_factory=list)


__all__ = ["ActivityMetricsResponse", "ActivitySummaryResponse", "DailyActivityModel", "TopEventModel"]
