from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from ..core.config import ActivitySettings
from ..core.logging import get_logger
from ..orchestration.activity import ActivityEventType, get_event_taxonomy

logger = get_logger(name=__name__)

TimestampFactory = Callable[[], datetime]

TOP_EVENTS_LIMIT = 10


def activity_key(user_id: str, day: str) -> str:
    return f"metrics:activity:user:{user_id}:daily:{day}"


def errors_key(user_id: str, day: str) -> str:
    return f"metrics:errors:user:{user_id}:daily:{day}"


def runs_key(user_id: str, day: str) -> str:
    return f"metrics:runs:user:{user_id}:daily:{day}"


def _day_of(timestamp: str | None, fallback: datetime) -> str:
    if timestamp:
        return timestamp.split("T", maxsplit=1)[0]
    return fallback.date().isoformat()


def _counts(raw: dict[Any, Any]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for key, value in raw.items():
        name = key.decode("utf-8") if isinstance(key, bytes) else str(key)
        try:
            counts[name] = int(float(value))
        except (TypeError, ValueError):
            counts[name] = 0
    return counts


@dataclass(slots=True)
class DailyActivity:
    date: str
    activity: dict[str, int] = field(default_factory=dict)
    errors: dict[str, int] = field(default_factory=dict)
    runs: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class ActivitySummary:
    user_id: str
    date: str
    total_events: int
    total_errors: int
    total_runs: int
    error_rate: float
    top_events: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ActivityMetrics:
    """Per-user daily counters derived from the activity stream.

    Every lifecycle event bumps ``metrics:activity:...`` for its user and day;
    failures also bump ``metrics:errors:...`` and run events bump
    ``metrics:runs:...``. Hashes are keyed by event type and expire after the
    configured retention.
    """

    def __init__(
        self,
        client: Any,
        settings: ActivitySettings,
        *,
        now: TimestampFactory | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._now: TimestampFactory = now or (lambda: datetime.now(timezone.utc))

    @property
    def retention_seconds(self) -> int:
        return self._settings.metrics_retention_days * 24 * 60 * 60

    async def record(self, payload: dict[str, Any]) -> None:
        """Activity subscriber; skips events without a type or user."""
        raw_type = payload.get("event_type")
        user_id = payload.get("user_id")
        if not raw_type or not user_id:
            logger.warning("activity_metrics_event_skipped", event_type=raw_type, user_id=user_id)
            return
        try:
            event_type = ActivityEventType(raw_type)
        except ValueError:
            logger.warning("activity_metrics_unknown_event", event_type=raw_type)
            return

        taxonomy = get_event_taxonomy(event_type)
        day = _day_of(payload.get("timestamp"), self._now())
        keys = [activity_key(user_id, day)]
        if taxonomy.outcome == "failure":
            keys.append(errors_key(user_id, day))
        if taxonomy.category == "run":
            keys.append(runs_key(user_id, day))

        for key in keys:
            await self._client.hincrby(key, event_type.value, 1)
            await self._client.expire(key, self.retention_seconds)

    async def daily(self, user_id: str, days: int = 7) -> list[DailyActivity]:
        """Counters for the last ``days`` days, oldest first."""
        days = max(1, min(days, self._settings.metrics_max_days))
        today = self._now().date()
        snapshot: list[DailyActivity] = []
        for offset in range(days - 1, -1, -1):
            day = (today - timedelta(days=offset)).isoformat()
            snapshot.append(
                DailyActivity(
                    date=day,
                    activity=_counts(await self._client.hgetall(activity_key(user_id, day))),
                    errors=_counts(await self._client.hgetall(errors_key(user_id, day))),
                    runs=_counts(await self._client.hgetall(runs_key(user_id, day))),
                )
            )
        return snapshot

    async def summary(self, user_id: str) -> ActivitySummary:
        today = self._now().date().isoformat()
        activity = _counts(await self._client.hgetall(activity_key(user_id, today)))
        errors = _counts(await self._client.hgetall(errors_key(user_id, today)))
        runs = _counts(await self._client.hgetall(runs_key(user_id, today)))

        total_events = sum(activity.values())
        total_errors = sum(errors.values())
        top_events = []
        for event, count in sorted(activity.items(), key=lambda item: item[1], reverse=True)[:TOP_EVENTS_LIMIT]:
            entry: dict[str, Any] = {"event": event, "count": count}
            try:
                taxonomy = get_event_taxonomy(ActivityEventType(event))
            except ValueError:
                entry["taxonomy"] = None
            else:
                entry["taxonomy"] = {
                    "category": taxonomy.category,
                    "action": taxonomy.action,
                    "outcome": taxonomy.outcome,
                    "severity": taxonomy.severity,
                }
            top_events.append(entry)

        return ActivitySummary(
            user_id=user_id,
            date=today,
            total_events=total_events,
            total_errors=total_errors,
            total_runs=sum(runs.values()),
            error_rate=(total_errors / total_events) * 100 if total_events else 0.0,
            top_events=top_events,
        )


__all__ = [
    "ActivityMetrics",
    "ActivitySummary",
    "DailyActivity",
    "activity_key",
    "errors_key",
    "runs_key",
]
