from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Literal

from ..core.config import ActivitySettings
from ..core.logging import get_logger

logger = get_logger(name=__name__)


class ActivityEventType(str, Enum):
    RUN_CREATED = "run_created"
    RUN_STARTED = "run_started"
    RUN_WAITING_APPROVAL = "run_waiting_approval"
    RUN_TERMINATED = "run_terminated"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_APPROVED = "approval_approved"
    APPROVAL_REJECTED = "approval_rejected"


EventOutcome = Literal["success", "failure", "neutral"]
EventSeverity = Literal["low", "medium", "high"]


@dataclass(frozen=True, slots=True)
class EventTaxonomy:
    category: str
    action: str
    outcome: EventOutcome
    severity: EventSeverity


EVENT_TAXONOMY: dict[ActivityEventType, EventTaxonomy] = {
    ActivityEventType.RUN_CREATED: EventTaxonomy("run", "create", "success", "low"),
    ActivityEventType.RUN_STARTED: EventTaxonomy("run", "start", "neutral", "low"),
    ActivityEventType.RUN_WAITING_APPROVAL: EventTaxonomy("run", "await_approval", "neutral", "low"),
    ActivityEventType.RUN_TERMINATED: EventTaxonomy("run", "terminate", "failure", "high"),
    ActivityEventType.STEP_STARTED: EventTaxonomy("step", "start", "neutral", "low"),
    ActivityEventType.STEP_COMPLETED: EventTaxonomy("step", "complete", "success", "low"),
    ActivityEventType.STEP_FAILED: EventTaxonomy("step", "fail", "failure", "high"),
    ActivityEventType.APPROVAL_REQUESTED: EventTaxonomy("approval", "request", "neutral", "medium"),
    ActivityEventType.APPROVAL_APPROVED: EventTaxonomy("approval", "approve", "success", "low"),
    ActivityEventType.APPROVAL_REJECTED: EventTaxonomy("approval", "reject", "failure", "medium"),
}


def get_event_taxonomy(event_type: ActivityEventType) -> EventTaxonomy:
    return EVENT_TAXONOMY[event_type]


@dataclass(slots=True)
class ActivityEvent:
    type: ActivityEventType
    run_id: str
    task_id: str
    project_id: str
    user_id: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_fields(self) -> dict[str, str]:
        taxonomy = get_event_taxonomy(self.type)
        return {
            "event_type": self.type.value,
            "event_category": taxonomy.category,
            "event_action": taxonomy.action,
            "event_outcome": taxonomy.outcome,
            "event_severity": taxonomy.severity,
            "run_id": self.run_id,
            "task_id": self.task_id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "details": json.dumps(self.details, default=str),
        }


@dataclass(slots=True)
class ActivityStreamEntry:
    id: str
    fields: dict[str, str]
    details: dict[str, Any]

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {key: value for key, value in self.fields.items() if key != "details"}
        payload["id"] = self.id
        payload["details"] = self.details
        return payload


Subscriber = Callable[[dict[str, Any]], Awaitable[None]]


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def _parse_entry(entry_id: Any, raw_fields: dict[Any, Any]) -> ActivityStreamEntry:
    fields = {_text(key): _text(value) for key, value in raw_fields.items()}
    details: dict[str, Any] = {}
    raw_details = fields.get("details")
    if raw_details:
        try:
            parsed = json.loads(raw_details)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            details = parsed
    return ActivityStreamEntry(id=_text(entry_id), fields=fields, details=details)


class ActivityStream:
    """Append-only lifecycle log kept in Redis streams and fanned out to live observers.

    Observers (the WebSocket channel) never influence the state machine; their
    failures are logged and dropped.
    """

    def __init__(self, client: Any, settings: ActivitySettings) -> None:
        self._client = client
        self._settings = settings
        self._subscribers: set[Subscriber] = set()

    def run_stream_key(self, run_id: str) -> str:
        return f"{self._settings.run_stream_prefix}{run_id}"

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.add(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.discard(subscriber)

    async def log(self, event: ActivityEvent) -> None:
        fields = event.to_fields()
        maxlen = self._settings.max_stream_length
        try:
            await self._client.xadd(self._settings.stream_key, fields, maxlen=maxlen, approximate=True)
            await self._client.xadd(self.run_stream_key(event.run_id), fields, maxlen=maxlen, approximate=True)
        except Exception as exc:  # pragma: no cover - stream writes are observational
            logger.warning("activity_stream_write_failed", event_type=event.type.value, error=str(exc))

        taxonomy = get_event_taxonomy(event.type)
        logger.info(
            event.type.value,
            category=taxonomy.category,
            action=taxonomy.action,
            outcome=taxonomy.outcome,
            severity=taxonomy.severity,
            run_id=event.run_id,
            task_id=event.task_id,
        )
        await self._broadcast({**fields, "details": event.details})

    async def emit(
        self,
        event_type: ActivityEventType,
        *,
        run_id: str,
        task_id: str,
        project_id: str,
        user_id: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        await self.log(
            ActivityEvent(
                type=event_type,
                run_id=run_id,
                task_id=task_id,
                project_id=project_id,
                user_id=user_id,
                details=details or {},
            )
        )

    async def list_run_events(
        self,
        run_id: str,
        *,
        limit: int = 500,
        direction: Literal["forward", "backward"] = "forward",
    ) -> list[ActivityStreamEntry]:
        key = self.run_stream_key(run_id)
        if direction == "backward":
            raw = await self._client.xrevrange(key, "+", "-", count=limit)
        else:
            raw = await self._client.xrange(key, "-", "+", count=limit)
        entries = [_parse_entry(entry_id, fields) for entry_id, fields in raw or []]
        if direction == "backward":
            entries.reverse()
        return entries

    async def _broadcast(self, payload: dict[str, Any]) -> None:
        if not self._subscribers:
            return
        results = await asyncio.gather(
            *(subscriber(payload) for subscriber in list(self._subscribers)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning("activity_subscriber_failed", error=str(result))


__all__ = [
    "ActivityEvent",
    "ActivityEventType",
    "ActivityStream",
    "ActivityStreamEntry",
    "EVENT_TAXONOMY",
    "EventTaxonomy",
    "get_event_taxonomy",
]
