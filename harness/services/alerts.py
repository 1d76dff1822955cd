from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal

import httpx

from ..core.config import BudgetSettings
from ..core.logging import get_logger

logger = get_logger(name=__name__)

AlertSeverity = Literal["info", "warning", "critical"]
AlertCategory = Literal["budget", "approval", "run"]


@dataclass(slots=True)
class Alert:
    severity: AlertSeverity
    category: AlertCategory
    title: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict[str, object]:
        return {
            "severity": self.severity,
            "category": self.category,
            "title": self.title,
            "message": self.message,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
        }


Subscriber = Callable[[Alert], Awaitable[None]]


class AlertService:
    """Fans alerts out to in-process subscribers and an optional webhook."""

    def __init__(self, settings: BudgetSettings) -> None:
        self._subscribers: set[Subscriber] = set()
        self._webhook_url = settings.alert_webhook_url
        self._http_timeout = settings.alert_timeout_seconds

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.add(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.discard(subscriber)

    async def send_alert(
        self,
        severity: AlertSeverity,
        category: AlertCategory,
        title: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> Alert:
        alert = Alert(severity=severity, category=category, title=title, message=message, metadata=metadata or {})
        await self.publish(alert)
        return alert

    async def publish(self, alert: Alert) -> None:
        payload = alert.to_payload()
        logger.info("alert_raised", severity=alert.severity, category=alert.category, title=alert.title)
        tasks: list[Awaitable[object]] = []

        for subscriber in list(self._subscribers):
            tasks.append(self._safe_invoke(subscriber, alert))

        if self._webhook_url:
            tasks.append(self._post_webhook(payload))

        if not tasks:
            return

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("alert_delivery_error", error=str(result))

    async def _safe_invoke(self, subscriber: Subscriber, alert: Alert) -> None:
        try:
            await subscriber(alert)
        except Exception as exc:  # pragma: no cover - subscriber failures are isolated
            logger.warning("alert_subscriber_failed", subscriber=subscriber.__qualname__, error=str(exc))

    async def _post_webhook(self, payload: dict[str, object]) -> None:
        assert self._webhook_url is not None
        try:
            async with httpx.AsyncClient(timeout=self._http_timeout) as client:
                response = await client.post(
                    self._webhook_url,
                    content=json.dumps({"alert": payload}),
                    headers={"Content-Type": "application/json"},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("alert_webhook_failed", error=str(exc))


__all__ = ["Alert", "AlertService"]
