from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Literal

from ..core.config import BudgetSettings
from ..core.logging import get_logger
from ..core.metrics import increment_budget_warning, record_cloud_spend
from .alerts import AlertService

logger = get_logger(name=__name__)

TimestampFactory = Callable[[], datetime]
Period = Literal["daily", "monthly"]

MODEL_COSTS: dict[str, float] = {
    "gpt-oss:20b-q4": 0.0,
    "gpt-oss:20b-q5": 0.0,
    "gpt-oss:20b-fp8": 0.0,
    "devstral-2:123b-cloud": 0.003,
    "deepseek-v3.1:671b-cloud": 0.004,
    "qwen3-next:80b-cloud": 0.002,
    "gemini-3-flash-preview-cloud": 0.002,
}


def estimate_cost(model: str, tokens: int) -> float:
    return (tokens / 1000) * MODEL_COSTS.get(model, 0.0)


@dataclass(slots=True)
class UsageRecord:
    user_id: str
    model: str
    tokens: int
    cost: float
    timestamp: datetime


@dataclass(slots=True)
class BudgetStatus:
    daily_spend: float
    monthly_spend: float
    daily_remaining: float
    monthly_remaining: float
    daily_warning: bool
    monthly_warning: bool
    can_use_cloud: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CostTracker:
    """Per-user cloud spend ledger kept in Redis hashes.

    Each user has one hash per day (``cost:{user}:daily:{YYYY-MM-DD}``) and one
    per month (``cost:{user}:monthly:{YYYY-MM}``). Every hash holds one field
    per model plus ``total``. Increments use HINCRBYFLOAT so concurrent
    writers never lose updates. Reaching the limit only ever flips
    ``can_use_cloud``; it never raises.
    """

    def __init__(
        self,
        client: Any,
        settings: BudgetSettings,
        *,
        alerts: AlertService | None = None,
        now: TimestampFactory | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._alerts = alerts
        self._now: TimestampFactory = now or (lambda: datetime.now(timezone.utc))

    def _periods(self) -> tuple[str, str]:
        today = self._now().date().isoformat()
        return today, today[:7]

    @staticmethod
    def _key(user_id: str, period: Period, stamp: str) -> str:
        return f"cost:{user_id}:{period}:{stamp}"

    async def track_usage(self, user_id: str, model: str, tokens_used: int) -> UsageRecord | None:
        cost = estimate_cost(model, tokens_used)
        if cost == 0:
            return None

        today, month = self._periods()
        daily_key = self._key(user_id, "daily", today)
        monthly_key = self._key(user_id, "monthly", month)

        await self._client.hincrbyfloat(daily_key, model, cost)
        await self._client.hincrbyfloat(daily_key, "total", cost)
        await self._client.hincrbyfloat(monthly_key, model, cost)
        await self._client.hincrbyfloat(monthly_key, "total", cost)
        await self._client.expire(daily_key, self._settings.daily_ttl_seconds)
        await self._client.expire(monthly_key, self._settings.monthly_ttl_seconds)
        record_cloud_spend(model=model, cost=cost)

        status = await self.get_budget_status(user_id)
        if await self._claim_alert(user_id, status):
            await self._send_budget_alert(user_id, status)

        return UsageRecord(user_id=user_id, model=model, tokens=tokens_used, cost=cost, timestamp=self._now())

    async def get_budget_status(self, user_id: str) -> BudgetStatus:
        today, month = self._periods()
        daily_spend = await self._get_spend(user_id, "daily", today)
        monthly_spend = await self._get_spend(user_id, "monthly", month)
        settings = self._settings
        return BudgetStatus(
            daily_spend=daily_spend,
            monthly_spend=monthly_spend,
            daily_remaining=settings.daily_limit - daily_spend,
            monthly_remaining=settings.monthly_limit - monthly_spend,
            daily_warning=daily_spend >= settings.daily_warning,
            monthly_warning=monthly_spend >= settings.monthly_warning,
            can_use_cloud=daily_spend < settings.daily_limit and monthly_spend < settings.monthly_limit,
        )

    async def get_usage_report(self, user_id: str) -> dict[str, dict[str, float]]:
        today, month = self._periods()
        daily = self._parse_hash(await self._client.hgetall(self._key(user_id, "daily", today)))
        monthly = self._parse_hash(await self._client.hgetall(self._key(user_id, "monthly", month)))
        by_model = {model: value for model, value in monthly.items() if model != "total"}
        return {"daily": daily, "monthly": monthly, "by_model": by_model}

    async def can_use_model(self, user_id: str, model: str, estimated_tokens: int) -> bool:
        cost = estimate_cost(model, estimated_tokens)
        if cost == 0:
            return True
        status = await self.get_budget_status(user_id)
        return status.daily_remaining >= cost and status.monthly_remaining >= cost

    async def _get_spend(self, user_id: str, period: Period, stamp: str) -> float:
        total = await self._client.hget(self._key(user_id, period, stamp), "total")
        if total is None:
            return 0.0
        return float(total)

    @staticmethod
    def _parse_hash(raw: dict[Any, Any] | None) -> dict[str, float]:
        parsed: dict[str, float] = {}
        for key, value in (raw or {}).items():
            name = key.decode("utf-8") if isinstance(key, bytes) else str(key)
            try:
                parsed[name] = float(value)
            except (TypeError, ValueError):
                parsed[name] = 0.0
        return parsed

    async def _claim_alert(self, user_id: str, status: BudgetStatus) -> bool:
        """Claim each (period, level) alert once; SADD decides which caller sends it."""
        today, month = self._periods()
        settings = self._settings
        claims: list[tuple[str, str, int]] = []
        if status.daily_warning:
            level = "limit" if status.daily_spend >= settings.daily_limit else "warning"
            claims.append((f"cost:{user_id}:alerts:{today}", f"daily:{level}", settings.daily_ttl_seconds))
        if status.monthly_warning:
            level = "limit" if status.monthly_spend >= settings.monthly_limit else "warning"
            claims.append((f"cost:{user_id}:alerts:{month}", f"monthly:{level}", settings.monthly_ttl_seconds))

        claimed = False
        for key, level, ttl in claims:
            if await self._client.sadd(key, level):
                await self._client.expire(key, ttl)
                claimed = True
        return claimed

    async def _send_budget_alert(self, user_id: str, status: BudgetStatus) -> None:
        settings = self._settings
        daily = f"${status.daily_spend:.2f}/${settings.daily_limit:.2f}" if status.daily_warning else "OK"
        monthly = f"${status.monthly_spend:.2f}/${settings.monthly_limit:.2f}" if status.monthly_warning else "OK"
        logger.warning("budget_warning", user_id=user_id, daily=daily, monthly=monthly)
        if status.daily_warning:
            increment_budget_warning(source="ledger", resource="daily_spend")
        if status.monthly_warning:
            increment_budget_warning(source="ledger", resource="monthly_spend")
        if self._alerts is None:
            return
        await self._alerts.send_alert(
            "critical" if not status.can_use_cloud else "warning",
            "budget",
            f"Cloud budget warning for {user_id}",
            f"daily {daily}, monthly {monthly}",
            {"user_id": user_id, **status.to_dict()},
        )


__all__ = ["BudgetStatus", "CostTracker", "MODEL_COSTS", "UsageRecord", "estimate_cost"]
