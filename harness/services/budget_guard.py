from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from ..core.config import BudgetSettings, ResourceLimits
from ..core.logging import get_logger
from ..core.metrics import increment_budget_exhausted, increment_budget_warning
from .alerts import AlertService

logger = get_logger(name=__name__)

BudgetScope = Literal["run", "user", "global"]
ResourceType = Literal[
    "tokens",
    "api_calls",
    "tool_executions",
    "agent_invocations",
    "embeddings",
    "storage_bytes",
    "cost",
]

RESOURCE_TYPES: tuple[ResourceType, ...] = (
    "tokens",
    "api_calls",
    "tool_executions",
    "agent_invocations",
    "embeddings",
    "storage_bytes",
    "cost",
)

GLOBAL_SCOPE_ID = "global"


@dataclass(slots=True)
class BudgetCheck:
    allowed: bool
    remaining: float
    warning: str | None = None


@dataclass(slots=True)
class ScopeCheck:
    allowed: bool
    blocked_by: BudgetScope | None = None
    warning: str | None = None


class ResourceBudgetGuard:
    """Quota counters per run, per user and globally.

    Usage lives in a Redis hash per scope (``budget:{scope}:{id}``) updated with
    HINCRBYFLOAT, so concurrent steps never lose increments. Warnings are sent
    once per resource and scope; the set of warned resources sits next to the
    counters and is claimed with SADD.
    """

    def __init__(self, client: Any, settings: BudgetSettings, *, alerts: AlertService | None = None) -> None:
        self._client = client
        self._settings = settings
        self._alerts = alerts

    @staticmethod
    def _key(scope: BudgetScope, scope_id: str) -> str:
        return f"budget:{scope}:{scope_id}"

    def limits_for(self, scope: BudgetScope) -> ResourceLimits:
        if scope == "run":
            return self._settings.run_limits
        if scope == "user":
            return self._settings.user_limits
        return self._settings.global_limits

    def _limit(self, scope: BudgetScope, resource: ResourceType) -> float:
        return float(getattr(self.limits_for(scope), resource))

    async def get_used(self, scope: BudgetScope, scope_id: str) -> dict[str, float]:
        raw = await self._client.hgetall(self._key(scope, scope_id)) or {}
        used = {resource: 0.0 for resource in RESOURCE_TYPES}
        for field, value in raw.items():
            name = field.decode("utf-8") if isinstance(field, bytes) else str(field)
            if name in used:
                used[name] = float(value)
        return used

    async def _used(self, scope: BudgetScope, scope_id: str, resource: ResourceType) -> float:
        value = await self._client.hget(self._key(scope, scope_id), resource)
        return float(value) if value is not None else 0.0

    async def can_use(
        self,
        scope: BudgetScope,
        scope_id: str,
        resource: ResourceType,
        amount: float = 1,
    ) -> BudgetCheck:
        limit = self._limit(scope, resource)
        used = await self._used(scope, scope_id, resource)
        remaining = limit - used

        if amount > remaining:
            return BudgetCheck(
                allowed=False,
                remaining=remaining,
                warning=f"Budget exhausted: {resource} limit reached",
            )

        usage_ratio = (used + amount) / limit if limit > 0 else 1.0
        if usage_ratio >= self._settings.warning_ratio:
            already_warned = await self._client.sismember(f"{self._key(scope, scope_id)}:warnings", resource)
            if not already_warned:
                return BudgetCheck(
                    allowed=True,
                    remaining=remaining - amount,
                    warning=f"Budget warning: {resource} at {round(usage_ratio * 100)}% of limit",
                )

        return BudgetCheck(allowed=True, remaining=remaining - amount)

    async def record_usage(
        self,
        scope: BudgetScope,
        scope_id: str,
        resource: ResourceType,
        amount: float = 1,
    ) -> float:
        key = self._key(scope, scope_id)
        used = float(await self._client.hincrbyfloat(key, resource, amount))
        if scope in ("run", "user"):
            await self._client.expire(key, self._settings.scope_ttl_seconds)

        limit = self._limit(scope, resource)
        usage_ratio = used / limit if limit > 0 else 1.0
        if usage_ratio >= self._settings.warning_ratio:
            warnings_key = f"{key}:warnings"
            newly_warned = await self._client.sadd(warnings_key, resource)
            if scope in ("run", "user"):
                await self._client.expire(warnings_key, self._settings.scope_ttl_seconds)
            if newly_warned:
                await self._send_warning(scope, scope_id, resource, usage_ratio)
        return used

    async def check_all_scopes(
        self,
        run_id: str,
        user_id: str,
        resource: ResourceType,
        amount: float = 1,
    ) -> ScopeCheck:
        checks: list[tuple[BudgetScope, BudgetCheck]] = []
        for scope, scope_id in (("run", run_id), ("user", user_id), ("global", GLOBAL_SCOPE_ID)):
            check = await self.can_use(scope, scope_id, resource, amount)  # type: ignore[arg-type]
            if not check.allowed:
                increment_budget_exhausted(scope=scope, resource=resource)
                logger.warning(
                    "budget_exhausted",
                    scope=scope,
                    scope_id=scope_id,
                    resource=resource,
                    requested=amount,
                    remaining=check.remaining,
                )
                return ScopeCheck(allowed=False, blocked_by=scope, warning=check.warning)  # type: ignore[arg-type]
            checks.append((scope, check))  # type: ignore[arg-type]

        warnings = [check.warning for _, check in checks if check.warning]
        return ScopeCheck(allowed=True, warning="; ".join(warnings) if warnings else None)

    async def record_usage_all_scopes(
        self,
        run_id: str,
        user_id: str,
        resource: ResourceType,
        amount: float = 1,
    ) -> None:
        await self.record_usage("run", run_id, resource, amount)
        await self.record_usage("user", user_id, resource, amount)
        await self.record_usage("global", GLOBAL_SCOPE_ID, resource, amount)

    async def get_usage_report(self, scope: BudgetScope, scope_id: str) -> dict[str, dict[str, float]]:
        used = await self.get_used(scope, scope_id)
        report: dict[str, dict[str, float]] = {}
        for resource in RESOURCE_TYPES:
            limit = self._limit(scope, resource)
            value = used[resource]
            report[resource] = {
                "used": value,
                "limit": limit,
                "percent": round((value / limit) * 100) if limit > 0 else 0,
            }
        return report

    async def _send_warning(
        self,
        scope: BudgetScope,
        scope_id: str,
        resource: ResourceType,
        usage_ratio: float,
    ) -> None:
        percent = round(usage_ratio * 100)
        increment_budget_warning(source="guard", resource=resource)
        logger.warning("resource_budget_warning", scope=scope, scope_id=scope_id, resource=resource, percent=percent)
        if self._alerts is None:
            return
        await self._alerts.send_alert(
            "warning",
            "budget",
            f"Resource limit warning: {resource}",
            f"{scope}:{scope_id} has reached {percent}% of {resource} budget",
            {"scope": scope, "scope_id": scope_id, "resource": resource, "usage_percent": percent},
        )


__all__ = [
    "BudgetCheck",
    "BudgetScope",
    "RESOURCE_TYPES",
    "ResourceBudgetGuard",
    "ResourceType",
    "ScopeCheck",
]
