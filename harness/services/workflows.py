from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

from ..core.config import WorkflowSettings
from ..core.errors import WorkflowUnavailable
from ..core.logging import get_logger

logger = get_logger(name=__name__)

ExecutionState = Literal["running", "success", "error"]


@dataclass(slots=True)
class WorkflowOptions:
    timeout_seconds: float | None = None
    retries: int | None = None
    fallback_to_direct: bool = False
    poll_interval_seconds: float | None = None


@dataclass(slots=True)
class WorkflowResult:
    success: bool
    duration_ms: int
    data: Any = None
    error: WorkflowUnavailable | None = None
    execution_id: str | None = None


@dataclass(slots=True)
class ExecutionStatus:
    status: ExecutionState
    data: Any = None
    error: WorkflowUnavailable | None = None


@dataclass(slots=True)
class WorkflowSummary:
    id: str
    name: str
    active: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


class WorkflowAdapter:
    """Client for the external workflow engine (webhook trigger plus execution polling)."""

    def __init__(self, settings: WorkflowSettings, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._owns_client = client is None
        headers = {"Content-Type": "application/json"}
        if settings.api_key:
            headers["Authorization"] = f"Bearer {settings.api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=settings.base_url.rstrip("/"),
            timeout=httpx.Timeout(settings.timeout_seconds),
            headers=headers,
        )
        if client is not None and settings.api_key:
            self._client.headers.setdefault("Authorization", f"Bearer {settings.api_key}")

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def trigger_workflow(
        self,
        workflow_name: str,
        data: dict[str, Any],
        options: WorkflowOptions | None = None,
    ) -> WorkflowResult:
        """Run ``workflow_name`` to completion.

        With ``fallback_to_direct`` the call never raises: it makes a single
        attempt and reports failure in the result. Otherwise it retries with
        exponential backoff and raises ``WorkflowUnavailable`` when exhausted.
        """
        options = options or WorkflowOptions()
        started = time.perf_counter()
        timeout = options.timeout_seconds or self._settings.timeout_seconds
        poll_interval = (
            options.poll_interval_seconds
            if options.poll_interval_seconds is not None
            else self._settings.poll_interval_seconds
        )
        if options.retries is not None:
            max_retries = options.retries
        else:
            max_retries = 0 if options.fallback_to_direct else self._settings.default_retries

        for attempt in range(max_retries + 1):
            try:
                payload = await self._with_timeout(self._execute_workflow(workflow_name, data), timeout)
                execution_id = _extract_execution_id(payload)
                if execution_id is not None:
                    remaining = max(timeout - (time.perf_counter() - started), 0.0)
                    payload = await self._poll_execution(execution_id, remaining, poll_interval)
                return WorkflowResult(
                    success=True,
                    data=payload,
                    execution_id=execution_id,
                    duration_ms=_elapsed_ms(started),
                )
            except Exception as exc:  # noqa: BLE001 - every failure is classified below
                error = _normalize_error(exc)
                if attempt == max_retries:
                    logger.warning(
                        "workflow_failed",
                        workflow=workflow_name,
                        attempts=attempt + 1,
                        error_type=error.error_type,
                        error=error.message,
                    )
                    if options.fallback_to_direct:
                        return WorkflowResult(success=False, error=error, duration_ms=_elapsed_ms(started))
                    raise error from exc

                backoff = self._settings.retry_backoff_seconds * (2**attempt)
                logger.info("workflow_retry", workflow=workflow_name, attempt=attempt + 1, backoff_seconds=backoff)
                await asyncio.sleep(backoff)

        return WorkflowResult(  # pragma: no cover - loop always returns or raises
            success=False,
            error=WorkflowUnavailable("unknown", "Unknown error"),
            duration_ms=_elapsed_ms(started),
        )

    async def get_execution_status(self, execution_id: str) -> ExecutionStatus:
        response = await self._client.get(f"/executions/{execution_id}")
        if not response.is_success:
            raise WorkflowUnavailable(
                "http",
                f"Failed to get execution status: {response.status_code}",
                status_code=response.status_code,
            )

        result = response.json()
        if not isinstance(result, dict):
            return ExecutionStatus(status="success", data=result)
        if result.get("status") == "error" or result.get("error"):
            return ExecutionStatus(
                status="error",
                error=WorkflowUnavailable("execution", "Execution reported error state", details=result.get("error")),
            )
        if not result.get("finished") and result.get("status") != "success":
            return ExecutionStatus(status="running")
        if result.get("stoppedAt"):
            return ExecutionStatus(
                status="error",
                error=WorkflowUnavailable("execution", "Execution stopped", details=result),
            )
        return ExecutionStatus(status="success", data=result.get("data"))

    async def list_workflows(self) -> list[WorkflowSummary]:
        response = await self._client.get("/workflows")
        if not response.is_success:
            raise WorkflowUnavailable(
                "http",
                f"Failed to list workflows: {response.status_code}",
                status_code=response.status_code,
            )
        items = response.json().get("data", [])
        return [
            WorkflowSummary(
                id=str(item.get("id", "")),
                name=str(item.get("name", "")),
                active=bool(item.get("active", False)),
                extra={key: value for key, value in item.items() if key not in {"id", "name", "active"}},
            )
            for item in items
            if isinstance(item, dict)
        ]

    async def _execute_workflow(self, workflow_name: str, data: dict[str, Any]) -> Any:
        response = await self._client.post(f"/webhook/{workflow_name}", json=data)
        if not response.is_success:
            raise WorkflowUnavailable(
                "http",
                f"Workflow failed: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        return response.json()

    async def _poll_execution(self, execution_id: str, timeout: float, poll_interval: float) -> Any:
        deadline = time.perf_counter() + timeout
        while time.perf_counter() < deadline:
            status = await self.get_execution_status(execution_id)
            if status.status == "success":
                return status.data
            if status.status == "error":
                raise status.error or WorkflowUnavailable("execution", "Execution failed without details")
            await asyncio.sleep(poll_interval)
        raise WorkflowUnavailable("timeout", f"Workflow timeout after {timeout:.1f}s")

    @staticmethod
    async def _with_timeout(awaitable: Any, timeout: float) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise WorkflowUnavailable("timeout", f"Workflow timeout after {timeout:.1f}s") from exc


def _extract_execution_id(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in ("executionId", "execution_id", "id"):
        value = payload.get(key)
        if value:
            return str(value)
    return None


def _normalize_error(exc: Exception) -> WorkflowUnavailable:
    if isinstance(exc, WorkflowUnavailable):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return WorkflowUnavailable("timeout", str(exc) or "Workflow request timed out")
    if isinstance(exc, httpx.HTTPError):
        return WorkflowUnavailable("http", str(exc) or exc.__class__.__name__)
    return WorkflowUnavailable("unknown", str(exc) or exc.__class__.__name__)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


__all__ = [
    "ExecutionStatus",
    "WorkflowAdapter",
    "WorkflowOptions",
    "WorkflowResult",
    "WorkflowSummary",
]
