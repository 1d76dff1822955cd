from __future__ import annotations

import asyncio

import httpx
import pytest

from harness.core.config import WorkflowSettings
from harness.core.errors import WorkflowUnavailable
from harness.services.workflows import WorkflowAdapter, WorkflowOptions

BASE_URL = "http://workflow.test"


def _adapter(handler, **overrides) -> WorkflowAdapter:
    settings = WorkflowSettings(
        base_url=BASE_URL,
        poll_interval_seconds=0.0,
        retry_backoff_seconds=0.0,
        **overrides,
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return WorkflowAdapter(settings, client=client)


@pytest.mark.asyncio
async def test_trigger_polls_execution_until_finished() -> None:
    polls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal polls
        if request.method == "POST":
            return httpx.Response(200, json={"executionId": "exec-42"})
        assert request.url.path == "/executions/exec-42"
        polls += 1
        if polls < 3:
            return httpx.Response(200, json={"finished": False, "status": "running"})
        return httpx.Response(200, json={"finished": True, "status": "success", "data": {"outputs": {"answer": 1}}})

    result = await _adapter(handler).trigger_workflow("agent-researcher", {"inputs": "x"})

    assert result.success
    assert result.execution_id == "exec-42"
    assert result.data == {"outputs": {"answer": 1}}
    assert polls == 3


@pytest.mark.asyncio
async def test_execution_error_state_is_reported() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"executionId": "exec-1"})
        return httpx.Response(200, json={"status": "error", "error": {"message": "node failed"}})

    result = await _adapter(handler).trigger_workflow(
        "agent-coder",
        {},
        WorkflowOptions(fallback_to_direct=True),
    )

    assert not result.success
    assert result.error is not None
    assert result.error.error_type == "execution"


@pytest.mark.asyncio
async def test_retries_then_raises_without_fallback() -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        nonlocal attempts
        attempts += 1
        return httpx.Response(500, text="boom")

    adapter = _adapter(handler, default_retries=2)
    with pytest.raises(WorkflowUnavailable) as excinfo:
        await adapter.trigger_workflow("agent-analyst", {})

    assert attempts == 3
    assert excinfo.value.error_type == "http"
    assert excinfo.value.status_code == 500


@pytest.mark.asyncio
async def test_fallback_mode_makes_a_single_attempt() -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        nonlocal attempts
        attempts += 1
        return httpx.Response(500)

    result = await _adapter(handler, default_retries=5).trigger_workflow(
        "agent-analyst",
        {},
        WorkflowOptions(fallback_to_direct=True),
    )

    assert attempts == 1
    assert not result.success


@pytest.mark.asyncio
async def test_slow_workflow_times_out() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        await asyncio.sleep(1.0)
        return httpx.Response(200, json={})

    result = await _adapter(handler).trigger_workflow(
        "agent-researcher",
        {},
        WorkflowOptions(timeout_seconds=0.05, fallback_to_direct=True),
    )

    assert not result.success
    assert result.error.error_type == "timeout"


@pytest.mark.asyncio
async def test_list_workflows_parses_summaries() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/workflows"
        return httpx.Response(
            200,
            json={"data": [{"id": 7, "name": "agent-researcher", "active": True, "tags": ["agents"]}, "junk"]},
        )

    workflows = await _adapter(handler).list_workflows()

    assert len(workflows) == 1
    assert workflows[0].id == "7"
    assert workflows[0].active is True
    assert workflows[0].extra == {"tags": ["agents"]}


@pytest.mark.asyncio
async def test_api_key_is_sent_as_bearer_token() -> None:
    seen: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("Authorization"))
        return httpx.Response(200, json={"success": True})

    await _adapter(handler, api_key="secret").trigger_workflow("agent-critic", {})
    assert seen == ["Bearer secret"]
