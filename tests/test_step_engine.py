from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from prometheus_client import REGISTRY

from harness.agents.base import AgentExecutorRegistry, AgentRequest, AgentResult
from harness.agents.contracts import AgentContract, ContractEnforcer, DEFAULT_AGENT_CONTRACTS
from harness.core.config import MemorySettings, WorkflowSettings
from harness.orchestration.engine import StepExecutionEngine
from harness.orchestration.enums import AgentType, ExecutionPath, TerminationReason
from harness.orchestration.outcomes import StepFailure, StepSuccess
from harness.orchestration.state import Step, Task
from harness.services.memory import MemoryContextProvider
from harness.services.workflows import WorkflowAdapter
from tests.helpers.stubs import FakeRedis, StubExecutor

BASE_URL = "http://workflow.test"


def _task() -> Task:
    return Task(id="task-1", project_id="proj-1", user_id="alice", query="Research onboarding")


def _step(agent: AgentType = AgentType.RESEARCHER) -> Step:
    return Step(id="step-1", description="Research: onboarding", agent=agent)


def _engine(
    handler,
    *,
    enabled: bool = True,
    executor: StubExecutor | None = None,
    contracts: ContractEnforcer | None = None,
) -> tuple[StepExecutionEngine, StubExecutor]:
    settings = WorkflowSettings(enabled=enabled, base_url=BASE_URL, poll_interval_seconds=0.0)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    executor = executor or StubExecutor()
    engine = StepExecutionEngine(
        WorkflowAdapter(settings, client=client),
        AgentExecutorRegistry(lambda agent: executor),
        contracts or ContractEnforcer(),
        MemoryContextProvider(FakeRedis(), MemorySettings()),
        settings,
    )
    return engine, executor


def _fallbacks(agent: str, error_type: str) -> float:
    return REGISTRY.get_sample_value(
        "harness_workflow_fallback_total",
        {"agent": agent, "error_type": error_type},
    ) or 0.0


@pytest.mark.asyncio
async def test_workflow_success_skips_direct_executor() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/webhook/agent-researcher"
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={"success": True, "outputs": {"answer": "from workflow"}, "tokens_used": 55, "model_used": "wf"},
        )

    engine, executor = _engine(handler)
    outcome = await engine.execute(_task(), _step(), model="gpt-oss:20b-q4")

    assert isinstance(outcome, StepSuccess)
    assert outcome.execution_path is ExecutionPath.WORKFLOW
    assert outcome.outputs == {"answer": "from workflow"}
    assert outcome.tokens_used == 55
    assert outcome.model_used == "wf"
    assert executor.requests == []
    assert seen[0]["agent"] == "researcher"
    assert seen[0]["model"] == "gpt-oss:20b-q4"
    assert "recent_context" in seen[0]["context"]


@pytest.mark.asyncio
async def test_workflow_http_error_falls_back_once() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        nonlocal calls
        calls += 1
        return httpx.Response(502, text="bad gateway")

    before = _fallbacks("researcher", "http")
    engine, executor = _engine(handler)
    outcome = await engine.execute(_task(), _step(), model="gpt-oss:20b-q4")

    assert isinstance(outcome, StepSuccess)
    assert outcome.execution_path is ExecutionPath.DIRECT
    assert outcome.workflow_error["type"] == "http"
    assert outcome.workflow_error["status_code"] == 502
    assert calls == 1
    assert len(executor.requests) == 1
    assert _fallbacks("researcher", "http") == before + 1


@pytest.mark.asyncio
async def test_workflow_reported_failure_falls_back() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        return httpx.Response(200, json={"success": False, "error": "node crashed"})

    engine, executor = _engine(handler)
    outcome = await engine.execute(_task(), _step())

    assert isinstance(outcome, StepSuccess)
    assert outcome.execution_path is ExecutionPath.DIRECT
    assert outcome.workflow_error["type"] == "execution"
    assert outcome.workflow_error["message"] == "node crashed"
    assert len(executor.requests) == 1


@pytest.mark.asyncio
async def test_workflow_transport_error_falls_back() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    engine, _ = _engine(handler)
    outcome = await engine.execute(_task(), _step())

    assert isinstance(outcome, StepSuccess)
    assert outcome.workflow_error["type"] == "http"


@pytest.mark.asyncio
async def test_disabled_workflow_goes_straight_to_direct() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not be called
        raise AssertionError("workflow engine should not be called")

    engine, executor = _engine(handler, enabled=False)
    outcome = await engine.execute(_task(), _step())

    assert isinstance(outcome, StepSuccess)
    assert outcome.workflow_error is None
    assert len(executor.requests) == 1


@pytest.mark.asyncio
async def test_direct_failure_after_fallback_is_agent_error() -> None:
    engine, _ = _engine(lambda request: httpx.Response(500), executor=StubExecutor(failing=[AgentType.RESEARCHER]))
    outcome = await engine.execute(_task(), _step())

    assert isinstance(outcome, StepFailure)
    assert outcome.reason is TerminationReason.AGENT_ERROR


@pytest.mark.asyncio
async def test_missing_required_artifact_is_validation_error() -> None:
    contracts = dict(DEFAULT_AGENT_CONTRACTS)
    contracts[AgentType.RESEARCHER] = AgentContract(
        agent=AgentType.RESEARCHER,
        action_allowlist=("rag_retrieval",),
        default_action="rag_retrieval",
        required_artifacts=("sources",),
    )
    engine, _ = _engine(lambda request: httpx.Response(500), contracts=ContractEnforcer(contracts))
    outcome = await engine.execute(_task(), _step())

    assert isinstance(outcome, StepFailure)
    assert outcome.reason is TerminationReason.VALIDATION_ERROR
    assert "sources" in outcome.message


@pytest.mark.asyncio
async def test_agent_without_contract_is_rejected_before_execution() -> None:
    contracts = {agent: contract for agent, contract in DEFAULT_AGENT_CONTRACTS.items() if agent is not AgentType.VISION}
    engine, executor = _engine(lambda request: httpx.Response(500), contracts=ContractEnforcer(contracts))
    outcome = await engine.execute(_task(), _step(AgentType.VISION))

    assert isinstance(outcome, StepFailure)
    assert outcome.reason is TerminationReason.VALIDATION_ERROR
    assert executor.requests == []


class HangingExecutor:
    async def execute(self, request: AgentRequest) -> AgentResult:
        await asyncio.sleep(3600)
        raise AssertionError("unreachable")


@pytest.mark.asyncio
async def test_hanging_direct_executor_times_out_as_agent_error() -> None:
    settings = WorkflowSettings(enabled=False, base_url=BASE_URL, direct_timeout_seconds=0.1)
    engine = StepExecutionEngine(
        WorkflowAdapter(settings),
        AgentExecutorRegistry(lambda agent: HangingExecutor()),
        ContractEnforcer(),
        MemoryContextProvider(FakeRedis(), MemorySettings()),
        settings,
    )

    outcome = await asyncio.wait_for(engine.execute(_task(), _step()), timeout=5.0)

    assert isinstance(outcome, StepFailure)
    assert outcome.reason is TerminationReason.AGENT_ERROR
    assert "timed out after 0.1 seconds" in outcome.message
