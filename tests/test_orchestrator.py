from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from harness.core.config import BudgetSettings
from harness.core.errors import InvalidTransition, NotFoundError
from harness.orchestration.enums import (
    AgentType,
    ApprovalStatus,
    ApprovalTrigger,
    ExecutionPath,
    RunStatus,
    StepStatus,
    TaskStatus,
    TerminationReason,
)
from harness.orchestration.planner import PlanningContext, PlanResult
from harness.orchestration.state import ModelPreferences, Run, Step, utcnow
from harness.orchestration.store import approval_key, run_key
from tests.helpers.stubs import StubExecutor, build_container, build_settings, failing_workflow

RESEARCH_QUERY = "Research user onboarding"
BUILD_QUERY = "Build a pipeline"

RISKY_OUTPUTS = {
    "answer": "patched the runner",
    "code": "const cp = require('child_process'); fs.unlink(tmp); process.exit(1)",
    "commands": ["npm test"],
}


async def _event_types(container, run_id: str) -> list[str]:
    entries = await container.orchestrator.list_run_events(run_id)
    return [entry.fields["event_type"] for entry in entries]


@pytest.mark.asyncio
async def test_research_run_completes_every_step() -> None:
    executor = StubExecutor()
    container = build_container(executor=executor)
    orchestrator = container.orchestrator

    run = await orchestrator.create_run("alice", RESEARCH_QUERY)
    assert run.status is RunStatus.CREATED

    run = await orchestrator.execute_run(run.id)
    assert run.status is RunStatus.TERMINATED
    assert run.termination_reason is TerminationReason.COMPLETED
    assert executor.agents == [AgentType.RESEARCHER, AgentType.CRITIC]

    task = await orchestrator.get_task(run.task_id)
    assert task is not None
    assert task.status is TaskStatus.COMPLETED
    assert task.steps_completed == ["step-1", "step-2"]
    assert task.tokens_used == 240
    assert all(step.status is StepStatus.COMPLETED for step in task.todo_list)
    assert all(step.result.execution_path is ExecutionPath.DIRECT for step in task.todo_list)

    termination = await orchestrator.get_termination(run.id)
    assert termination is not None
    assert termination.reason is TerminationReason.COMPLETED
    assert termination.steps_completed == 2
    assert termination.total_steps_planned == 2
    assert termination.last_step_id == "step-2"
    assert termination.last_agent is AgentType.CRITIC
    assert termination.total_tokens == 240

    assert await _event_types(container, run.id) == [
        "run_created",
        "run_started",
        "step_started",
        "step_completed",
        "step_started",
        "step_completed",
        "run_terminated",
    ]


@pytest.mark.asyncio
async def test_completed_run_records_memory_and_model_decision() -> None:
    container = build_container()
    orchestrator = container.orchestrator

    run = await orchestrator.create_run("alice", RESEARCH_QUERY)
    await orchestrator.execute_run(run.id)

    summaries = await container.memory.summaries(run.project_id)
    assert len(summaries) == 1
    assert [invocation.agent for invocation in summaries[0].agents_invoked] == ["researcher", "critic"]

    decision = await container.model_selector.get_decision(run.task_id)
    assert decision is not None
    assert decision.selected_model == "gpt-oss:20b-q4"

    recent = await container.memory.recent_messages(run.task_id)
    assert recent[0].role == "user"
    assert [message.agent for message in recent[1:]] == ["researcher", "critic"]


@pytest.mark.asyncio
async def test_default_project_is_reused_per_user() -> None:
    orchestrator = build_container().orchestrator

    first = await orchestrator.create_run("alice", RESEARCH_QUERY)
    second = await orchestrator.create_run("alice", "Research pricing")
    other = await orchestrator.create_run("bob", RESEARCH_QUERY)

    assert first.project_id == second.project_id
    assert other.project_id != first.project_id
    projects = await orchestrator.list_projects("alice")
    assert projects[0].threads == [first.task_id, second.task_id]


@pytest.mark.asyncio
async def test_static_approval_suspends_before_execution() -> None:
    executor = StubExecutor()
    container = build_container(executor=executor)
    orchestrator = container.orchestrator

    run = await orchestrator.create_run("alice", BUILD_QUERY)
    run = await orchestrator.execute_run(run.id)

    assert run.status is RunStatus.WAITING_APPROVAL
    assert executor.requests == []
    task = await orchestrator.get_task(run.task_id)
    assert task.status is TaskStatus.APPROVAL_NEEDED
    assert task.step("step-1").status is StepStatus.IN_PROGRESS

    pending = await orchestrator.get_pending_approvals("alice")
    assert len(pending) == 1
    approval = pending[0]
    assert approval.trigger is ApprovalTrigger.STATIC
    assert approval.step_id == "step-1"
    assert approval.expires_at is not None

    # A second execution attempt while the approval is open changes nothing.
    again = await orchestrator.execute_run(run.id)
    assert again.status is RunStatus.WAITING_APPROVAL
    assert again.version == run.version


@pytest.mark.asyncio
async def test_approving_static_gate_resumes_the_run() -> None:
    executor = StubExecutor()
    container = build_container(executor=executor)
    orchestrator = container.orchestrator

    run = await orchestrator.create_run("alice", BUILD_QUERY)
    await orchestrator.execute_run(run.id)
    (approval,) = await orchestrator.get_pending_approvals("alice")

    decided = await orchestrator.respond_to_approval(approval.id, True, "ship it")
    assert decided.status is ApprovalStatus.APPROVED
    assert decided.response_notes == "ship it"
    await orchestrator.drain()

    run = await orchestrator.get_run(run.id)
    assert run.status is RunStatus.TERMINATED
    assert run.termination_reason is TerminationReason.COMPLETED
    assert executor.agents == [AgentType.CRITIC]

    task = await orchestrator.get_task(run.task_id)
    gated = task.step("step-1")
    assert gated.status is StepStatus.COMPLETED
    assert gated.result.execution_path is ExecutionPath.APPROVAL
    assert task.steps_completed == ["step-1", "step-2"]

    events = await _event_types(container, run.id)
    assert events.count("approval_requested") == 1
    assert events.count("approval_approved") == 1
    assert events.count("run_waiting_approval") == 1
    assert events[-1] == "run_terminated"


@pytest.mark.asyncio
async def test_rejecting_an_approval_terminates_the_run() -> None:
    container = build_container()
    orchestrator = container.orchestrator

    run = await orchestrator.create_run("alice", BUILD_QUERY)
    await orchestrator.execute_run(run.id)
    (approval,) = await orchestrator.get_pending_approvals("alice")

    await orchestrator.respond_to_approval(approval.id, False, "too risky")

    run = await orchestrator.get_run(run.id)
    assert run.status is RunStatus.TERMINATED
    assert run.termination_reason is TerminationReason.APPROVAL_REJECTED
    assert "too risky" in run.termination_details

    task = await orchestrator.get_task(run.task_id)
    assert task.status is TaskStatus.FAILED
    assert task.step("step-1").status is StepStatus.FAILED

    termination = await orchestrator.get_termination(run.id)
    assert termination.last_step_id == "step-1"
    assert termination.last_agent is AgentType.CODER

    with pytest.raises(InvalidTransition):
        await orchestrator.respond_to_approval(approval.id, True)


@pytest.mark.asyncio
async def test_unknown_approval_is_not_found() -> None:
    orchestrator = build_container().orchestrator
    with pytest.raises(NotFoundError):
        await orchestrator.respond_to_approval("approval-missing", True)


@pytest.mark.asyncio
async def test_risky_result_triggers_dynamic_approval() -> None:
    executor = StubExecutor(outputs={AgentType.RESEARCHER: RISKY_OUTPUTS})
    container = build_container(executor=executor)
    orchestrator = container.orchestrator

    run = await orchestrator.create_run("alice", RESEARCH_QUERY)
    run = await orchestrator.execute_run(run.id)
    assert run.status is RunStatus.WAITING_APPROVAL

    task = await orchestrator.get_task(run.task_id)
    step = task.step("step-1")
    assert step.status is StepStatus.COMPLETED
    assert step.result is not None
    assert task.steps_completed == []

    (approval,) = await orchestrator.get_pending_approvals("alice")
    assert approval.trigger is ApprovalTrigger.DYNAMIC
    assert approval.preview.commands == ["npm test"]
    assert any("child_process" in factor for factor in approval.risk_factors)

    await orchestrator.respond_to_approval(approval.id, True)
    await orchestrator.drain()

    run = await orchestrator.get_run(run.id)
    assert run.termination_reason is TerminationReason.COMPLETED
    task = await orchestrator.get_task(run.task_id)
    assert task.steps_completed == ["step-1", "step-2"]
    assert task.step("step-1").result.execution_path is ExecutionPath.DIRECT
    assert executor.agents == [AgentType.RESEARCHER, AgentType.CRITIC]


@pytest.mark.asyncio
async def test_expired_approval_times_out_on_next_execution() -> None:
    container = build_container()
    orchestrator = container.orchestrator

    run = await orchestrator.create_run("alice", BUILD_QUERY)
    await orchestrator.execute_run(run.id)
    (approval,) = await orchestrator.get_pending_approvals("alice")
    await container.store.put(
        approval_key(approval.id),
        approval.model_copy(update={"expires_at": utcnow() - timedelta(minutes=1)}),
    )

    assert await orchestrator.get_pending_approvals("alice") == []
    run = await orchestrator.execute_run(run.id)

    assert run.termination_reason is TerminationReason.APPROVAL_TIMEOUT
    expired = await orchestrator.get_approval(approval.id)
    assert expired.status is ApprovalStatus.REJECTED
    assert expired.response_notes == "Approval expired"
    task = await orchestrator.get_task(run.task_id)
    assert task.status is TaskStatus.FAILED


@pytest.mark.asyncio
async def test_responding_to_expired_approval_is_rejected() -> None:
    container = build_container()
    orchestrator = container.orchestrator

    run = await orchestrator.create_run("alice", BUILD_QUERY)
    await orchestrator.execute_run(run.id)
    (approval,) = await orchestrator.get_pending_approvals("alice")
    await container.store.put(
        approval_key(approval.id),
        approval.model_copy(update={"expires_at": utcnow() - timedelta(seconds=1)}),
    )

    with pytest.raises(InvalidTransition):
        await orchestrator.respond_to_approval(approval.id, True)

    run = await orchestrator.get_run(run.id)
    assert run.termination_reason is TerminationReason.APPROVAL_TIMEOUT


@pytest.mark.asyncio
async def test_expiry_sweep_only_touches_stale_approvals() -> None:
    container = build_container()
    orchestrator = container.orchestrator

    stale = await orchestrator.create_run("alice", BUILD_QUERY)
    fresh = await orchestrator.create_run("alice", "Build a dashboard")
    await orchestrator.execute_run(stale.id)
    await orchestrator.execute_run(fresh.id)

    for approval in await orchestrator.get_pending_approvals("alice"):
        if approval.run_id == stale.id:
            await container.store.put(
                approval_key(approval.id),
                approval.model_copy(update={"expires_at": utcnow() - timedelta(hours=1)}),
            )

    assert await orchestrator.expire_stale_approvals() == 1
    assert (await orchestrator.get_run(stale.id)).termination_reason is TerminationReason.APPROVAL_TIMEOUT
    assert (await orchestrator.get_run(fresh.id)).status is RunStatus.WAITING_APPROVAL
    assert await orchestrator.expire_stale_approvals() == 0


@pytest.mark.asyncio
async def test_agent_failure_fails_task_and_terminates_run() -> None:
    executor = StubExecutor(failing=[AgentType.RESEARCHER])
    container = build_container(executor=executor)
    orchestrator = container.orchestrator

    run = await orchestrator.create_run("alice", RESEARCH_QUERY)
    run = await orchestrator.execute_run(run.id)

    assert run.termination_reason is TerminationReason.AGENT_ERROR
    assert "researcher exploded" in run.termination_details
    task = await orchestrator.get_task(run.task_id)
    assert task.status is TaskStatus.FAILED
    assert task.step("step-1").status is StepStatus.FAILED
    assert task.step("step-2").status is StepStatus.PENDING

    history = await container.model_selector.get_history_summary(run.project_id, AgentType.RESEARCHER)
    assert history.recent_failures == 1
    assert "step_failed" in await _event_types(container, run.id)


@pytest.mark.asyncio
async def test_agent_invocation_budget_stops_the_run() -> None:
    limits = BudgetSettings().run_limits.model_copy(update={"agent_invocations": 1})
    settings = build_settings(budget=BudgetSettings(run_limits=limits))
    executor = StubExecutor()
    container = build_container(settings, executor=executor)
    orchestrator = container.orchestrator

    run = await orchestrator.create_run("alice", RESEARCH_QUERY)
    run = await orchestrator.execute_run(run.id)

    assert run.termination_reason is TerminationReason.BUDGET_EXHAUSTED
    assert executor.agents == [AgentType.RESEARCHER]
    termination = await orchestrator.get_termination(run.id)
    assert termination.last_step_id == "step-2"
    assert termination.steps_completed == 1


@pytest.mark.asyncio
async def test_token_budget_is_checked_after_execution() -> None:
    limits = BudgetSettings().run_limits.model_copy(update={"tokens": 100})
    settings = build_settings(budget=BudgetSettings(run_limits=limits))
    container = build_container(settings, executor=StubExecutor(tokens=150))
    orchestrator = container.orchestrator

    run = await orchestrator.create_run("alice", RESEARCH_QUERY)
    run = await orchestrator.execute_run(run.id)

    assert run.termination_reason is TerminationReason.BUDGET_EXHAUSTED
    assert run.total_tokens == 150
    used = await container.budget_guard.get_used("run", run.id)
    assert used["tokens"] == 150
    assert used["agent_invocations"] == 1


class _BrokenDependencyPlanner:
    async def create_plan(self, query: str, context: PlanningContext) -> PlanResult:
        return PlanResult(
            steps=[
                Step(id="step-1", description=query, agent=AgentType.RESEARCHER),
                Step(id="step-2", description="Review", agent=AgentType.CRITIC, depends_on=["step-9"]),
            ]
        )


@pytest.mark.asyncio
async def test_unresolvable_dependencies_fail_the_task() -> None:
    container = build_container(planner=_BrokenDependencyPlanner())
    orchestrator = container.orchestrator

    run = await orchestrator.create_run("alice", RESEARCH_QUERY)
    run = await orchestrator.execute_run(run.id)

    assert run.termination_reason is TerminationReason.DEPENDENCY_FAILED
    assert "step-2" in run.termination_details
    task = await orchestrator.get_task(run.task_id)
    assert task.steps_completed == ["step-1"]
    assert task.status is TaskStatus.FAILED


@pytest.mark.asyncio
async def test_concurrent_executions_run_each_step_once() -> None:
    executor = StubExecutor()
    container = build_container(executor=executor)
    orchestrator = container.orchestrator

    run = await orchestrator.create_run("alice", RESEARCH_QUERY)
    await asyncio.gather(orchestrator.execute_run(run.id), orchestrator.execute_run(run.id))

    assert executor.agents == [AgentType.RESEARCHER, AgentType.CRITIC]
    run = await orchestrator.get_run(run.id)
    assert run.termination_reason is TerminationReason.COMPLETED


@pytest.mark.asyncio
async def test_terminated_run_is_not_executed_again() -> None:
    executor = StubExecutor()
    container = build_container(executor=executor)
    orchestrator = container.orchestrator

    run = await orchestrator.create_run("alice", RESEARCH_QUERY)
    await orchestrator.execute_run(run.id)
    first = await orchestrator.get_termination(run.id)

    await orchestrator.execute_run(run.id)

    assert len(executor.requests) == 2
    assert await orchestrator.get_termination(run.id) == first
    assert (await _event_types(container, run.id)).count("run_terminated") == 1


@pytest.mark.asyncio
async def test_cloud_preference_routes_to_cloud_model() -> None:
    executor = StubExecutor()
    container = build_container(executor=executor)
    orchestrator = container.orchestrator

    run = await orchestrator.create_run(
        "alice",
        RESEARCH_QUERY,
        preferences=ModelPreferences(prefer_cloud=True),
    )
    await orchestrator.execute_run(run.id)

    assert executor.requests[0].model == "devstral-2:123b-cloud"
    assert executor.requests[1].model == "deepseek-v3.1:671b-cloud"
    status = await container.cost_tracker.get_budget_status("alice")
    assert status.daily_spend == pytest.approx((120 / 1000) * 0.003 + (120 / 1000) * 0.004)


@pytest.mark.asyncio
async def test_missing_run_is_not_found() -> None:
    orchestrator = build_container().orchestrator
    with pytest.raises(NotFoundError):
        await orchestrator.execute_run("run-missing")
    with pytest.raises(NotFoundError):
        await orchestrator.get_run_artifacts("run-missing")


def _approve_on_request(orchestrator, decisions: list):
    async def subscriber(payload: dict) -> None:
        if payload["event_type"] != "approval_requested":
            return
        decided = await orchestrator.respond_to_approval(payload["details"]["approval_id"], True, "auto")
        decisions.append(decided.status)

    return subscriber


@pytest.mark.asyncio
async def test_approval_answered_from_activity_subscriber_resumes_run() -> None:
    executor = StubExecutor()
    container = build_container(executor=executor)
    orchestrator = container.orchestrator
    decisions: list[ApprovalStatus] = []
    container.activity.subscribe(_approve_on_request(orchestrator, decisions))

    run = await orchestrator.create_run("alice", BUILD_QUERY)
    await orchestrator.execute_run(run.id)
    await orchestrator.drain()

    assert decisions == [ApprovalStatus.APPROVED]
    run = await orchestrator.get_run(run.id)
    task = await orchestrator.get_task(run.task_id)
    assert run.status is RunStatus.TERMINATED
    assert run.termination_reason is TerminationReason.COMPLETED
    assert task.status is TaskStatus.COMPLETED
    assert task.steps_completed == ["step-1", "step-2"]
    assert await orchestrator.get_pending_approvals("alice") == []
    assert executor.agents == [AgentType.CRITIC]


@pytest.mark.asyncio
async def test_inline_resume_during_active_execution_is_deferred_not_lost() -> None:
    executor = StubExecutor()
    container = build_container(executor=executor)
    orchestrator = container.orchestrator
    orchestrator.set_scheduler(orchestrator.execute_run)
    decisions: list[ApprovalStatus] = []
    container.activity.subscribe(_approve_on_request(orchestrator, decisions))

    run = await orchestrator.create_run("alice", BUILD_QUERY)
    run = await orchestrator.execute_run(run.id)

    assert decisions == [ApprovalStatus.APPROVED]
    assert run.status is RunStatus.TERMINATED
    assert run.termination_reason is TerminationReason.COMPLETED
    task = await orchestrator.get_task(run.task_id)
    assert task.status is TaskStatus.COMPLETED
    assert executor.agents == [AgentType.CRITIC]


@pytest.mark.asyncio
async def test_approval_is_refused_unless_run_is_waiting() -> None:
    container = build_container()
    orchestrator = container.orchestrator

    run = await orchestrator.create_run("alice", BUILD_QUERY)
    await orchestrator.execute_run(run.id)
    (approval,) = await orchestrator.get_pending_approvals("alice")

    stored = await container.store.load(run_key(run.id), Run)
    stored.status = RunStatus.EXECUTING
    await container.store.save(run_key(run.id), stored)

    with pytest.raises(InvalidTransition):
        await orchestrator.respond_to_approval(approval.id, True)

    still_pending = await orchestrator.get_approval(approval.id)
    assert still_pending.status is ApprovalStatus.PENDING
    task = await orchestrator.get_task(run.task_id)
    assert task.status is TaskStatus.APPROVAL_NEEDED
    assert task.steps_completed == []


@pytest.mark.asyncio
async def test_suspended_run_task_and_approval_agree() -> None:
    container = build_container()
    orchestrator = container.orchestrator

    run = await orchestrator.create_run("alice", BUILD_QUERY)
    run = await orchestrator.execute_run(run.id)
    task = await orchestrator.get_task(run.task_id)
    pending = [approval for approval in await orchestrator.get_pending_approvals() if approval.run_id == run.id]

    assert run.status is RunStatus.WAITING_APPROVAL
    assert task.status is TaskStatus.APPROVAL_NEEDED
    assert len(pending) == 1
    events = await _event_types(container, run.id)
    assert events.index("run_waiting_approval") < events.index("approval_requested")


@pytest.mark.asyncio
async def test_unreachable_workflow_engine_falls_back_for_every_step() -> None:
    executor = StubExecutor()
    container = build_container(executor=executor, workflow_handler=failing_workflow)
    orchestrator = container.orchestrator

    run = await orchestrator.create_run("alice", RESEARCH_QUERY)
    run = await orchestrator.execute_run(run.id)

    task = await orchestrator.get_task(run.task_id)
    assert run.termination_reason is TerminationReason.COMPLETED
    assert task.status is TaskStatus.COMPLETED
    assert len(task.steps_completed) == len(task.todo_list)
    assert executor.agents == [AgentType.RESEARCHER, AgentType.CRITIC]
    for step in task.todo_list:
        assert step.result.execution_path is ExecutionPath.DIRECT
        assert step.result.workflow_error["type"] == "http"
        assert step.result.workflow_error["status_code"] == 503
