from __future__ import annotations

import pytest

from harness.core.config import MemorySettings
from harness.services.memory import AgentInvocation, MemoryContextProvider
from tests.helpers.stubs import FakeRedis


def _memory(redis: FakeRedis | None = None, **settings) -> MemoryContextProvider:
    return MemoryContextProvider(redis or FakeRedis(), MemorySettings(**settings))


@pytest.mark.asyncio
async def test_recent_context_is_empty_by_default() -> None:
    memory = _memory()
    assert await memory.recent_context("task-1") == "No previous context available."


@pytest.mark.asyncio
async def test_recent_messages_are_capped_to_window() -> None:
    redis = FakeRedis()
    memory = _memory(redis, recent_window=3)
    for index in range(5):
        await memory.add_message("task-1", "user", f"message {index}")
    await memory.add_message("task-1", "assistant", "done", agent="researcher")

    messages = await memory.recent_messages("task-1")
    assert [message.content for message in messages] == ["message 3", "message 4", "done"]
    assert redis.expiry["memory:recent:task-1"] == MemorySettings().ttl_seconds

    context = await memory.recent_context("task-1")
    assert context.endswith("[ASSISTANT via researcher]: done")
    assert "[USER]: message 3" in context


@pytest.mark.asyncio
async def test_summaries_render_latest_sessions() -> None:
    memory = _memory(summary_window=2)
    assert await memory.summary_context("proj-1") == "No previous session summaries."

    for index in range(3):
        await memory.create_summary(
            "proj-1",
            f"task-{index}",
            goal=f"goal {index}",
            outcome="completed",
            agents_invoked=[AgentInvocation(agent="researcher", step_id="step-1", tokens=10)],
            raw_results="first finding\n\nsecond finding\nthird\nfourth",
        )

    summaries = await memory.summaries("proj-1")
    assert len(summaries) == 3
    assert summaries[0].key_findings == ["first finding", "second finding", "third"]
    assert summaries[0].agents_invoked[0].tokens == 10

    context = await memory.summary_context("proj-1")
    assert "goal 0" not in context
    assert "Summary: goal 2 - completed" in context
    assert "Agents: researcher" in context
    assert "Key Findings: first finding; second finding" in context


@pytest.mark.asyncio
async def test_summary_falls_back_to_outcome_without_results() -> None:
    memory = _memory()
    summary = await memory.create_summary("proj-1", "task-1", goal="g", outcome="failed", agents_invoked=[])
    assert summary.key_findings == ["failed"]


@pytest.mark.asyncio
async def test_retrieve_relevant_ranks_by_keyword_overlap() -> None:
    memory = _memory(longterm_limit=2)
    await memory.store_memory("proj-1", "Onboarding emails improve activation", source="task:1")
    await memory.store_memory("proj-1", "Billing retries reduce churn", source="task:2")
    await memory.store_memory("proj-1", "Activation dashboards for onboarding funnels", source="task:3")

    relevant = await memory.retrieve_relevant("proj-1", "How does onboarding affect activation?")

    assert [item.source for item in relevant] == ["task:3", "task:1"]
    context = await memory.longterm_context("proj-1", "onboarding")
    assert context.startswith("Relevant long-term memories:\n1. [task:3]")


@pytest.mark.asyncio
async def test_invalid_documents_are_skipped() -> None:
    redis = FakeRedis()
    memory = _memory(redis)
    await redis.rpush("memory:longterm:proj-1", "not json")
    await memory.store_memory("proj-1", "valid finding", source="task:1")

    relevant = await memory.retrieve_relevant("proj-1", "finding")
    assert [item.content for item in relevant] == ["valid finding"]


@pytest.mark.asyncio
async def test_finalize_records_summary_and_findings() -> None:
    memory = _memory()
    await memory.finalize(
        "proj-1",
        "task-1",
        goal="Research onboarding",
        outcome="completed",
        agents_invoked=[AgentInvocation(agent="researcher", step_id="step-1")],
        raw_results="researcher: onboarding works",
    )

    assert len(await memory.summaries("proj-1")) == 1
    assert [item.source for item in await memory.retrieve_relevant("proj-1", "onboarding")] == ["task:task-1"]

    planning = await memory.planning_context("task-1", "proj-1", "onboarding")
    assert "No previous context available." in planning
    assert "Research onboarding - completed" in planning
    assert "[task:task-1] researcher: onboarding works" in planning


@pytest.mark.asyncio
async def test_finalize_skips_findings_when_results_are_blank() -> None:
    memory = _memory()
    await memory.finalize("proj-1", "task-1", goal="g", outcome="failed", agents_invoked=[], raw_results="  ")
    assert await memory.retrieve_relevant("proj-1", "anything") == []
