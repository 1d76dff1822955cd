from __future__ import annotations

import pytest

from harness.orchestration.enums import AgentType, ApprovalType
from harness.orchestration.planner import (
    KeywordPlanner,
    PlanningContext,
    detect_agents,
    estimate_duration,
    extract_topic,
)


def test_detect_agents_defaults_to_research_and_review() -> None:
    assert detect_agents("hello there") == [AgentType.RESEARCHER, AgentType.CRITIC]


def test_detect_agents_matches_whole_words_only() -> None:
    agents = detect_agents("Build a dashboard")
    assert agents == [AgentType.CODER, AgentType.CRITIC]
    assert AgentType.DESIGN not in agents


def test_detect_agents_keeps_critic_once() -> None:
    agents = detect_agents("Design the UI, analyze metrics and review it")
    assert agents == [AgentType.DESIGN, AgentType.ANALYST, AgentType.CRITIC]


def test_topic_is_truncated() -> None:
    assert extract_topic("  short  ") == "short"
    long_topic = extract_topic("a" * 80)
    assert len(long_topic) == 50
    assert long_topic.endswith("...")


@pytest.mark.parametrize(
    ("steps", "expected"),
    [(2, "10 minutes"), (12, "1 hour"), (13, "2 hours")],
)
def test_estimate_duration(steps: int, expected: str) -> None:
    assert estimate_duration(steps) == expected


def test_generated_steps_form_a_chain() -> None:
    planner = KeywordPlanner()
    steps = planner.generate_steps("Build a pipeline", [AgentType.CODER, AgentType.CRITIC])

    assert [step.id for step in steps] == ["step-1", "step-2"]
    assert steps[0].description == "Implement: Build a pipeline"
    assert steps[0].require_approval is True
    assert steps[0].approval_type is ApprovalType.CODE_EXECUTION
    assert steps[0].depends_on == []
    assert steps[1].depends_on == ["step-1"]
    assert steps[1].description == "Review and validate findings"


@pytest.mark.asyncio
async def test_create_plan_builds_execution_plan() -> None:
    planner = KeywordPlanner()
    result = await planner.create_plan(
        "Research user onboarding",
        PlanningContext(project_id="proj-1", user_id="alice"),
    )

    assert [step.agent for step in result.steps] == [AgentType.RESEARCHER, AgentType.CRITIC]
    assert result.steps[0].description == "Research: Research user onboarding"
    assert result.execution_plan.estimated_duration == "10 minutes"
    assert result.execution_plan.created_at is not None
