from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Protocol

from ..core.logging import get_logger
from .enums import AgentType, ApprovalType, RiskLevel
from .state import ExecutionPlan, Step, utcnow

logger = get_logger(name=__name__)

MINUTES_PER_STEP = 5
TOPIC_LIMIT = 50

AGENT_KEYWORDS: dict[AgentType, tuple[str, ...]] = {
    AgentType.ORCHESTRATOR: (),
    AgentType.RESEARCHER: ("research", "find", "search", "look up", "investigate", "explore", "learn about"),
    AgentType.CODER: ("code", "implement", "build", "create", "develop", "program", "write code", "fix bug"),
    AgentType.DESIGN: ("design", "architecture", "diagram", "ui", "ux", "layout", "wireframe", "mockup"),
    AgentType.ANALYST: ("analyze", "data", "statistics", "metrics", "report", "visualize", "chart", "graph"),
    AgentType.CRITIC: ("review", "verify", "check", "validate", "test", "security", "quality"),
    AgentType.SKEPTIC: ("challenge", "question", "alternative", "risk", "what if", "devil's advocate"),
    AgentType.RAG: ("document", "retrieve", "find in", "search documents"),
    AgentType.LIBRARIAN: ("ingest", "index", "store", "library"),
    AgentType.VISION: ("image", "screenshot", "visual", "ocr", "diagram"),
    AgentType.UPDATE: ("update", "upgrade", "version", "dependency"),
    AgentType.TOOLSMITH: ("tool", "wrapper", "integration"),
}

# Whole-word matching keeps "ui" from firing on "build".
_KEYWORD_PATTERNS: dict[AgentType, re.Pattern[str] | None] = {
    agent: re.compile(r"\b(?:" + "|".join(re.escape(word) for word in words) + r")\b") if words else None
    for agent, words in AGENT_KEYWORDS.items()
}


@dataclass(slots=True)
class PlanningContext:
    project_id: str
    user_id: str
    context: str = ""


@dataclass(slots=True)
class PlanResult:
    steps: list[Step]
    execution_plan: ExecutionPlan = field(default_factory=ExecutionPlan)


class Planner(Protocol):
    async def create_plan(self, query: str, context: PlanningContext) -> PlanResult:
        ...


def detect_agents(query: str) -> list[AgentType]:
    lowered = query.lower()
    detected = [
        agent
        for agent, pattern in _KEYWORD_PATTERNS.items()
        if pattern is not None and pattern.search(lowered)
    ]
    if not detected:
        detected.append(AgentType.RESEARCHER)
    if AgentType.CRITIC not in detected:
        detected.append(AgentType.CRITIC)
    return detected


def extract_topic(query: str) -> str:
    topic = query.strip()
    if len(topic) > TOPIC_LIMIT:
        return topic[:47] + "..."
    return topic


def estimate_duration(step_count: int) -> str:
    minutes = step_count * MINUTES_PER_STEP
    if minutes < 60:
        return f"{minutes} minutes"
    hours = math.ceil(minutes / 60)
    return f"{hours} hour{'s' if hours > 1 else ''}"


class KeywordPlanner:
    """Turns a query into an ordered, linearly dependent list of agent steps."""

    async def create_plan(self, query: str, context: PlanningContext) -> PlanResult:
        agents = detect_agents(query)
        steps = self.generate_steps(query, agents)
        now = utcnow()
        plan = ExecutionPlan(estimated_duration=estimate_duration(len(steps)), created_at=now, updated_at=now)
        logger.info(
            "plan_created",
            project_id=context.project_id,
            agents=[agent.value for agent in agents],
            steps=len(steps),
        )
        return PlanResult(steps=steps, execution_plan=plan)

    def generate_steps(self, query: str, agents: list[AgentType]) -> list[Step]:
        topic = extract_topic(query)
        steps: list[Step] = []

        def add(description: str, agent: AgentType, **extra: object) -> None:
            depends_on = [steps[-1].id] if steps else []
            steps.append(
                Step(
                    id=f"step-{len(steps) + 1}",
                    description=description,
                    agent=agent,
                    depends_on=depends_on,
                    **extra,  # type: ignore[arg-type]
                )
            )

        if AgentType.RESEARCHER in agents:
            add(f"Research: {topic}", AgentType.RESEARCHER)
        if AgentType.DESIGN in agents:
            add(f"Design architecture for: {topic}", AgentType.DESIGN)
        if AgentType.CODER in agents:
            add(
                f"Implement: {topic}",
                AgentType.CODER,
                require_approval=True,
                approval_type=ApprovalType.CODE_EXECUTION,
                risk=RiskLevel.MEDIUM,
            )
        if AgentType.ANALYST in agents:
            add(f"Analyze: {topic}", AgentType.ANALYST)
        if AgentType.SKEPTIC in agents:
            add(f"Challenge assumptions for: {topic}", AgentType.SKEPTIC)
        if AgentType.CRITIC in agents:
            add("Review and validate findings", AgentType.CRITIC)
        return steps


__all__ = [
    "AGENT_KEYWORDS",
    "KeywordPlanner",
    "PlanResult",
    "Planner",
    "PlanningContext",
    "detect_agents",
    "estimate_duration",
    "extract_topic",
]
