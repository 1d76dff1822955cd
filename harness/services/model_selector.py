from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from ..core.config import SelectorSettings
from ..core.errors import StaleWriteError
from ..core.logging import get_logger
from ..core.metrics import record_model_decision
from ..orchestration.enums import AgentType, ModelTier
from ..orchestration.state import ExecutionHistory, ExecutionRecord, ModelDecision, Task
from ..orchestration.store import StateStore, history_key, model_decision_key
from .budget_guard import ResourceBudgetGuard
from .cost_tracker import CostTracker

logger = get_logger(name=__name__)

TimestampFactory = Callable[[], datetime]


@dataclass(frozen=True, slots=True)
class ModelConfig:
    id: str
    tier: ModelTier
    context_size: int
    memory_required: str
    cost_per_1k_tokens: float
    capabilities: tuple[str, ...]
    quantization: str | None = None
    gpu_layers: int | None = None


MODEL_CONFIGS: dict[str, ModelConfig] = {
    "gpt-oss:20b-q4": ModelConfig(
        id="gpt-oss:20b-q4",
        tier=ModelTier.TIER1_FAST,
        quantization="Q4_K_M",
        gpu_layers=40,
        context_size=8192,
        memory_required="4GB",
        cost_per_1k_tokens=0.0,
        capabilities=("text", "code", "reasoning"),
    ),
    "gpt-oss:20b-q5": ModelConfig(
        id="gpt-oss:20b-q5",
        tier=ModelTier.TIER2_BALANCED,
        quantization="Q5_K_M",
        gpu_layers=40,
        context_size=8192,
        memory_required="5GB",
        cost_per_1k_tokens=0.0,
        capabilities=("text", "code", "reasoning"),
    ),
    "gpt-oss:20b-fp8": ModelConfig(
        id="gpt-oss:20b-fp8",
        tier=ModelTier.TIER3_QUALITY,
        quantization="FP8",
        gpu_layers=-1,
        context_size=16384,
        memory_required="22GB",
        cost_per_1k_tokens=0.0,
        capabilities=("text", "code", "reasoning", "complex"),
    ),
    "devstral-2:123b-cloud": ModelConfig(
        id="devstral-2:123b-cloud",
        tier=ModelTier.TIER4_CLOUD,
        context_size=32768,
        memory_required="0",
        cost_per_1k_tokens=0.003,
        capabilities=("text", "code", "reasoning", "complex", "tool_calling"),
    ),
    "deepseek-v3.1:671b-cloud": ModelConfig(
        id="deepseek-v3.1:671b-cloud",
        tier=ModelTier.TIER4_CLOUD,
        context_size=65536,
        memory_required="0",
        cost_per_1k_tokens=0.004,
        capabilities=("text", "code", "reasoning", "complex", "analysis"),
    ),
    "gemini-3-flash-preview-cloud": ModelConfig(
        id="gemini-3-flash-preview-cloud",
        tier=ModelTier.TIER4_CLOUD,
        context_size=1_000_000,
        memory_required="0",
        cost_per_1k_tokens=0.002,
        capabilities=("text", "code", "vision", "reasoning"),
    ),
}

FAST_MODEL = "gpt-oss:20b-q4"
BALANCED_MODEL = "gpt-oss:20b-q5"
QUALITY_MODEL = "gpt-oss:20b-fp8"
DEFAULT_CLOUD_MODEL = "devstral-2:123b-cloud"

CLOUD_MODELS_BY_AGENT: dict[AgentType, str] = {
    AgentType.CODER: "devstral-2:123b-cloud",
    AgentType.CRITIC: "deepseek-v3.1:671b-cloud",
    AgentType.DESIGN: "gemini-3-flash-preview-cloud",
    AgentType.VISION: "gemini-3-flash-preview-cloud",
}

FALLBACK_CHAINS: dict[ModelTier, tuple[str, ...]] = {
    ModelTier.TIER4_CLOUD: (QUALITY_MODEL, BALANCED_MODEL, FAST_MODEL),
    ModelTier.TIER3_QUALITY: (BALANCED_MODEL, FAST_MODEL),
    ModelTier.TIER2_BALANCED: (FAST_MODEL,),
    ModelTier.TIER1_FAST: (),
}

_CODE_PATTERN = re.compile(r"\b(implement|code|function|class|debug|fix)\b", re.IGNORECASE)
_REASONING_PATTERN = re.compile(r"\b(analyze|compare|evaluate|design|architect)\b", re.IGNORECASE)


@dataclass(slots=True)
class ModelSelectionContext:
    user_id: str
    project_id: str | None = None
    prefer_cloud: bool = False
    prefer_local: bool = False
    max_cost_per_request: float | None = None


@dataclass(slots=True)
class ComplexityAssessment:
    score: int
    factors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class HistorySummary:
    recent_failures: int = 0
    total_tasks: int = 0
    success_rate: float = 1.0


@dataclass(slots=True)
class Affordability:
    can_afford: bool
    remaining: float


def assess_complexity(task: Task) -> ComplexityAssessment:
    factors: list[str] = []
    score = 3

    if len(task.query) > 500:
        score += 2
        factors.append("long_query")
    if _CODE_PATTERN.search(task.query):
        score += 1
        factors.append("code_related")
    if _REASONING_PATTERN.search(task.query):
        score += 2
        factors.append("complex_reasoning")
    if len(task.todo_list) > 3:
        score += 1
        factors.append("multi_step")

    return ComplexityAssessment(score=min(score, 10), factors=factors)


def cloud_model_for(agent: AgentType) -> str:
    return CLOUD_MODELS_BY_AGENT.get(agent, DEFAULT_CLOUD_MODEL)


def build_fallback_chain(model: str) -> list[str]:
    config = MODEL_CONFIGS.get(model)
    if config is None:
        return []
    return list(FALLBACK_CHAINS[config.tier])


class ModelSelector:
    """Chooses an execution tier per step and records why.

    The pipeline only escalates, except for two explicit downgrades: a
    ``prefer_local`` preference (never applied to failure-forced cloud) and an
    unaffordable cloud selection.
    """

    def __init__(
        self,
        store: StateStore,
        cost_tracker: CostTracker,
        settings: SelectorSettings,
        *,
        budget_guard: ResourceBudgetGuard | None = None,
        now: TimestampFactory | None = None,
    ) -> None:
        self._store = store
        self._cost_tracker = cost_tracker
        self._budget_guard = budget_guard
        self._settings = settings
        self._now: TimestampFactory = now or (lambda: datetime.now(timezone.utc))

    async def select_model(
        self,
        agent: AgentType,
        task: Task,
        context: ModelSelectionContext,
    ) -> ModelDecision:
        reasoning: list[str] = ["Starting with local quantized model"]
        selected = FAST_MODEL
        tier = ModelTier.TIER1_FAST

        complexity = assess_complexity(task)
        if complexity.score > self._settings.complexity_threshold:
            selected, tier = QUALITY_MODEL, ModelTier.TIER3_QUALITY
            reasoning.append(f"High complexity ({complexity.score}/10) requires higher quality model")

        history = await self.get_history_summary(task.project_id, agent)
        failure_forced = history.recent_failures > self._settings.failure_threshold
        if failure_forced:
            selected, tier = cloud_model_for(agent), ModelTier.TIER4_CLOUD
            reasoning.append(f"{history.recent_failures} recent failures, upgrading to cloud model")

        if context.prefer_cloud:
            selected, tier = cloud_model_for(agent), ModelTier.TIER4_CLOUD
            reasoning.append("User preference: cloud models")
        elif context.prefer_local and tier is ModelTier.TIER4_CLOUD:
            if failure_forced:
                reasoning.append("User preference for local models ignored after repeated failures")
            else:
                selected, tier = QUALITY_MODEL, ModelTier.TIER3_QUALITY
                reasoning.append("User preference: local models")

        if tier is ModelTier.TIER4_CLOUD:
            budget = await self.check_budget(context.user_id, selected, context.max_cost_per_request)
            if not budget.can_afford:
                selected, tier = QUALITY_MODEL, ModelTier.TIER3_QUALITY
                reasoning.append(f"Budget limit reached ({budget.remaining:.2f} remaining); using local model")

        config = MODEL_CONFIGS.get(selected)
        decision = ModelDecision(
            selected_model=selected,
            tier=tier,
            reasoning=reasoning,
            cost_estimate=config.cost_per_1k_tokens if config is not None else 0.0,
            fallback_chain=build_fallback_chain(selected),
            timestamp=self._now(),
        )
        await self._store.put(model_decision_key(task.id), decision)
        record_model_decision(tier=tier.value)
        logger.info(
            "model_selected",
            task_id=task.id,
            agent=agent.value,
            model=selected,
            tier=tier.value,
            complexity=complexity.score,
            recent_failures=history.recent_failures,
        )
        return decision

    async def get_decision(self, task_id: str) -> ModelDecision | None:
        return await self._store.load(model_decision_key(task_id), ModelDecision)

    async def get_history_summary(self, project_id: str, agent: AgentType) -> HistorySummary:
        history = await self._store.load(history_key(project_id, agent.value), ExecutionHistory)
        if history is None or not history.records:
            return HistorySummary()

        cutoff = self._now() - timedelta(days=self._settings.history_lookback_days)
        recent = [record for record in history.records if record.timestamp > cutoff]
        failures = sum(1 for record in recent if not record.success)
        success_rate = (len(recent) - failures) / len(recent) if recent else 1.0
        return HistorySummary(recent_failures=failures, total_tasks=len(recent), success_rate=success_rate)

    async def record_execution(
        self,
        project_id: str,
        agent: AgentType,
        *,
        task_id: str,
        model_used: str,
        success: bool,
        tokens_used: int = 0,
        duration_ms: int = 0,
    ) -> None:
        key = history_key(project_id, agent.value)
        record = ExecutionRecord(
            task_id=task_id,
            agent=agent,
            model_used=model_used,
            success=success,
            tokens_used=tokens_used,
            duration_ms=duration_ms,
            timestamp=self._now(),
        )
        for _ in range(3):
            history = await self._store.load(key, ExecutionHistory) or ExecutionHistory()
            history.records = [*history.records, record][-self._settings.history_size :]
            try:
                await self._store.save(key, history)
                return
            except StaleWriteError:
                continue
        logger.warning("execution_history_conflict", project_id=project_id, agent=agent.value)

    async def check_budget(
        self,
        user_id: str,
        model: str,
        max_cost_per_request: float | None = None,
    ) -> Affordability:
        status = await self._cost_tracker.get_budget_status(user_id)
        remaining = max(0.0, min(status.daily_remaining, status.monthly_remaining))
        if not status.can_use_cloud:
            return Affordability(can_afford=False, remaining=0.0)

        estimated_tokens = self._settings.estimated_tokens
        if not await self._cost_tracker.can_use_model(user_id, model, estimated_tokens):
            return Affordability(can_afford=False, remaining=remaining)

        estimated_cost = (estimated_tokens / 1000) * self._settings.average_cloud_cost_per_1k
        if max_cost_per_request is not None and estimated_cost > max_cost_per_request:
            return Affordability(can_afford=False, remaining=max_cost_per_request)

        if self._budget_guard is not None:
            check = await self._budget_guard.can_use("user", user_id, "cost", estimated_cost)
            if not check.allowed:
                return Affordability(can_afford=False, remaining=max(0.0, check.remaining))

        return Affordability(can_afford=True, remaining=remaining)


__all__ = [
    "MODEL_CONFIGS",
    "ModelConfig",
    "ModelSelectionContext",
    "ModelSelector",
    "assess_complexity",
    "build_fallback_chain",
    "cloud_model_for",
]
