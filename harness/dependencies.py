from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import Depends
from starlette.requests import HTTPConnection
from redis.asyncio import Redis

from .agents.base import AgentExecutorRegistry
from .agents.contracts import ContractEnforcer
from .core.config import Settings
from .core.logging import get_logger
from .orchestration.activity import ActivityStream
from .orchestration.approvals import ApprovalGate
from .orchestration.engine import StepExecutionEngine
from .orchestration.orchestrator import Orchestrator
from .orchestration.planner import KeywordPlanner, Planner
from .orchestration.store import InMemoryStateStore, StateStore, build_state_store
from .queue.manager import TaskQueueManager
from .services.activity_metrics import ActivityMetrics
from .services.alerts import Alert, AlertService
from .services.budget_guard import ResourceBudgetGuard
from .services.cost_tracker import CostTracker
from .services.llm import LLMService
from .services.memory import MemoryContextProvider
from .services.model_selector import ModelSelector
from .services.workflows import WorkflowAdapter

logger = get_logger(name=__name__)


async def log_alert(alert: Alert) -> None:
    logger.warning(
        "alert_raised",
        severity=alert.severity,
        category=alert.category,
        title=alert.title,
        message=alert.message,
    )


@dataclass
class ServiceContainer:
    """Every long-lived collaborator of the API, wired once per application."""

    settings: Settings
    redis: Any
    store: StateStore
    alerts: AlertService
    cost_tracker: CostTracker
    budget_guard: ResourceBudgetGuard
    model_selector: ModelSelector
    workflows: WorkflowAdapter
    executors: AgentExecutorRegistry
    contracts: ContractEnforcer
    memory: MemoryContextProvider
    approvals: ApprovalGate
    activity: ActivityStream
    activity_metrics: ActivityMetrics
    engine: StepExecutionEngine
    orchestrator: Orchestrator
    queue: TaskQueueManager

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        redis: Any | None = None,
        store: StateStore | None = None,
        llm: LLMService | None = None,
        executors: AgentExecutorRegistry | None = None,
        planner: Planner | None = None,
        workflow_client: httpx.AsyncClient | None = None,
    ) -> "ServiceContainer":
        if redis is None:
            redis = Redis.from_url(str(settings.redis.url), decode_responses=True)
        if store is None:
            store = build_state_store(settings, client=redis)

        alerts = AlertService(settings.budget)
        alerts.subscribe(log_alert)
        cost_tracker = CostTracker(redis, settings.budget, alerts=alerts)
        budget_guard = ResourceBudgetGuard(redis, settings.budget, alerts=alerts)
        model_selector = ModelSelector(store, cost_tracker, settings.selector, budget_guard=budget_guard)
        workflows = WorkflowAdapter(settings.workflow, client=workflow_client)
        if executors is None:
            executors = AgentExecutorRegistry.with_local_agents(llm or LLMService.from_settings(settings))
        contracts = ContractEnforcer()
        memory = MemoryContextProvider(redis, settings.memory)
        approvals = ApprovalGate(settings.approvals)
        activity = ActivityStream(redis, settings.activity)
        activity_metrics = ActivityMetrics(redis, settings.activity)
        activity.subscribe(activity_metrics.record)
        engine = StepExecutionEngine(workflows, executors, contracts, memory, settings.workflow)
        orchestrator = Orchestrator(
            store=store,
            planner=planner or KeywordPlanner(),
            engine=engine,
            approvals=approvals,
            budget_guard=budget_guard,
            cost_tracker=cost_tracker,
            model_selector=model_selector,
            activity=activity,
            memory=memory,
            settings=settings,
        )
        queue = TaskQueueManager.from_settings(settings)
        return cls(
            settings=settings,
            redis=redis,
            store=store,
            alerts=alerts,
            cost_tracker=cost_tracker,
            budget_guard=budget_guard,
            model_selector=model_selector,
            workflows=workflows,
            executors=executors,
            contracts=contracts,
            memory=memory,
            approvals=approvals,
            activity=activity,
            activity_metrics=activity_metrics,
            engine=engine,
            orchestrator=orchestrator,
            queue=queue,
        )

    async def enqueue_run(self, run_id: str) -> None:
        async def _job() -> None:
            await self.orchestrator.execute_run(run_id)

        await self.queue.enqueue(_job)

    async def start(self) -> None:
        self.orchestrator.set_scheduler(self.enqueue_run)
        await self.queue.start()
        logger.info("service_container_started", workers=self.settings.scheduling.max_concurrency)

    async def aclose(self) -> None:
        await self.queue.stop()
        self.orchestrator.set_scheduler(None)
        await self.workflows.aclose()
        await self.store.close()
        if isinstance(self.store, InMemoryStateStore):
            await self.redis.aclose()
        logger.info("service_container_stopped")


def get_container(connection: HTTPConnection) -> ServiceContainer:
    return connection.app.state.container


def get_app_settings(container: ServiceContainer = Depends(get_container)) -> Settings:
    return container.settings


def get_orchestrator(container: ServiceContainer = Depends(get_container)) -> Orchestrator:
    return container.orchestrator


def get_cost_tracker(container: ServiceContainer = Depends(get_container)) -> CostTracker:
    return container.cost_tracker


def get_budget_guard(container: ServiceContainer = Depends(get_container)) -> ResourceBudgetGuard:
    return container.budget_guard


def get_activity_stream(container: ServiceContainer = Depends(get_container)) -> ActivityStream:
    return container.activity


def get_activity_metrics(container: ServiceContainer = Depends(get_container)) -> ActivityMetrics:
    return container.activity_metrics


__all__ = [
    "ServiceContainer",
    "get_activity_metrics",
    "get_activity_stream",
    "get_app_settings",
    "get_budget_guard",
    "get_container",
    "get_cost_tracker",
    "get_orchestrator",
    "log_alert",
]
