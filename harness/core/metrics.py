from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

RUNS_TOTAL = Counter(
    "harness_runs_total",
    "Run lifecycle transitions grouped by event (created/started/suspended/terminated) and reason",
    labelnames=("event", "reason"),
)

RUNS_ACTIVE = Gauge(
    "harness_runs_active",
    "Runs currently inside the execution loop",
)

RUN_LATENCY_SECONDS = Histogram(
    "harness_run_latency_seconds",
    "Wall clock time spent in one execution pass of a run",
    labelnames=("outcome",),
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, 900, float("inf")),
)

STEP_EVENTS_TOTAL = Counter(
    "harness_step_events_total",
    "Step lifecycle events grouped by agent and outcome",
    labelnames=("agent", "outcome"),
)

STEP_LATENCY_SECONDS = Histogram(
    "harness_step_latency_seconds",
    "Step execution latency grouped by agent and execution path (workflow/direct)",
    labelnames=("agent", "path"),
)

WORKFLOW_FALLBACK_TOTAL = Counter(
    "harness_workflow_fallback_total",
    "Direct-execution fallbacks triggered by workflow failures",
    labelnames=("agent", "error_type"),
)

APPROVALS_TOTAL = Counter(
    "harness_approvals_total",
    "Approval gate outcomes (requested/approved/rejected/expired) by trigger",
    labelnames=("outcome", "trigger"),
)

BUDGET_EXHAUSTED_TOTAL = Counter(
    "harness_budget_exhausted_total",
    "Budget guard refusals grouped by scope and resource",
    labelnames=("scope", "resource"),
)

BUDGET_WARNINGS_TOTAL = Counter(
    "harness_budget_warnings_total",
    "Budget warnings raised by the guard or the cost ledger",
    labelnames=("source", "resource"),
)

MODEL_DECISIONS_TOTAL = Counter(
    "harness_model_decisions_total",
    "Model tier selections grouped by tier",
    labelnames=("tier",),
)

CLOUD_SPEND_USD_TOTAL = Counter(
    "harness_cloud_spend_usd_total",
    "Tracked cloud model spend in USD",
    labelnames=("model",),
)


def record_run_event(*, event: str, reason: str = "none") -> None:
    RUNS_TOTAL.labels(event=event, reason=reason).inc()


def mark_run_execution_started() -> None:
    RUNS_ACTIVE.inc()


def mark_run_execution_finished(*, outcome: str, latency: float) -> None:
    RUNS_ACTIVE.dec()
    RUN_LATENCY_SECONDS.labels(outcome=outcome).observe(max(0.0, latency))


def record_step_event(*, agent: str, outcome: str) -> None:
    STEP_EVENTS_TOTAL.labels(agent=agent, outcome=outcome).inc()


def observe_step_latency(*, agent: str, path: str, latency: float) -> None:
    STEP_LATENCY_SECONDS.labels(agent=agent, path=path).observe(max(0.0, latency))


def increment_workflow_fallback(*, agent: str, error_type: str) -> None:
    WORKFLOW_FALLBACK_TOTAL.labels(agent=agent, error_type=error_type).inc()


def record_approval_outcome(*, outcome: str, trigger: str) -> None:
    APPROVALS_TOTAL.labels(outcome=outcome, trigger=trigger).inc()


def increment_budget_exhausted(*, scope: str, resource: str) -> None:
    BUDGET_EXHAUSTED_TOTAL.labels(scope=scope, resource=resource).inc()


def increment_budget_warning(*, source: str, resource: str) -> None:
    BUDGET_WARNINGS_TOTAL.labels(source=source, resource=resource).inc()


def record_model_decision(*, tier: str) -> None:
    MODEL_DECISIONS_TOTAL.labels(tier=tier).inc()


def record_cloud_spend(*, model: str, cost: float) -> None:
    if cost > 0:
        CLOUD_SPEND_USD_TOTAL.labels(model=model).inc(cost)


__all__ = [
    "increment_budget_exhausted",
    "increment_budget_warning",
    "increment_workflow_fallback",
    "mark_run_execution_finished",
    "mark_run_execution_started",
    "observe_step_latency",
    "record_approval_outcome",
    "record_cloud_spend",
    "record_model_decision",
    "record_run_event",
    "record_step_event",
]
