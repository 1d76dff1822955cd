from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, RedisDsn
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedisSettings(BaseModel):
    url: RedisDsn = Field(
        "redis://localhost:6379/0",
        description="Connection URL for the Redis instance holding run state, budgets and activity streams.",
    )
    key_prefix: str = Field("", description="Optional prefix prepended to every state key.")


class WorkflowSettings(BaseModel):
    enabled: bool = Field(True, description="Try the external workflow engine before direct execution.")
    base_url: str = Field("http://localhost:5678", description="Base URL of the workflow engine.")
    api_key: str | None = Field(default=None, description="Optional bearer token for the workflow engine.")
    timeout_seconds: float = Field(300.0, ge=0.1, description="Hard ceiling for one workflow invocation.")
    direct_timeout_seconds: float = Field(300.0, ge=0.1, description="Hard ceiling for one direct executor call.")
    poll_interval_seconds: float = Field(5.0, ge=0.0)
    default_retries: int = Field(2, ge=0, description="Retries used when no direct fallback is requested.")
    retry_backoff_seconds: float = Field(5.0, ge=0.0)
    workflow_prefix: str = Field("agent-", description="Webhook name prefix; the agent type is appended.")


class OllamaSettings(BaseModel):
    host: str = Field("http://localhost", description="Base URL where Ollama is running.")
    port: int = Field(11434, ge=1, le=65535)
    model: str = Field("gpt-oss:20b", description="Default local model served via Ollama.")
    temperature: float = Field(0.2, ge=0.0, le=1.0)
    request_timeout_seconds: float = Field(120.0, ge=1.0)


class ResourceLimits(BaseModel):
    tokens: float = 0
    api_calls: float = 0
    tool_executions: float = 0
    agent_invocations: float = 0
    embeddings: float = 0
    storage_bytes: float = 0
    cost: float = 0


def _run_limits() -> ResourceLimits:
    return ResourceLimits(
        tokens=100_000,
        api_calls=50,
        tool_executions=100,
        agent_invocations=20,
        embeddings=1_000,
        storage_bytes=10 * 1024 * 1024,
        cost=5.0,
    )


def _user_limits() -> ResourceLimits:
    return ResourceLimits(
        tokens=1_000_000,
        api_calls=500,
        tool_executions=1_000,
        agent_invocations=200,
        embeddings=10_000,
        storage_bytes=100 * 1024 * 1024,
        cost=10.0,
    )


def _global_limits() -> ResourceLimits:
    return ResourceLimits(
        tokens=10_000_000,
        api_calls=5_000,
        tool_executions=50_000,
        agent_invocations=10_000,
        embeddings=100_000,
        storage_bytes=1024 * 1024 * 1024,
        cost=1_000.0,
    )


class BudgetSettings(BaseModel):
    daily_limit: float = Field(10.0, ge=0.0, description="Hard daily cloud spend ceiling in USD.")
    daily_warning: float = Field(8.0, ge=0.0)
    monthly_limit: float = Field(100.0, ge=0.0)
    monthly_warning: float = Field(80.0, ge=0.0)
    daily_ttl_seconds: int = Field(7 * 24 * 60 * 60, ge=1)
    monthly_ttl_seconds: int = Field(60 * 24 * 60 * 60, ge=1)
    warning_ratio: float = Field(0.8, gt=0.0, le=1.0)
    scope_ttl_seconds: int = Field(24 * 60 * 60, ge=1, description="Expiry applied to run and user scopes.")
    run_limits: ResourceLimits = Field(default_factory=_run_limits)
    user_limits: ResourceLimits = Field(default_factory=_user_limits)
    global_limits: ResourceLimits = Field(default_factory=_global_limits)
    alert_webhook_url: str | None = Field(default=None, description="Optional webhook receiving budget alerts.")
    alert_timeout_seconds: float = Field(5.0, ge=0.1)


class SelectorSettings(BaseModel):
    complexity_threshold: int = Field(6, ge=0, le=10)
    failure_threshold: int = Field(2, ge=0)
    history_lookback_days: int = Field(7, ge=1)
    history_size: int = Field(50, ge=1)
    estimated_tokens: int = Field(2000, ge=1)
    average_cloud_cost_per_1k: float = Field(0.003, ge=0.0)


class AutoApprovalPolicy(BaseModel):
    enabled: bool = Field(True)
    max_risk_level: Literal["low", "medium", "high"] = Field("low")


class ApprovalSettings(BaseModel):
    policy: AutoApprovalPolicy = Field(default_factory=AutoApprovalPolicy)  # type: ignore[arg-type]
    expiry_hours: dict[str, int] = Field(default_factory=lambda: {"high": 24, "medium": 8, "low": 4})
    expiry_sweep_enabled: bool = Field(False)
    expiry_sweep_interval_seconds: int = Field(300, ge=5)


class MemorySettings(BaseModel):
    namespace: str = Field("memory", min_length=1)
    recent_window: int = Field(10, ge=1, description="Messages kept verbatim per task.")
    summary_window: int = Field(3, ge=1, description="Session summaries included in context.")
    longterm_limit: int = Field(5, ge=1)
    ttl_seconds: int = Field(30 * 24 * 60 * 60, ge=1)


class ActivitySettings(BaseModel):
    stream_key: str = Field("stream:activity")
    run_stream_prefix: str = Field("stream:activity:run:")
    max_stream_length: int = Field(10_000, ge=100)
    metrics_retention_days: int = Field(30, ge=1, description="Lifetime of the per-user daily activity counters.")
    metrics_max_days: int = Field(90, ge=1, description="Largest window served by the activity metrics endpoint.")


class SchedulingSettings(BaseModel):
    max_concurrency: int = Field(4, ge=1, description="Runs executed concurrently by the background queue.")
    store_retry_attempts: int = Field(3, ge=1, description="Read-modify-write attempts on version conflicts.")


class RateLimitRule(BaseModel):
    capacity: int = Field(30, ge=1, description="Maximum number of requests permitted during the window.")
    window_seconds: int = Field(60, ge=1, description="Number of seconds the rate limit window covers.")


class RateLimitSettings(BaseModel):
    enabled: bool = Field(True, description="Toggle API rate limiting on or off.")
    namespace: str = Field("harness:ratelimit", min_length=1)
    run_submission: RateLimitRule = Field(
        default_factory=lambda: RateLimitRule(capacity=10, window_seconds=60)
    )  # type: ignore[arg-type]
    approval_response: RateLimitRule = Field(
        default_factory=lambda: RateLimitRule(capacity=60, window_seconds=60)
    )  # type: ignore[arg-type]


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_logs: bool = Field(True, description="Render log lines as JSON; False switches to the console renderer.")


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")
    api_prefix: str = Field("/api")

    redis: RedisSettings = Field(default_factory=RedisSettings)  # type: ignore[arg-type]
    workflow: WorkflowSettings = Field(default_factory=WorkflowSettings)  # type: ignore[arg-type]
    ollama: OllamaSettings = Field(default_factory=OllamaSettings)  # type: ignore[arg-type]
    budget: BudgetSettings = Field(default_factory=BudgetSettings)  # type: ignore[arg-type]
    selector: SelectorSettings = Field(default_factory=SelectorSettings)  # type: ignore[arg-type]
    approvals: ApprovalSettings = Field(default_factory=ApprovalSettings)  # type: ignore[arg-type]
    memory: MemorySettings = Field(default_factory=MemorySettings)  # type: ignore[arg-type]
    activity: ActivitySettings = Field(default_factory=ActivitySettings)  # type: ignore[arg-type]
    scheduling: SchedulingSettings = Field(default_factory=SchedulingSettings)  # type: ignore[arg-type]
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    frontend_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Origins permitted to access the API via CORS.",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        env_prefix="HARNESS_",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        materialized = dict(overrides)
        allowed_keys = {"environment"}
        filtered = {key: value for key, value in materialized.items() if key in allowed_keys}
        if filtered:
            return Settings(**filtered)
    return _get_cached_settings()
