from __future__ import annotations

from enum import Enum


class AgentType(str, Enum):
    ORCHESTRATOR = "orchestrator"
    RESEARCHER = "researcher"
    CODER = "coder"
    DESIGN = "design"
    ANALYST = "analyst"
    CRITIC = "critic"
    SKEPTIC = "skeptic"
    RAG = "rag"
    LIBRARIAN = "librarian"
    VISION = "vision"
    UPDATE = "update"
    TOOLSMITH = "toolsmith"


class TaskType(str, Enum):
    RESEARCH = "research"
    CODE = "code"
    DESIGN = "design"
    ANALYSIS = "analysis"
    MIXED = "mixed"


class TaskStatus(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    APPROVAL_NEEDED = "approval_needed"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, Enum):
    CREATED = "created"
    EXECUTING = "executing"
    WAITING_APPROVAL = "waiting_approval"
    TERMINATED = "terminated"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalType(str, Enum):
    FILE_WRITE = "file_write"
    CODE_EXECUTION = "code_execution"
    GIT_PUSH = "git_push"
    WORKFLOW_CREATION = "workflow_creation"
    API_CALL = "api_call"


class ApprovalTrigger(str, Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TerminationReason(str, Enum):
    COMPLETED = "completed"
    USER_CANCELLED = "user_cancelled"
    APPROVAL_REJECTED = "approval_rejected"
    APPROVAL_TIMEOUT = "approval_timeout"
    BUDGET_EXHAUSTED = "budget_exhausted"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    MAX_RETRIES = "max_retries"
    AGENT_ERROR = "agent_error"
    VALIDATION_ERROR = "validation_error"
    DEPENDENCY_FAILED = "dependency_failed"
    CONFLICT_UNRESOLVED = "conflict_unresolved"
    CIRCUIT_BREAKER = "circuit_breaker"


class ModelTier(str, Enum):
    TIER1_FAST = "tier1_fast"
    TIER2_BALANCED = "tier2_balanced"
    TIER3_QUALITY = "tier3_quality"
    TIER4_CLOUD = "tier4_cloud"


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class ScanStatus(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    PROCESSING = "processing"


class ExecutionPath(str, Enum):
    WORKFLOW = "workflow"
    DIRECT = "direct"
    APPROVAL = "approval"


__all__ = [
    "AgentType",
    "ApprovalStatus",
    "ApprovalTrigger",
    "ApprovalType",
    "ExecutionPath",
    "ModelTier",
    "ProjectStatus",
    "RiskLevel",
    "RunStatus",
    "ScanStatus",
    "StepStatus",
    "TaskStatus",
    "TaskType",
    "TerminationReason",
]
