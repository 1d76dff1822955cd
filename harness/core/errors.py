from __future__ import annotations

from typing import Any, Literal

WorkflowErrorType = Literal["http", "timeout", "execution", "unknown"]


class HarnessError(RuntimeError):
    """Base class for orchestration failures."""


class NotFoundError(HarnessError):
    """Raised when a referenced entity does not exist (or failed validation on read)."""


class InvalidTransition(HarnessError):
    """Raised when a lifecycle transition is not permitted from the current state."""


class StaleWriteError(HarnessError):
    """Raised when an aggregate was modified by another writer since it was read."""

    def __init__(self, key: str, *, expected: int, actual: int | None) -> None:
        super().__init__(f"Stale write on {key}: expected version {expected}, found {actual}")
        self.key = key
        self.expected = expected
        self.actual = actual


class ContractViolation(HarnessError):
    """Raised when an agent acts outside its allowlist or omits required artifacts."""

    def __init__(self, agent: str, errors: list[str]) -> None:
        super().__init__("; ".join(errors) or f"Contract violation for agent {agent}")
        self.agent = agent
        self.errors = list(errors)


class BudgetExhausted(HarnessError):
    """Raised when a resource budget blocks further work for a run."""

    def __init__(self, scope: str, resource: str, message: str | None = None) -> None:
        super().__init__(message or f"Budget exhausted: {resource} limit reached ({scope})")
        self.scope = scope
        self.resource = resource


class WorkflowUnavailable(HarnessError):
    """Raised when the external workflow engine cannot produce a result."""

    def __init__(
        self,
        error_type: WorkflowErrorType,
        message: str,
        *,
        status_code: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.status_code = status_code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.error_type, "message": self.message}
        if self.status_code is not None:
            payload["status_code"] = self.status_code
        if self.details is not None:
            payload["details"] = self.details
        return payload


class AgentExecutionError(HarnessError):
    """Raised when a direct agent executor fails."""

    def __init__(self, agent: str, message: str) -> None:
        super().__init__(message)
        self.agent = agent


__all__ = [
    "AgentExecutionError",
    "BudgetExhausted",
    "ContractViolation",
    "HarnessError",
    "InvalidTransition",
    "NotFoundError",
    "StaleWriteError",
    "WorkflowErrorType",
    "WorkflowUnavailable",
]
