from __future__ import annotations

import asyncio
import time
from typing import Any

from ..agents.base import AgentExecutorRegistry, AgentRequest, AgentResult
from ..agents.contracts import ContractEnforcer
from ..core.config import WorkflowSettings
from ..core.errors import AgentExecutionError, ContractViolation, WorkflowUnavailable
from ..core.logging import get_logger
from ..core.metrics import increment_workflow_fallback, observe_step_latency
from ..services.memory import MemoryContextProvider
from ..services.workflows import WorkflowAdapter, WorkflowOptions
from .enums import ExecutionPath, TerminationReason
from .outcomes import StepFailure, StepOutcome, StepSuccess
from .state import Step, Task

logger = get_logger(name=__name__)

_WORKFLOW_META_KEYS = frozenset({"success", "artifacts", "explanation", "tokens_used", "duration_ms", "model_used", "error"})


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _workflow_outputs(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        return {"result": data}
    outputs = data.get("outputs")
    if isinstance(outputs, dict):
        return dict(outputs)
    if "result" in data:
        result = data["result"]
        return dict(result) if isinstance(result, dict) else {"result": result}
    return {key: value for key, value in data.items() if key not in _WORKFLOW_META_KEYS}


class StepExecutionEngine:
    """Runs one ready step: workflow engine first, direct executor as fallback.

    There is no retry loop here. A workflow failure of any kind (transport,
    non-2xx, timeout or a payload reporting ``success: false``) moves the step
    to the direct path exactly once.
    """

    def __init__(
        self,
        workflows: WorkflowAdapter,
        executors: AgentExecutorRegistry,
        contracts: ContractEnforcer,
        memory: MemoryContextProvider,
        settings: WorkflowSettings,
    ) -> None:
        self._workflows = workflows
        self._executors = executors
        self._contracts = contracts
        self._memory = memory
        self._settings = settings

    def workflow_name(self, step: Step) -> str:
        return f"{self._settings.workflow_prefix}{step.agent.value}"

    async def execute(self, task: Task, step: Step, *, model: str | None = None) -> StepOutcome:
        started = time.perf_counter()
        try:
            self._contracts.enforce_allowlist(step.agent)
        except ContractViolation as exc:
            logger.warning("contract_violation", agent=step.agent.value, step_id=step.id, errors=exc.errors)
            return StepFailure(reason=TerminationReason.VALIDATION_ERROR, message=str(exc))

        request = AgentRequest(
            task_id=task.id,
            step_id=step.id,
            project_id=task.project_id,
            user_id=task.user_id,
            agent=step.agent,
            inputs=step.description,
            recent_context=await self._memory.recent_context(task.id),
            rag_context=await self._memory.longterm_context(task.project_id, step.description),
            model=model,
        )

        workflow_error: WorkflowUnavailable | None = None
        outcome: StepSuccess | None = None
        if self._workflows.enabled:
            outcome, workflow_error = await self._run_workflow(request, step)

        if outcome is None:
            error_type = workflow_error.error_type if workflow_error else "disabled"
            increment_workflow_fallback(agent=step.agent.value, error_type=error_type)
            logger.info(
                "workflow_fallback",
                agent=step.agent.value,
                step_id=step.id,
                error_type=error_type,
                error=workflow_error.message if workflow_error else None,
            )
            direct = await self._run_direct(request)
            if isinstance(direct, StepFailure):
                return direct
            outcome = _to_success(
                direct,
                path=ExecutionPath.DIRECT,
                model=model,
                workflow_error=workflow_error.to_dict() if workflow_error else None,
            )

        try:
            self._contracts.enforce_required_artifacts(step.agent, outcome.outputs, outcome.artifacts)
        except ContractViolation as exc:
            logger.warning("contract_violation", agent=step.agent.value, step_id=step.id, errors=exc.errors)
            return StepFailure(
                reason=TerminationReason.VALIDATION_ERROR,
                message=str(exc),
                tokens_used=outcome.tokens_used,
                duration_ms=_elapsed_ms(started),
            )

        duration_ms = _elapsed_ms(started)
        observe_step_latency(agent=step.agent.value, path=outcome.execution_path.value, latency=duration_ms / 1000)
        return StepSuccess(
            outputs=outcome.outputs,
            execution_path=outcome.execution_path,
            artifacts=outcome.artifacts,
            explanation=outcome.explanation,
            tokens_used=outcome.tokens_used,
            duration_ms=duration_ms,
            model_used=outcome.model_used,
            workflow_error=outcome.workflow_error,
        )

    async def _run_workflow(
        self,
        request: AgentRequest,
        step: Step,
    ) -> tuple[StepSuccess | None, WorkflowUnavailable | None]:
        payload = {
            "task_id": request.task_id,
            "step_id": request.step_id,
            "project_id": request.project_id,
            "user_id": request.user_id,
            "agent": request.agent.value,
            "inputs": request.inputs,
            "model": request.model,
            "context": {"recent_context": request.recent_context, "rag_context": request.rag_context},
        }
        result = await self._workflows.trigger_workflow(
            self.workflow_name(step),
            payload,
            WorkflowOptions(fallback_to_direct=True),
        )
        if not result.success:
            return None, result.error or WorkflowUnavailable("unknown", "Workflow failed without details")

        data = result.data
        if isinstance(data, dict) and data.get("success") is False:
            message = str(data.get("error") or "Workflow reported failure")
            return None, WorkflowUnavailable("execution", message, details=data)

        body = data if isinstance(data, dict) else {}
        artifacts = body.get("artifacts")
        return (
            StepSuccess(
                outputs=_workflow_outputs(data),
                execution_path=ExecutionPath.WORKFLOW,
                artifacts=[str(item) for item in artifacts] if isinstance(artifacts, list) else [],
                explanation=body.get("explanation"),
                tokens_used=int(body.get("tokens_used") or 0),
                model_used=body.get("model_used") or request.model,
            ),
            None,
        )

    async def _run_direct(self, request: AgentRequest) -> AgentResult | StepFailure:
        executor = self._executors.resolve(request.agent)
        timeout = self._settings.direct_timeout_seconds
        try:
            result = await asyncio.wait_for(executor.execute(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("direct_executor_timeout", agent=request.agent.value, timeout_seconds=timeout)
            return StepFailure(
                reason=TerminationReason.AGENT_ERROR,
                message=f"Agent {request.agent.value} timed out after {timeout} seconds",
            )
        except AgentExecutionError as exc:
            logger.warning("direct_executor_failed", agent=request.agent.value, error=str(exc))
            return StepFailure(reason=TerminationReason.AGENT_ERROR, message=str(exc))
        except Exception as exc:  # noqa: BLE001 - executors are third-party code
            logger.exception("direct_executor_crashed", agent=request.agent.value)
            return StepFailure(reason=TerminationReason.AGENT_ERROR, message=str(exc) or exc.__class__.__name__)
        if not result.success:
            message = result.explanation or f"Agent {request.agent.value} reported failure"
            return StepFailure(reason=TerminationReason.AGENT_ERROR, message=message, tokens_used=result.tokens_used)
        return result


def _to_success(
    result: AgentResult,
    *,
    path: ExecutionPath,
    model: str | None,
    workflow_error: dict[str, Any] | None,
) -> StepSuccess:
    return StepSuccess(
        outputs=dict(result.outputs),
        execution_path=path,
        artifacts=list(result.artifacts),
        explanation=result.explanation,
        tokens_used=result.tokens_used,
        duration_ms=result.duration_ms,
        model_used=result.model_used or model,
        workflow_error=workflow_error,
    )


__all__ = ["StepExecutionEngine"]
