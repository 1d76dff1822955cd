from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal, TypeVar

from ..core.config import Settings
from ..core.errors import InvalidTransition, NotFoundError, StaleWriteError
from ..core.logging import bind_run_context, clear_run_context, get_logger
from ..core.metrics import (
    mark_run_execution_finished,
    mark_run_execution_started,
    record_approval_outcome,
    record_run_event,
    record_step_event,
)
from ..services.budget_guard import ResourceBudgetGuard
from ..services.cost_tracker import CostTracker, estimate_cost
from ..services.memory import AgentInvocation, MemoryContextProvider
from ..services.model_selector import ModelSelectionContext, ModelSelector
from .activity import ActivityEventType, ActivityStream, ActivityStreamEntry
from .approvals import ApprovalGate
from .engine import StepExecutionEngine
from .enums import (
    AgentType,
    ApprovalStatus,
    ApprovalTrigger,
    ExecutionPath,
    ProjectStatus,
    RunStatus,
    ScanStatus,
    StepStatus,
    TaskStatus,
    TaskType,
    TerminationReason,
)
from .outcomes import Completed, Failed, StepFailure, StepSuccess, Suspended, TaskOutcome
from .planner import Planner, PlanningContext
from .state import (
    Approval,
    Artifact,
    Library,
    ModelPreferences,
    Project,
    Run,
    Step,
    StepResultRecord,
    Task,
    TerminationRecord,
    VersionedModel,
    new_id,
    utcnow,
)
from .store import (
    StateStore,
    approval_key,
    artifact_key,
    library_key,
    project_key,
    run_key,
    task_key,
    termination_key,
)

logger = get_logger(name=__name__)

V = TypeVar("V", bound=VersionedModel)
TimestampFactory = Callable[[], datetime]
RunScheduler = Callable[[str], Awaitable[None]]

DEFAULT_PROJECT_NAME = "Default Project"
EXPIRED_APPROVAL_NOTE = "Approval expired"


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _outcome_label(outcome: TaskOutcome) -> str:
    if isinstance(outcome, Completed):
        return "completed"
    if isinstance(outcome, Suspended):
        return "suspended"
    return outcome.reason.value


def _result_text(step: Step) -> str:
    if step.result is None:
        return ""
    answer = step.result.outputs.get("answer")
    if isinstance(answer, str) and answer.strip():
        return answer.strip()
    if step.result.explanation:
        return step.result.explanation
    return json.dumps(step.result.outputs, default=str)


def _artifact_from_output(task_id: str, step_id: str, name: str, outputs: dict[str, Any]) -> Artifact:
    value = outputs.get(name)
    if value is None:
        return Artifact(id=new_id("artifact"), task_id=task_id, step_id=step_id, name=name)
    if isinstance(value, str):
        return Artifact(id=new_id("artifact"), task_id=task_id, step_id=step_id, name=name, content=value)
    return Artifact(
        id=new_id("artifact"),
        task_id=task_id,
        step_id=step_id,
        name=name,
        content=json.dumps(value, default=str),
        format="json",
    )


class Orchestrator:
    """Run/Task state machine.

    The orchestrator is the only writer of Run, Task and Approval documents.
    Every write is a whole-aggregate read-modify-write checked against the
    stored version; conflicting writers are retried a bounded number of times.

    A Run executes its Task's steps one at a time in plan order. Each step goes
    through the budget guard, the static approval gate, model selection, the
    execution engine, token accounting and finally the dynamic approval gate.
    Any step failure fails the Task and terminates the Run; an approval
    suspends the Run until ``respond_to_approval`` resolves it.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        planner: Planner,
        engine: StepExecutionEngine,
        approvals: ApprovalGate,
        budget_guard: ResourceBudgetGuard,
        cost_tracker: CostTracker,
        model_selector: ModelSelector,
        activity: ActivityStream,
        memory: MemoryContextProvider,
        settings: Settings,
        now: TimestampFactory | None = None,
    ) -> None:
        self._store = store
        self._planner = planner
        self._engine = engine
        self._approvals = approvals
        self._budget_guard = budget_guard
        self._cost_tracker = cost_tracker
        self._model_selector = model_selector
        self._activity = activity
        self._memory = memory
        self._settings = settings
        self._now: TimestampFactory = now or utcnow
        self._run_locks: dict[str, asyncio.Lock] = {}
        self._resume_requested: set[str] = set()
        self._scheduler: RunScheduler | None = None
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def set_scheduler(self, scheduler: RunScheduler | None) -> None:
        """Route background executions (new runs, approval resumes) through ``scheduler``."""
        self._scheduler = scheduler

    async def schedule_run(self, run_id: str) -> None:
        if self._scheduler is not None:
            await self._scheduler(run_id)
            return
        job = asyncio.create_task(self._execute_in_background(run_id))
        self._background.add(job)
        job.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for executions started without a scheduler."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _execute_in_background(self, run_id: str) -> None:
        try:
            await self.execute_run(run_id)
        except Exception:  # noqa: BLE001 - background executions must not crash the loop
            logger.exception("background_run_failed", run_id=run_id)

    # ------------------------------------------------------------------
    # Projects and libraries
    # ------------------------------------------------------------------
    async def create_project(
        self,
        name: str,
        *,
        owner_id: str | None = None,
        type: TaskType = TaskType.MIXED,
    ) -> Project:
        project = Project(name=name, owner_id=owner_id, type=type)
        project = await self._store.save(project_key(project.id), project)
        logger.info("project_created", project_id=project.id, owner_id=owner_id)
        return project

    async def list_projects(self, user_id: str | None = None) -> list[Project]:
        projects = await self._store.scan("project:", Project)
        if user_id is not None:
            projects = [project for project in projects if project.owner_id in (None, user_id)]
        return sorted(projects, key=lambda project: project.last_activity, reverse=True)

    async def resolve_default_project(self, user_id: str) -> Project:
        for project in await self.list_projects(user_id):
            if project.status is ProjectStatus.ACTIVE:
                return project
        return await self.create_project(DEFAULT_PROJECT_NAME, owner_id=user_id)

    async def _touch_project(self, project_id: str, task_id: str) -> None:
        def change(project: Project) -> None:
            if task_id not in project.threads:
                project.threads.append(task_id)
            project.last_activity = utcnow()
            project.updated_at = project.last_activity

        try:
            await self._mutate(project_key(project_id), Project, change)
        except NotFoundError:
            logger.info("project_not_tracked", project_id=project_id, task_id=task_id)

    async def list_libraries(self, search: str | None = None) -> list[Library]:
        libraries = await self._store.scan("library:", Library)
        if search:
            needle = search.lower()
            libraries = [
                library
                for library in libraries
                if needle in library.name.lower()
                or needle in library.id.lower()
                or needle in library.folder_path.lower()
                or needle in (library.description or "").lower()
            ]
        return sorted(libraries, key=lambda library: library.name.lower())

    async def create_library(
        self,
        name: str,
        folder_path: str,
        *,
        description: str | None = None,
        auto_scan: bool = True,
    ) -> Library:
        library = Library(name=name, folder_path=folder_path, description=description, auto_scan=auto_scan)
        library = await self._store.save(library_key(library.id), library)
        logger.info("library_created", library_id=library.id, folder_path=folder_path)
        return library

    async def rescan_library(self, library_id: str) -> Library:
        def change(library: Library) -> None:
            library.scan_status = ScanStatus.SCANNING
            library.processed_count = 0
            library.updated_at = utcnow()

        library = await self._mutate(library_key(library_id), Library, change)
        logger.info("library_rescan_requested", library_id=library_id)
        return library

    # ------------------------------------------------------------------
    # Task and run creation
    # ------------------------------------------------------------------
    async def create_task(
        self,
        user_id: str,
        query: str,
        project_id: str | None = None,
        *,
        preferences: ModelPreferences | None = None,
    ) -> Task:
        if not project_id:
            project_id = (await self.resolve_default_project(user_id)).id

        task = Task(
            project_id=project_id,
            user_id=user_id,
            query=query,
            model_preferences=preferences or ModelPreferences(),
        )
        await self._memory.add_message(task.id, "user", query)
        context = await self._memory.planning_context(task.id, project_id, query)
        plan = await self._planner.create_plan(
            query,
            PlanningContext(project_id=project_id, user_id=user_id, context=context),
        )
        task.todo_list = plan.steps
        task.execution_plan = plan.execution_plan
        task = await self._store.save(task_key(task.id), task)
        await self._touch_project(project_id, task.id)
        logger.info("task_created", task_id=task.id, project_id=project_id, steps=len(task.todo_list))
        return task

    async def create_run(
        self,
        user_id: str,
        query: str,
        project_id: str | None = None,
        *,
        preferences: ModelPreferences | None = None,
    ) -> Run:
        task = await self.create_task(user_id, query, project_id, preferences=preferences)
        run = Run(task_id=task.id, project_id=task.project_id, user_id=user_id)
        run = await self._store.save(run_key(run.id), run)
        record_run_event(event="created")
        await self._emit(
            ActivityEventType.RUN_CREATED,
            run,
            query=query,
            steps=[step.id for step in task.todo_list],
        )
        return run

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def execute_run(self, run_id: str) -> Run:
        """Drive a Run until it terminates or suspends on an approval.

        Concurrent calls for the same Run are no-ops while one is active, and a
        terminated Run or one still holding a pending Approval is returned as is.
        """
        lock = self._run_locks.setdefault(run_id, asyncio.Lock())
        if lock.locked():
            # The active execution picks the Run up again once its pass ends.
            self._resume_requested.add(run_id)
            logger.info("run_execution_deferred", run_id=run_id, reason="already_executing")
            return await self._require_run(run_id)

        async with lock:
            try:
                run = await self._execute_run_locked(run_id)
                while run_id in self._resume_requested:
                    self._resume_requested.discard(run_id)
                    logger.info("run_execution_resumed", run_id=run_id)
                    run = await self._execute_run_locked(run_id)
                return run
            finally:
                clear_run_context()
                self._resume_requested.discard(run_id)
                self._run_locks.pop(run_id, None)

    async def _execute_run_locked(self, run_id: str) -> Run:
        run = await self._require_run(run_id)
        if run.is_terminated:
            logger.info("run_execution_skipped", run_id=run_id, reason="terminated")
            return run

        if run.status is RunStatus.WAITING_APPROVAL:
            approval = await self._pending_approval_for_run(run_id)
            if approval is not None:
                if approval.is_pending(self._now()):
                    logger.info(
                        "run_execution_skipped",
                        run_id=run_id,
                        reason="awaiting_approval",
                        approval_id=approval.id,
                    )
                    return run
                return await self._expire_approval(approval)

        task = await self._require_task(run.task_id)
        bind_run_context(run_id=run.id, task_id=task.id)
        run = await self._mutate(run_key(run.id), Run, lambda current: current.advance(RunStatus.EXECUTING))
        record_run_event(event="started")
        await self._emit(ActivityEventType.RUN_STARTED, run, task_status=task.status.value)

        mark_run_execution_started()
        started = time.perf_counter()
        outcome: TaskOutcome
        try:
            outcome = await self._execute_task(run, task.id)
        except Exception as exc:  # noqa: BLE001 - the run must always reach a terminal state
            logger.exception("run_execution_failed", run_id=run.id)
            details = str(exc) or exc.__class__.__name__
            failed_task = await self._fail_task_safely(task.id, details)
            outcome = Failed(
                reason=TerminationReason.AGENT_ERROR,
                details=details,
                total_tokens=failed_task.tokens_used if failed_task else run.total_tokens,
                total_duration_ms=_elapsed_ms(started),
                last_step_id=failed_task.current_step if failed_task else None,
            )
        duration_ms = _elapsed_ms(started)
        mark_run_execution_finished(outcome=_outcome_label(outcome), latency=duration_ms / 1000)

        if isinstance(outcome, Suspended):
            return await self._record_suspension(run.id, duration_ms)
        if isinstance(outcome, Completed):
            return await self._terminate_run(
                run.id,
                TerminationReason.COMPLETED,
                outcome.details,
                last_step_id=outcome.last_step_id,
                last_agent=outcome.last_agent,
                duration_ms=duration_ms,
            )
        return await self._terminate_run(
            run.id,
            outcome.reason,
            outcome.details,
            last_step_id=outcome.last_step_id,
            last_agent=outcome.last_agent,
            duration_ms=duration_ms,
        )

    async def _execute_task(self, run: Run, task_id: str) -> TaskOutcome:
        task = await self._mutate(task_key(task_id), Task, lambda current: current.advance(TaskStatus.EXECUTING))
        started = time.perf_counter()
        last_step: Step | None = None

        while True:
            progressed = False
            for step_id in [step.id for step in task.todo_list]:
                step = task.step(step_id)
                if step is None or step.id in task.steps_completed:
                    continue
                if any(dependency not in task.steps_completed for dependency in step.depends_on):
                    continue
                if step.status is not StepStatus.PENDING:
                    # Gated steps are either completed by their approval or failed with the task.
                    details = f"Step {step.id} was interrupted in status {step.status.value}"
                    failed = await self._fail_task(task.id, details, step_id=step.id)
                    return Failed(
                        reason=TerminationReason.AGENT_ERROR,
                        details=details,
                        total_tokens=failed.tokens_used,
                        total_duration_ms=_elapsed_ms(started),
                        last_step_id=step.id,
                        last_agent=step.agent,
                    )

                last_step = step
                outcome = await self._run_step(run, task, step, started)
                if isinstance(outcome, (Failed, Suspended)):
                    return outcome
                task = outcome
                progressed = True
            if not progressed:
                break

        remaining = [step.id for step in task.todo_list if step.id not in task.steps_completed]
        if remaining:
            details = f"Unresolvable dependencies for steps: {', '.join(remaining)}"
            failed = await self._fail_task(task.id, details)
            return Failed(
                reason=TerminationReason.DEPENDENCY_FAILED,
                details=details,
                total_tokens=failed.tokens_used,
                total_duration_ms=_elapsed_ms(started),
                last_step_id=last_step.id if last_step else None,
                last_agent=last_step.agent if last_step else None,
            )

        task = await self._finalize_task(task.id)
        final_step = last_step or (task.step(task.steps_completed[-1]) if task.steps_completed else None)
        return Completed(
            total_tokens=task.tokens_used,
            total_duration_ms=_elapsed_ms(started),
            last_step_id=final_step.id if final_step else None,
            last_agent=final_step.agent if final_step else None,
        )

    async def _run_step(self, run: Run, task: Task, step: Step, started: float) -> Task | Failed | Suspended:
        task = await self._mutate(task_key(task.id), Task, lambda current: _start_step(current, step.id))
        record_step_event(agent=step.agent.value, outcome="started")
        await self._emit(
            ActivityEventType.STEP_STARTED,
            run,
            step_id=step.id,
            agent=step.agent.value,
            description=step.description,
        )

        invocation = await self._budget_guard.check_all_scopes(run.id, run.user_id, "agent_invocations", 1)
        if not invocation.allowed:
            return await self._fail_step(
                run,
                task.id,
                step,
                TerminationReason.BUDGET_EXHAUSTED,
                invocation.warning or "Budget exhausted: agent_invocations limit reached",
                started=started,
            )

        if step.require_approval:
            return await self._request_approval(run, task, step, trigger=ApprovalTrigger.STATIC, started=started)

        decision = await self._model_selector.select_model(step.agent, task, _selection_context(task))
        await self._budget_guard.record_usage_all_scopes(run.id, run.user_id, "agent_invocations", 1)
        result = await self._engine.execute(task, step, model=decision.selected_model)

        if isinstance(result, StepFailure):
            await self._model_selector.record_execution(
                task.project_id,
                step.agent,
                task_id=task.id,
                model_used=decision.selected_model,
                success=False,
                tokens_used=result.tokens_used,
                duration_ms=result.duration_ms,
            )
            return await self._fail_step(
                run,
                task.id,
                step,
                result.reason,
                result.message,
                tokens_used=result.tokens_used,
                duration_ms=result.duration_ms,
                started=started,
            )

        model_used = result.model_used or decision.selected_model
        token_check = await self._budget_guard.check_all_scopes(run.id, run.user_id, "tokens", result.tokens_used)
        await self._account_usage(run, model_used, result.tokens_used)
        await self._model_selector.record_execution(
            task.project_id,
            step.agent,
            task_id=task.id,
            model_used=model_used,
            success=True,
            tokens_used=result.tokens_used,
            duration_ms=result.duration_ms,
        )
        if not token_check.allowed:
            return await self._fail_step(
                run,
                task.id,
                step,
                TerminationReason.BUDGET_EXHAUSTED,
                token_check.warning or "Budget exhausted: tokens limit reached",
                tokens_used=result.tokens_used,
                duration_ms=result.duration_ms,
                started=started,
            )

        if result.explanation or result.outputs:
            await self._memory.add_message(
                task.id,
                "assistant",
                result.explanation or json.dumps(result.outputs, default=str),
                agent=step.agent.value,
            )

        gate = self._approvals.should_require_approval(step, task, result.outputs)
        if gate.required:
            task = await self._complete_step(run, task.id, step, result, confirmed=False)
            logger.info("dynamic_approval_required", step_id=step.id, reason=gate.reason)
            return await self._request_approval(
                run,
                task,
                step,
                trigger=ApprovalTrigger.DYNAMIC,
                outputs=result.outputs,
                started=started,
            )
        return await self._complete_step(run, task.id, step, result, confirmed=True)

    async def _account_usage(self, run: Run, model: str, tokens_used: int) -> None:
        if tokens_used <= 0:
            return
        await self._budget_guard.record_usage_all_scopes(run.id, run.user_id, "tokens", tokens_used)
        cost = estimate_cost(model, tokens_used)
        if cost > 0:
            await self._budget_guard.record_usage_all_scopes(run.id, run.user_id, "cost", cost)
        await self._cost_tracker.track_usage(run.user_id, model, tokens_used)

    async def _complete_step(
        self,
        run: Run,
        task_id: str,
        step: Step,
        result: StepSuccess,
        *,
        confirmed: bool,
    ) -> Task:
        artifacts = [_artifact_from_output(task_id, step.id, name, result.outputs) for name in result.artifacts]

        def change(task: Task) -> None:
            current = _require_step(task, step.id)
            current.advance(StepStatus.COMPLETED)
            current.record_result(result.to_record())
            task.tokens_used += result.tokens_used
            known = {artifact.id for artifact in task.artifacts}
            task.artifacts.extend(artifact for artifact in artifacts if artifact.id not in known)
            task.current_step = None
            task.updated_at = utcnow()
            if confirmed:
                task.mark_step_completed(step.id)

        task = await self._mutate(task_key(task_id), Task, change)
        for artifact in artifacts:
            await self._store.put(artifact_key(artifact.id), artifact)
        record_step_event(agent=step.agent.value, outcome="completed")
        await self._emit(
            ActivityEventType.STEP_COMPLETED,
            run,
            step_id=step.id,
            agent=step.agent.value,
            execution_path=result.execution_path.value,
            tokens_used=result.tokens_used,
            duration_ms=result.duration_ms,
            model_used=result.model_used,
            awaiting_approval=not confirmed,
        )
        return task

    async def _fail_step(
        self,
        run: Run,
        task_id: str,
        step: Step,
        reason: TerminationReason,
        message: str,
        *,
        tokens_used: int = 0,
        duration_ms: int = 0,
        started: float,
    ) -> Failed:
        def change(task: Task) -> None:
            current = _require_step(task, step.id)
            current.advance(StepStatus.FAILED)
            if current.result is None:
                current.record_result(
                    StepResultRecord(
                        success=False,
                        explanation=message,
                        tokens_used=tokens_used,
                        duration_ms=duration_ms,
                    )
                )
            current.error = message
            task.tokens_used += tokens_used
            task.current_step = None
            task.advance(TaskStatus.FAILED)

        task = await self._mutate(task_key(task_id), Task, change)
        record_step_event(agent=step.agent.value, outcome="failed")
        await self._emit(
            ActivityEventType.STEP_FAILED,
            run,
            step_id=step.id,
            agent=step.agent.value,
            reason=reason.value,
            error=message,
        )
        return Failed(
            reason=reason,
            details=message,
            total_tokens=task.tokens_used,
            total_duration_ms=_elapsed_ms(started),
            last_step_id=step.id,
            last_agent=step.agent,
        )

    async def _fail_task(self, task_id: str, message: str, *, step_id: str | None = None) -> Task:
        def change(task: Task) -> None:
            if step_id is not None:
                step = task.step(step_id)
                if step is not None:
                    if step.status is StepStatus.IN_PROGRESS:
                        step.advance(StepStatus.FAILED)
                    step.error = message
            for step in task.todo_list:
                if step.status is StepStatus.IN_PROGRESS:
                    step.advance(StepStatus.FAILED)
                    step.error = step.error or message
            task.current_step = None
            if task.status not in (TaskStatus.COMPLETED, TaskStatus.FAILED):
                task.advance(TaskStatus.FAILED)

        return await self._mutate(task_key(task_id), Task, change)

    async def _fail_task_safely(self, task_id: str, message: str) -> Task | None:
        try:
            return await self._fail_task(task_id, message)
        except Exception:  # noqa: BLE001 - already handling a failed execution
            logger.exception("task_failure_not_recorded", task_id=task_id)
            return None

    async def _finalize_task(self, task_id: str) -> Task:
        def change(task: Task) -> None:
            task.current_step = None
            task.summary = f"Completed {len(task.steps_completed)} of {len(task.todo_list)} steps"
            task.advance(TaskStatus.COMPLETED)

        task = await self._mutate(task_key(task_id), Task, change)
        completed = [step for step in task.todo_list if step.id in task.steps_completed]
        await self._memory.finalize(
            task.project_id,
            task.id,
            goal=task.query,
            outcome=task.summary or "completed",
            agents_invoked=[
                AgentInvocation(
                    agent=step.agent.value,
                    step_id=step.id,
                    tokens=step.result.tokens_used if step.result else 0,
                )
                for step in completed
            ],
            raw_results="\n\n".join(text for text in (_result_text(step) for step in completed) if text),
        )
        return task

    # ------------------------------------------------------------------
    # Suspension and termination
    # ------------------------------------------------------------------
    async def _request_approval(
        self,
        run: Run,
        task: Task,
        step: Step,
        *,
        trigger: ApprovalTrigger,
        outputs: dict[str, Any] | None = None,
        started: float,
    ) -> Suspended:
        # Task and Run are suspended before the Approval exists, so a decision
        # can never land on a Run that is still marked executing.
        approval = self._approvals.create_approval(step, task, run.id, trigger=trigger, outputs=outputs)
        task = await self._mutate(task_key(task.id), Task, lambda current: current.advance(TaskStatus.APPROVAL_NEEDED))

        def suspend(current: Run) -> None:
            current.advance(RunStatus.WAITING_APPROVAL)
            current.total_tokens = task.tokens_used

        run = await self._mutate(run_key(run.id), Run, suspend)
        approval = await self._store.save(approval_key(approval.id), approval)
        record_run_event(event="suspended")
        record_approval_outcome(outcome="requested", trigger=trigger.value)
        await self._emit(
            ActivityEventType.RUN_WAITING_APPROVAL,
            run,
            approval_id=approval.id,
            step_id=step.id,
            agent=step.agent.value,
        )
        await self._emit(
            ActivityEventType.APPROVAL_REQUESTED,
            run,
            approval_id=approval.id,
            step_id=step.id,
            agent=step.agent.value,
            trigger=trigger.value,
            approval_type=approval.type.value,
            risk_level=approval.risk_level.value,
        )
        return Suspended(
            approval_id=approval.id,
            step_id=step.id,
            agent=step.agent,
            total_tokens=task.tokens_used,
            total_duration_ms=_elapsed_ms(started),
        )

    async def _record_suspension(self, run_id: str, duration_ms: int) -> Run:
        """Add the pass duration; the Run may already be resumed or terminated by now."""

        def change(run: Run) -> bool | None:
            if run.is_terminated or duration_ms <= 0:
                return False
            run.total_duration_ms += duration_ms
            return None

        return await self._mutate(run_key(run_id), Run, change)

    async def _terminate_run(
        self,
        run_id: str,
        reason: TerminationReason,
        details: str,
        *,
        last_step_id: str | None = None,
        last_agent: AgentType | None = None,
        duration_ms: int = 0,
    ) -> Run:
        run = await self._require_run(run_id)
        task = await self._store.load(task_key(run.task_id), Task)
        terminated = False

        def change(current: Run) -> bool | None:
            nonlocal terminated
            if current.is_terminated:
                return False
            current.advance(RunStatus.TERMINATED)
            current.termination_reason = reason
            current.termination_details = details
            current.total_tokens = task.tokens_used if task else current.total_tokens
            current.total_duration_ms += duration_ms
            terminated = True
            return None

        run = await self._mutate(run_key(run_id), Run, change)
        if not terminated:
            return run

        if last_step_id is None and task is not None and task.steps_completed:
            last_step_id = task.steps_completed[-1]
        if last_agent is None and last_step_id is not None and task is not None:
            last = task.step(last_step_id)
            last_agent = last.agent if last else None

        record = TerminationRecord(
            run_id=run.id,
            task_id=run.task_id,
            project_id=run.project_id,
            user_id=run.user_id,
            reason=reason,
            details=details,
            last_step_id=last_step_id,
            last_agent=last_agent,
            total_steps_planned=len(task.todo_list) if task else 0,
            steps_completed=len(task.steps_completed) if task else 0,
            total_tokens=run.total_tokens,
            total_duration_ms=run.total_duration_ms,
            started_at=run.started_at or run.created_at,
            terminated_at=run.terminated_at or utcnow(),
        )
        await self._store.put(termination_key(run.id), record)
        record_run_event(event="terminated", reason=reason.value)
        await self._emit(
            ActivityEventType.RUN_TERMINATED,
            run,
            reason=reason.value,
            details=details,
            steps_completed=record.steps_completed,
            total_steps_planned=record.total_steps_planned,
        )
        return run

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------
    async def respond_to_approval(self, approval_id: str, approved: bool, notes: str | None = None) -> Approval:
        """Record a decision on a pending Approval.

        Approving completes the gated step and resumes the Run in the
        background; rejecting fails the Task and terminates the Run.
        """
        approval = await self._store.load(approval_key(approval_id), Approval)
        if approval is None:
            raise NotFoundError(f"Approval {approval_id} not found")
        if approval.status is not ApprovalStatus.PENDING:
            raise InvalidTransition(f"Approval {approval_id} is already {approval.status.value}")
        if not approval.is_pending(self._now()):
            await self._expire_approval(approval)
            raise InvalidTransition(f"Approval {approval_id} has expired")
        run = await self._require_run(approval.run_id)
        if run.status is not RunStatus.WAITING_APPROVAL:
            raise InvalidTransition(f"Run {run.id} is {run.status.value}, not waiting for approval")

        decision = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED

        def decide(current: Approval) -> None:
            if current.status is not ApprovalStatus.PENDING:
                raise InvalidTransition(f"Approval {approval_id} is already {current.status.value}")
            current.status = decision
            current.responded_at = self._now()
            current.response_notes = notes

        approval = await self._mutate(approval_key(approval_id), Approval, decide)
        record_approval_outcome(outcome=decision.value, trigger=approval.trigger.value)
        run = await self._require_run(approval.run_id)

        if approved:
            await self._approve_step(approval)
            run = await self._mutate(run_key(run.id), Run, lambda current: current.advance(RunStatus.EXECUTING))
            await self._emit(
                ActivityEventType.APPROVAL_APPROVED,
                run,
                approval_id=approval.id,
                step_id=approval.step_id,
                notes=notes,
            )
            await self.schedule_run(run.id)
            return approval

        await self._emit(
            ActivityEventType.APPROVAL_REJECTED,
            run,
            approval_id=approval.id,
            step_id=approval.step_id,
            notes=notes,
        )
        details = f"Approval rejected for step {approval.step_id}"
        if notes:
            details = f"{details}: {notes}"
        task = await self._fail_task(approval.task_id, details, step_id=approval.step_id)
        gated = task.step(approval.step_id)
        await self._terminate_run(
            run.id,
            TerminationReason.APPROVAL_REJECTED,
            details,
            last_step_id=approval.step_id,
            last_agent=gated.agent if gated else None,
        )
        return approval

    async def _approve_step(self, approval: Approval) -> Task:
        def change(task: Task) -> None:
            step = _require_step(task, approval.step_id)
            if step.status is StepStatus.IN_PROGRESS:
                step.advance(StepStatus.COMPLETED)
                step.record_result(
                    StepResultRecord(
                        success=True,
                        outputs={"approved": True, "approval_id": approval.id, "notes": approval.response_notes},
                        explanation="Approved by user",
                        execution_path=ExecutionPath.APPROVAL,
                    )
                )
            task.mark_step_completed(step.id)
            task.current_step = None
            task.advance(TaskStatus.EXECUTING)

        return await self._mutate(task_key(approval.task_id), Task, change)

    async def _expire_approval(self, approval: Approval) -> Run:
        expired = False

        def expire(current: Approval) -> bool | None:
            nonlocal expired
            if current.status is not ApprovalStatus.PENDING:
                return False
            current.status = ApprovalStatus.REJECTED
            current.responded_at = self._now()
            current.response_notes = EXPIRED_APPROVAL_NOTE
            expired = True
            return None

        approval = await self._mutate(approval_key(approval.id), Approval, expire)
        run = await self._require_run(approval.run_id)
        if not expired:
            return run

        record_approval_outcome(outcome="expired", trigger=approval.trigger.value)
        await self._emit(
            ActivityEventType.APPROVAL_REJECTED,
            run,
            approval_id=approval.id,
            step_id=approval.step_id,
            notes=EXPIRED_APPROVAL_NOTE,
        )
        details = f"Approval for step {approval.step_id} expired"
        task = await self._fail_task(approval.task_id, details, step_id=approval.step_id)
        gated = task.step(approval.step_id)
        return await self._terminate_run(
            run.id,
            TerminationReason.APPROVAL_TIMEOUT,
            details,
            last_step_id=approval.step_id,
            last_agent=gated.agent if gated else None,
        )

    async def expire_stale_approvals(self) -> int:
        now = self._now()
        expired = 0
        for approval in await self._store.scan("approval:", Approval):
            if approval.status is not ApprovalStatus.PENDING or approval.is_pending(now):
                continue
            try:
                await self._expire_approval(approval)
            except Exception:  # noqa: BLE001 - one bad approval must not stop the sweep
                logger.exception("approval_expiry_failed", approval_id=approval.id)
                continue
            expired += 1
        if expired:
            logger.info("approvals_expired", count=expired)
        return expired

    async def _pending_approval_for_run(self, run_id: str) -> Approval | None:
        pending = [
            approval
            for approval in await self._store.scan("approval:", Approval)
            if approval.run_id == run_id and approval.status is ApprovalStatus.PENDING
        ]
        if not pending:
            return None
        return max(pending, key=lambda approval: approval.created_at)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def get_run(self, run_id: str) -> Run | None:
        return await self._store.load(run_key(run_id), Run)

    async def get_termination(self, run_id: str) -> TerminationRecord | None:
        return await self._store.load(termination_key(run_id), TerminationRecord)

    async def list_runs(self, user_id: str | None = None) -> list[Run]:
        runs = await self._store.scan("run:", Run)
        if user_id is not None:
            runs = [run for run in runs if run.user_id == user_id]
        return sorted(runs, key=lambda run: run.created_at, reverse=True)

    async def get_task(self, task_id: str) -> Task | None:
        return await self._store.load(task_key(task_id), Task)

    async def get_run_artifacts(self, run_id: str) -> list[Artifact]:
        run = await self._require_run(run_id)
        task = await self.get_task(run.task_id)
        return list(task.artifacts) if task else []

    async def get_approval(self, approval_id: str) -> Approval | None:
        return await self._store.load(approval_key(approval_id), Approval)

    async def get_pending_approvals(self, user_id: str | None = None) -> list[Approval]:
        now = self._now()
        approvals = [
            approval
            for approval in await self._store.scan("approval:", Approval)
            if approval.is_pending(now) and (user_id is None or approval.user_id == user_id)
        ]
        return sorted(approvals, key=lambda approval: approval.created_at)

    async def get_artifact(self, artifact_id: str) -> Artifact | None:
        return await self._store.load(artifact_key(artifact_id), Artifact)

    async def list_run_events(
        self,
        run_id: str,
        *,
        limit: int = 500,
        direction: Literal["forward", "backward"] = "forward",
    ) -> list[ActivityStreamEntry]:
        """Oldest-first events; ``backward`` keeps the newest ``limit`` instead of the oldest."""
        await self._require_run(run_id)
        return await self._activity.list_run_events(run_id, limit=limit, direction=direction)

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    async def _require_run(self, run_id: str) -> Run:
        run = await self._store.load(run_key(run_id), Run)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        return run

    async def _require_task(self, task_id: str) -> Task:
        task = await self._store.load(task_key(task_id), Task)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    async def _mutate(self, key: str, model: type[V], change: Callable[[V], bool | None]) -> V:
        """Read, change and write back one aggregate, retrying on version conflicts.

        ``change`` may return ``False`` to leave the stored document untouched.
        """
        attempts = self._settings.scheduling.store_retry_attempts
        for attempt in range(1, attempts + 1):
            entity = await self._store.load(key, model)
            if entity is None:
                raise NotFoundError(f"{key} not found")
            if change(entity) is False:
                return entity
            try:
                return await self._store.save(key, entity)
            except StaleWriteError:
                if attempt == attempts:
                    raise
                logger.info("state_write_retry", key=key, attempt=attempt)
        raise StaleWriteError(key, expected=-1, actual=None)

    async def _emit(self, event_type: ActivityEventType, run: Run, **details: Any) -> None:
        await self._activity.emit(
            event_type,
            run_id=run.id,
            task_id=run.task_id,
            project_id=run.project_id,
            user_id=run.user_id,
            details=details,
        )


def _require_step(task: Task, step_id: str) -> Step:
    step = task.step(step_id)
    if step is None:
        raise NotFoundError(f"Step {step_id} not found in task {task.id}")
    return step


def _start_step(task: Task, step_id: str) -> None:
    step = _require_step(task, step_id)
    step.advance(StepStatus.IN_PROGRESS)
    task.current_step = step_id
    task.updated_at = utcnow()


def _selection_context(task: Task) -> ModelSelectionContext:
    preferences = task.model_preferences
    return ModelSelectionContext(
        user_id=task.user_id,
        project_id=task.project_id,
        prefer_cloud=preferences.prefer_cloud,
        prefer_local=preferences.prefer_local,
        max_cost_per_request=preferences.max_cost_per_request,
    )


__all__ = ["DEFAULT_PROJECT_NAME", "Orchestrator", "RunScheduler"]
