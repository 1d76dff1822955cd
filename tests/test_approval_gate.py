from __future__ import annotations

from datetime import datetime, timedelta, timezone

from harness.core.config import ApprovalSettings, AutoApprovalPolicy
from harness.orchestration.approvals import (
    ApprovalGate,
    assess_description_risk,
    assess_result_risk,
    generate_preview,
    infer_approval_type,
)
from harness.orchestration.enums import AgentType, ApprovalTrigger, ApprovalType, RiskLevel
from harness.orchestration.state import Step, Task

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _gate(**policy) -> ApprovalGate:
    settings = ApprovalSettings(policy=AutoApprovalPolicy(**policy)) if policy else ApprovalSettings()
    return ApprovalGate(settings, now=lambda: NOW)


def _task(project_id: str = "proj-1") -> Task:
    return Task(id="task-1", project_id=project_id, user_id="alice", query="q")


def _step(**overrides) -> Step:
    payload = {"id": "step-1", "description": "Research: onboarding", "agent": AgentType.RESEARCHER}
    payload.update(overrides)
    return Step(**payload)


def test_plain_research_step_is_low_risk_and_auto_approved() -> None:
    decision = _gate().should_require_approval(_step(), _task())
    assert decision.required is False
    assert decision.assessment.level is RiskLevel.LOW
    assert decision.assessment.score == 0
    assert decision.reason == "Auto-approved by policy"


def test_explicit_flag_always_requires_approval() -> None:
    decision = _gate().should_require_approval(_step(require_approval=True), _task())
    assert decision.required is True
    assert decision.reason == "Explicitly marked for approval"


def test_coder_with_code_execution_is_medium_risk() -> None:
    step = _step(agent=AgentType.CODER, description="Implement: pipeline", approval_type=ApprovalType.CODE_EXECUTION)
    assessment = _gate().assess_risk(step, _task())
    assert assessment.score == 45
    assert assessment.level is RiskLevel.MEDIUM
    assert assessment.requires_manual_approval is True
    assert assessment.auto_approvable is False


def test_production_project_raises_risk_to_high() -> None:
    step = _step(agent=AgentType.CODER, description="Implement: pipeline", approval_type=ApprovalType.CODE_EXECUTION)
    decision = _gate().should_require_approval(step, _task(project_id="payments-prod"))
    assert decision.assessment.level is RiskLevel.HIGH
    assert decision.required is True
    assert decision.reason.startswith("High risk operation")


def test_description_patterns_accumulate() -> None:
    score, factors = assess_description_risk("sudo rm -rf the .env secret and delete the public bucket")
    assert score >= 50
    assert "Destructive operation detected" in factors
    assert "External access detected" in factors


def test_result_patterns_detect_risky_code_and_bulk_files() -> None:
    outputs = {"code": "process.exit(1)", "files": [f"f{index}.py" for index in range(12)], "commands": ["ls"]}
    score, factors = assess_result_risk(outputs)
    assert score == 35
    assert "Large number of files affected: 12" in factors
    assert "Command execution in result" in factors
    assert assess_result_risk(None) == (0, [])


def test_low_risk_without_policy_still_passes_when_few_factors() -> None:
    decision = _gate(enabled=False).should_require_approval(_step(), _task())
    assert decision.required is False
    assert decision.reason is None


def test_medium_risk_is_manual_even_with_permissive_policy() -> None:
    step = _step(agent=AgentType.TOOLSMITH, description="Build wrapper")
    decision = _gate(max_risk_level="medium").should_require_approval(step, _task())
    assert decision.assessment.level is RiskLevel.MEDIUM
    assert decision.required is True


def test_approval_type_is_inferred_from_description() -> None:
    assert infer_approval_type(_step(description="Write file report.md")) is ApprovalType.FILE_WRITE
    assert infer_approval_type(_step(description="Push to git")) is ApprovalType.GIT_PUSH
    assert infer_approval_type(_step(description="Create workflow")) is ApprovalType.WORKFLOW_CREATION
    assert infer_approval_type(_step(description="Call the billing API")) is ApprovalType.API_CALL
    assert infer_approval_type(_step(description="Something else")) is ApprovalType.CODE_EXECUTION


def test_preview_keeps_only_well_formed_entries() -> None:
    preview = generate_preview(
        {
            "files": ["a.py"],
            "api_calls": [{"method": "POST", "url": "https://x"}, {"url": "missing-method"}],
            "workflow": {"name": "wf"},
            "commands": "not-a-list",
        }
    )
    assert preview.files == ["a.py"]
    assert [call.method for call in preview.api_calls] == ["POST"]
    assert preview.workflow == {"name": "wf"}
    assert preview.commands is None


def test_create_approval_sets_expiry_from_risk_level() -> None:
    step = _step(agent=AgentType.CODER, description="Implement: pipeline", approval_type=ApprovalType.CODE_EXECUTION)
    approval = _gate().create_approval(step, _task(), "run-1", trigger=ApprovalTrigger.STATIC)

    assert approval.run_id == "run-1"
    assert approval.type is ApprovalType.CODE_EXECUTION
    assert approval.risk_level is RiskLevel.MEDIUM
    assert approval.created_at == NOW
    assert approval.expires_at == NOW + timedelta(hours=8)
    assert "Risk factors:" in approval.description
    assert approval.trigger is ApprovalTrigger.STATIC
