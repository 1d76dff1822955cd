from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from ..core.config import ApprovalSettings, AutoApprovalPolicy
from .enums import AgentType, ApprovalTrigger, ApprovalType, RiskLevel
from .state import ApiCallPreview, Approval, ApprovalPreview, Step, Task

TimestampFactory = Callable[[], datetime]

RISKY_FILE_PATTERNS = (
    re.compile(r"\.env", re.IGNORECASE),
    re.compile(r"\.git"),
    re.compile(r"\.ssh"),
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"secret", re.IGNORECASE),
    re.compile(r"token", re.IGNORECASE),
    re.compile(r"credentials", re.IGNORECASE),
    re.compile(r"private.*key", re.IGNORECASE),
)

RISKY_COMMAND_PATTERNS = (
    re.compile(r"rm\s+-rf"),
    re.compile(r"sudo"),
    re.compile(r"chmod\s+777"),
    re.compile(r"curl.*\|.*sh"),
    re.compile(r"wget.*\|.*sh"),
    re.compile(r"docker\s+run"),
    re.compile(r"eval\s*\("),
    re.compile(r"exec\s*\("),
)

RISKY_API_PATTERNS = (
    re.compile(r"delete", re.IGNORECASE),
    re.compile(r"destroy", re.IGNORECASE),
    re.compile(r"drop", re.IGNORECASE),
    re.compile(r"truncate", re.IGNORECASE),
    re.compile(r"payment", re.IGNORECASE),
    re.compile(r"billing", re.IGNORECASE),
)

RISKY_CODE_PATTERNS = (
    re.compile(r"process\.exit"),
    re.compile(r"child_process"),
    re.compile(r"fs\.unlink"),
    re.compile(r"fs\.rmdir"),
    re.compile(r"require\s*\(\s*['\"]child_process['\"]\s*\)"),
)

HIGH_RISK_AGENTS = frozenset({AgentType.CODER, AgentType.TOOLSMITH})

APPROVAL_TYPE_RISK: dict[ApprovalType, int] = {
    ApprovalType.FILE_WRITE: 15,
    ApprovalType.CODE_EXECUTION: 25,
    ApprovalType.GIT_PUSH: 20,
    ApprovalType.WORKFLOW_CREATION: 30,
    ApprovalType.API_CALL: 10,
}

HIGH_RISK_THRESHOLD = 50
MEDIUM_RISK_THRESHOLD = 20


@dataclass(slots=True)
class RiskAssessment:
    level: RiskLevel
    score: int
    factors: list[str] = field(default_factory=list)
    requires_manual_approval: bool = False
    auto_approvable: bool = False


@dataclass(slots=True)
class ApprovalDecision:
    required: bool
    assessment: RiskAssessment
    reason: str | None = None


def _score_patterns(text: str, patterns: tuple[re.Pattern[str], ...], label: str, weight: int) -> tuple[int, list[str]]:
    factors = [f"{label}: {pattern.pattern}" for pattern in patterns if pattern.search(text)]
    return weight * len(factors), factors


def assess_description_risk(description: str) -> tuple[int, list[str]]:
    score = 0
    factors: list[str] = []
    for patterns, label, weight in (
        (RISKY_FILE_PATTERNS, "Risky file pattern", 15),
        (RISKY_COMMAND_PATTERNS, "Risky command", 20),
        (RISKY_API_PATTERNS, "Risky API operation", 15),
    ):
        gained, found = _score_patterns(description, patterns, label, weight)
        score += gained
        factors.extend(found)

    lowered = description.lower()
    if any(word in lowered for word in ("delete", "remove", "drop")):
        factors.append("Destructive operation detected")
        score += 10
    if any(word in lowered for word in ("external", "public", "internet")):
        factors.append("External access detected")
        score += 5
    return score, factors


def assess_result_risk(outputs: Mapping[str, Any] | None) -> tuple[int, list[str]]:
    if not outputs:
        return 0, []
    serialized = json.dumps(outputs, default=str)
    score, factors = _score_patterns(serialized, RISKY_CODE_PATTERNS, "Risky code pattern in result", 15)

    files = outputs.get("files")
    if isinstance(files, list) and len(files) > 10:
        factors.append(f"Large number of files affected: {len(files)}")
        score += 10
    if isinstance(outputs.get("commands"), list):
        factors.append("Command execution in result")
        score += 10
    return score, factors


def infer_approval_type(step: Step) -> ApprovalType:
    description = step.description.lower()
    if "file" in description or "write" in description:
        return ApprovalType.FILE_WRITE
    if "code" in description or "execute" in description:
        return ApprovalType.CODE_EXECUTION
    if "git" in description or "push" in description:
        return ApprovalType.GIT_PUSH
    if "workflow" in description:
        return ApprovalType.WORKFLOW_CREATION
    if "api" in description or "call" in description:
        return ApprovalType.API_CALL
    return ApprovalType.CODE_EXECUTION


def enhance_description(description: str, assessment: RiskAssessment) -> str:
    if not assessment.factors:
        return description
    bullet_list = "\n".join(f"- {factor}" for factor in assessment.factors)
    return f"{description}\n\nRisk factors:\n{bullet_list}"


def generate_preview(outputs: Mapping[str, Any] | None) -> ApprovalPreview:
    if not outputs:
        return ApprovalPreview()
    files = outputs.get("files")
    commands = outputs.get("commands")
    api_calls = outputs.get("api_calls")
    workflow = outputs.get("workflow")
    return ApprovalPreview(
        files=[str(item) for item in files] if isinstance(files, list) else None,
        commands=[str(item) for item in commands] if isinstance(commands, list) else None,
        api_calls=(
            [ApiCallPreview.model_validate(item) for item in api_calls if isinstance(item, dict) and {"method", "url"} <= item.keys()]
            if isinstance(api_calls, list)
            else None
        ),
        workflow=workflow if isinstance(workflow, dict) else None,
    )


class ApprovalGate:
    """Risk assessment and Approval construction for gated steps.

    The gate owns no state; the orchestrator persists whatever Approval it
    returns.
    """

    def __init__(self, settings: ApprovalSettings, *, now: TimestampFactory | None = None) -> None:
        self._settings = settings
        self._now: TimestampFactory = now or (lambda: datetime.now(timezone.utc))

    @property
    def policy(self) -> AutoApprovalPolicy:
        return self._settings.policy

    def assess_risk(self, step: Step, task: Task, outputs: Mapping[str, Any] | None = None) -> RiskAssessment:
        factors: list[str] = []
        score = 0

        if step.agent in HIGH_RISK_AGENTS:
            factors.append(f"High-risk agent: {step.agent.value}")
            score += 20

        if step.approval_type is not None:
            factors.append(f"Operation type: {step.approval_type.value}")
            score += APPROVAL_TYPE_RISK.get(step.approval_type, 10)

        description_score, description_factors = assess_description_risk(step.description)
        score += description_score
        factors.extend(description_factors)

        result_score, result_factors = assess_result_risk(outputs)
        score += result_score
        factors.extend(result_factors)

        if "prod" in task.project_id:
            factors.append("Production environment detected")
            score += 30

        if score >= HIGH_RISK_THRESHOLD:
            level = RiskLevel.HIGH
        elif score >= MEDIUM_RISK_THRESHOLD:
            level = RiskLevel.MEDIUM
        else:
            level = RiskLevel.LOW

        return RiskAssessment(
            level=level,
            score=score,
            factors=factors,
            requires_manual_approval=score >= MEDIUM_RISK_THRESHOLD or len(factors) > 2,
            auto_approvable=score < MEDIUM_RISK_THRESHOLD and self.policy.enabled,
        )

    def should_require_approval(
        self,
        step: Step,
        task: Task,
        outputs: Mapping[str, Any] | None = None,
        policy: AutoApprovalPolicy | None = None,
    ) -> ApprovalDecision:
        policy = policy or self.policy
        assessment = self.assess_risk(step, task, outputs)

        if step.require_approval:
            return ApprovalDecision(required=True, assessment=assessment, reason="Explicitly marked for approval")

        if assessment.level is RiskLevel.HIGH:
            return ApprovalDecision(
                required=True,
                assessment=assessment,
                reason=f"High risk operation: {', '.join(assessment.factors)}",
            )

        if policy.enabled and assessment.auto_approvable:
            if assessment.level is RiskLevel.LOW or (
                assessment.level is RiskLevel.MEDIUM and policy.max_risk_level == "medium"
            ):
                return ApprovalDecision(required=False, assessment=assessment, reason="Auto-approved by policy")

        if assessment.requires_manual_approval:
            return ApprovalDecision(
                required=True,
                assessment=assessment,
                reason=f"Manual approval required: {', '.join(assessment.factors)}",
            )

        return ApprovalDecision(required=False, assessment=assessment)

    def expiry_for(self, level: RiskLevel) -> datetime:
        hours = self._settings.expiry_hours.get(level.value, 4)
        return self._now() + timedelta(hours=hours)

    def create_approval(
        self,
        step: Step,
        task: Task,
        run_id: str,
        *,
        trigger: ApprovalTrigger,
        outputs: Mapping[str, Any] | None = None,
    ) -> Approval:
        assessment = self.assess_risk(step, task, outputs)
        now = self._now()
        return Approval(
            run_id=run_id,
            task_id=task.id,
            project_id=task.project_id,
            step_id=step.id,
            user_id=task.user_id,
            type=step.approval_type or infer_approval_type(step),
            description=enhance_description(step.description, assessment),
            risk_level=assessment.level,
            risk_factors=list(assessment.factors),
            trigger=trigger,
            preview=generate_preview(outputs),
            created_at=now,
            expires_at=self.expiry_for(assessment.level),
        )


__all__ = [
    "ApprovalDecision",
    "ApprovalGate",
    "HIGH_RISK_AGENTS",
    "RiskAssessment",
    "assess_description_risk",
    "assess_result_risk",
    "enhance_description",
    "generate_preview",
    "infer_approval_type",
]
