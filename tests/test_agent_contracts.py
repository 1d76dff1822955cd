from __future__ import annotations

import pytest

from harness.agents.contracts import (
    DEFAULT_AGENT_CONTRACTS,
    DEFAULT_AGENT_MODELS,
    AgentContract,
    ContractEnforcer,
)
from harness.core.errors import ContractViolation
from harness.orchestration.enums import AgentType


def test_every_agent_has_a_contract_and_model_assignment() -> None:
    assert set(DEFAULT_AGENT_CONTRACTS) == set(AgentType)
    assert set(DEFAULT_AGENT_MODELS) == set(AgentType)
    for contract in DEFAULT_AGENT_CONTRACTS.values():
        assert contract.default_action in contract.action_allowlist


def test_default_action_is_allowlisted() -> None:
    enforcer = ContractEnforcer()
    assert enforcer.validate_allowlist(AgentType.CODER).valid
    assert enforcer.validate_allowlist(AgentType.CODER, "git_operations").valid


def test_unlisted_action_is_rejected() -> None:
    enforcer = ContractEnforcer()
    result = enforcer.validate_allowlist(AgentType.CRITIC, "code_execution")
    assert not result.valid
    assert result.errors == ["Action code_execution is not allowlisted for agent critic"]

    with pytest.raises(ContractViolation) as excinfo:
        enforcer.enforce_allowlist(AgentType.CRITIC, "code_execution")
    assert excinfo.value.agent == "critic"


def test_required_artifacts_accept_outputs_or_artifact_names() -> None:
    contract = AgentContract(
        agent=AgentType.CODER,
        action_allowlist=("code_generation",),
        default_action="code_generation",
        required_artifacts=("patch", "summary"),
    )
    enforcer = ContractEnforcer({AgentType.CODER: contract})

    assert enforcer.validate_required_artifacts(AgentType.CODER, {"patch": "diff"}, ["summary"]).valid

    missing = enforcer.validate_required_artifacts(AgentType.CODER, {"patch": "", "summary": "ok"})
    assert missing.errors == ["Missing required output: patch"]
    with pytest.raises(ContractViolation):
        enforcer.enforce_required_artifacts(AgentType.CODER, {})


def test_agent_without_contract_is_invalid() -> None:
    enforcer = ContractEnforcer({})
    assert enforcer.get_contract(AgentType.VISION) is None
    assert not enforcer.validate_allowlist(AgentType.VISION).valid
    assert not enforcer.validate_required_artifacts(AgentType.VISION, {"answer": 1}).valid
