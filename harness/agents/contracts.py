from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from ..core.errors import ContractViolation
from ..orchestration.enums import AgentType


@dataclass(slots=True, frozen=True)
class AgentContract:
    agent: AgentType
    action_allowlist: tuple[str, ...]
    default_action: str
    required_artifacts: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ModelAssignment:
    local: str
    cloud: str


@dataclass(slots=True)
class ContractValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)


def _build_contracts() -> dict[AgentType, AgentContract]:
    return {
        AgentType.ORCHESTRATOR: AgentContract(
            agent=AgentType.ORCHESTRATOR,
            action_allowlist=("model_selection", "rag_retrieval"),
            default_action="model_selection",
        ),
        AgentType.RESEARCHER: AgentContract(
            agent=AgentType.RESEARCHER,
            action_allowlist=("web_search", "rag_retrieval"),
            default_action="rag_retrieval",
        ),
        AgentType.CODER: AgentContract(
            agent=AgentType.CODER,
            action_allowlist=("code_generation", "file_read", "file_write", "git_operations", "code_execution"),
            default_action="code_generation",
        ),
        AgentType.DESIGN: AgentContract(
            agent=AgentType.DESIGN,
            action_allowlist=("diagram_generation", "rag_retrieval"),
            default_action="diagram_generation",
        ),
        AgentType.ANALYST: AgentContract(
            agent=AgentType.ANALYST,
            action_allowlist=("database_read", "code_execution", "rag_retrieval"),
            default_action="rag_retrieval",
        ),
        AgentType.CRITIC: AgentContract(
            agent=AgentType.CRITIC,
            action_allowlist=("rag_retrieval",),
            default_action="rag_retrieval",
        ),
        AgentType.SKEPTIC: AgentContract(
            agent=AgentType.SKEPTIC,
            action_allowlist=("rag_retrieval",),
            default_action="rag_retrieval",
        ),
        AgentType.RAG: AgentContract(
            agent=AgentType.RAG,
            action_allowlist=("rag_retrieval", "embedding_generation"),
            default_action="rag_retrieval",
        ),
        AgentType.LIBRARIAN: AgentContract(
            agent=AgentType.LIBRARIAN,
            action_allowlist=("file_read", "embedding_generation", "database_write"),
            default_action="file_read",
        ),
        AgentType.VISION: AgentContract(
            agent=AgentType.VISION,
            action_allowlist=("image_analysis", "file_read"),
            default_action="image_analysis",
        ),
        AgentType.UPDATE: AgentContract(
            agent=AgentType.UPDATE,
            action_allowlist=("web_search", "rag_retrieval", "api_calls"),
            default_action="rag_retrieval",
        ),
        AgentType.TOOLSMITH: AgentContract(
            agent=AgentType.TOOLSMITH,
            action_allowlist=("code_generation", "tool_creation"),
            default_action="tool_creation",
        ),
    }


DEFAULT_AGENT_CONTRACTS: dict[AgentType, AgentContract] = _build_contracts()

DEFAULT_AGENT_MODELS: dict[AgentType, ModelAssignment] = {
    AgentType.ORCHESTRATOR: ModelAssignment(local="gpt-oss:20b", cloud="gpt-oss:120b-cloud"),
    AgentType.RESEARCHER: ModelAssignment(local="gpt-oss:20b", cloud="qwen3-next:80b-cloud"),
    AgentType.CODER: ModelAssignment(local="gpt-oss:20b", cloud="devstral-2:123b-cloud"),
    AgentType.DESIGN: ModelAssignment(local="gpt-oss:20b", cloud="gemini-3-flash-preview-cloud"),
    AgentType.ANALYST: ModelAssignment(local="gpt-oss:20b", cloud="qwen3-coder:30b-cloud"),
    AgentType.CRITIC: ModelAssignment(local="gpt-oss:20b", cloud="deepseek-v3.1:671b-cloud"),
    AgentType.SKEPTIC: ModelAssignment(local="gpt-oss:20b", cloud="deepseek-v3.2-cloud"),
    AgentType.RAG: ModelAssignment(local="gpt-oss:20b", cloud="gpt-oss:20b"),
    AgentType.LIBRARIAN: ModelAssignment(local="gpt-oss:20b", cloud="gpt-oss:20b"),
    AgentType.VISION: ModelAssignment(local="gpt-oss:20b", cloud="gemini-3-flash-preview-cloud"),
    AgentType.UPDATE: ModelAssignment(local="gpt-oss:20b", cloud="gpt-oss:120b-cloud"),
    AgentType.TOOLSMITH: ModelAssignment(local="gpt-oss:20b", cloud="gpt-oss:20b"),
}


class ContractEnforcer:
    """Checks agent actions and outputs against their role contracts."""

    def __init__(self, contracts: Mapping[AgentType, AgentContract] | None = None) -> None:
        self._contracts = dict(DEFAULT_AGENT_CONTRACTS if contracts is None else contracts)

    def get_contract(self, agent: AgentType) -> AgentContract | None:
        return self._contracts.get(agent)

    def list_contracts(self) -> list[AgentContract]:
        return list(self._contracts.values())

    def validate_allowlist(self, agent: AgentType, action: str | None = None) -> ContractValidation:
        contract = self._contracts.get(agent)
        if contract is None:
            return ContractValidation(valid=False, errors=[f"No contract registered for agent: {agent.value}"])
        requested = action or contract.default_action
        if requested not in contract.action_allowlist:
            return ContractValidation(
                valid=False,
                errors=[f"Action {requested} is not allowlisted for agent {agent.value}"],
            )
        return ContractValidation(valid=True)

    def validate_required_artifacts(
        self,
        agent: AgentType,
        outputs: Mapping[str, Any],
        artifacts: list[str] | None = None,
    ) -> ContractValidation:
        contract = self._contracts.get(agent)
        if contract is None:
            return ContractValidation(valid=False, errors=[f"No contract registered for agent: {agent.value}"])
        produced = set(artifacts or []) | {key for key, value in outputs.items() if value not in (None, "", [], {})}
        missing = [name for name in contract.required_artifacts if name not in produced]
        return ContractValidation(valid=not missing, errors=[f"Missing required output: {name}" for name in missing])

    def enforce_allowlist(self, agent: AgentType, action: str | None = None) -> None:
        result = self.validate_allowlist(agent, action)
        if not result.valid:
            raise ContractViolation(agent.value, result.errors)

    def enforce_required_artifacts(
        self,
        agent: AgentType,
        outputs: Mapping[str, Any],
        artifacts: list[str] | None = None,
    ) -> None:
        result = self.validate_required_artifacts(agent, outputs, artifacts)
        if not result.valid:
            raise ContractViolation(agent.value, result.errors)


__all__ = [
    "AgentContract",
    "ContractEnforcer",
    "ContractValidation",
    "DEFAULT_AGENT_CONTRACTS",
    "DEFAULT_AGENT_MODELS",
    "ModelAssignment",
]
