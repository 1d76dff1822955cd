from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol

from ..core.errors import AgentExecutionError
from ..core.logging import get_logger
from ..orchestration.enums import AgentType
from ..services.llm import LLMService

logger = get_logger(name=__name__)


@dataclass(slots=True)
class AgentRequest:
    """Everything a direct executor receives for one step."""

    task_id: str
    step_id: str
    project_id: str
    user_id: str
    agent: AgentType
    inputs: str
    recent_context: str = ""
    rag_context: str = ""
    model: str | None = None
    library_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AgentResult:
    success: bool
    outputs: dict[str, Any] = field(default_factory=dict)
    artifacts: list[str] = field(default_factory=list)
    explanation: str | None = None
    tokens_used: int = 0
    duration_ms: int = 0
    model_used: str | None = None


class AgentExecutor(Protocol):
    async def execute(self, request: AgentRequest) -> AgentResult:
        ...


ExecutorFactory = Callable[[AgentType], AgentExecutor]

AGENT_PROMPTS: dict[AgentType, str] = {
    AgentType.ORCHESTRATOR: "You coordinate specialist agents and synthesize their results.",
    AgentType.RESEARCHER: "You research the topic, cite sources where possible and list open questions.",
    AgentType.CODER: "You write focused, working code and explain the change briefly.",
    AgentType.DESIGN: "You propose architecture and interface designs with clear trade-offs.",
    AgentType.ANALYST: "You analyze data and evidence and report measurable conclusions.",
    AgentType.CRITIC: "You review prior work for correctness, security and quality issues.",
    AgentType.SKEPTIC: "You challenge assumptions and play devil's advocate on business value.",
    AgentType.RAG: "You answer strictly from the retrieved documents provided in context.",
    AgentType.LIBRARIAN: "You organize and describe documents for later retrieval.",
    AgentType.VISION: "You describe and interpret visual material referenced in the request.",
    AgentType.UPDATE: "You assess software versions and upgrade options.",
    AgentType.TOOLSMITH: "You design small deterministic tool wrappers with explicit inputs and outputs.",
}


@dataclass
class LocalAgent:
    """Generic direct executor that prompts the local model for any agent type."""

    agent: AgentType
    llm: LLMService
    system_prompt: str = ""

    def __post_init__(self) -> None:
        if not self.system_prompt:
            self.system_prompt = AGENT_PROMPTS.get(self.agent, AGENT_PROMPTS[AgentType.ORCHESTRATOR])

    async def execute(self, request: AgentRequest) -> AgentResult:
        llm = self.llm.with_model(request.model)
        prompt = _build_prompt(request)
        logger.info("local_agent_invoked", agent=self.agent.value, step_id=request.step_id, model=llm.model)
        completion = await llm.generate(prompt, system_prompt=self.system_prompt)
        if not completion.available:
            raise AgentExecutionError(self.agent.value, completion.text)
        return AgentResult(
            success=True,
            outputs={"answer": completion.text, "agent": self.agent.value},
            explanation=completion.text,
            tokens_used=completion.tokens_used,
            model_used=completion.model,
        )


def _build_prompt(request: AgentRequest) -> str:
    sections = [f"Task:\n{request.inputs}"]
    if request.recent_context:
        sections.append(f"Recent conversation:\n{request.recent_context}")
    if request.rag_context:
        sections.append(f"Project memory:\n{request.rag_context}")
    return "\n\n".join(sections)


class AgentExecutorRegistry:
    """Direct executors keyed by agent type, with a default factory for unregistered agents."""

    def __init__(
        self,
        default_factory: ExecutorFactory,
        executors: Mapping[AgentType, AgentExecutor] | None = None,
    ) -> None:
        self._default_factory = default_factory
        self._executors: dict[AgentType, AgentExecutor] = dict(executors or {})
        self._defaults: dict[AgentType, AgentExecutor] = {}

    @classmethod
    def with_local_agents(cls, llm: LLMService) -> "AgentExecutorRegistry":
        return cls(lambda agent: LocalAgent(agent=agent, llm=llm))

    def register(self, agent: AgentType, executor: AgentExecutor) -> None:
        self._executors[agent] = executor

    def unregister(self, agent: AgentType) -> None:
        self._executors.pop(agent, None)

    def is_registered(self, agent: AgentType) -> bool:
        return agent in self._executors

    def resolve(self, agent: AgentType) -> AgentExecutor:
        executor = self._executors.get(agent)
        if executor is not None:
            return executor
        if agent not in self._defaults:
            self._defaults[agent] = self._default_factory(agent)
        return self._defaults[agent]


__all__ = [
    "AGENT_PROMPTS",
    "AgentExecutor",
    "AgentExecutorRegistry",
    "AgentRequest",
    "AgentResult",
    "LocalAgent",
]
