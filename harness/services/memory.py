from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from ..core.config import MemorySettings
from ..core.logging import get_logger

logger = get_logger(name=__name__)

MessageRole = Literal["user", "assistant", "system"]

MAX_SESSION_SUMMARIES = 20
MAX_LONGTERM_MEMORIES = 100

_WORD = re.compile(r"[a-z0-9]{3,}")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class MemoryMessage:
    role: MessageRole
    content: str
    agent: str | None = None
    id: str = field(default_factory=lambda: f"msg-{uuid4().hex[:12]}")
    timestamp: str = field(default_factory=_now)


@dataclass(slots=True)
class AgentInvocation:
    agent: str
    step_id: str
    tokens: int = 0


@dataclass(slots=True)
class SessionSummary:
    task_id: str
    summary: str
    key_findings: list[str]
    agents_invoked: list[AgentInvocation]
    id: str = field(default_factory=lambda: f"summary-{uuid4().hex[:12]}")
    timestamp: str = field(default_factory=_now)


@dataclass(slots=True)
class LongTermMemory:
    content: str
    source: str
    category: str = "finding"
    importance: float = 0.5
    id: str = field(default_factory=lambda: f"mem-{uuid4().hex[:12]}")
    created_at: str = field(default_factory=_now)


class MemoryContextProvider:
    """Three tiers of conversational memory rendered as plain context strings.

    Recent messages are kept per task, session summaries and long-term
    findings per project. Every tier is a capped Redis list of JSON documents.
    """

    def __init__(self, client: Any, settings: MemorySettings) -> None:
        self._client = client
        self._settings = settings

    def _key(self, *parts: str) -> str:
        return ":".join((self._settings.namespace, *parts))

    async def _append(self, key: str, document: dict[str, Any], *, keep: int) -> None:
        await self._client.rpush(key, json.dumps(document))
        await self._client.ltrim(key, -keep, -1)
        await self._client.expire(key, self._settings.ttl_seconds)

    async def _documents(self, key: str, *, last: int | None = None) -> list[dict[str, Any]]:
        start = -last if last else 0
        raw_items = await self._client.lrange(key, start, -1) or []
        documents: list[dict[str, Any]] = []
        for raw in raw_items:
            try:
                document = json.loads(raw)
            except (TypeError, json.JSONDecodeError):
                logger.warning("memory_document_invalid", key=key)
                continue
            if isinstance(document, dict):
                documents.append(document)
        return documents

    async def add_message(self, task_id: str, role: MessageRole, content: str, *, agent: str | None = None) -> MemoryMessage:
        message = MemoryMessage(role=role, content=content, agent=agent)
        await self._append(self._key("recent", task_id), asdict(message), keep=self._settings.recent_window)
        return message

    async def recent_messages(self, task_id: str) -> list[MemoryMessage]:
        documents = await self._documents(self._key("recent", task_id))
        return [MemoryMessage(**document) for document in documents]

    async def recent_context(self, task_id: str) -> str:
        messages = await self.recent_messages(task_id)
        if not messages:
            return "No previous context available."
        lines = []
        for message in messages:
            via = f" via {message.agent}" if message.agent else ""
            lines.append(f"[{message.role.upper()}{via}]: {message.content}")
        return "\n\n".join(lines)

    async def create_summary(
        self,
        project_id: str,
        task_id: str,
        *,
        goal: str,
        outcome: str,
        agents_invoked: list[AgentInvocation],
        raw_results: str = "",
    ) -> SessionSummary:
        findings = [line.strip() for line in raw_results.splitlines() if line.strip()][:3] or [outcome]
        summary = SessionSummary(
            task_id=task_id,
            summary=f"{goal} - {outcome}",
            key_findings=findings,
            agents_invoked=list(agents_invoked),
        )
        await self._append(self._key("summaries", project_id), asdict(summary), keep=MAX_SESSION_SUMMARIES)
        return summary

    async def summaries(self, project_id: str, *, limit: int | None = None) -> list[SessionSummary]:
        documents = await self._documents(self._key("summaries", project_id), last=limit)
        summaries: list[SessionSummary] = []
        for document in documents:
            invocations = [AgentInvocation(**item) for item in document.pop("agents_invoked", [])]
            summaries.append(SessionSummary(agents_invoked=invocations, **document))
        return summaries

    async def summary_context(self, project_id: str, limit: int | None = None) -> str:
        recent = await self.summaries(project_id, limit=limit or self._settings.summary_window)
        if not recent:
            return "No previous session summaries."
        blocks = []
        for index, summary in enumerate(recent, start=1):
            agents = ", ".join(invocation.agent for invocation in summary.agents_invoked)
            findings = "; ".join(summary.key_findings[:2])
            blocks.append(
                f"Session {index} ({summary.timestamp[:10]}):\n"
                f"  Summary: {summary.summary}\n"
                f"  Agents: {agents}\n"
                f"  Key Findings: {findings}"
            )
        return "\n\n".join(blocks)

    async def store_memory(
        self,
        project_id: str,
        content: str,
        *,
        source: str,
        category: str = "finding",
        importance: float = 0.5,
    ) -> LongTermMemory:
        memory = LongTermMemory(content=content, source=source, category=category, importance=importance)
        await self._append(self._key("longterm", project_id), asdict(memory), keep=MAX_LONGTERM_MEMORIES)
        return memory

    async def retrieve_relevant(self, project_id: str, query: str, *, limit: int | None = None) -> list[LongTermMemory]:
        """Rank stored findings by keyword overlap with ``query``; recency breaks ties."""
        limit = limit or self._settings.longterm_limit
        memories = [LongTermMemory(**document) for document in await self._documents(self._key("longterm", project_id))]
        if not memories:
            return []
        terms = set(_WORD.findall(query.lower()))
        scored = [
            (len(terms & set(_WORD.findall(memory.content.lower()))), position, memory)
            for position, memory in enumerate(memories)
        ]
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [memory for _, _, memory in scored[:limit]]

    async def longterm_context(self, project_id: str, query: str) -> str:
        memories = await self.retrieve_relevant(project_id, query)
        if not memories:
            return "No relevant long-term memories."
        lines = [f"{index}. [{memory.source}] {memory.content}" for index, memory in enumerate(memories, start=1)]
        return "Relevant long-term memories:\n" + "\n".join(lines)

    async def planning_context(self, task_id: str, project_id: str, query: str) -> str:
        recent = await self.recent_context(task_id)
        summaries = await self.summary_context(project_id)
        longterm = await self.longterm_context(project_id, query)
        return f"{recent}\n\n{summaries}\n\n{longterm}"

    async def step_context(self, task_id: str, project_id: str, description: str) -> str:
        recent = await self.recent_context(task_id)
        longterm = await self.longterm_context(project_id, description)
        return f"{recent}\n\n{longterm}"

    async def finalize(
        self,
        project_id: str,
        task_id: str,
        *,
        goal: str,
        outcome: str,
        agents_invoked: list[AgentInvocation],
        raw_results: str,
    ) -> None:
        """Record a session summary and the task's findings; failures are logged, not raised."""
        try:
            await self.create_summary(
                project_id,
                task_id,
                goal=goal,
                outcome=outcome,
                agents_invoked=agents_invoked,
                raw_results=raw_results,
            )
        except Exception as exc:  # pragma: no cover - memory is best effort
            logger.warning("memory_summary_failed", task_id=task_id, error=str(exc))
        if not raw_results.strip():
            return
        try:
            await self.store_memory(project_id, raw_results, source=f"task:{task_id}", importance=0.6)
        except Exception as exc:  # pragma: no cover - memory is best effort
            logger.warning("memory_store_failed", task_id=task_id, error=str(exc))


__all__ = [
    "AgentInvocation",
    "LongTermMemory",
    "MemoryContextProvider",
    "MemoryMessage",
    "SessionSummary",
]
