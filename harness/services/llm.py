from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, ClassVar, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama

from ..core.config import Settings
from ..core.logging import get_logger

logger = get_logger(name=__name__)

LLM_MAX_RETRIES = 3
LLM_BASE_DELAY = 1.0  # seconds
LLM_MAX_DELAY = 10.0  # seconds

LLM_UNAVAILABLE_MARKER = "[LLM_UNAVAILABLE]"


def is_llm_unavailable(response: str) -> bool:
    return response.startswith(LLM_UNAVAILABLE_MARKER)


def ollama_base_url(host: str, port: int) -> str:
    base = host.rstrip("/")
    if ":" in base.rsplit("/", maxsplit=1)[-1]:
        return base
    return f"{base}:{port}"


def backoff_delay(attempt: int) -> float:
    return min(LLM_BASE_DELAY * (2**attempt), LLM_MAX_DELAY)


def build_messages(prompt: str, system_prompt: str | None = None) -> Sequence[BaseMessage]:
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    return messages


@dataclass
class CircuitBreaker:
    """Process-wide guard that stops calling Ollama after repeated failures."""

    threshold: int = 5
    reset_after_seconds: float = 30.0
    failures: int = 0
    last_failure: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.failures >= self.threshold

    def allow(self, now: float) -> bool:
        if not self.is_open:
            return True
        if now - self.last_failure >= self.reset_after_seconds:
            logger.info("llm_circuit_breaker_reset", idle_seconds=round(now - self.last_failure, 3))
            self.failures = 0
            return True
        return False

    def record_failure(self, now: float) -> None:
        self.failures += 1
        self.last_failure = now

    def record_success(self) -> None:
        self.failures = 0


@dataclass(slots=True)
class LLMCompletion:
    text: str
    tokens_used: int
    model: str

    @property
    def available(self) -> bool:
        return not is_llm_unavailable(self.text)


@dataclass
class LLMService:
    """LangChain client for the local Ollama models behind direct agents.

    ``generate`` never raises: exhausted retries and an open circuit both come
    back as a completion whose text starts with ``LLM_UNAVAILABLE_MARKER``.
    """

    settings: Settings
    _client: Any
    model: str
    default_system_prompt: str = "You are a specialist agent inside a multi-agent harness. Be concise and structured."
    _client_cache: ClassVar[dict[str, Any]] = {}
    breaker: ClassVar[CircuitBreaker] = CircuitBreaker()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        model: str | None = None,
        client: Any | None = None,
    ) -> "LLMService":
        model_name = model or settings.ollama.model
        if client is None:
            client = cls._cached_client(settings, model_name)
        return cls(settings=settings, _client=client, model=model_name)

    @classmethod
    def _cached_client(cls, settings: Settings, model_name: str) -> ChatOllama:
        base_url = ollama_base_url(settings.ollama.host, settings.ollama.port)
        cache_key = f"{base_url}:{model_name}"
        if cache_key not in cls._client_cache:
            cls._client_cache[cache_key] = ChatOllama(
                model=model_name,
                base_url=base_url,
                temperature=settings.ollama.temperature,
            )
        return cls._client_cache[cache_key]

    def with_model(self, model: str | None) -> "LLMService":
        """Return a service bound to ``model``; injected non-Ollama clients are shared as-is."""
        if not model or model == self.model:
            return self
        if isinstance(self._client, ChatOllama):
            return LLMService.from_settings(self.settings, model=model)
        return LLMService(settings=self.settings, _client=self._client, model=model)

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMCompletion:
        if not self.breaker.allow(time.time()):
            logger.warning("llm_circuit_breaker_open", failures=self.breaker.failures, model=self.model)
            return self._unavailable("LLM temporarily unavailable. Circuit breaker open.")

        client = self._client
        options: dict[str, Any] = {}
        if temperature is not None:
            options["temperature"] = temperature
        if max_tokens is not None:
            options["num_predict"] = max_tokens
        if options and hasattr(client, "with_options"):
            client = client.with_options(**options)

        messages = build_messages(prompt, system_prompt or self.default_system_prompt)
        result = await self._invoke_with_retry(client, messages)
        if result is None:
            return self._unavailable(f"LLM generation failed after {LLM_MAX_RETRIES} attempts.")
        text = _extract_content(result)
        return LLMCompletion(text=text, tokens_used=_extract_tokens(result, prompt, text), model=self.model)

    async def _invoke_with_retry(self, client: Any, messages: Sequence[BaseMessage]) -> Any | None:
        timeout = self.settings.ollama.request_timeout_seconds
        error = "unknown error"
        for attempt in range(LLM_MAX_RETRIES):
            try:
                result = await asyncio.wait_for(client.ainvoke(messages), timeout=timeout)
            except asyncio.TimeoutError:
                error = f"timed out after {timeout} seconds"
            except Exception as exc:  # noqa: BLE001 - every client failure counts against the breaker
                error = str(exc) or exc.__class__.__name__
            else:
                self.breaker.record_success()
                return result

            self.breaker.record_failure(time.time())
            logger.warning(
                "llm_generation_retry",
                attempt=attempt + 1,
                max_attempts=LLM_MAX_RETRIES,
                error=error,
                model=self.model,
            )
            if attempt < LLM_MAX_RETRIES - 1:
                await asyncio.sleep(backoff_delay(attempt))

        logger.error(
            "llm_generation_failed",
            error=error,
            model=self.model,
            host=self.settings.ollama.host,
            attempts=LLM_MAX_RETRIES,
        )
        return None

    def _unavailable(self, reason: str) -> LLMCompletion:
        return LLMCompletion(text=f"{LLM_UNAVAILABLE_MARKER} {reason}", tokens_used=0, model=self.model)


def _extract_content(result: Any) -> str:
    content = result.content if isinstance(result, AIMessage) or hasattr(result, "content") else result
    if isinstance(content, list):
        return " ".join(str(item) for item in content)
    return str(content)


def _extract_tokens(result: Any, prompt: str, text: str) -> int:
    usage = getattr(result, "usage_metadata", None)
    if isinstance(usage, dict) and usage.get("total_tokens"):
        return int(usage["total_tokens"])
    # Rough estimate: four characters per token.
    return (len(prompt) + len(text)) // 4


__all__ = [
    "CircuitBreaker",
    "LLMCompletion",
    "LLMService",
    "LLM_UNAVAILABLE_MARKER",
    "backoff_delay",
    "build_messages",
    "is_llm_unavailable",
    "ollama_base_url",
]
