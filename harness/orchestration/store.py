from __future__ import annotations

import asyncio
import json
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis
from redis.exceptions import WatchError

from ..core.config import Settings
from ..core.errors import StaleWriteError
from ..core.logging import get_logger
from .state import VersionedModel

logger = get_logger(name=__name__)

M = TypeVar("M", bound=BaseModel)
V = TypeVar("V", bound=VersionedModel)


def task_key(task_id: str) -> str:
    return f"task:{task_id}"


def run_key(run_id: str) -> str:
    return f"run:{run_id}"


def approval_key(approval_id: str) -> str:
    return f"approval:{approval_id}"


def termination_key(run_id: str) -> str:
    return f"termination:{run_id}"


def project_key(project_id: str) -> str:
    return f"project:{project_id}"


def library_key(library_id: str) -> str:
    return f"library:{library_id}"


def artifact_key(artifact_id: str) -> str:
    return f"artifact:{artifact_id}"


def model_decision_key(task_id: str) -> str:
    return f"model_decision:{task_id}"


def history_key(project_id: str, agent: str) -> str:
    return f"task_history:{project_id}:{agent}"


def _stored_version(raw: str | bytes | None) -> int | None:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return -1
    if not isinstance(payload, dict):
        return -1
    version = payload.get("version", 0)
    return version if isinstance(version, int) else -1


class StateStore:
    """Document store for orchestration aggregates.

    Entities are written whole. ``save`` performs a compare-and-set on the
    ``version`` field so two writers can never silently overwrite each other;
    ``put`` is for append-once or last-writer-wins documents (termination
    records, model decisions). Reads validate against the pydantic schema and
    report invalid documents as absent.
    """

    async def load(self, key: str, model: type[M]) -> M | None:
        raw = await self._read(key)
        if raw is None:
            return None
        return self._validate(key, raw, model)

    async def save(self, key: str, entity: V, *, ttl: int | None = None) -> V:
        updated = entity.model_copy(update={"version": entity.version + 1})
        payload = updated.model_dump_json()
        written = await self._compare_and_write(key, payload, expected_version=entity.version, ttl=ttl)
        if not written:
            actual = _stored_version(await self._read(key))
            raise StaleWriteError(key, expected=entity.version, actual=actual)
        return updated

    async def put(self, key: str, entity: BaseModel, *, ttl: int | None = None) -> None:
        await self._write(key, entity.model_dump_json(), ttl=ttl)

    async def scan(self, prefix: str, model: type[M]) -> list[M]:
        items: list[M] = []
        for key in sorted(await self._keys(prefix)):
            raw = await self._read(key)
            if raw is None:
                continue
            entity = self._validate(key, raw, model)
            if entity is not None:
                items.append(entity)
        return items

    async def delete(self, key: str) -> None:
        await self._delete(key)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    @staticmethod
    def _validate(key: str, raw: str | bytes, model: type[M]) -> M | None:
        try:
            return model.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("state_validation_failed", key=key, model=model.__name__, errors=exc.error_count())
            return None

    async def _read(self, key: str) -> str | bytes | None:
        raise NotImplementedError

    async def _write(self, key: str, payload: str, *, ttl: int | None) -> None:
        raise NotImplementedError

    async def _compare_and_write(
        self,
        key: str,
        payload: str,
        *,
        expected_version: int,
        ttl: int | None,
    ) -> bool:
        raise NotImplementedError

    async def _keys(self, prefix: str) -> list[str]:
        raise NotImplementedError

    async def _delete(self, key: str) -> None:
        raise NotImplementedError


class InMemoryStateStore(StateStore):
    def __init__(self) -> None:
        self._documents: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def _read(self, key: str) -> str | None:
        async with self._lock:
            return self._documents.get(key)

    async def _write(self, key: str, payload: str, *, ttl: int | None) -> None:  # noqa: ARG002
        async with self._lock:
            self._documents[key] = payload

    async def _compare_and_write(
        self,
        key: str,
        payload: str,
        *,
        expected_version: int,
        ttl: int | None,  # noqa: ARG002
    ) -> bool:
        async with self._lock:
            current = _stored_version(self._documents.get(key))
            if (current or 0) != expected_version:
                return False
            self._documents[key] = payload
            return True

    async def _keys(self, prefix: str) -> list[str]:
        async with self._lock:
            return [key for key in self._documents if key.startswith(prefix)]

    async def _delete(self, key: str) -> None:
        async with self._lock:
            self._documents.pop(key, None)

    def raw(self, key: str) -> str | None:
        return self._documents.get(key)

    def inject_raw(self, key: str, payload: str) -> None:
        self._documents[key] = payload


class RedisStateStore(StateStore):
    def __init__(self, client: Any, *, prefix: str = "") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_settings(cls, settings: Settings, *, client: Any | None = None) -> "RedisStateStore":
        if client is None:
            client = Redis.from_url(str(settings.redis.url), decode_responses=True)
        return cls(client, prefix=settings.redis.key_prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _strip(self, key: str | bytes) -> str:
        if isinstance(key, bytes):
            key = key.decode("utf-8")
        return key[len(self._prefix):] if self._prefix and key.startswith(self._prefix) else key

    async def _read(self, key: str) -> str | bytes | None:
        return await self._client.get(self._key(key))

    async def _write(self, key: str, payload: str, *, ttl: int | None) -> None:
        await self._client.set(self._key(key), payload, ex=ttl)

    async def _compare_and_write(
        self,
        key: str,
        payload: str,
        *,
        expected_version: int,
        ttl: int | None,
    ) -> bool:
        full_key = self._key(key)
        async with self._client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(full_key)
                current = _stored_version(await pipe.get(full_key))
                if (current or 0) != expected_version:
                    return False
                pipe.multi()
                pipe.set(full_key, payload, ex=ttl)
                await pipe.execute()
            except WatchError:
                logger.info("state_write_conflict", key=key)
                return False
        return True

    async def _keys(self, prefix: str) -> list[str]:
        keys: list[str] = []
        async for key in self._client.scan_iter(match=f"{self._key(prefix)}*"):
            keys.append(self._strip(key))
        return keys

    async def _delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except Exception as exc:  # pragma: no cover - connection issues
            logger.warning("state_store_ping_failed", error=str(exc))
            return False

    async def close(self) -> None:
        await self._client.aclose()


def build_state_store(settings: Settings, *, client: Any | None = None) -> StateStore:
    if settings.environment == "test" and client is None:
        logger.info("state_store_in_memory", reason="test_environment")
        return InMemoryStateStore()
    store = RedisStateStore.from_settings(settings, client=client)
    logger.info("state_store_redis_enabled", environment=settings.environment)
    return store


__all__ = [
    "InMemoryStateStore",
    "RedisStateStore",
    "StateStore",
    "approval_key",
    "artifact_key",
    "build_state_store",
    "history_key",
    "library_key",
    "model_decision_key",
    "project_key",
    "run_key",
    "task_key",
    "termination_key",
]
