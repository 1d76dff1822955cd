from __future__ import annotations

import logging
from typing import Any

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

SERVICE_NAME = "harness-orchestrator"
RUN_CONTEXT_KEYS = ("run_id", "task_id", "step_id")


def _service_stamp(service: str) -> Processor:
    def add_service(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", service)
        return event_dict

    return add_service


def build_processors(*, service: str = SERVICE_NAME, json_logs: bool = True) -> list[Processor]:
    """Processor chain shared by every logger: context, level, timestamps, then one renderer."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _service_stamp(service),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    processors.append(structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer())
    return processors


def configure_logging(level: str = "INFO", *, json_logs: bool = True, service: str = SERVICE_NAME) -> None:
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
    )
    structlog.configure(
        processors=build_processors(service=service, json_logs=json_logs),
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(*, name: str | None = None, **kwargs: Any) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger(name)
    if kwargs:
        return logger.bind(**kwargs)
    return logger


def bind_run_context(**values: Any) -> None:
    """Attach run identifiers to every log line emitted by the current task."""
    structlog.contextvars.bind_contextvars(**{key: value for key, value in values.items() if key in RUN_CONTEXT_KEYS})


def clear_run_context() -> None:
    # Request-scoped keys (request_id) belong to the audit middleware and survive.
    structlog.contextvars.unbind_contextvars(*RUN_CONTEXT_KEYS)


__all__ = [
    "RUN_CONTEXT_KEYS",
    "SERVICE_NAME",
    "bind_run_context",
    "build_processors",
    "clear_run_context",
    "configure_logging",
    "get_logger",
]
