from __future__ import annotations

import hashlib
from time import perf_counter
from typing import Iterable
from uuid import uuid4

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from .identity import identity_from_headers
from .logging import get_logger

REQUEST_ID_HEADER = "X-Request-Id"
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def route_group(path: str, prefix: str = "/api/") -> str:
    """First path segment after the API prefix: runs, approvals, budget..."""
    remainder = path[len(prefix) :] if path.startswith(prefix) else path.lstrip("/")
    return remainder.split("/", 1)[0] or "root"


class AuditLoggingMiddleware(BaseHTTPMiddleware):
    """One structured audit line per API request, correlated by request id.

    The request id is taken from ``X-Request-Id`` when the gateway sets one,
    bound into structlog's context for everything logged while handling the
    request, and echoed on the response.
    """

    def __init__(self, app: ASGIApp, *, include_prefixes: Iterable[str] = ("/api/",)) -> None:
        super().__init__(app)
        self._prefixes = tuple(include_prefixes)
        self._logger = get_logger(name="audit")

    def _audited(self, path: str) -> bool:
        return not self._prefixes or any(path.startswith(prefix) for prefix in self._prefixes)

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        path = request.url.path
        if not self._audited(path):
            return await call_next(request)

        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        body = b""
        if request.method in MUTATING_METHODS:
            body = await request.body()
            request._body = body  # type: ignore[attr-defined]
        identity = identity_from_headers(request.headers)

        started = perf_counter()
        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)
            self._logger.info(
                "audit_log",
                method=request.method,
                path=path,
                route=route_group(path),
                status=response.status_code,
                subject=identity.subject or "anonymous",
                roles=list(identity.roles),
                payload_hash=hashlib.sha256(body).hexdigest() if body else None,
                content_length=len(body),
                client_ip=request.client.host if request.client else None,
                duration_ms=round((perf_counter() - started) * 1000, 3),
                retry_after=response.headers.get("Retry-After"),
            )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


__all__ = ["AuditLoggingMiddleware", "REQUEST_ID_HEADER", "route_group"]
