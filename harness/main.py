from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from .api.routes import router as api_router
from .core.audit import AuditLoggingMiddleware
from .core.config import Settings, get_settings
from .core.logging import configure_logging, get_logger
from .dependencies import ServiceContainer
from .orchestration.orchestrator import Orchestrator

logger = get_logger(name=__name__)


async def _approval_expiry_loop(orchestrator: Orchestrator, interval: int) -> None:
    while True:
        await asyncio.sleep(max(5, interval))
        try:
            await orchestrator.expire_stale_approvals()
        except Exception as exc:  # pragma: no cover - background error logging
            logger.exception("approval_expiry_loop_failed", error=str(exc))


def create_app(settings: Settings | None = None, *, container: ServiceContainer | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.observability.log_level, json_logs=settings.observability.json_logs)

    @asynccontextmanager
    async def app_lifespan(app: FastAPI):
        services = container or ServiceContainer.build(settings)
        app.state.container = services
        app.state.settings = services.settings
        app.state.redis = services.redis
        await services.start()

        sweep: asyncio.Task[None] | None = None
        if settings.approvals.expiry_sweep_enabled:
            sweep = asyncio.create_task(
                _approval_expiry_loop(services.orchestrator, settings.approvals.expiry_sweep_interval_seconds)
            )
        app.state.expiry_task = sweep
        try:
            yield
        finally:
            if sweep is not None:
                sweep.cancel()
                with suppress(asyncio.CancelledError):  # pragma: no cover - managed shutdown
                    await sweep
            await services.aclose()

    app = FastAPI(title="Harness Orchestrator", version="0.1.0", lifespan=app_lifespan)
    app.add_middleware(AuditLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.frontend_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/", tags=["health"])
    async def root() -> dict[str, str]:
        return {"message": "Harness orchestrator running"}

    @app.get("/health", tags=["health"])
    async def healthcheck(request: Request) -> dict[str, Any]:
        services: ServiceContainer = request.app.state.container
        store_ok = await services.store.ping()
        return {
            "status": "ok" if store_ok else "degraded",
            "store": "connected" if store_ok else "unavailable",
            "workflow_engine": "enabled" if services.workflows.enabled else "disabled",
            "queue": {"running": services.queue.running, "pending": services.queue.pending},
        }

    if settings.observability.prometheus_enabled:

        @app.get("/metrics", tags=["observability"])
        async def metrics() -> Response:
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
