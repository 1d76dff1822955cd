from __future__ import annotations

import httpx
import pytest

from harness.core.config import ObservabilitySettings
from harness.core.metrics import (
    increment_workflow_fallback,
    record_approval_outcome,
    record_cloud_spend,
    record_model_decision,
)
from harness.main import create_app
from tests.helpers.stubs import build_container, build_settings


@pytest.mark.asyncio
async def test_metrics_endpoint_includes_custom_series() -> None:
    settings = build_settings()
    app = create_app(settings, container=build_container(settings))

    increment_workflow_fallback(agent="researcher", error_type="http")
    record_approval_outcome(outcome="requested", trigger="static")
    record_model_decision(tier="tier1_fast")
    record_cloud_spend(model="devstral-2:123b-cloud", cost=0.25)

    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            response = await client.get("/metrics")
    finally:
        await transport.aclose()

    assert response.status_code == 200
    assert response.headers.get("content-type", "").startswith("text/plain")

    body = response.text
    assert 'harness_workflow_fallback_total{agent="researcher",error_type="http"}' in body
    assert 'harness_approvals_total{outcome="requested",trigger="static"}' in body
    assert 'harness_model_decisions_total{tier="tier1_fast"}' in body
    assert "harness_cloud_spend_usd_total" in body
    assert "harness_runs_active" in body


@pytest.mark.asyncio
async def test_metrics_endpoint_can_be_disabled() -> None:
    settings = build_settings(observability=ObservabilitySettings(prometheus_enabled=False))
    app = create_app(settings, container=build_container(settings))

    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            response = await client.get("/metrics")
    finally:
        await transport.aclose()

    assert response.status_code == 404
