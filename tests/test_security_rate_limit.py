from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from harness.core.config import RateLimitRule, RateLimitSettings
from harness.core.identity import Identity, identity_from_headers, parse_roles, resolve_user_id
from harness.core.rate_limit import consume, window_key
from harness.main import create_app
from tests.helpers.stubs import FakeRedis, build_container, build_settings


def test_identity_is_read_from_gateway_headers() -> None:
    identity = identity_from_headers({"x-user-id": " alice ", "x-user-roles": "admin, reviewer,,"})
    assert identity.subject == "alice"
    assert identity.roles == ("admin", "reviewer")
    assert identity.authenticated

    anonymous = identity_from_headers({})
    assert anonymous.subject is None
    assert anonymous.roles == ()
    assert not anonymous.authenticated
    assert parse_roles(None) == ()
    assert parse_roles("Admin,APPROVER") == ("admin", "approver")


def test_authenticated_caller_without_roles_is_a_user() -> None:
    identity = identity_from_headers({"x-user-id": "alice"})
    assert identity.roles == ("user",)
    assert identity.has_any_role("user", "admin")
    assert not identity.has_any_role("approver", "admin")
    assert not identity.is_admin


def test_only_admins_may_act_for_another_user() -> None:
    assert resolve_user_id(Identity(subject="alice", roles=("admin",)), "bob") == "bob"
    assert resolve_user_id(Identity(subject="alice", roles=("user", "approver")), "bob") == "alice"
    assert resolve_user_id(Identity(), "bob") == "anonymous"
    assert resolve_user_id(Identity(subject="alice"), None) == "alice"
    assert resolve_user_id(Identity(), None) == "anonymous"


def _limited_settings(capacity: int = 1):
    return build_settings().model_copy(
        update={
            "rate_limit": RateLimitSettings(
                enabled=True,
                run_submission=RateLimitRule(capacity=capacity, window_seconds=60),
            )
        }
    )


def test_run_submission_is_rate_limited_per_user() -> None:
    settings = _limited_settings()
    container = build_container(settings, immediate=True)
    app = create_app(settings, container=container)

    with TestClient(app) as client:
        first = client.post("/api/ask", json={"query": "Research user onboarding"}, headers={"X-User-Id": "alice"})
        second = client.post("/api/ask", json={"query": "Research user onboarding"}, headers={"X-User-Id": "alice"})
        other_user = client.post("/api/ask", json={"query": "Research pricing"}, headers={"X-User-Id": "bob"})

    assert first.status_code == 202
    assert second.status_code == 429
    assert second.json()["detail"] == "Too many requests"
    assert second.headers["Retry-After"] == "60"
    assert other_user.status_code == 202


def test_reads_are_not_rate_limited() -> None:
    settings = _limited_settings()
    app = create_app(settings, container=build_container(settings, immediate=True))

    with TestClient(app) as client:
        responses = [client.get("/api/runs", headers={"X-User-Id": "alice"}) for _ in range(3)]

    assert [response.status_code for response in responses] == [200, 200, 200]


def test_disabled_rate_limit_allows_bursts() -> None:
    settings = build_settings(rate_limit=False)
    app = create_app(settings, container=build_container(settings, immediate=True))

    with TestClient(app) as client:
        statuses = {
            client.post("/api/runs", json={"query": "Research user onboarding"}).status_code for _ in range(3)
        }

    assert statuses == {202}


def test_window_key_rolls_over_each_window() -> None:
    rule = RateLimitRule(capacity=5, window_seconds=60)
    first = window_key("ns", "run_submission", "alice", rule, 119.0)
    assert first == "ns:run_submission:alice:1"
    assert window_key("ns", "run_submission", "alice", rule, 120.0) != first


@pytest.mark.asyncio
async def test_consume_counts_and_reports_retry_after() -> None:
    redis = FakeRedis()
    rule = RateLimitRule(capacity=2, window_seconds=30)

    decisions = [await consume(redis, "ns:key", rule) for _ in range(3)]

    assert [decision.allowed for decision in decisions] == [True, True, False]
    assert decisions[-1].retry_after == 30
    assert redis.expiry["ns:key"] == 30
