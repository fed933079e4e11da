"""Tests for the tiered limiter middleware."""

import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from admission.adapters.rate_limit.selector import FallbackCounterStore
from admission.core.config import RateLimitSettings, settings
from admission.core.identity import RequestDescriptor
from admission.core.limiter import (
    READ_METHODS,
    RejectionResult,
    create_limiter,
    rejection_for,
    should_bypass,
    successful_response,
)
from admission.core.tiers import ANONYMOUS_MESSAGE, TierPolicy, build_default_tiers


@pytest.fixture
def policy() -> TierPolicy:
    return TierPolicy(
        name="test",
        window_ms=60_000,
        base_limit=3,
        authenticated_multiplier=2,
        anonymous_message=ANONYMOUS_MESSAGE,
    )


def build_app(policy: TierPolicy, store, **limiter_kwargs) -> FastAPI:
    """Minimal API guarded by one tier, with a stand-in authentication layer."""
    app = FastAPI()
    app.state.probe_status = 200

    @app.get("/api/tasks")
    async def list_tasks():
        return {"tasks": []}

    @app.post("/api/tasks")
    async def create_task():
        return {"created": True}

    @app.get("/health")
    async def health(request: Request):
        status = request.app.state.probe_status
        return JSONResponse({"status": "ok" if status < 400 else "down"}, status_code=status)

    app.middleware("http")(create_limiter(policy, store=store, **limiter_kwargs))

    # Registered last so it runs first, like a real auth middleware would.
    @app.middleware("http")
    async def attach_user(request: Request, call_next):
        user_id = request.headers.get("X-Test-User")
        if user_id:
            request.state.user = {"id": user_id}
        return await call_next(request)

    return app


@pytest.fixture
def client(policy, local_store) -> TestClient:
    return TestClient(build_app(policy, local_store))


class TestCeiling:
    def test_requests_up_to_ceiling_succeed_then_429(self, client) -> None:
        for _ in range(3):
            assert client.get("/api/tasks").status_code == 200

        response = client.get("/api/tasks")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.json() == {
            "error": "Too many requests",
            "code": "RATE_LIMIT_EXCEEDED",
            "message": ANONYMOUS_MESSAGE,
            "retryAfter": 60,
        }

    def test_authenticated_callers_get_the_multiplier(self, client) -> None:
        headers = {"X-Test-User": "42"}
        for _ in range(6):
            assert client.get("/api/tasks", headers=headers).status_code == 200

        response = client.get("/api/tasks", headers=headers)
        assert response.status_code == 429
        body = response.json()
        assert body["message"] == "You have exceeded the rate limit. Please try again later."
        assert "sign in" not in body["message"]

    def test_users_behind_one_address_are_counted_separately(self, client) -> None:
        shared_ip = {"X-Forwarded-For": "198.51.100.10"}
        for _ in range(6):
            client.get("/api/tasks", headers={**shared_ip, "X-Test-User": "alice"})

        response = client.get("/api/tasks", headers={**shared_ip, "X-Test-User": "bob"})
        assert response.status_code == 200

    def test_forwarded_addresses_are_counted_separately(self, client) -> None:
        for _ in range(3):
            client.get("/api/tasks", headers={"X-Forwarded-For": "192.168.1.1, 10.0.0.1"})

        blocked = client.get("/api/tasks", headers={"X-Forwarded-For": "192.168.1.1"})
        other = client.get("/api/tasks", headers={"X-Forwarded-For": "192.168.1.2"})
        assert blocked.status_code == 429
        assert other.status_code == 200

    def test_quota_headers_on_admitted_requests(self, client) -> None:
        first = client.get("/api/tasks")
        assert first.headers["RateLimit-Limit"] == "3"
        assert first.headers["RateLimit-Remaining"] == "2"
        assert first.headers["RateLimit-Reset"] == "60"

        client.get("/api/tasks")
        third = client.get("/api/tasks")
        assert third.headers["RateLimit-Remaining"] == "0"

    def test_quota_headers_can_be_disabled(self, client, monkeypatch) -> None:
        monkeypatch.setattr(settings.rate_limit, "include_headers", False)

        response = client.get("/api/tasks")
        assert "RateLimit-Limit" not in response.headers


class TestWindowReset:
    def test_full_ceiling_is_available_again_after_window(self, client, clock) -> None:
        for _ in range(3):
            client.get("/api/tasks")
        assert client.get("/api/tasks").status_code == 429

        clock.advance(60_000)
        for _ in range(3):
            assert client.get("/api/tasks").status_code == 200
        assert client.get("/api/tasks").status_code == 429

    def test_retry_after_counts_down(self, client, clock) -> None:
        for _ in range(3):
            client.get("/api/tasks")
        clock.advance(45_500)

        response = client.get("/api/tasks")
        assert response.headers["Retry-After"] == "15"


class TestAuthTier:
    @pytest.fixture
    def auth_client(self, local_store) -> TestClient:
        auth = build_default_tiers(RateLimitSettings())["auth"]
        return TestClient(build_app(auth, local_store))

    def test_sixth_attempt_from_one_ip_is_rejected(self, auth_client) -> None:
        headers = {"X-Forwarded-For": "203.0.113.5"}
        for _ in range(5):
            assert auth_client.post("/api/tasks", headers=headers).status_code == 200

        response = auth_client.post("/api/tasks", headers=headers)
        assert response.status_code == 429
        body = response.json()
        assert body["code"] == "AUTH_RATE_LIMIT_EXCEEDED"
        assert body["error"] == "Too many authentication attempts"
        assert "too many authentication attempts" in body["message"]
        assert int(response.headers["Retry-After"]) == 900

    def test_identity_does_not_raise_or_split_the_auth_ceiling(self, auth_client) -> None:
        ip = {"X-Forwarded-For": "203.0.113.6"}
        for i in range(5):
            auth_client.post("/api/tasks", headers={**ip, "X-Test-User": f"user-{i}"})

        response = auth_client.post("/api/tasks", headers={**ip, "X-Test-User": "fresh"})
        assert response.status_code == 429
        assert response.json()["code"] == "AUTH_RATE_LIMIT_EXCEEDED"


class TestStoreOutage:
    def test_policy_still_enforced_via_local_fallback(
        self, policy, local_store, broken_shared_store
    ) -> None:
        store = FallbackCounterStore(local=local_store, shared=broken_shared_store)
        client = TestClient(build_app(policy, store))

        statuses = [client.get("/api/tasks").status_code for _ in range(5)]
        assert statuses == [200, 200, 200, 429, 429]


class TestLivenessBypass:
    def test_successful_probes_are_never_counted(self, client, local_store) -> None:
        for _ in range(10):
            assert client.get("/health").status_code == 200

        assert len(local_store) == 0
        assert client.get("/api/tasks").headers["RateLimit-Remaining"] == "2"

    def test_failing_probes_are_counted(self, policy, local_store) -> None:
        app = build_app(policy, local_store)
        app.state.probe_status = 503
        client = TestClient(app)

        statuses = [client.get("/health").status_code for _ in range(4)]
        assert statuses == [503, 503, 503, 429]
        assert client.get("/api/tasks").status_code == 429


class TestRefund:
    def test_successful_requests_never_use_up_the_budget(self, policy, local_store) -> None:
        client = TestClient(build_app(policy, local_store, refund_when=successful_response))

        for _ in range(10):
            response = client.get("/api/tasks")
            assert response.status_code == 200
            assert response.headers["RateLimit-Remaining"] == "3"

    def test_failed_requests_still_count(self, policy, local_store) -> None:
        client = TestClient(build_app(policy, local_store, refund_when=successful_response))

        statuses = [client.get("/api/missing").status_code for _ in range(4)]
        assert statuses == [404, 404, 404, 429]
        assert client.get("/api/tasks").status_code == 429

    def test_refund_only_follows_the_predicate(self, policy, local_store) -> None:
        client = TestClient(
            build_app(policy, local_store, refund_when=lambda status: status == 404)
        )

        for _ in range(5):
            assert client.get("/api/missing").status_code == 404
        assert client.get("/api/tasks").headers["RateLimit-Remaining"] == "2"

    def test_refund_through_unreachable_shared_store(
        self, policy, local_store, broken_shared_store
    ) -> None:
        store = FallbackCounterStore(local=local_store, shared=broken_shared_store)
        client = TestClient(build_app(policy, store, refund_when=successful_response))

        for _ in range(5):
            assert client.get("/api/tasks").status_code == 200


class TestScope:
    def test_paths_outside_prefix_are_not_counted(self, policy, local_store) -> None:
        client = TestClient(build_app(policy, local_store, path_prefix="/auth"))

        for _ in range(10):
            assert client.get("/api/tasks").status_code == 200
        assert len(local_store) == 0

    def test_method_scope(self, policy, local_store) -> None:
        client = TestClient(build_app(policy, local_store, methods=READ_METHODS))

        for _ in range(10):
            assert client.post("/api/tasks").status_code == 200
        for _ in range(3):
            assert client.get("/api/tasks").status_code == 200
        assert client.get("/api/tasks").status_code == 429

    def test_disabled_limiting_forwards_everything(self, client, local_store, monkeypatch) -> None:
        monkeypatch.setattr(settings.rate_limit, "enabled", False)

        for _ in range(10):
            assert client.get("/api/tasks").status_code == 200
        assert len(local_store) == 0


class TestHelpers:
    @pytest.mark.parametrize(
        "path,status,expected",
        [
            ("/health", 200, True),
            ("/health", 399, True),
            ("/health", 400, False),
            ("/health", 503, False),
            ("/api/tasks", 200, False),
            ("/healthz", 200, False),
        ],
    )
    def test_should_bypass(self, path: str, status: int, expected: bool) -> None:
        desc = RequestDescriptor(method="GET", path=path)
        assert should_bypass(desc, status) is expected

    def test_rejection_rounds_retry_after_up(self, policy) -> None:
        rejection = rejection_for(policy, authenticated=False, reset_ms=1_200)
        assert rejection.retry_after_seconds == 2
        assert rejection.status_code == 429

    def test_rejection_response_contract(self) -> None:
        rejection = RejectionResult(
            error="Too many requests",
            code="RATE_LIMIT_EXCEEDED",
            message="slow down",
            retry_after_seconds=30,
        )
        response = rejection.to_response()

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"
        assert rejection.body() == {
            "error": "Too many requests",
            "code": "RATE_LIMIT_EXCEEDED",
            "message": "slow down",
            "retryAfter": 30,
        }
