"""
HTTP-level tests for the defense decorator and the general API rate limit.
"""
import pytest
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from config import RATE_LIMIT_POLICIES, Settings
from main import create_app
from middleware.security import DefenseContext, defend
from repositories.rate_limit_repository import InMemoryRateLimitStore
from utils.exceptions import ConfigurationError, ValidationError


def _ip(address: str):
    return {"x-forwarded-for": address}


class TestRateLimiting:

    def test_allowed_response_carries_headers(self, client):
        response = client.post("/portal/login", json={"username": "jane"}, headers=_ip("1.1.1.1"))

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"
        assert int(response.headers["X-RateLimit-Reset"]) > 0
        assert "Retry-After" not in response.headers

    def test_quota_exceeded_returns_429(self, client, memory_store, clock):
        for _ in range(5):
            assert client.post("/portal/login", json={}, headers=_ip("1.1.1.1")).status_code == 200

        response = client.post("/portal/login", json={}, headers=_ip("1.1.1.1"))

        assert response.status_code == 429
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "Rate limit exceeded"
        assert body["retryAfter"] == 900
        assert body["resetTime"] == clock.now + 15 * 60 * 1000
        assert "payload" not in body
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["Retry-After"] == "900"

        events = [e for e in memory_store.security_events if e["event_type"] == "rate_limit_exceeded"]
        assert len(events) == 1
        assert events[0]["ip_address"] == "1.1.1.1"
        assert events[0]["metadata"]["operation"] == "login"

    def test_callers_are_limited_independently(self, client):
        for _ in range(5):
            client.post("/portal/login", json={}, headers=_ip("1.1.1.1"))

        assert client.post("/portal/login", json={}, headers=_ip("1.1.1.1")).status_code == 429
        assert client.post("/portal/login", json={}, headers=_ip("2.2.2.2")).status_code == 200

    def test_window_expiry(self, client, clock):
        for _ in range(5):
            client.post("/portal/login", json={}, headers=_ip("1.1.1.1"))

        clock.advance(15 * 60 * 1000 + 1)

        assert client.post("/portal/login", json={}, headers=_ip("1.1.1.1")).status_code == 200

    def test_key_generator_identity(self, client):
        files = {"file": ("evil<>.pdf", b"%PDF-1.4", "application/pdf")}

        response = client.post(
            "/portal/files",
            files=files,
            data={"description": "<b>scan</b>"},
            headers={"x-user-id": "user-42"},
        )

        assert response.status_code == 200
        assert response.json() == {"filename": "evil__.pdf", "description": "scan"}
        assert response.headers["X-RateLimit-Limit"] == "20"

    def test_http_exception_keeps_rate_limit_headers(self, client):
        response = client.post("/portal/two-factor", json={"code": "123456"}, headers=_ip("1.1.1.1"))

        assert response.status_code == 401
        assert response.headers["X-RateLimit-Limit"] == "3"
        assert response.headers["X-RateLimit-Remaining"] == "2"

    def test_custom_limit_response(self, app, client):
        @app.post("/portal/strict")
        @defend(
            "api_strict",
            on_limit_reached=lambda request, result: JSONResponse({"slow_down": result.retry_after}, status_code=429),
        )
        async def strict(request: Request, context: DefenseContext):
            return {"ok": True}

        for _ in range(10):
            assert client.post("/portal/strict", json={}).status_code == 200

        response = client.post("/portal/strict", json={})

        assert response.status_code == 429
        assert response.json() == {"slow_down": 60}

    def test_handler_errors_keep_rate_limit_headers(self, app, client):
        @app.post("/portal/claims/validate")
        @defend("claim_submission")
        async def validate_claim(request: Request, context: DefenseContext):
            raise ValidationError("Claim amount is required", field="amount")

        response = client.post("/portal/claims/validate", json={}, headers=_ip("1.1.1.1"))

        assert response.status_code == 400
        assert response.json()["error"] == "Claim amount is required"
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"

    def test_operation_from_app_overrides(self):
        settings = Settings(
            _env_file=None,
            ENVIRONMENT="test",
            TRUSTED_CLIENT_IP_HEADERS=["x-forwarded-for"],
            RATE_LIMIT_OVERRIDES={"claim_export": {"window_ms": 60000, "max_requests": 2}},
        )
        application = create_app(settings, store=InMemoryRateLimitStore())

        @application.post("/portal/export")
        @defend("claim_export")
        async def export(request: Request, context: DefenseContext):
            return {"ok": True}

        with TestClient(application) as client:
            responses = [client.post("/portal/export", json={}, headers=_ip("1.1.1.1")) for _ in range(3)]

        assert [r.status_code for r in responses] == [200, 200, 429]
        assert responses[0].headers["X-RateLimit-Limit"] == "2"

    def test_explicit_policy_table_is_checked_up_front(self):
        with pytest.raises(ConfigurationError):
            defend("claim_export", policies=RATE_LIMIT_POLICIES)


class TestSanitization:

    def test_handler_receives_sanitized_payload(self, client, memory_store):
        response = client.post(
            "/portal/login",
            json={"username": "<script>x</script>bob", "remember": True},
            headers=_ip("1.1.1.1"),
        )

        body = response.json()
        assert body["payload"] == {"username": "bob", "remember": True}
        assert body["threats"] == {"username": ["xss_attempt"]}
        assert body["client_id"] == "1.1.1.1"

        events = [e for e in memory_store.security_events if e["event_type"] == "input_threat_detected"]
        assert events[0]["metadata"]["threats"] == {"username": ["xss_attempt"]}

    def test_reject_on_threats(self, client):
        response = client.post(
            "/portal/claims",
            json={"email": "claimant@lawfirm.com", "address": "../../etc"},
            headers=_ip("1.1.1.1"),
        )

        assert response.status_code == 400
        assert response.json()["fields"] == ["address"]
        assert response.headers["X-RateLimit-Limit"] == "5"

    def test_clean_payload_passes(self, client):
        response = client.post(
            "/portal/claims",
            json={"email": "claimant@lawfirm.com", "address": "12 Main Street"},
            headers=_ip("1.1.1.1"),
        )

        assert response.status_code == 200
        assert response.json()["payload"]["address"] == "12 Main Street"

    def test_malformed_json_is_rejected(self, client):
        response = client.post(
            "/portal/login",
            content=b"{not json",
            headers={"content-type": "application/json", **_ip("1.1.1.1")},
        )

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_rich_text_field_policy(self, client):
        response = client.put(
            "/portal/content",
            json={"body": "<p>Deadline extended</p><script>x</script>"},
            headers=_ip("1.1.1.1"),
        )

        assert response.json()["payload"]["body"] == "<p>Deadline extended</p>"
        assert response.headers["X-RateLimit-Limit"] == "50"

    def test_repeated_form_fields_are_sanitized(self, client):
        response = client.post(
            "/portal/login",
            data={"username": ["<script>x</script>bob", "x"]},
            headers=_ip("1.1.1.1"),
        )

        body = response.json()
        assert body["payload"] == {"username": ["bob", "x"]}
        assert body["threats"] == {"username": ["xss_attempt"]}

    def test_json_arrays_are_sanitized(self, client):
        response = client.post(
            "/portal/login",
            json={"aliases": ["<script>x</script>bob", "jane"]},
            headers=_ip("1.1.1.1"),
        )

        body = response.json()
        assert body["payload"] == {"aliases": ["bob", "jane"]}
        assert body["threats"] == {"aliases": ["xss_attempt"]}


class TestSkipConditions:

    def test_safe_method_skips_defense(self, client):
        response = client.get("/portal/content", params={"body": "<b>raw</b>"})

        assert response.status_code == 200
        assert response.json() == {"payload": {"body": "<b>raw</b>"}, "rate_limited": False}
        assert "X-RateLimit-Limit" not in response.headers

    def test_privileged_role_skips_defense(self, client):
        response = client.post("/portal/admin-action", json={}, headers={"x-test-role": "super_admin"})

        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers

    def test_other_roles_are_limited(self, client):
        response = client.post("/portal/admin-action", json={}, headers={"x-test-role": "editor"})

        assert response.headers["X-RateLimit-Limit"] == "60"


class TestGeneralRateLimit:

    def test_api_prefix_is_limited(self, client, admin_headers):
        for _ in range(5):
            assert client.get("/api/admin/rate-limits/stats", headers=admin_headers).status_code == 200

        response = client.get("/api/admin/rate-limits/stats", headers=admin_headers)

        assert response.status_code == 429
        assert response.headers["X-RateLimit-Limit"] == "5"

    def test_paths_outside_prefix_are_not_limited(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers


class FailingEventStore(InMemoryRateLimitStore):

    async def insert_security_event(self, event):
        raise RuntimeError("security_events table unavailable")


def _app_with_audit_policy(policy: str):
    settings = Settings(_env_file=None, ENVIRONMENT="test", AUDIT_FAILURE_POLICY=policy, RATE_LIMIT_ENABLED=False)
    application = create_app(settings, store=FailingEventStore())

    @application.post("/portal/login")
    @defend("login")
    async def login(request: Request, context: DefenseContext):
        return {"payload": context.payload}

    return application


def test_audit_failure_rejects_under_reject_policy():
    with TestClient(_app_with_audit_policy("reject")) as client:
        response = client.post("/portal/login", json={"username": "<script>x</script>"})

    assert response.status_code == 503
    assert response.json()["success"] is False
    assert response.headers["X-RateLimit-Limit"] == "5"


def test_audit_failure_is_logged_under_log_policy():
    with TestClient(_app_with_audit_policy("log")) as client:
        response = client.post("/portal/login", json={"username": "<script>x</script>"})

    assert response.status_code == 200
    assert response.json()["payload"] == {"username": ""}
