"""End-to-end tests: SessionClient against the FastAPI app.

The client talks to the app in-process through httpx.ASGITransport, so the
session cookie written by the dual store is what the route guard middleware
actually sees.
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from pantrypal import app as app_module
from pantrypal.client import SessionClient
from pantrypal.config import IdentityBackend, Settings, get_settings
from pantrypal.service import runtime as runtime_module
from pantrypal.service.flows import FlowState
from pantrypal.service.identity import PartialSuccess, Rejected, Success
from pantrypal.service.provider import ProviderReason
from pantrypal.service.runtime import Runtime, get_runtime
from pantrypal.service.session import SessionStatus
from pantrypal.storage.durable import MemoryDurableStore

PASSWORD = "Initial1pass"
NEW_PASSWORD = "Rotated2pass"


@pytest.fixture
def provider():
    provider = get_runtime().provider
    provider.add_user("alice", PASSWORD, email="alice@example.com")
    provider.add_user("rotator", PASSWORD, must_rotate=True)
    return provider


@pytest.fixture
def durable():
    return MemoryDurableStore()


@pytest.fixture
def http():
    return TestClient(app_module.app, follow_redirects=False)


def make_client(durable, timers, settings=None):
    return SessionClient(
        "http://testserver",
        settings=settings,
        durable=durable,
        transport=httpx.ASGITransport(app=app_module.app),
        call_later=timers.call_later,
    )


class TestGuardMiddleware:
    """Route gating at the HTTP layer."""

    def test_protected_path_redirects_without_session(self, http):
        response = http.get("/home")

        assert response.status_code == 307
        assert response.headers["location"] == "/?returnUrl=%2Fhome"
        assert response.headers["cache-control"] == "no-store"

    def test_public_paths_pass(self, http):
        response = http.get("/healthz")

        assert response.status_code == 200
        assert response.json()["data"] == {"status": "healthy"}

    def test_bearer_header_admits(self, http, provider):
        token = http.post("/api/auth/login", json={"username": "alice", "password": PASSWORD}).json()["data"][
            "access_token"
        ]

        response = http.get("/api/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        body = response.json()["data"]
        assert body["claims"]["token_use"] == "access"
        assert "username" not in body["claims"]
        assert body["remaining_seconds"] > 0

    def test_cookie_admits_and_is_canonicalized(self, http, provider):
        token = http.post("/api/auth/login", json={"username": "alice", "password": PASSWORD}).json()["data"][
            "access_token"
        ]

        response = http.get("/home", headers={"Cookie": f"session-token={token}"})

        assert response.status_code == 200
        assert response.json()["data"]["page"] == "home"

    def test_expired_token_redirects(self, http, make_token):
        # make_token is anchored to a fixed past clock
        response = http.get("/home", headers={"Authorization": f"Bearer {make_token()}"})
        assert response.status_code == 307

    def test_correlation_and_security_headers(self, http):
        response = http.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]


class TestAuthEndpoints:
    """HTTP mapping of broker outcomes."""

    def test_wrong_password_is_401_envelope(self, http, provider):
        response = http.post("/api/auth/login", json={"username": "alice", "password": "Wrong1password"})

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["details"] == {"reason": "not-authorized"}
        assert body["request_id"]

    def test_missing_field_is_validation_error(self, http):
        response = http.post("/api/auth/login", json={"username": "alice"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_challenge_response_carries_session(self, http, provider):
        response = http.post("/api/auth/login", json={"username": "rotator", "password": PASSWORD})

        data = response.json()["data"]
        assert response.status_code == 200
        assert data["outcome"] == "challenge_required"
        assert data["challenge"] == "NEW_PASSWORD"
        assert data["session"]
        assert data["access_token"] is None

    def test_reset_request_same_for_unknown(self, http, provider):
        known = http.post("/api/auth/reset/request", json={"identifier": "alice"})
        unknown = http.post("/api/auth/reset/request", json={"identifier": "nobody"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_rate_limit_is_429(self, http, provider):
        for _ in range(5):
            http.post("/api/auth/reset/request", json={"identifier": "alice"})

        response = http.post("/api/auth/reset/request", json={"identifier": "alice"})

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"

    def test_misconfigured_provider_is_server_error(self, http, monkeypatch):
        settings = Settings(
            identity_backend=IdentityBackend.COGNITO,
            cognito_client_id="your-client-id",
            test_mode=True,
        )
        monkeypatch.setattr(runtime_module, "runtime", Runtime(settings))

        response = http.post("/api/auth/login", json={"username": "alice", "password": PASSWORD})

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "server_error"
        assert error["details"] == {"kind": "configuration"}
        assert "COGNITO_CLIENT_ID" not in error["message"]

    def test_logout_expires_cookie(self, http):
        response = http.post("/api/auth/logout")

        assert response.status_code == 200
        assert "session-token=" in response.headers["set-cookie"]
        assert "Max-Age=0" in response.headers["set-cookie"]


class TestSessionClient:
    """Full client lifecycle over the HTTP API."""

    @pytest.mark.asyncio
    async def test_login_then_protected_request(self, durable, timers, provider):
        async with make_client(durable, timers) as client:
            result = await client.login("alice", PASSWORD)

            assert result.state == FlowState.AUTHENTICATED
            assert client.status == SessionStatus.AUTHENTICATED
            assert client.location == "/home"
            assert durable.get("session-token") == client.session.token.raw

            response = await client.request("GET", "/home")
            assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_logout_fails_closed(self, durable, timers, provider):
        async with make_client(durable, timers) as client:
            await client.login("alice", PASSWORD)

            await client.logout()

            assert client.status == SessionStatus.UNAUTHENTICATED
            assert client.location == "/"
            assert durable.get("session-token") is None
            response = await client.request("GET", "/home")
            assert response.status_code == 307

    @pytest.mark.asyncio
    async def test_restart_restores_session(self, durable, timers, provider):
        async with make_client(durable, timers) as client:
            await client.login("alice", PASSWORD)

        async with make_client(durable, timers) as restarted:
            assert restarted.status == SessionStatus.AUTHENTICATED
            assert restarted.flow.state == FlowState.AUTHENTICATED
            response = await restarted.request("GET", "/home")
            assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_guard_rejection_signs_client_out(self, durable, timers, provider, make_token):
        async with make_client(durable, timers) as client:
            await client.login("alice", PASSWORD)
            # Cookie replaced by a token the guard refuses
            client.store.cookies.set(make_token(), 3600)

            response = await client.request("GET", "/home")

            assert response.status_code == 307
            assert client.status == SessionStatus.UNAUTHENTICATED
            assert durable.get("session-token") is None

    @pytest.mark.asyncio
    async def test_oversized_token_fails_closed(self, durable, timers, provider):
        settings = get_settings().model_copy(update={"cookie_byte_limit": 200})
        async with make_client(durable, timers, settings=settings) as client:
            await client.login("alice", PASSWORD)
            report = client.diagnose()

            assert report["durable"]["status"] == "live"
            assert report["http"]["status"] == "malformed"
            assert report["consistent"] is False

            response = await client.request("GET", "/home")
            assert response.status_code == 307
            assert client.status == SessionStatus.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_forced_rotation(self, durable, timers, provider):
        async with make_client(durable, timers) as client:
            challenge = await client.login("rotator", PASSWORD, return_target="/pantry")

            assert challenge.state == FlowState.ROTATING
            assert client.status == SessionStatus.UNAUTHENTICATED
            assert durable.get("session-token") is None

            result = await client.submit_new_password(NEW_PASSWORD, NEW_PASSWORD)

            assert result.state == FlowState.AUTHENTICATED
            assert client.location == "/pantry"

    @pytest.mark.asyncio
    async def test_navigation_drops_challenge(self, durable, timers, provider):
        async with make_client(durable, timers) as client:
            await client.login("rotator", PASSWORD)

            client.navigate("/")

            assert client.flow.state == FlowState.ENTRY
            assert client.flow.challenge is None

    @pytest.mark.asyncio
    async def test_password_reset(self, durable, timers, provider):
        async with make_client(durable, timers) as client:
            requested = await client.request_reset("alice")
            assert requested.state == FlowState.RESET_PENDING_CODE

            confirmed = await client.confirm_reset(provider.last_code("alice"), NEW_PASSWORD, NEW_PASSWORD)
            assert confirmed.state == FlowState.ENTRY

            result = await client.login("alice", NEW_PASSWORD)
            assert result.state == FlowState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_contact_update(self, durable, timers, provider):
        async with make_client(durable, timers) as client:
            await client.login("alice", PASSWORD)

            outcome = await client.update_contact("email", "alice@new.example.com")

            assert isinstance(outcome, Success)
            assert outcome.delivery.medium == "EMAIL"
            assert provider.user_attributes("alice")["email"] == "alice@new.example.com"

    @pytest.mark.asyncio
    async def test_contact_update_partial(self, durable, timers, provider):
        async with make_client(durable, timers) as client:
            await client.login("alice", PASSWORD)
            provider.fail_verification_delivery = True

            outcome = await client.update_contact("email", "alice@new.example.com")

            assert isinstance(outcome, PartialSuccess)
            assert outcome.failed_step == "request_attribute_verification"
            assert client.status == SessionStatus.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_oversized_fields_are_rejected_not_unavailable(self, durable, timers, provider):
        async with make_client(durable, timers) as client:
            await client.request_reset("alice")

            confirmed = await client.confirm_reset("0" * 17, NEW_PASSWORD, NEW_PASSWORD)
            client.navigate("/")
            login = await client.login("a" * 200, PASSWORD)

            for result in (confirmed, login):
                assert isinstance(result.outcome, Rejected)
                assert result.outcome.reason == ProviderReason.INVALID_PARAMETER
            assert confirmed.state == FlowState.RESET_PENDING_CODE
            assert login.state == FlowState.ENTRY

    @pytest.mark.asyncio
    async def test_guard_return_url_kept_for_next_login(self, durable, timers, provider, make_token):
        async with make_client(durable, timers) as client:
            await client.login("alice", PASSWORD)
            client.store.cookies.set(make_token(), 3600)

            await client.request("GET", "/recipes/42")

            assert client.return_target == "/recipes/42"
            result = await client.login("alice", PASSWORD)
            assert result.navigate_to == "/recipes/42"
            assert client.location == "/recipes/42"
            assert client.return_target is None
