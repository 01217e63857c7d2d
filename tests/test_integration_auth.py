"""Integration tests for the Shopify login flow.

Drives the real FastAPI app with the provider HTTP calls answered by an
``httpx.MockTransport``:
- login redirect and state creation
- callback: token exchange, profile fetch, user upsert, cookie and redirect
- session cookie endpoints (me, refresh, logout)
- error redirects for bad state and provider errors
"""

import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from communityhub import app as app_module
from communityhub.service.runtime import get_runtime
from communityhub.service.shopify import TOKEN_URL
from communityhub.service.tokens import TokenCodec

COOKIE = "community_session"


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class FakeShopify:
    """Answers the token and GraphQL endpoints; records calls."""

    def __init__(self, customer_id="gid://shopify/Customer/C123", tags="community:gaming"):
        self.customer_id = customer_id
        self.tags = tags
        self.nonce = None
        self.token_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            self.token_calls += 1
            id_payload = TokenCodec._encode_segment(json.dumps({"nonce": self.nonce}).encode())
            return httpx.Response(
                200,
                json={
                    "access_token": "shp-access",
                    "expires_in": 3600,
                    "id_token": f"eyJhbGciOiJSUzI1NiJ9.{id_payload}.sig",
                },
            )
        if request.url.path.endswith("/graphql"):
            assert request.headers["Authorization"] == "Bearer shp-access"
            return httpx.Response(
                200,
                json={
                    "data": {
                        "customer": {
                            "id": self.customer_id,
                            "emailAddress": {"emailAddress": "jane@example.com"},
                            "firstName": "Jane",
                            "lastName": "Doe",
                            "metafields": {
                                "nodes": [{"namespace": "custom", "key": "tags", "value": self.tags}]
                            },
                        }
                    }
                },
            )
        return httpx.Response(404)


@pytest.fixture
def shopify():
    fake = FakeShopify()
    get_runtime().shopify._transport = httpx.MockTransport(fake)
    return fake


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _start_login(client, shopify, return_to=None):
    params = {"returnTo": return_to} if return_to else None
    response = client.get("/auth/shopify/login", params=params, follow_redirects=False)
    assert response.status_code == 302
    query = _query(response.headers["location"])
    shopify.nonce = query["nonce"]
    return query["state"]


def _complete_login(client, shopify, return_to=None):
    state = _start_login(client, shopify, return_to)
    response = client.get(
        "/auth/shopify/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )
    assert response.status_code == 302
    return response


class TestLoginRedirect:
    def test_login_redirects_to_shopify(self, client, shopify):
        response = client.get("/auth/shopify/login", follow_redirects=False)

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert location.netloc == "shopify.com"
        assert location.path == "/authentication/12345678/login"
        query = _query(response.headers["location"])
        assert query["client_id"] == "test-client-id"
        assert query["redirect_uri"] == "http://testserver/auth/shopify/callback"
        assert len(query["state"]) == 64
        assert query["nonce"]

    def test_login_stores_pending_state(self, client, shopify):
        state = _start_login(client, shopify)
        assert len(get_runtime().state_store) == 1
        assert state in get_runtime().state_store._entries

    def test_missing_configuration_redirects_to_error(self, client, shopify):
        get_runtime().shopify.client_id = None
        response = client.get("/auth/shopify/login", follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"] == (
            "http://localhost:3000/auth/error?error=auth_config_missing"
        )

    def test_state_store_outage_redirects_to_error(self, client, shopify, monkeypatch):
        async def unavailable(*args, **kwargs):
            raise ConnectionError("state backend unreachable")

        monkeypatch.setattr(get_runtime().auth.state_store, "put", unavailable)
        response = client.get("/auth/shopify/login", follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == (
            "http://localhost:3000/auth/error?error=authentication_failed"
        )


class TestCallback:
    def test_successful_callback(self, client, shopify):
        response = _complete_login(client, shopify, return_to="/communities/gaming")

        location = response.headers["location"]
        assert location.startswith("http://localhost:3000/auth/callback?")
        query = _query(location)
        assert query["returnTo"] == "/communities/gaming"

        claims = get_runtime().tokens.read_app_token(query["token"])
        user = get_runtime().store.get_user(claims.user_id)
        assert user.provider_customer_id == "C123"
        assert user.community_id == "gaming"

        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith(f"{COOKIE}=")
        assert "HttpOnly" in set_cookie
        assert "samesite=lax" in set_cookie.lower()
        assert "Path=/" in set_cookie
        assert "Max-Age=604800" in set_cookie

    def test_replayed_state_is_rejected(self, client, shopify):
        state = _start_login(client, shopify)
        first = client.get(
            "/auth/shopify/callback", params={"code": "c", "state": state}, follow_redirects=False
        )
        second = client.get(
            "/auth/shopify/callback", params={"code": "c", "state": state}, follow_redirects=False
        )

        assert first.headers["location"].startswith("http://localhost:3000/auth/callback")
        assert second.headers["location"] == "http://localhost:3000/auth/error?error=invalid_state"
        assert shopify.token_calls == 1

    def test_unknown_state_redirects_with_invalid_state(self, client, shopify):
        response = client.get(
            "/auth/shopify/callback",
            params={"code": "c", "state": "not-issued"},
            follow_redirects=False,
        )
        assert response.status_code == 302
        assert response.headers["location"] == "http://localhost:3000/auth/error?error=invalid_state"
        assert shopify.token_calls == 0
        assert "set-cookie" not in response.headers

    def test_missing_code(self, client, shopify):
        state = _start_login(client, shopify)
        response = client.get(
            "/auth/shopify/callback", params={"state": state}, follow_redirects=False
        )
        assert _query(response.headers["location"]) == {"error": "missing_code"}

    def test_provider_error_is_forwarded(self, client, shopify):
        state = _start_login(client, shopify)
        response = client.get(
            "/auth/shopify/callback",
            params={"error": "access_denied", "error_description": "User cancelled", "state": state},
            follow_redirects=False,
        )
        assert _query(response.headers["location"]) == {
            "error": "provider_error",
            "error_description": "User cancelled",
        }
        assert len(get_runtime().state_store) == 0

    def test_token_exchange_failure(self, client, shopify):
        get_runtime().shopify._transport = httpx.MockTransport(
            lambda request: httpx.Response(400, json={"error": "invalid_grant"})
        )
        state = _start_login(client, shopify)
        response = client.get(
            "/auth/shopify/callback",
            params={"code": "c", "state": state},
            follow_redirects=False,
        )
        assert response.headers["location"] == (
            "http://localhost:3000/auth/error?error=authentication_failed"
        )

    def test_repeat_login_keeps_one_user(self, client, shopify):
        _complete_login(client, shopify)
        _complete_login(client, shopify)
        users = get_runtime().store.list_users()
        assert len(users) == 1
        assert users[0].username.endswith("C123")


class TestSessionEndpoints:
    def test_me_without_cookie(self, client):
        response = client.get("/auth/me")
        assert response.status_code == 200
        assert response.json() == {"authenticated": False}

    def test_me_with_cookie(self, client, shopify):
        _complete_login(client, shopify)
        response = client.get("/auth/me")
        body = response.json()
        assert body["authenticated"] is True
        assert body["user"]["customerId"] == "C123"
        assert body["user"]["displayName"] == "Jane Doe"

    def test_me_with_garbage_cookie_clears_it(self, client):
        client.cookies.set(COOKIE, "garbage")
        response = client.get("/auth/me")
        assert response.json() == {"authenticated": False}
        assert f'{COOKIE}=""' in response.headers["set-cookie"]

    def test_refresh_reissues_cookie(self, client, shopify):
        _complete_login(client, shopify)
        response = client.post("/auth/refresh")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["expiresAt"]
        assert response.headers["set-cookie"].startswith(f"{COOKIE}=")

    def test_refresh_without_session(self, client):
        response = client.post("/auth/refresh")
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"

    def test_logout_clears_cookie(self, client, shopify):
        _complete_login(client, shopify)
        response = client.post("/auth/logout")
        assert response.json() == {"success": True}
        assert "Max-Age=0" in response.headers["set-cookie"]
        assert client.get("/auth/me").json() == {"authenticated": False}


class TestBearerEndpoints:
    def test_user_me_requires_bearer(self, client):
        response = client.get("/api/user/me")
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"

    def test_user_me_with_token(self, client, shopify):
        token = _query(_complete_login(client, shopify).headers["location"])["token"]
        response = client.get("/api/user/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["customerId"] == "C123"
        assert data["communityId"] == "gaming"
        assert data["avatarColor"].startswith("hsl(")

        community = client.get(
            "/api/user/community", headers={"Authorization": f"Bearer {token}"}
        ).json()["data"]
        assert community == {"communityId": "gaming"}

    def test_tampered_token_rejected(self, client, shopify):
        token = _query(_complete_login(client, shopify).headers["location"])["token"]
        response = client.get(
            "/api/user/me", headers={"Authorization": f"Bearer {token[:-2]}xx"}
        )
        assert response.status_code == 401


def test_healthz_reports_memory_state_store(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["oauth_state"]["backend"] == "memory"
    assert body["checks"]["oauth_state"]["multi_instance_safe"] is False
    assert body["checks"]["redis"] == {"status": "not_configured"}


def test_responses_carry_request_id_and_no_store(client):
    response = client.get("/auth/me", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert "no-store" in response.headers["Cache-Control"]
