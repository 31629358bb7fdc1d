"""
End-to-end tests against the assembled application: login, catalog reads and
admin mutations with their audit trail.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

import asyncio
import uuid

import pytest
from fastapi.testclient import TestClient

from tests._env import ensure_test_env

ensure_test_env()

from config import config
from main import app
from middleware import rate_limit as rate_limit_module
from middleware import limits
from middleware.headers import SECURITY_HEADERS
from middleware.limits import ConcurrencyLimitMiddleware
from middleware.rate_limit import InMemoryCounterStore, RateLimiter, RateLimitTier
from models.access.auth_models import Role
from routers.auth import auth_service
from services.audit_service import audit_service

PASSWORD = "correct horse battery staple"


@pytest.fixture(autouse=True)
def fresh_rate_limiter(monkeypatch):
    tiers = {
        name: RateLimitTier(name, requests, window)
        for name, (requests, window) in config.RATE_LIMIT_TIERS.items()
    }
    monkeypatch.setattr(rate_limit_module, "rate_limiter", RateLimiter(InMemoryCounterStore(), tiers))


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def _user(role: Role) -> str:
    email = f"{role.value}-{uuid.uuid4().hex[:8]}@example.com"
    auth_service.create_user(email, PASSWORD, role)
    return email


def _login(client, email: str) -> dict:
    response = client.post("/api/auth/login", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200, response.text
    return response.json()


def _bearer(tokens: dict) -> dict:
    return {"Authorization": f"Bearer {tokens['access_token']}"}


def test_health_and_not_found_carry_security_headers(client):
    health = client.get("/health")
    missing = client.get("/no/such/route")

    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert missing.status_code == 404
    assert missing.json() == {"error": "Not Found"}
    for response in (health, missing):
        for name, value in SECURITY_HEADERS.items():
            assert response.headers.get(name) == value


def test_ready_reports_database(client):
    response = client.get("/ready")
    assert response.status_code == 200
    assert response.json()["checks"] == {"database": True}


def test_login_returns_tokens_and_me_resolves_identity(client):
    email = _user(Role.DEALER)
    tokens = _login(client, email)

    assert tokens["token_type"] == "bearer"
    assert tokens["user"]["role"] == "dealer"
    me = client.get("/api/auth/me", headers=_bearer(tokens))
    assert me.status_code == 200
    assert me.json()["email"] == email
    assert me.json()["role"] == "dealer"


def test_refresh_token_is_not_an_identity(client):
    tokens = _login(client, _user(Role.ADMIN))
    response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {tokens['refresh_token']}"})
    assert response.status_code == 401


def test_bad_credentials_are_rejected(client):
    email = _user(Role.VIEWER)
    response = client.post("/api/auth/login", json={"email": email, "password": "nope"})
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid email or password"


def test_login_payload_is_validated(client):
    response = client.post("/api/auth/login", json={"email": "x"})
    assert response.status_code == 422


def test_sixth_login_from_one_address_is_throttled(client):
    email = _user(Role.VIEWER)
    for _ in range(5):
        client.post("/api/auth/login", json={"email": email, "password": "wrong"})
    response = client.post("/api/auth/login", json={"email": email, "password": PASSWORD})

    assert response.status_code == 429
    assert "Retry-After" in response.headers
    assert response.json()["retry_after"] >= 1


def test_anonymous_catalog_read(client):
    response = client.get("/api/products")

    assert response.status_code == 200
    assert "data" in response.json()
    assert response.headers["X-RateLimit-Limit"] == str(config.RATE_LIMIT_TIERS["catalog"][0])


def test_product_lifecycle_is_audited(client):
    admin_email = _user(Role.ADMIN)
    admin = _login(client, admin_email)
    headers = _bearer(admin)

    created = client.post(
        "/api/products",
        json={"name": "Hydraulic pump", "price": 1299.5, "category": "pumps", "in_stock": 4},
        headers=headers,
    )
    assert created.status_code == 201
    product_id = created.json()["id"]

    assert client.get(f"/api/products/{product_id}").json()["name"] == "Hydraulic pump"

    deleted = client.delete(f"/api/products/{product_id}", headers=headers)
    assert deleted.status_code == 204
    assert client.get(f"/api/products/{product_id}").status_code == 404

    client.portal.call(audit_service.drain)
    history = client.get(f"/api/audit-log/resource/products/{product_id}", headers=headers)
    assert history.status_code == 200
    entries = history.json()["data"]
    assert [e["action"] for e in entries] == ["delete", "create"]
    assert all(e["user_id"] == admin["user"]["id"] for e in entries)
    assert entries[0]["details"]["status"] == 204


def test_dealer_cannot_delete_and_attempt_is_audited(client):
    admin = _bearer(_login(client, _user(Role.ADMIN)))
    dealer_tokens = _login(client, _user(Role.DEALER))
    product_id = client.post(
        "/api/products",
        json={"name": "Valve", "price": 10, "category": "valves"},
        headers=admin,
    ).json()["id"]

    response = client.delete(f"/api/products/{product_id}", headers=_bearer(dealer_tokens))
    assert response.status_code == 403
    assert client.get(f"/api/products/{product_id}").status_code == 200

    client.portal.call(audit_service.drain)
    page = client.get(
        "/api/audit-log",
        params={"resource_type": "products", "resource_id": product_id, "action": "delete"},
        headers=admin,
    ).json()
    assert page["pagination"]["total"] == 1
    entry = page["data"][0]
    assert entry["user_id"] == dealer_tokens["user"]["id"]
    assert entry["details"]["outcome"] == "denied"


def test_audit_log_requires_admin(client):
    viewer = _bearer(_login(client, _user(Role.VIEWER)))

    assert client.get("/api/audit-log").status_code == 401
    assert client.get("/api/audit-log", headers=viewer).status_code == 403


def test_audit_log_rejects_bad_filters(client):
    admin = _bearer(_login(client, _user(Role.ADMIN)))
    response = client.get("/api/audit-log", params={"action": "explode"}, headers=admin)
    assert response.status_code == 400


def test_login_is_audited_against_the_signed_in_user(client):
    tokens = _login(client, _user(Role.DEALER))
    client.portal.call(audit_service.drain)
    admin = _bearer(_login(client, _user(Role.ADMIN)))

    page = client.get(
        "/api/audit-log",
        params={"user_id": tokens["user"]["id"], "action": "login"},
        headers=admin,
    ).json()
    assert page["pagination"]["total"] == 1
    assert page["data"][0]["resource_type"] == "session"


def _assert_security_headers(response):
    for name, value in SECURITY_HEADERS.items():
        assert response.headers.get(name) == value, name


def _installed(cls):
    layer = app.middleware_stack
    while layer is not None:
        if isinstance(layer, cls):
            return layer
        layer = getattr(layer, "app", None)
    raise AssertionError(f"{cls.__name__} is not installed")


def test_oversized_body_is_rejected_with_security_headers(client):
    response = client.post(
        "/api/auth/login",
        content=b"x" * (config.MAX_REQUEST_BYTES + 1),
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 413
    assert response.json()["message"] == "Request body too large"
    _assert_security_headers(response)


def test_streamed_oversized_body_is_rejected_not_failed(client):
    chunk = b"x" * 65536
    chunks = config.MAX_REQUEST_BYTES // len(chunk) + 4
    before = limits.limit_stats().request_size_rejections

    def body():
        for _ in range(chunks):
            yield chunk

    response = client.post("/api/auth/login", content=body(), headers={"Content-Type": "application/json"})

    assert response.status_code == 413
    assert response.json()["message"] == "Request body too large"
    assert limits.limit_stats().request_size_rejections == before + 1
    _assert_security_headers(response)


def test_busy_server_response_carries_security_headers(client, monkeypatch):
    client.get("/health")
    guard = _installed(ConcurrencyLimitMiddleware)
    monkeypatch.setattr(guard, "_sem", asyncio.Semaphore(0))
    monkeypatch.setattr(guard, "_timeout", 0.01)

    response = client.get("/api/products")

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "1"
    assert response.json()["message"] == "Server busy, please retry"
    _assert_security_headers(response)


def test_refresh_token_yields_new_access_token(client):
    email = _user(Role.DEALER)
    tokens = _login(client, email)

    refreshed = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert refreshed.status_code == 200, refreshed.text
    body = refreshed.json()
    assert "refresh_token" not in body
    assert body["expires_in"] == config.ACCESS_TOKEN_TTL_SECONDS

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.status_code == 200
    assert me.json()["email"] == email


def test_refresh_rejects_access_tokens_and_garbage(client):
    tokens = _login(client, _user(Role.VIEWER))

    wrong_type = client.post("/api/auth/refresh", json={"refreshToken": tokens["access_token"]})
    garbage = client.post("/api/auth/refresh", json={"refresh_token": "not-a-token"})
    missing = client.post("/api/auth/refresh", json={})

    assert wrong_type.status_code == 401
    assert wrong_type.json()["message"] == "Invalid token type. Access tokens cannot be used for refresh."
    assert garbage.status_code == 401
    assert garbage.json()["message"] == "Invalid refresh token"
    assert missing.status_code == 422


def test_logout_revokes_refresh_token_and_is_audited(client):
    tokens = _login(client, _user(Role.DEALER))

    logout = client.post("/api/auth/logout", headers=_bearer(tokens))
    assert logout.status_code == 200
    assert logout.json() == {"message": "Logged out successfully"}

    refreshed = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert refreshed.status_code == 401

    client.portal.call(audit_service.drain)
    admin = _bearer(_login(client, _user(Role.ADMIN)))
    page = client.get(
        "/api/audit-log",
        params={"user_id": tokens["user"]["id"], "action": "logout"},
        headers=admin,
    ).json()
    assert page["pagination"]["total"] == 1
    assert page["data"][0]["resource_id"] == tokens["user"]["id"]


def test_logout_requires_authentication(client):
    assert client.post("/api/auth/logout").status_code == 401


def test_audit_log_uses_admin_tier(client):
    admin = _bearer(_login(client, _user(Role.ADMIN)))
    response = client.get("/api/audit-log", headers=admin)

    assert response.status_code == 200
    assert response.headers["X-RateLimit-Limit"] == str(config.RATE_LIMIT_TIERS["admin"][0])
