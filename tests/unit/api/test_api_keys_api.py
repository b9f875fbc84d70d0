"""API tests for /v1/api-keys.

Drives the FastAPI app through httpx's ASGI transport with the store and
verifier swapped for per-test instances.
"""

from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest

from keygate.api.dependencies import AuthDep, get_api_key_service
from keygate.api.v1.api_keys import CreatedApiKeyResponse
from keygate.main import create_app
from keygate.services.api_key import ApiKeyService
from keygate.services.api_key.permissions import get_template


@pytest.fixture
def app(settings, session_factory, verifier):
    app = create_app()
    app.state.verifier = verifier

    async def override_service():
        async with session_factory() as session:
            yield ApiKeyService(db_session=session, settings=settings)

    app.dependency_overrides[get_api_key_service] = override_service
    with patch("keygate.api.dependencies.get_settings", return_value=settings):
        yield app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
async def admin_key(service) -> str:
    issued = await service.create(
        "user-1",
        prefix="kg_",
        name="admin",
        permissions=get_template("full-access"),
    )
    return issued.plaintext


def auth(key: str) -> dict[str, str]:
    return {"x-api-key": key}


class TestHealth:
    async def test_health(self, client):
        resp = await client.get("/health")

        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert "x-request-id" in resp.headers


class TestAuthentication:
    """Test the auth dependency through real routes."""

    async def test_missing_header(self, client):
        resp = await client.get("/v1/api-keys")

        assert resp.status_code == 401
        body = resp.json()
        assert body["error"]["code"] == "unauthorized"
        assert "x-api-key" in body["error"]["message"]

    async def test_malformed_key(self, client):
        resp = await client.get("/v1/api-keys", headers=auth("not-a-key"))

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "INVALID_FORMAT"
        assert resp.headers["www-authenticate"] == "ApiKey"

    async def test_unknown_key(self, client):
        resp = await client.get("/v1/api-keys", headers=auth("kg_" + "0" * 64))

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "NOT_FOUND"

    async def test_request_id_echoed_in_error(self, client):
        resp = await client.get("/v1/api-keys", headers={"X-Request-Id": "req-123"})

        assert resp.headers["x-request-id"] == "req-123"
        assert resp.json()["error"]["request_id"] == "req-123"

    async def test_missing_scope(self, client, service):
        issued = await service.create("user-1", permissions=get_template("read-only"))

        resp = await client.post("/v1/api-keys", json={}, headers=auth(issued.plaintext))

        assert resp.status_code == 403
        error = resp.json()["error"]
        assert error["code"] == "INSUFFICIENT_PERMISSIONS"
        assert error["message"] == "API key does not have permission: apiKeys:write"

    async def test_no_remaining(self, client, service):
        issued = await service.create(
            "user-1",
            remaining=1,
            permissions=get_template("full-access"),
        )

        first = await client.get("/v1/api-keys", headers=auth(issued.plaintext))
        second = await client.get("/v1/api-keys", headers=auth(issued.plaintext))

        assert first.status_code == 200
        assert second.status_code == 429
        assert second.json()["error"]["code"] == "NO_REMAINING"

    async def test_rate_limited(self, client, service):
        issued = await service.create(
            "user-1",
            rate_limit_enabled=True,
            rate_limit_max=1,
            rate_limit_time_window=60_000,
            permissions=get_template("full-access"),
        )

        await client.get("/v1/api-keys", headers=auth(issued.plaintext))
        resp = await client.get("/v1/api-keys", headers=auth(issued.plaintext))

        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
        assert 1 <= int(resp.headers["retry-after"]) <= 60


class TestManagement:
    """Test key management endpoints."""

    async def test_create_and_list(self, client, admin_key):
        resp = await client.post(
            "/v1/api-keys",
            json={
                "name": "ci",
                "prefix": "ci_",
                "permissions": {"watchlist": ["read"]},
                "remaining": 50,
            },
            headers=auth(admin_key),
        )

        assert resp.status_code == 201
        created = resp.json()
        assert created["key"].startswith("ci_")
        assert created["remaining"] == 50
        assert created["permissions"] == {"watchlist": ["read"]}
        assert "hashed_secret" not in created

        listing = await client.get("/v1/api-keys", headers=auth(admin_key))
        items = listing.json()["items"]
        assert {item["name"] for item in items} == {"admin", "ci"}
        assert all("key" not in item for item in items)

    async def test_create_invalid_body(self, client, admin_key):
        resp = await client.post("/v1/api-keys", json={"prefix": "x"}, headers=auth(admin_key))
        assert resp.status_code == 422

    async def test_create_unknown_scope(self, client, admin_key):
        resp = await client.post(
            "/v1/api-keys",
            json={"permissions": {"billing": ["read"]}},
            headers=auth(admin_key),
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    async def test_get_other_owner(self, client, admin_key, service):
        foreign = await service.create("user-2")

        resp = await client.get(f"/v1/api-keys/{foreign.record.id}", headers=auth(admin_key))

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    async def test_disable_then_use(self, client, admin_key, service):
        target = await service.create("user-1", permissions=get_template("full-access"))

        resp = await client.patch(
            f"/v1/api-keys/{target.record.id}",
            json={"enabled": False},
            headers=auth(admin_key),
        )
        assert resp.status_code == 200
        assert resp.json()["enabled"] is False

        used = await client.get("/v1/api-keys", headers=auth(target.plaintext))
        assert used.status_code == 401
        assert used.json()["error"]["code"] == "DISABLED"

    async def test_patch_null_rejected(self, client, admin_key, service, fetch_key):
        target = await service.create("user-1")

        resp = await client.patch(
            f"/v1/api-keys/{target.record.id}",
            json={"rate_limit_enabled": None},
            headers=auth(admin_key),
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"
        stored = await fetch_key(target.record.id)
        assert stored.rate_limit_enabled is False

    async def test_delete(self, client, admin_key, service):
        target = await service.create("user-1")

        resp = await client.delete(f"/v1/api-keys/{target.record.id}", headers=auth(admin_key))
        assert resp.status_code == 204

        resp = await client.get(f"/v1/api-keys/{target.record.id}", headers=auth(admin_key))
        assert resp.status_code == 404

    async def test_rotate(self, client, admin_key, service):
        target = await service.create("user-1", prefix="rt_")

        resp = await client.post(
            f"/v1/api-keys/{target.record.id}/rotate",
            headers=auth(admin_key),
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["id"] == target.record.id
        assert body["key"].startswith("rt_")
        assert body["key"] != target.plaintext
        assert body["owner_id"] == "user-1"
        assert "hashed_secret" not in body

        old = await client.get("/v1/api-keys", headers=auth(target.plaintext))
        new = await client.post(
            "/v1/api-keys/verify",
            json={"key": body["key"]},
            headers=auth(admin_key),
        )
        assert old.status_code == 401
        assert old.json()["error"]["code"] == "NOT_FOUND"
        assert new.json()["valid"] is True

    async def test_delete_expired(self, client, admin_key):
        resp = await client.delete("/v1/api-keys/expired", headers=auth(admin_key))

        assert resp.status_code == 200
        assert resp.json()["count"] == 0

    async def test_verify_endpoint(self, client, admin_key, service):
        target = await service.create("user-1", permissions={"fx": ["read"]})

        ok = await client.post(
            "/v1/api-keys/verify",
            json={"key": target.plaintext, "permissions": {"fx": ["read"]}},
            headers=auth(admin_key),
        )
        bogus = await client.post(
            "/v1/api-keys/verify",
            json={"key": "kg_" + "0" * 64},
            headers=auth(admin_key),
        )

        assert ok.status_code == 200
        assert ok.json()["valid"] is True
        assert ok.json()["key"]["id"] == target.record.id
        assert bogus.status_code == 200
        assert bogus.json()["valid"] is False
        assert bogus.json()["error"]["code"] == "NOT_FOUND"


class TestProtectedRoute:
    """Test AuthDep on an application route outside /v1/api-keys."""

    async def test_any_valid_key_passes(self, app, service):
        @app.get("/whoami")
        async def whoami(principal: AuthDep) -> dict[str, str]:
            return {"owner_id": principal.owner_id}

        issued = await service.create("user-7")
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            ok = await client.get("/whoami", headers=auth(issued.plaintext))
            missing = await client.get("/whoami")

        assert ok.status_code == 200
        assert ok.json() == {"owner_id": "user-7"}
        assert missing.status_code == 401


class TestResponseModels:
    async def test_created_response_carries_key(self, service):
        issued = await service.create("user-1", prefix="kg_")

        response = CreatedApiKeyResponse.from_record(issued.record, key=issued.plaintext)

        assert response.key == issued.plaintext
        assert response.id == issued.record.id
        assert "hashed_secret" not in response.model_dump()
