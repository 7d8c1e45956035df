from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from upgradeguard.apps.api.main import create_app
from upgradeguard.core.config import get_settings
from upgradeguard.services.auth.api_keys import generate_api_key
from upgradeguard.tests.utils.auth import create_test_api_key
from upgradeguard.tests.utils.seed import STATUS_V1, V1, publish


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.fixture
def bypass_off(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTH_DEV_BYPASS", "false")
    get_settings.cache_clear()


@pytest.mark.asyncio
async def test_health_is_public(bypass_off: None) -> None:
    async with _client() as client:
        response = await client.get("/v1/health")
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "ok"
    assert "checked_out" in response.json()["data"]["pool"]


@pytest.mark.asyncio
async def test_missing_key_is_rejected_without_dev_bypass(bypass_off: None) -> None:
    async with _client() as client:
        response = await client.get("/v1/customizations", headers={"X-Tenant-Id": "t1"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_reader_key_can_read_but_not_write(bypass_off: None) -> None:
    tenant_id = f"t-{uuid4().hex[:8]}"
    _raw, reader_headers, _user_id, _key_id = await create_test_api_key(tenant_id=tenant_id, role="reader")
    _raw, editor_headers, editor_id, _key_id = await create_test_api_key(tenant_id=tenant_id, role="editor")
    await publish("asset", "status", V1, STATUS_V1)
    payload = {"config_type": "asset", "resource_key": "status", "kind": "override", "body": STATUS_V1}

    async with _client() as client:
        response = await client.post("/v1/customizations", json=payload, headers=reader_headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "AUTH_FORBIDDEN"

        response = await client.post("/v1/customizations", json=payload, headers=editor_headers)
        assert response.status_code == 201
        # Writers are recorded by their user id, never by a client-supplied header.
        assert response.json()["data"]["created_by"] == editor_id
        assert response.json()["data"]["tenant_id"] == tenant_id

        response = await client.get("/v1/customizations", headers=reader_headers)
        assert response.status_code == 200
        assert len(response.json()["data"]) == 1

        response = await client.post(
            "/v1/platform/configs",
            json={"config_type": "asset", "resource_key": "other", "platform_version": V1, "body": {"a": 1}},
            headers=editor_headers,
        )
        assert response.status_code == 403


@pytest.mark.asyncio
async def test_revoked_expired_and_inactive_keys_are_rejected(bypass_off: None) -> None:
    tenant_id = f"t-{uuid4().hex[:8]}"
    _raw, revoked, _user_id, _key_id = await create_test_api_key(tenant_id=tenant_id, role="admin", key_revoked=True)
    _raw, expired, _user_id, _key_id = await create_test_api_key(
        tenant_id=tenant_id,
        role="admin",
        key_expires_at=datetime.now(timezone.utc) - timedelta(minutes=5),
    )
    _raw, inactive, _user_id, _key_id = await create_test_api_key(tenant_id=tenant_id, role="admin", user_active=False)

    async with _client() as client:
        for headers in (revoked, expired, inactive):
            response = await client.get("/v1/customizations", headers=headers)
            assert response.status_code == 401
            assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"

        response = await client.get("/v1/customizations", headers={"Authorization": "Bearer not-a-real-key"})
        assert response.status_code == 401

        unknown = generate_api_key()
        response = await client.get("/v1/customizations", headers={"Authorization": f"Bearer {unknown.raw_key}"})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid API key"
