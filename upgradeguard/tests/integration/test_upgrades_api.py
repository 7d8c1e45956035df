from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from upgradeguard.apps.api.main import create_app
from upgradeguard.tests.utils.auth import dev_headers
from upgradeguard.tests.utils.seed import STATUS_V1, STATUS_V2, V1, V2


MERGED_CHOICES = ["open", "in_progress", "in_review", "closed"]


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


async def _publish_release(client: AsyncClient, headers: dict[str, str]) -> None:
    for version, body in ((V1, STATUS_V1), (V2, STATUS_V2)):
        response = await client.post(
            "/v1/platform/configs",
            json={
                "config_type": "asset",
                "resource_key": "status",
                "platform_version": version,
                "body": body,
                "is_extensible": True,
            },
            headers=headers,
        )
        assert response.status_code == 201


@pytest.mark.asyncio
async def test_status_choices_upgrade_flow() -> None:
    tenant_id = f"t-{uuid4().hex[:8]}"
    admin = dev_headers(tenant_id, role="admin", actor_id="ops")
    editor = dev_headers(tenant_id, role="editor", actor_id="alice")
    reader = dev_headers(tenant_id, role="reader")

    async with _client() as client:
        await _publish_release(client, admin)

        response = await client.get("/v1/platform/version", headers=reader)
        assert response.status_code == 200
        assert response.json()["data"]["platform_version"] == V1

        response = await client.get(
            "/v1/platform/changes",
            params={"from_version": V1, "to_version": V2},
            headers=reader,
        )
        assert response.json()["data"] == [{"config_type": "asset", "resource_key": "status"}]

        response = await client.post(
            "/v1/customizations",
            json={
                "config_type": "asset",
                "resource_key": "status",
                "kind": "extend",
                "body": {**STATUS_V1, "choices": ["open", "closed", "in_review"]},
            },
            headers=editor,
        )
        assert response.status_code == 201
        customization_id = response.json()["data"]["id"]

        response = await client.post(
            "/v1/upgrades/manifests",
            json={"from_version": V1, "to_version": V2, "build_from_snapshots": True, "upgrade_type": "minor"},
            headers=admin,
        )
        assert response.status_code == 201
        manifest = response.json()["data"]
        assert [change["resource_key"] for change in manifest["config_changes"]] == ["status"]

        response = await client.post(
            "/v1/upgrades/manifests",
            json={"from_version": V1, "to_version": V2, "build_from_snapshots": True},
            headers=admin,
        )
        assert response.status_code == 200
        assert response.json()["data"]["id"] == manifest["id"]

        response = await client.post(f"/v1/upgrades/manifests/{manifest['id']}/analyze", json={}, headers=editor)
        assert response.status_code == 200
        analysis = response.json()["data"]
        assert analysis["summary"]["total"] == 1
        impact = analysis["impacts"][0]
        assert impact["impact_type"] == "conflict"
        assert impact["customization_id"] == customization_id
        assert impact["row_version"] == 2
        assert [item["path"] for item in impact["conflicts"]] == ["/choices"]

        response = await client.post(
            f"/v1/upgrades/impacts/{impact['id']}/preview",
            json={"strategy": "custom_merge", "custom_value": {**STATUS_V1, "choices": MERGED_CHOICES}},
            headers=reader,
        )
        assert response.status_code == 200
        assert response.json()["data"]["value"]["choices"] == MERGED_CHOICES

        response = await client.post(
            f"/v1/upgrades/impacts/{impact['id']}/resolve",
            json={"choice": "auto_merge"},
            headers=editor,
        )
        assert response.status_code == 422

        response = await client.post(
            f"/v1/upgrades/impacts/{impact['id']}/resolve",
            json={
                "choice": "custom_merge",
                "custom_value": {**STATUS_V1, "choices": MERGED_CHOICES},
                "expected_row_version": 2,
                "notes": "keep review step",
            },
            headers=editor,
        )
        assert response.status_code == 200
        resolved = response.json()["data"]
        assert resolved["status"] == "resolved"
        assert resolved["row_version"] == 3
        assert resolved["resolved_by"] == "alice"

        response = await client.post(f"/v1/upgrades/manifests/{manifest['id']}/apply", headers=editor)
        assert response.status_code == 403

        response = await client.post(f"/v1/upgrades/manifests/{manifest['id']}/apply", headers=admin)
        assert response.status_code == 200
        applied = response.json()["data"]
        assert applied["current_version"] == V2

        response = await client.get("/v1/upgrades/context", headers=reader)
        context = response.json()["data"]
        assert context["current_version"] == V2
        assert context["previous_version"] == V1
        assert context["customization_count"] == 1
        assert context["pending_impacts"] == 0
        assert context["manifest_id"] == manifest["id"]
        assert context["impact_summary"]["by_status"] == {"resolved": 1}
        assert context["customizations"]["by_kind"] == {"extend": 1}
        assert context["guidance"]["phase"] == "post"

        response = await client.get(
            "/v1/upgrades/context",
            params={"manifest_id": manifest["id"], "phase": "pre"},
            headers=reader,
        )
        guidance = response.json()["data"]["guidance"]
        assert guidance["phase"] == "pre"
        assert guidance["action_items"][0]["id"] == "review-release-notes"

        response = await client.get("/v1/upgrades/context", params={"phase": "later"}, headers=reader)
        assert response.status_code == 422

        response = await client.get(
            "/v1/customizations/effective",
            params={"config_type": "asset", "resource_key": "status"},
            headers=reader,
        )
        effective = response.json()["data"]
        assert effective["customization_version"] == 2
        assert effective["value"]["choices"] == MERGED_CHOICES
        assert effective["platform_version"] == V2


@pytest.mark.asyncio
async def test_apply_blocked_reports_blockers() -> None:
    tenant_id = f"t-{uuid4().hex[:8]}"
    admin = dev_headers(tenant_id, role="admin")

    async with _client() as client:
        for version, payload in ((V1, {"body": {"enabled": True}}), (V2, {"status": "removed"})):
            response = await client.post(
                "/v1/platform/configs",
                json={"config_type": "asset", "resource_key": "legacy", "platform_version": version, **payload},
                headers=admin,
            )
            assert response.status_code == 201
        response = await client.post(
            "/v1/customizations",
            json={"config_type": "asset", "resource_key": "legacy", "kind": "override", "body": {"enabled": False}},
            headers=admin,
        )
        assert response.status_code == 201
        response = await client.post(
            "/v1/upgrades/manifests",
            json={"from_version": V1, "to_version": V2, "build_from_snapshots": True},
            headers=admin,
        )
        manifest_id = response.json()["data"]["id"]

        response = await client.post(f"/v1/upgrades/manifests/{manifest_id}/analyze", headers=admin)
        impact = response.json()["data"]["impacts"][0]
        assert impact["impact_type"] == "removed"
        assert response.json()["data"]["summary"]["can_apply"] is False

        response = await client.post(f"/v1/upgrades/manifests/{manifest_id}/apply", headers=admin)
        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "INVALID_STATE"
        assert error["details"]["blockers"][0]["impact_id"] == impact["id"]

        response = await client.get(
            f"/v1/upgrades/manifests/{manifest_id}/impacts",
            params={"severity": "critical"},
            headers=admin,
        )
        assert [item["id"] for item in response.json()["data"]["impacts"]] == [impact["id"]]


@pytest.mark.asyncio
async def test_auto_resolve_batch_and_acknowledge() -> None:
    tenant_id = f"t-{uuid4().hex[:8]}"
    admin = dev_headers(tenant_id, role="admin")

    async with _client() as client:
        await _publish_release(client, admin)
        response = await client.post(
            "/v1/platform/configs",
            json={"config_type": "asset", "resource_key": "priority", "platform_version": V2, "body": {"choices": ["low"]}},
            headers=admin,
        )
        assert response.status_code == 201
        await client.post(
            "/v1/customizations",
            json={
                "config_type": "asset",
                "resource_key": "status",
                "kind": "override",
                "body": {**STATUS_V1, "label": "Ticket status"},
            },
            headers=admin,
        )
        response = await client.post(
            "/v1/upgrades/manifests",
            json={"from_version": V1, "to_version": V2, "build_from_snapshots": True},
            headers=admin,
        )
        manifest_id = response.json()["data"]["id"]

        response = await client.post(f"/v1/upgrades/manifests/{manifest_id}/analyze", headers=admin)
        impacts = {item["resource_key"]: item for item in response.json()["data"]["impacts"]}
        assert impacts["status"]["suggested_resolution"] == "auto_merge"
        assert impacts["priority"]["impact_type"] == "new_available"

        response = await client.post(f"/v1/upgrades/manifests/{manifest_id}/auto-resolve", headers=admin)
        assert response.json()["data"] == {"resolved": [impacts["status"]["id"]], "failed": []}

        response = await client.post(
            f"/v1/upgrades/impacts/{impacts['priority']['id']}/acknowledge",
            json={"notes": "seen"},
            headers=admin,
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "acknowledged"

        response = await client.get(f"/v1/upgrades/impacts/{impacts['status']['id']}", headers=admin)
        assert response.json()["data"]["status"] == "auto_resolved"


@pytest.mark.asyncio
async def test_manifest_request_validation() -> None:
    admin = dev_headers(f"t-{uuid4().hex[:8]}", role="admin")
    async with _client() as client:
        response = await client.post(
            "/v1/upgrades/manifests",
            json={"from_version": V1, "to_version": V2},
            headers=admin,
        )
        assert response.status_code == 422

        response = await client.post(
            "/v1/upgrades/manifests",
            json={"from_version": V2, "to_version": V1, "config_changes": []},
            headers=admin,
        )
        assert response.status_code == 422

        response = await client.get(f"/v1/upgrades/manifests/{uuid4().hex}", headers=admin)
        assert response.status_code == 404
