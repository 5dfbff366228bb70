"""
Tests for the entitlement HTTP endpoints.
"""

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from dotmac.entitlements.exceptions import StorageError
from dotmac.entitlements.router import get_entitlements_service, router

pytestmark = pytest.mark.integration

PREFIX = "/api/v1/entitlements"


@pytest.fixture
async def client(service):
    """Async HTTP client with the entitlements router mounted."""
    app = FastAPI()
    app.dependency_overrides[get_entitlements_service] = lambda: service
    app.include_router(router, prefix=PREFIX)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as async_client:
        yield async_client


class TestResolutionEndpoints:
    """Read endpoints."""

    async def test_effective_permissions(self, client):
        response = await client.get(f"{PREFIX}/users/alice/effective-permissions")

        assert response.status_code == 200
        data = response.json()
        assert data["user_id"] == "alice"
        crm = {p["action"]: p for p in data["permissions"] if p["module_id"] == "crm"}
        assert crm["edit"]["granted"] is True
        assert crm["manage"]["restricted_by"] == "role"
        assert "disable" not in crm
        assert data["conflicts"] == []

    async def test_single_permission(self, client):
        response = await client.get(f"{PREFIX}/users/carol/permissions/crm/edit")

        assert response.status_code == 200
        data = response.json()
        assert data["granted"] is False
        assert data["restricted_by"] == "subscription"

    async def test_unknown_action_is_unprocessable(self, client):
        response = await client.get(f"{PREFIX}/users/alice/permissions/crm/approve")

        assert response.status_code == 422

    async def test_permission_summary(self, client):
        response = await client.get(f"{PREFIX}/users/bob/permission-summary")

        assert response.status_code == 200
        rows = {row["module_id"]: row for row in response.json()["modules"]}
        assert rows["crm"]["effective_actions"] == ["view", "edit", "manage"]
        assert rows["integrations"]["has_access"] is False

    async def test_module_validation(self, client):
        response = await client.get(f"{PREFIX}/modules/validation")

        assert response.status_code == 200
        assert response.json() == {"valid": True, "conflicts": []}


class TestBulkUpdateEndpoint:
    """POST /bulk-updates."""

    async def test_bulk_update_uses_actor_header(self, client, service):
        payload = {
            "target_type": "role",
            "target_ids": ["acme-manager", "ghost"],
            "module_updates": [{"module_id": "crm", "actions": ["manage"], "operation": "add"}],
            "reason": "promote managers",
        }

        response = await client.post(
            f"{PREFIX}/bulk-updates", json=payload, headers={"X-Actor-ID": "admin@acme"}
        )

        assert response.status_code == 200
        results = response.json()
        assert [(r["target_id"], r["success"]) for r in results] == [
            ("acme-manager", True),
            ("ghost", False),
        ]
        records = [r async for r in service.query_audit_log()]
        assert len(records) == 1
        assert records[0].performed_by == "admin@acme"

    async def test_actor_header_required(self, client):
        payload = {
            "target_type": "role",
            "target_ids": ["acme-manager"],
            "module_updates": [{"module_id": "crm", "actions": ["manage"], "operation": "add"}],
        }

        response = await client.post(f"{PREFIX}/bulk-updates", json=payload)

        assert response.status_code == 422

    async def test_malformed_update_rejected(self, client):
        payload = {
            "target_type": "team",
            "target_ids": ["acme-manager"],
            "module_updates": [{"module_id": "crm", "actions": ["manage"], "operation": "add"}],
        }

        response = await client.post(
            f"{PREFIX}/bulk-updates", json=payload, headers={"X-Actor-ID": "admin@acme"}
        )

        assert response.status_code == 422


class TestAuditEndpoint:
    """GET /audit-records."""

    async def test_filters_and_limit(self, client):
        for module_id in ("users", "billing"):
            await client.post(
                f"{PREFIX}/bulk-updates",
                json={
                    "target_type": "role",
                    "target_ids": ["acme-admin"],
                    "module_updates": [
                        {"module_id": module_id, "actions": ["manage"], "operation": "add"}
                    ],
                },
                headers={"X-Actor-ID": "admin@acme"},
            )

        response = await client.get(
            f"{PREFIX}/audit-records",
            params={"entity_type": "role", "entity_id": "acme-admin", "limit": 1},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert list(data["records"][0]["changes"]["modules"]) == ["billing"]

    async def test_inverted_date_range(self, client):
        response = await client.get(
            f"{PREFIX}/audit-records",
            params={"start_date": "2026-02-01T00:00:00Z", "end_date": "2026-01-01T00:00:00Z"},
        )

        assert response.status_code == 422


class TestErrorMapping:
    """Engine errors map onto HTTP status codes."""

    async def test_storage_failure_is_service_unavailable(self, client, service, monkeypatch):
        async def _unavailable():
            raise StorageError("database is down")

        monkeypatch.setattr(service, "load_module_graph", _unavailable)

        response = await client.get(f"{PREFIX}/modules/validation")

        assert response.status_code == 503
        assert response.json()["detail"] == "Entitlement storage unavailable"
