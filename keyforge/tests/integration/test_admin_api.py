from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from keyforge.apps.api.main import create_app
from keyforge.core.config import get_settings
from keyforge.domain.models import INSTANCE_STATUS_PROVISIONING
from keyforge.providers.provision.fake import FakeProvisionBackend
from keyforge.providers.vault.fake import FakeVaultBackend
from keyforge.services.audit import flush_pending_writes
from keyforge.tests.utils.keys import admin_token, auth_headers, instance_token
from keyforge.tests.utils.seed import create_test_instance, create_test_organisation


def _app(provision_backend: FakeProvisionBackend | None = None):
    return create_app(
        provision_backend=provision_backend or FakeProvisionBackend(),
        vault_backend=FakeVaultBackend(),
    )


@pytest.mark.asyncio
async def test_create_instance_provisions_and_returns_secrets_once() -> None:
    backend = FakeProvisionBackend()
    headers = auth_headers(admin_token())
    transport = ASGITransport(app=_app(backend))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post("/v1/admin/instances", json={"name": "Acme"}, headers=headers)
        assert created.status_code == 202
        body = created.json()
        payload = body["data"]
        assert body["meta"]["api_version"] == "v1"
        assert payload["name"] == "Acme"
        assert payload["status"] == INSTANCE_STATUS_PROVISIONING
        assert payload["admin_token"]
        assert "BEGIN PRIVATE KEY" in payload["jwt_private_key"]
        instance_id = payload["instance_id"]
        assert backend.releases[instance_id] == payload["admin_token"]

        fetched = await client.get(f"/v1/admin/instances/{instance_id}", headers=headers)
        assert fetched.status_code == 200
        instance = fetched.json()["data"]
        assert instance["status"] == "ready"
        assert "admin_token" not in instance
        assert "backend_admin_secret" not in instance

        # The returned private key signs tokens the instance routes accept.
        tenant_headers = auth_headers(instance_token(instance_id, payload["jwt_private_key"]))
        listed = await client.get(f"/v1/instances/{instance_id}/organisations", headers=tenant_headers)
        assert listed.status_code == 200
        assert listed.json()["data"] == []


@pytest.mark.asyncio
async def test_create_instance_requires_name() -> None:
    transport = ASGITransport(app=_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post("/v1/admin/instances", json={}, headers=auth_headers(admin_token()))
    assert response.status_code == 400
    assert response.json()["error"] == {"code": "BAD_REQUEST", "message": "Name is required"}


@pytest.mark.asyncio
async def test_malformed_request_bodies_are_400() -> None:
    headers = auth_headers(admin_token())
    transport = ASGITransport(app=_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        wrong_type = await client.post("/v1/admin/instances", json={"name": 123}, headers=headers)
        not_json = await client.post(
            "/v1/admin/instances",
            content=b"{not json",
            headers={**headers, "Content-Type": "application/json"},
        )
        listed = await client.get("/v1/admin/instances", headers=headers)

    for response in (wrong_type, not_json):
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "BAD_REQUEST"
        assert error["details"]["errors"]
    assert listed.json()["data"] == []


@pytest.mark.asyncio
async def test_failed_install_is_visible_in_deployment_trail() -> None:
    headers = auth_headers(admin_token())
    transport = ASGITransport(app=_app(FakeProvisionBackend(fail_create=True)))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post("/v1/admin/instances", json={"name": "Broken"}, headers=headers)
        assert created.status_code == 202
        instance_id = created.json()["data"]["instance_id"]

        detail = await client.get(f"/v1/admin/deployments/{instance_id}", headers=headers)
        assert detail.status_code == 200
        data = detail.json()["data"]
        assert data["instance"]["status"] == "failed"
        assert data["instance"]["error"]
        assert [(event["step"], event["status"]) for event in data["events"]] == [
            ("deploy_install", "in_progress"),
            ("deploy_install", "failed"),
        ]

        events = await client.get(f"/v1/admin/deployments/{instance_id}/events", headers=headers)
        assert [event["status"] for event in events.json()["data"]] == ["in_progress", "failed"]

        errors = await client.get(
            f"/v1/admin/deployments/{instance_id}/logs?level=error", headers=headers
        )
        assert errors.status_code == 200
        page = errors.json()["data"]
        assert page["total"] == 1
        assert page["logs"][0]["level"] == "error"


@pytest.mark.asyncio
async def test_dispatch_failure_marks_instance_failed(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "provision_execution_mode", "carrier-pigeon")
    headers = auth_headers(admin_token())
    transport = ASGITransport(app=_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post("/v1/admin/instances", json={"name": "Stranded"}, headers=headers)
        assert created.status_code == 500
        assert created.json()["error"]["code"] == "UPSTREAM_ERROR"

        listed = await client.get("/v1/admin/instances", headers=headers)
    instances = listed.json()["data"]
    assert len(instances) == 1
    assert instances[0]["status"] == "failed"
    assert "dispatch" in instances[0]["error"]


@pytest.mark.asyncio
async def test_list_deployments_and_logs_pagination() -> None:
    instance, _ = await create_test_instance()
    await create_test_organisation(instance.id)
    headers = auth_headers(admin_token())
    transport = ASGITransport(app=_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        deployments = await client.get("/v1/admin/deployments", headers=headers)
        assert [item["id"] for item in deployments.json()["data"]] == [instance.id]

        detail = await client.get(f"/v1/admin/deployments/{instance.id}", headers=headers)
        organisations = detail.json()["data"]["organisations"]
        assert len(organisations) == 1
        assert "backend_user_token" not in organisations[0]

        logs = await client.get(f"/v1/admin/deployments/{instance.id}/logs", headers=headers)
        assert logs.json()["data"] == {"logs": [], "total": 0, "page": 1, "limit": 100}

        bad_page = await client.get(f"/v1/admin/deployments/{instance.id}/logs?page=0", headers=headers)
        assert bad_page.status_code == 400
        bad_limit = await client.get(f"/v1/admin/deployments/{instance.id}/logs?limit=501", headers=headers)
        assert bad_limit.status_code == 400

        missing = await client.get("/v1/admin/deployments/instance-missing/logs", headers=headers)
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_delete_instance_tears_down_release() -> None:
    backend = FakeProvisionBackend()
    headers = auth_headers(admin_token())
    transport = ASGITransport(app=_app(backend))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post("/v1/admin/instances", json={"name": "Temp"}, headers=headers)
        instance_id = created.json()["data"]["instance_id"]

        deleted = await client.delete(f"/v1/admin/instances/{instance_id}", headers=headers)
        assert deleted.status_code == 200
        assert deleted.json()["data"] == {"instance_id": instance_id, "deleted": True}
        assert instance_id not in backend.releases

        gone = await client.get(f"/v1/admin/instances/{instance_id}", headers=headers)
        assert gone.status_code == 404
        again = await client.delete(f"/v1/admin/instances/{instance_id}", headers=headers)
        assert again.status_code == 404


@pytest.mark.asyncio
async def test_failed_teardown_keeps_instance() -> None:
    instance, _ = await create_test_instance()
    headers = auth_headers(admin_token())
    transport = ASGITransport(app=_app(FakeProvisionBackend(fail_destroy=True)))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        deleted = await client.delete(f"/v1/admin/instances/{instance.id}", headers=headers)
        assert deleted.status_code == 500
        assert deleted.json()["error"]["code"] == "UPSTREAM_ERROR"

        still_there = await client.get(f"/v1/admin/instances/{instance.id}", headers=headers)
        assert still_there.status_code == 200


@pytest.mark.asyncio
async def test_rotate_key_invalidates_previous_tokens() -> None:
    instance, old_private = await create_test_instance()
    headers = auth_headers(admin_token())
    transport = ASGITransport(app=_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        old_headers = auth_headers(instance_token(instance.id, old_private))
        before = await client.get(f"/v1/instances/{instance.id}/organisations", headers=old_headers)
        assert before.status_code == 200

        rotated = await client.post(f"/v1/admin/instances/{instance.id}/keys/rotate", headers=headers)
        assert rotated.status_code == 200
        new_private = rotated.json()["data"]["jwt_private_key"]

        after = await client.get(f"/v1/instances/{instance.id}/organisations", headers=old_headers)
        assert after.status_code == 401
        new_headers = auth_headers(instance_token(instance.id, new_private))
        fresh = await client.get(f"/v1/instances/{instance.id}/organisations", headers=new_headers)
        assert fresh.status_code == 200


@pytest.mark.asyncio
async def test_audit_log_records_admin_operations() -> None:
    headers = auth_headers(admin_token())
    transport = ASGITransport(app=_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post("/v1/admin/instances", json={"name": "Audited"}, headers=headers)
        assert created.status_code == 202
        await flush_pending_writes()

        audit = await client.get("/v1/admin/audit-logs?event_type=admin_operation", headers=headers)
    entries = audit.json()["data"]
    assert len(entries) == 1
    assert entries[0]["endpoint"] == "/v1/admin/instances"
    assert entries[0]["method"] == "POST"
    assert entries[0]["response_status"] == 202
    assert entries[0]["instance_id"] == "root"
    assert entries[0]["metadata"] == {"subject": "root", "is_admin": True}
