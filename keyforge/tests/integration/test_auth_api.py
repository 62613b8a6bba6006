from __future__ import annotations

import time

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from keyforge.apps.api.main import create_app
from keyforge.core.config import get_settings
from keyforge.core.errors import RootKeyConfigError
from keyforge.domain.models import AuditLog
from keyforge.persistence.db import SessionLocal
from keyforge.providers.provision.fake import FakeProvisionBackend
from keyforge.providers.vault.fake import FakeVaultBackend
from keyforge.services.auth.tokens import generate_key_pair, issue_token
from keyforge.tests.utils.keys import ROOT_PRIVATE_KEY, admin_token, auth_headers, instance_token, make_claims
from keyforge.tests.utils.seed import create_test_instance


def _client() -> AsyncClient:
    app = create_app(provision_backend=FakeProvisionBackend(), vault_backend=FakeVaultBackend())
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _auth_failures() -> list[AuditLog]:
    async with SessionLocal() as session:
        result = await session.execute(select(AuditLog).where(AuditLog.event_type == "auth_failure"))
        return list(result.scalars().all())


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("headers", "message", "reason"),
    [
        ({}, "No authorization token provided", "No authorization header"),
        ({"Authorization": "Token abc"}, "Invalid authorization header format", "Invalid header format"),
        ({"Authorization": "Bearer"}, "Invalid authorization header format", "Invalid header format"),
        ({"Authorization": "Bearer a b"}, "Invalid authorization header format", "Invalid header format"),
        ({"Authorization": "Bearer not-a-token"}, "Invalid token", "Token decode failed"),
    ],
)
async def test_rejected_credentials_are_audited(headers, message, reason) -> None:
    async with _client() as client:
        response = await client.get("/v1/admin/instances", headers=headers)

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"
    body = response.json()
    assert body["error"] == {"code": "AUTH_UNAUTHORIZED", "message": message}
    assert body["meta"]["request_id"] == response.headers["X-Request-Id"]

    failures = await _auth_failures()
    assert len(failures) == 1
    assert failures[0].instance_id == "unknown"
    assert failures[0].endpoint == "/v1/admin/instances"
    assert failures[0].metadata_json == {"reason": reason}


@pytest.mark.asyncio
async def test_unknown_instance_token_is_rejected() -> None:
    private_pem, _ = generate_key_pair()
    token = instance_token("instance-ghost", private_pem)
    async with _client() as client:
        response = await client.get(
            "/v1/instances/instance-ghost/organisations", headers=auth_headers(token)
        )
    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Unknown instance or invalid token"


@pytest.mark.asyncio
async def test_token_signed_with_wrong_key_is_rejected() -> None:
    instance, _ = await create_test_instance()
    stranger_private, _ = generate_key_pair()
    async with _client() as client:
        response = await client.get(
            f"/v1/instances/{instance.id}/organisations",
            headers=auth_headers(instance_token(instance.id, stranger_private)),
        )
    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid or expired token"


@pytest.mark.asyncio
async def test_expired_token_is_rejected() -> None:
    instance, private_pem = await create_test_instance()
    now = int(time.time())
    token = instance_token(instance.id, private_pem, iat=now - 600, exp=now - 300)
    async with _client() as client:
        response = await client.get(f"/v1/instances/{instance.id}/organisations", headers=auth_headers(token))
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_subject_must_match_tenant() -> None:
    instance, private_pem = await create_test_instance()
    other, _ = await create_test_instance(name="other")
    token = instance_token(instance.id, private_pem, tenantId=other.id)
    async with _client() as client:
        response = await client.get(f"/v1/instances/{other.id}/organisations", headers=auth_headers(token))
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_instance_token_cannot_reach_other_instance() -> None:
    instance, private_pem = await create_test_instance()
    other, _ = await create_test_instance(name="other")
    async with _client() as client:
        response = await client.get(
            f"/v1/instances/{other.id}/organisations",
            headers=auth_headers(instance_token(instance.id, private_pem)),
        )
    assert response.status_code == 403
    assert response.json()["error"] == {"code": "AUTH_FORBIDDEN", "message": "Access denied to this instance"}
    failures = await _auth_failures()
    assert len(failures) == 1
    assert failures[0].instance_id == instance.id
    assert failures[0].response_status == 403


@pytest.mark.asyncio
async def test_admin_flag_on_instance_token_is_ignored() -> None:
    instance, private_pem = await create_test_instance()
    token = instance_token(instance.id, private_pem, isAdmin=True)
    async with _client() as client:
        admin = await client.get("/v1/admin/instances", headers=auth_headers(token))
        own = await client.get(f"/v1/instances/{instance.id}/organisations", headers=auth_headers(token))
    assert admin.status_code == 403
    assert admin.json()["error"]["message"] == "Admin access required"
    assert own.status_code == 200


@pytest.mark.asyncio
async def test_root_token_without_admin_flag_is_not_admin() -> None:
    token = issue_token(make_claims(sub="root", tenant_id="root"), ROOT_PRIVATE_KEY)
    async with _client() as client:
        response = await client.get("/v1/admin/instances", headers=auth_headers(token))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_token_reaches_any_instance() -> None:
    instance, _ = await create_test_instance()
    async with _client() as client:
        response = await client.get(
            f"/v1/instances/{instance.id}/organisations", headers=auth_headers(admin_token())
        )
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_revoked_token_stops_working() -> None:
    instance, private_pem = await create_test_instance()
    token = instance_token(instance.id, private_pem)
    headers = auth_headers(token)
    async with _client() as client:
        revoked = await client.post(f"/v1/instances/{instance.id}/tokens/revoke", json={}, headers=headers)
        assert revoked.status_code == 200
        data = revoked.json()["data"]
        assert data["instance_id"] == instance.id
        assert data["newly_revoked"] is True

        after = await client.get(f"/v1/instances/{instance.id}/organisations", headers=headers)
        assert after.status_code == 401

        # Other tokens of the same instance stay valid.
        fresh = auth_headers(instance_token(instance.id, private_pem))
        still_ok = await client.get(f"/v1/instances/{instance.id}/organisations", headers=fresh)
        assert still_ok.status_code == 200


@pytest.mark.asyncio
async def test_admin_revoking_own_token_under_instance_path() -> None:
    instance, _ = await create_test_instance()
    headers = auth_headers(admin_token())
    async with _client() as client:
        revoked = await client.post(f"/v1/instances/{instance.id}/tokens/revoke", json={}, headers=headers)
        assert revoked.status_code == 200
        data = revoked.json()["data"]
        assert data["instance_id"] == "root"
        assert data["newly_revoked"] is True

        after = await client.get("/v1/admin/instances", headers=headers)
    assert after.status_code == 401


@pytest.mark.asyncio
async def test_revoke_other_token_requires_expiry() -> None:
    instance, private_pem = await create_test_instance()
    headers = auth_headers(instance_token(instance.id, private_pem))
    async with _client() as client:
        missing = await client.post(
            f"/v1/instances/{instance.id}/tokens/revoke", json={"jti": "abc"}, headers=headers
        )
        assert missing.status_code == 400

        ok = await client.post(
            f"/v1/instances/{instance.id}/tokens/revoke",
            json={"jti": "abc", "expires_at": "2099-01-01T00:00:00Z"},
            headers=headers,
        )
        assert ok.status_code == 200
        repeat = await client.post(
            f"/v1/instances/{instance.id}/tokens/revoke",
            json={"jti": "abc", "expires_at": "2099-01-01T00:00:00Z"},
            headers=headers,
        )
    assert repeat.json()["data"]["newly_revoked"] is False


def test_app_refuses_to_start_without_root_key(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "root_jwt_public_key", None)
    with pytest.raises(RootKeyConfigError):
        create_app(provision_backend=FakeProvisionBackend(), vault_backend=FakeVaultBackend())
