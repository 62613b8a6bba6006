from __future__ import annotations

import pytest

from keyforge.core.errors import NotFoundError, StateConflictError, ValidationError
from keyforge.domain.models import INSTANCE_STATUS_FAILED, INSTANCE_STATUS_PROVISIONING
from keyforge.persistence.db import SessionLocal
from keyforge.providers.vault.fake import FakeVaultBackend
from keyforge.services import instances as instances_service
from keyforge.services.auth.key_registry import KeyRegistry, load_root_key
from keyforge.services.auth.tokens import issue_token, verify_token
from keyforge.tests.utils.keys import ROOT_PUBLIC_KEY, make_claims
from keyforge.tests.utils.seed import create_test_instance


def _registry() -> KeyRegistry:
    return KeyRegistry(load_root_key(ROOT_PUBLIC_KEY))


@pytest.mark.asyncio
async def test_create_instance_persists_record_and_key() -> None:
    registry = _registry()
    async with SessionLocal() as session:
        created = await instances_service.create_instance(session, registry, name="Acme")
        stored_key = await registry.get_instance_key(session, created.instance.id)

    instance = created.instance
    assert instance.id.startswith("instance-")
    assert instance.status == INSTANCE_STATUS_PROVISIONING
    assert instance.backend_url == f"http://vaultwd-service.{instance.id}.svc.cluster.local"
    assert len(created.admin_secret) == 64
    assert instance.backend_admin_secret == created.admin_secret
    token = issue_token(make_claims(sub=instance.id, tenant_id=instance.id), created.private_key_pem)
    assert verify_token(token, stored_key) is not None


@pytest.mark.asyncio
async def test_create_instance_requires_name() -> None:
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await instances_service.create_instance(session, _registry(), name=None)
        assert await instances_service.list_instances(session) == []


@pytest.mark.asyncio
async def test_dispatch_failure_marks_instance_failed() -> None:
    async with SessionLocal() as session:
        created = await instances_service.create_instance(session, _registry(), name="Acme")
        instance_id = created.instance.id
        await instances_service.mark_dispatch_failed(session, instance_id, ConnectionError("redis down"))
        stored = await instances_service.get_instance(session, instance_id)
        await session.refresh(stored)
    assert stored.status == INSTANCE_STATUS_FAILED
    assert "redis down" in stored.error


@pytest.mark.asyncio
async def test_get_instance_unknown_is_not_found() -> None:
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await instances_service.get_instance(session, "instance-missing")


@pytest.mark.asyncio
async def test_health_check_requires_ready_instance() -> None:
    ready, _ = await create_test_instance()
    pending, _ = await create_test_instance(status=INSTANCE_STATUS_PROVISIONING)
    vault = FakeVaultBackend(healthy=False)

    async with SessionLocal() as session:
        result = await instances_service.check_instance_health(session, vault, ready.id)
        assert result.healthy is False
        assert result.status_code == 503
        with pytest.raises(StateConflictError):
            await instances_service.check_instance_health(session, vault, pending.id)
    assert vault.calls == ["check_health"]


@pytest.mark.asyncio
async def test_rotate_unknown_instance_is_not_found() -> None:
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await instances_service.rotate_instance_key(session, _registry(), "instance-missing")
