from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.core.config import get_settings
from keyforge.core.errors import NotFoundError, StateConflictError, ValidationError
from keyforge.core.ids import INSTANCE_PREFIX, new_id, new_secret
from keyforge.domain.models import (
    INSTANCE_STATUS_FAILED,
    INSTANCE_STATUS_READY,
    DeploymentEvent,
    Instance,
    Organisation,
)
from keyforge.persistence.repos import deployments as deployments_repo
from keyforge.persistence.repos import instances as instances_repo
from keyforge.persistence.repos import organisations as organisations_repo
from keyforge.providers.vault.base import HealthResult, VaultBackend
from keyforge.services.auth.key_registry import KeyRegistry
from keyforge.services.auth.tokens import generate_key_pair


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreatedInstance:
    # Secrets here are shown to the caller once and never again.
    instance: Instance
    admin_secret: str
    private_key_pem: str


@dataclass(frozen=True)
class DeploymentDetail:
    instance: Instance
    organisations: list[Organisation]
    events: list[DeploymentEvent]


async def create_instance(session: AsyncSession, registry: KeyRegistry, *, name: str | None) -> CreatedInstance:
    # Persist the instance and its verification key in one transaction.
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Name is required")
    settings = get_settings()
    instance_id = new_id(INSTANCE_PREFIX)
    admin_secret = new_secret()
    private_pem, public_pem = generate_key_pair()

    instance = await instances_repo.create(
        session,
        instance_id=instance_id,
        name=cleaned,
        backend_url=settings.vault_url_template.format(instance_id=instance_id),
        backend_admin_secret=admin_secret,
    )
    await registry.store_instance_key(session, instance_id, public_pem)
    await session.commit()
    logger.info("instance_created instance_id=%s", instance_id)
    return CreatedInstance(instance=instance, admin_secret=admin_secret, private_key_pem=private_pem)


async def mark_dispatch_failed(session: AsyncSession, instance_id: str, exc: Exception) -> None:
    # A run that never started would otherwise sit in provisioning forever.
    reason = f"Provisioning dispatch failed: {exc}"
    await session.rollback()
    await instances_repo.finalize_status(session, instance_id, status=INSTANCE_STATUS_FAILED, error=reason)
    await session.commit()
    logger.error("provisioning_dispatch_failed instance_id=%s", instance_id, exc_info=exc)


async def list_instances(session: AsyncSession) -> list[Instance]:
    return await instances_repo.list_all(session)


async def get_instance(session: AsyncSession, instance_id: str) -> Instance:
    instance = await instances_repo.get(session, instance_id)
    if instance is None:
        raise NotFoundError("Instance not found")
    return instance


async def require_ready_instance(session: AsyncSession, instance_id: str) -> Instance:
    instance = await get_instance(session, instance_id)
    if instance.status != INSTANCE_STATUS_READY:
        raise StateConflictError(f"Instance status is {instance.status}")
    return instance


async def get_deployment_detail(session: AsyncSession, instance_id: str) -> DeploymentDetail:
    instance = await get_instance(session, instance_id)
    organisations = await organisations_repo.list_for_instance(session, instance_id)
    events = await deployments_repo.list_events(session, instance_id)
    return DeploymentDetail(instance=instance, organisations=organisations, events=events)


async def rotate_instance_key(session: AsyncSession, registry: KeyRegistry, instance_id: str) -> str:
    # Outstanding instance tokens stop verifying once the old key is revoked.
    await get_instance(session, instance_id)
    private_pem = await registry.rotate_instance_key(session, instance_id)
    await session.commit()
    return private_pem


async def check_instance_health(
    session: AsyncSession, vault: VaultBackend, instance_id: str
) -> HealthResult:
    instance = await require_ready_instance(session, instance_id)
    return await vault.check_health(instance.backend_url)
