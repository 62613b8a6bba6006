from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.core.config import get_settings
from keyforge.core.errors import NotFoundError, UpstreamError, ValidationError
from keyforge.core.ids import ORGANISATION_PREFIX, new_id
from keyforge.domain.models import (
    ORGANISATION_STATUS_CREATED,
    ORGANISATION_STATUS_FAILED,
    Organisation,
)
from keyforge.persistence.repos import organisations as organisations_repo
from keyforge.providers.vault.base import VaultBackend
from keyforge.services.instances import get_instance, require_ready_instance


logger = logging.getLogger(__name__)


async def create_organisation(
    session: AsyncSession,
    vault: VaultBackend,
    *,
    instance_id: str,
    name: str | None,
) -> Organisation:
    """Create an organisation on a ready instance.

    A service user is registered, logged in and used to create the
    downstream organisation, strictly in that order. The pending row is
    committed first so a failure leaves a visible ``failed`` record.
    """
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Name is required")
    instance = await require_ready_instance(session, instance_id)

    settings = get_settings()
    organisation_id = new_id(ORGANISATION_PREFIX)
    email = f"{organisation_id}@{settings.vault_user_email_domain}"
    organisation = await organisations_repo.create_pending(
        session,
        organisation_id=organisation_id,
        instance_id=instance_id,
        name=cleaned,
        backend_user_email=email,
    )
    await session.commit()

    try:
        secret = await vault.register_user(instance.backend_url, email, cleaned)
        token = await vault.authenticate_user(instance.backend_url, email, secret)
        backend_org_id = await vault.create_organization(instance.backend_url, token, cleaned)
    except Exception as exc:  # noqa: BLE001 - any downstream failure marks the record failed
        organisation.status = ORGANISATION_STATUS_FAILED
        await session.commit()
        logger.error(
            "organisation_create_failed organisation_id=%s instance_id=%s",
            organisation_id,
            instance_id,
            exc_info=exc,
        )
        if isinstance(exc, UpstreamError):
            raise
        raise UpstreamError(f"Failed to create organisation: {exc}") from exc

    organisation.backend_org_id = backend_org_id
    organisation.backend_user_token = token
    organisation.status = ORGANISATION_STATUS_CREATED
    await session.commit()
    logger.info("organisation_created organisation_id=%s instance_id=%s", organisation_id, instance_id)
    return organisation


async def list_organisations(session: AsyncSession, instance_id: str) -> list[Organisation]:
    await get_instance(session, instance_id)
    return await organisations_repo.list_for_instance(session, instance_id)


async def get_organisation(session: AsyncSession, instance_id: str, organisation_id: str) -> Organisation:
    organisation = await organisations_repo.get_for_instance(session, instance_id, organisation_id)
    if organisation is None:
        raise NotFoundError("Organisation not found")
    return organisation
