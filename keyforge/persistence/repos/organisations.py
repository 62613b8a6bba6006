from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.core.ids import utc_now
from keyforge.domain.models import ORGANISATION_STATUS_PENDING, Organisation


async def create_pending(
    session: AsyncSession,
    *,
    organisation_id: str,
    instance_id: str,
    name: str,
    backend_user_email: str,
) -> Organisation:
    organisation = Organisation(
        id=organisation_id,
        name=name,
        instance_id=instance_id,
        backend_user_email=backend_user_email,
        status=ORGANISATION_STATUS_PENDING,
        created_at=utc_now(),
    )
    session.add(organisation)
    await session.flush()
    return organisation


async def get_for_instance(
    session: AsyncSession, instance_id: str, organisation_id: str
) -> Organisation | None:
    # Scope lookups to the instance so ids from another tenant resolve to nothing.
    result = await session.execute(
        select(Organisation).where(
            Organisation.id == organisation_id,
            Organisation.instance_id == instance_id,
        )
    )
    return result.scalar_one_or_none()


async def list_for_instance(session: AsyncSession, instance_id: str) -> list[Organisation]:
    result = await session.execute(
        select(Organisation)
        .where(Organisation.instance_id == instance_id)
        .order_by(Organisation.created_at.asc())
    )
    return list(result.scalars().all())
