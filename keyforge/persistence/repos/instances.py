from __future__ import annotations

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.core.ids import utc_now
from keyforge.domain.models import INSTANCE_STATUS_PROVISIONING, Instance


async def create(
    session: AsyncSession,
    *,
    instance_id: str,
    name: str,
    backend_url: str,
    backend_admin_secret: str,
) -> Instance:
    # Stage the row; callers commit together with the instance key pair.
    instance = Instance(
        id=instance_id,
        name=name,
        backend_url=backend_url,
        backend_admin_secret=backend_admin_secret,
        status=INSTANCE_STATUS_PROVISIONING,
        error=None,
        created_at=utc_now(),
    )
    session.add(instance)
    await session.flush()
    return instance


async def get(session: AsyncSession, instance_id: str) -> Instance | None:
    result = await session.execute(select(Instance).where(Instance.id == instance_id))
    return result.scalar_one_or_none()


async def list_all(session: AsyncSession) -> list[Instance]:
    # Newest instances first to match the deployment listing.
    result = await session.execute(select(Instance).order_by(Instance.created_at.desc()))
    return list(result.scalars().all())


async def finalize_status(
    session: AsyncSession,
    instance_id: str,
    *,
    status: str,
    error: str | None = None,
) -> bool:
    # Only a provisioning row may transition; terminal states stay put.
    result = await session.execute(
        update(Instance)
        .where(Instance.id == instance_id, Instance.status == INSTANCE_STATUS_PROVISIONING)
        .values(status=status, error=error)
    )
    return (result.rowcount or 0) > 0


async def delete_by_id(session: AsyncSession, instance_id: str) -> bool:
    result = await session.execute(delete(Instance).where(Instance.id == instance_id))
    return (result.rowcount or 0) > 0
