from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.core.ids import utc_now
from keyforge.domain.models import Password


async def create(
    session: AsyncSession,
    *,
    password_id: str,
    organisation_id: str,
    backend_cipher_id: str,
) -> Password:
    password = Password(
        id=password_id,
        organisation_id=organisation_id,
        backend_cipher_id=backend_cipher_id,
        created_at=utc_now(),
    )
    session.add(password)
    await session.flush()
    return password


async def get_for_organisation(
    session: AsyncSession, organisation_id: str, password_id: str
) -> Password | None:
    result = await session.execute(
        select(Password).where(
            Password.id == password_id,
            Password.organisation_id == organisation_id,
        )
    )
    return result.scalar_one_or_none()


async def list_for_organisation(session: AsyncSession, organisation_id: str) -> list[Password]:
    result = await session.execute(
        select(Password)
        .where(Password.organisation_id == organisation_id)
        .order_by(Password.created_at.asc())
    )
    return list(result.scalars().all())


async def delete_by_id(session: AsyncSession, password_id: str) -> None:
    await session.execute(delete(Password).where(Password.id == password_id))
