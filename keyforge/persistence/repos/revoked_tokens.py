from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.core.ids import utc_now
from keyforge.domain.models import RevokedToken


async def add(
    session: AsyncSession,
    *,
    jti: str,
    instance_id: str,
    expires_at: datetime,
) -> bool:
    # Revoking twice is a no-op; the first expiry stands.
    existing = await exists(session, jti=jti, instance_id=instance_id)
    if existing:
        return False
    session.add(
        RevokedToken(
            jti=jti,
            instance_id=instance_id,
            revoked_at=utc_now(),
            expires_at=expires_at,
        )
    )
    try:
        await session.flush()
    except IntegrityError:
        # A concurrent revocation inserted the pair between the check and the flush.
        await session.rollback()
        return False
    return True


async def exists(session: AsyncSession, *, jti: str, instance_id: str) -> bool:
    result = await session.execute(
        select(RevokedToken.jti).where(
            RevokedToken.jti == jti,
            RevokedToken.instance_id == instance_id,
        )
    )
    return result.first() is not None


async def delete_expired(session: AsyncSession, *, now: datetime | None = None) -> int:
    cutoff = now or utc_now()
    result = await session.execute(delete(RevokedToken).where(RevokedToken.expires_at < cutoff))
    return result.rowcount or 0
