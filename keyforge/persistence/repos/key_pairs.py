from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.core.ids import KEY_PAIR_PREFIX, new_id, utc_now
from keyforge.domain.models import KeyPair


async def add(session: AsyncSession, *, instance_id: str, public_key: str) -> KeyPair:
    key_pair = KeyPair(
        id=new_id(KEY_PAIR_PREFIX),
        instance_id=instance_id,
        public_key=public_key,
        created_at=utc_now(),
        revoked_at=None,
    )
    session.add(key_pair)
    await session.flush()
    return key_pair


async def get_active(session: AsyncSession, instance_id: str) -> KeyPair | None:
    # Newest non-revoked key wins when several exist.
    result = await session.execute(
        select(KeyPair)
        .where(KeyPair.instance_id == instance_id, KeyPair.revoked_at.is_(None))
        .order_by(KeyPair.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def revoke_all(session: AsyncSession, instance_id: str) -> int:
    # Revocation is one-way; already revoked keys keep their original timestamp.
    result = await session.execute(
        update(KeyPair)
        .where(KeyPair.instance_id == instance_id, KeyPair.revoked_at.is_(None))
        .values(revoked_at=utc_now())
    )
    return result.rowcount or 0
