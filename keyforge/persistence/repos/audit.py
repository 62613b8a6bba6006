from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.domain.models import AuditLog


async def list_logs(
    session: AsyncSession,
    *,
    instance_id: str | None = None,
    event_type: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditLog]:
    stmt = select(AuditLog)
    if instance_id:
        stmt = stmt.where(AuditLog.instance_id == instance_id)
    if event_type:
        stmt = stmt.where(AuditLog.event_type == event_type)
    stmt = stmt.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def delete_older_than(session: AsyncSession, *, cutoff: datetime) -> int:
    result = await session.execute(delete(AuditLog).where(AuditLog.timestamp < cutoff))
    return result.rowcount or 0
