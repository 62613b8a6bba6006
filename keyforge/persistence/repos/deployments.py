from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.core.ids import EVENT_PREFIX, LOG_PREFIX, new_id, utc_now
from keyforge.domain.models import DeploymentEvent, DeploymentLog


async def add_event(
    session: AsyncSession,
    *,
    deployment_id: str,
    step: str,
    status: str,
    message: str | None = None,
) -> DeploymentEvent:
    # Number events per deployment so same-timestamp rows keep insertion order.
    result = await session.execute(
        select(func.coalesce(func.max(DeploymentEvent.seq), 0)).where(
            DeploymentEvent.deployment_id == deployment_id
        )
    )
    next_seq = int(result.scalar_one()) + 1
    event = DeploymentEvent(
        id=new_id(EVENT_PREFIX),
        deployment_id=deployment_id,
        seq=next_seq,
        step=step,
        status=status,
        message=message,
        created_at=utc_now(),
    )
    session.add(event)
    await session.flush()
    return event


async def list_events(session: AsyncSession, deployment_id: str) -> list[DeploymentEvent]:
    result = await session.execute(
        select(DeploymentEvent)
        .where(DeploymentEvent.deployment_id == deployment_id)
        .order_by(DeploymentEvent.created_at.asc(), DeploymentEvent.seq.asc())
    )
    return list(result.scalars().all())


async def add_log(
    session: AsyncSession,
    *,
    deployment_id: str,
    level: str,
    message: str,
) -> DeploymentLog:
    log = DeploymentLog(
        id=new_id(LOG_PREFIX),
        deployment_id=deployment_id,
        level=level,
        message=message,
        created_at=utc_now(),
    )
    session.add(log)
    await session.flush()
    return log


async def list_logs(
    session: AsyncSession,
    deployment_id: str,
    *,
    level: str | None = None,
    since: datetime | None = None,
    offset: int = 0,
    limit: int = 100,
) -> tuple[list[DeploymentLog], int]:
    # Return one page newest-first plus the filtered total for pagination.
    filters = [DeploymentLog.deployment_id == deployment_id]
    if level:
        filters.append(DeploymentLog.level == level)
    if since is not None:
        filters.append(DeploymentLog.created_at >= since)

    total_result = await session.execute(
        select(func.count()).select_from(DeploymentLog).where(*filters)
    )
    total = int(total_result.scalar_one())
    result = await session.execute(
        select(DeploymentLog)
        .where(*filters)
        .order_by(DeploymentLog.created_at.desc(), DeploymentLog.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total
