from __future__ import annotations

from datetime import datetime, timedelta
from typing import Literal

from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.core.config import get_settings
from keyforge.core.ids import utc_now
from keyforge.persistence.repos import audit as audit_repo
from keyforge.services.auth.revocation import prune_expired


MaintenanceTask = Literal["prune_revoked_tokens", "prune_audit"]


async def prune_revoked_tokens(session: AsyncSession, *, now: datetime | None = None) -> int:
    return await prune_expired(session, now=now)


async def prune_audit_logs(
    session: AsyncSession,
    *,
    retention_days: int | None = None,
    now: datetime | None = None,
) -> int:
    days = retention_days if retention_days is not None else get_settings().audit_retention_days
    cutoff = (now or utc_now()) - timedelta(days=days)
    return await audit_repo.delete_older_than(session, cutoff=cutoff)


async def run_task(session: AsyncSession, task: MaintenanceTask) -> int:
    if task == "prune_revoked_tokens":
        deleted = await prune_revoked_tokens(session)
    elif task == "prune_audit":
        deleted = await prune_audit_logs(session)
    else:
        raise ValueError(f"Unknown maintenance task: {task}")
    await session.commit()
    return deleted
