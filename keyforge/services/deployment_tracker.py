from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.core.errors import NotFoundError, ValidationError
from keyforge.domain.models import EVENT_STATUSES, LOG_LEVELS, DeploymentEvent, DeploymentLog
from keyforge.persistence.repos import deployments as deployments_repo
from keyforge.persistence.repos import instances as instances_repo


logger = logging.getLogger(__name__)

DEFAULT_LOG_LIMIT = 100
MAX_LOG_LIMIT = 500


@dataclass(frozen=True)
class LogPage:
    logs: list[DeploymentLog]
    total: int
    page: int
    limit: int


async def log_event(
    session: AsyncSession,
    deployment_id: str,
    step: str,
    status: str,
    message: str | None = None,
) -> DeploymentEvent:
    # Events drive the state machine view, so write failures propagate.
    if status not in EVENT_STATUSES:
        raise ValidationError(f"Unknown event status: {status}")
    event = await deployments_repo.add_event(
        session,
        deployment_id=deployment_id,
        step=step,
        status=status,
        message=message,
    )
    await session.commit()
    logger.info(
        "deployment_event deployment_id=%s step=%s status=%s",
        deployment_id,
        step,
        status,
    )
    return event


async def log_message(
    session: AsyncSession,
    deployment_id: str,
    level: str,
    message: str,
) -> None:
    # Deployment logs are best-effort and never interrupt provisioning.
    if level not in LOG_LEVELS:
        level = "info"
    try:
        await deployments_repo.add_log(
            session,
            deployment_id=deployment_id,
            level=level,
            message=message,
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("deployment_log_write_failed deployment_id=%s", deployment_id, exc_info=exc)


async def list_events(session: AsyncSession, deployment_id: str) -> list[DeploymentEvent]:
    await _require_deployment(session, deployment_id)
    return await deployments_repo.list_events(session, deployment_id)


async def list_logs(
    session: AsyncSession,
    deployment_id: str,
    *,
    level: str | None = None,
    since: datetime | None = None,
    page: int = 1,
    limit: int = DEFAULT_LOG_LIMIT,
) -> LogPage:
    await _require_deployment(session, deployment_id)
    if level is not None and level not in LOG_LEVELS:
        raise ValidationError(f"Unknown log level: {level}")
    if page < 1:
        raise ValidationError("page must be >= 1")
    if limit < 1 or limit > MAX_LOG_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_LOG_LIMIT}")
    logs, total = await deployments_repo.list_logs(
        session,
        deployment_id,
        level=level,
        since=since,
        offset=(page - 1) * limit,
        limit=limit,
    )
    return LogPage(logs=logs, total=total, page=page, limit=limit)


async def _require_deployment(session: AsyncSession, deployment_id: str) -> None:
    if await instances_repo.get(session, deployment_id) is None:
        raise NotFoundError("Deployment not found")
