from __future__ import annotations

import asyncio
from datetime import datetime
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keyforge.core.ids import AUDIT_PREFIX, new_id, utc_now
from keyforge.domain.models import AuditLog
from keyforge.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

UNKNOWN_INSTANCE = "unknown"
_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "private_key", "totp"]
_REDACTED_VALUE = "[REDACTED]"
# Keep references so fire-and-forget writes are not garbage collected mid-flight.
_pending_writes: set[asyncio.Task[None]] = set()


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub secret-looking keys while preserving structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def categorize_request(path: str, method: str) -> str:
    """Map a request to an audit event type.

    Key endpoints win over everything else, then instance create/delete
    count as admin operations, then reads and writes split by method.
    """
    method = method.upper()
    if "/keys" in path or "/rotate" in path:
        return "key_rotation"
    if "/admin/instances" in path and method in {"POST", "DELETE"}:
        return "admin_operation"
    if method == "GET":
        return "instance_access"
    if method in {"POST", "PUT", "PATCH", "DELETE"}:
        return "data_modification"
    return "instance_access"


async def record_audit_log(
    *,
    endpoint: str,
    method: str,
    instance_id: str | None,
    request_id: str | None,
    response_status: int,
    event_type: str,
    metadata: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> None:
    # Write on a dedicated session so request transactions are never touched; failures are logged only.
    entry = AuditLog(
        id=new_id(AUDIT_PREFIX),
        timestamp=timestamp or utc_now(),
        endpoint=endpoint,
        method=method,
        instance_id=instance_id or UNKNOWN_INSTANCE,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        response_status=response_status,
        event_type=event_type,
        created_at=utc_now(),
    )
    factory = session_factory or SessionLocal
    async with factory() as audit_session:
        try:
            audit_session.add(entry)
            await audit_session.commit()
        except (SQLAlchemyError, OSError) as exc:
            await audit_session.rollback()
            logger.warning(
                "audit_log_write_failed event_type=%s request_id=%s",
                event_type,
                request_id,
                exc_info=exc,
            )


async def record_auth_failure(
    *,
    endpoint: str,
    method: str,
    reason: str,
    request_id: str | None,
    response_status: int = 401,
    instance_id: str | None = None,
) -> None:
    await record_audit_log(
        endpoint=endpoint,
        method=method,
        instance_id=instance_id,
        request_id=request_id,
        response_status=response_status,
        event_type="auth_failure",
        metadata={"reason": reason},
    )


def schedule_request_log(
    *,
    endpoint: str,
    method: str,
    instance_id: str | None,
    request_id: str | None,
    response_status: int,
    metadata: dict[str, Any] | None = None,
) -> None:
    # Fire-and-forget; the response is already on its way.
    task = asyncio.create_task(
        record_audit_log(
            endpoint=endpoint,
            method=method,
            instance_id=instance_id,
            request_id=request_id,
            response_status=response_status,
            event_type=categorize_request(endpoint, method),
            metadata=metadata,
        )
    )
    _pending_writes.add(task)
    task.add_done_callback(_on_write_done)


def _on_write_done(task: asyncio.Task[None]) -> None:
    _pending_writes.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.warning("audit_log_task_failed", exc_info=task.exception())


async def flush_pending_writes() -> None:
    # Drain outstanding audit writes; used on shutdown and in tests.
    if _pending_writes:
        await asyncio.gather(*list(_pending_writes), return_exceptions=True)
