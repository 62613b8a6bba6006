from __future__ import annotations

import pytest
from sqlalchemy import select

from keyforge.domain.models import AuditLog
from keyforge.persistence.db import SessionLocal
from keyforge.services.audit import (
    categorize_request,
    flush_pending_writes,
    record_audit_log,
    record_auth_failure,
    sanitize_metadata,
    schedule_request_log,
)


@pytest.mark.parametrize(
    ("path", "method", "expected"),
    [
        ("/v1/admin/instances/instance-1/keys/rotate", "POST", "key_rotation"),
        ("/v1/admin/instances", "POST", "admin_operation"),
        ("/v1/admin/instances/instance-1", "DELETE", "admin_operation"),
        ("/v1/admin/instances", "GET", "instance_access"),
        ("/v1/instances/instance-1/organisations", "GET", "instance_access"),
        ("/v1/instances/instance-1/organisations", "POST", "data_modification"),
        ("/v1/instances/instance-1/organisations/o/passwords/p", "put", "data_modification"),
        ("/v1/instances/instance-1/tokens/revoke", "POST", "data_modification"),
        ("/v1/health", "HEAD", "instance_access"),
    ],
)
def test_categorize_request(path, method, expected) -> None:
    assert categorize_request(path, method) == expected


def test_sanitize_metadata_redacts_nested_secrets() -> None:
    metadata = {
        "subject": "root",
        "Authorization": "Bearer abc",
        "nested": {"admin_token": "t", "items": [{"password": "p", "name": "n"}]},
        "jwt_private_key": "pem",
    }
    assert sanitize_metadata(metadata) == {
        "subject": "root",
        "Authorization": "[REDACTED]",
        "nested": {"admin_token": "[REDACTED]", "items": [{"password": "[REDACTED]", "name": "n"}]},
        "jwt_private_key": "[REDACTED]",
    }


@pytest.mark.asyncio
async def test_record_audit_log_persists_sanitized_entry() -> None:
    await record_audit_log(
        endpoint="/v1/admin/instances",
        method="POST",
        instance_id="root",
        request_id="req-1",
        response_status=202,
        event_type="admin_operation",
        metadata={"secret": "s", "subject": "root"},
    )
    async with SessionLocal() as session:
        entry = (await session.execute(select(AuditLog))).scalar_one()
    assert entry.instance_id == "root"
    assert entry.metadata_json == {"secret": "[REDACTED]", "subject": "root"}


@pytest.mark.asyncio
async def test_auth_failure_without_instance_uses_unknown() -> None:
    await record_auth_failure(
        endpoint="/v1/admin/instances",
        method="GET",
        reason="No authorization header",
        request_id="req-2",
    )
    async with SessionLocal() as session:
        entry = (await session.execute(select(AuditLog))).scalar_one()
    assert entry.instance_id == "unknown"
    assert entry.event_type == "auth_failure"
    assert entry.response_status == 401
    assert entry.metadata_json == {"reason": "No authorization header"}


@pytest.mark.asyncio
async def test_audit_write_failure_is_logged_not_raised(caplog) -> None:
    class _BrokenSession:
        async def __aenter__(self):
            return self

        async def __aexit__(self, *_exc) -> None:
            return None

        def add(self, _entry) -> None:
            raise OSError("connection reset")

        async def rollback(self) -> None:
            return None

    await record_audit_log(
        endpoint="/v1/health",
        method="GET",
        instance_id=None,
        request_id="req-3",
        response_status=200,
        event_type="instance_access",
        session_factory=_BrokenSession,
    )
    assert "audit_log_write_failed" in caplog.text


@pytest.mark.asyncio
async def test_scheduled_request_log_is_written_after_flush() -> None:
    schedule_request_log(
        endpoint="/v1/instances/instance-1/organisations",
        method="POST",
        instance_id="instance-1",
        request_id="req-4",
        response_status=201,
    )
    await flush_pending_writes()
    async with SessionLocal() as session:
        entry = (await session.execute(select(AuditLog))).scalar_one()
    assert entry.event_type == "data_modification"
    assert entry.request_id == "req-4"
