from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
    Index,
    PrimaryKeyConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")

INSTANCE_STATUS_PROVISIONING = "provisioning"
INSTANCE_STATUS_READY = "ready"
INSTANCE_STATUS_FAILED = "failed"

ORGANISATION_STATUS_PENDING = "pending"
ORGANISATION_STATUS_CREATED = "created"
ORGANISATION_STATUS_FAILED = "failed"

EVENT_STATUSES = ("pending", "in_progress", "success", "failed")
LOG_LEVELS = ("info", "warn", "error", "debug")
AUDIT_EVENT_TYPES = (
    "admin_operation",
    "instance_access",
    "data_modification",
    "auth_failure",
    "key_rotation",
)


class Base(DeclarativeBase):
    pass


class Instance(Base):
    __tablename__ = "instances"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # In-cluster address of the tenant vault.
    backend_url: Mapped[str] = mapped_column(String)
    # Admin secret handed to the vault chart; returned to the caller only at creation.
    backend_admin_secret: Mapped[str] = mapped_column(String)
    # provisioning -> ready | failed; written only by the orchestrator.
    status: Mapped[str] = mapped_column(String, index=True, default=INSTANCE_STATUS_PROVISIONING)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Organisation(Base):
    __tablename__ = "organisations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    instance_id: Mapped[str] = mapped_column(
        String, ForeignKey("instances.id", ondelete="CASCADE"), index=True
    )
    # Downstream identifiers are filled once register/authenticate/create all succeed.
    backend_org_id: Mapped[str | None] = mapped_column(String, nullable=True)
    backend_user_email: Mapped[str | None] = mapped_column(String, nullable=True)
    backend_user_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default=ORGANISATION_STATUS_PENDING)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Password(Base):
    __tablename__ = "passwords"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organisation_id: Mapped[str] = mapped_column(
        String, ForeignKey("organisations.id", ondelete="CASCADE"), index=True
    )
    # Secret material lives only downstream; this row is a reference.
    backend_cipher_id: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DeploymentEvent(Base):
    __tablename__ = "deployment_events"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    deployment_id: Mapped[str] = mapped_column(
        String, ForeignKey("instances.id", ondelete="CASCADE"), index=True
    )
    # Insertion sequence breaks created_at ties for stable ordering.
    seq: Mapped[int] = mapped_column(Integer, default=0)
    step: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DeploymentLog(Base):
    __tablename__ = "deployment_logs"
    __table_args__ = (Index("ix_deployment_logs_deployment_created", "deployment_id", "created_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    deployment_id: Mapped[str] = mapped_column(
        String, ForeignKey("instances.id", ondelete="CASCADE"), index=True
    )
    level: Mapped[str] = mapped_column(String, index=True)
    message: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class KeyPair(Base):
    __tablename__ = "key_pairs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    instance_id: Mapped[str] = mapped_column(
        String, ForeignKey("instances.id", ondelete="CASCADE"), index=True
    )
    # SPKI PEM; the private half is never persisted.
    public_key: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    # One-way revocation marker.
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"
    __table_args__ = (PrimaryKeyConstraint("jti", "instance_id"),)

    jti: Mapped[str] = mapped_column(String)
    # No FK: revocations outlive instance teardown until they expire.
    instance_id: Mapped[str] = mapped_column(String)
    revoked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    endpoint: Mapped[str] = mapped_column(String)
    method: Mapped[str] = mapped_column(String)
    # "unknown" for requests rejected before a tenant was known.
    instance_id: Mapped[str] = mapped_column(String, index=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Sanitized before insert.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    response_status: Mapped[int] = mapped_column(Integer)
    event_type: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
