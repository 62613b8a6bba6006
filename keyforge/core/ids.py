from __future__ import annotations

from datetime import datetime, timezone
import secrets


INSTANCE_PREFIX = "instance"
ORGANISATION_PREFIX = "organisation"
PASSWORD_PREFIX = "pwd"
EVENT_PREFIX = "evt"
LOG_PREFIX = "log"
KEY_PAIR_PREFIX = "keypair"
AUDIT_PREFIX = "audit"


def new_id(prefix: str) -> str:
    # Opaque ids carry a readable kind prefix and 64 random bits.
    return f"{prefix}-{secrets.token_hex(8)}"


def new_secret() -> str:
    # 256-bit hex secret for downstream admin access.
    return secrets.token_hex(32)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; treat them as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
