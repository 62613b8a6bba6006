from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.core.errors import RootKeyConfigError
from keyforge.persistence.repos import key_pairs as key_pairs_repo
from keyforge.services.auth.tokens import ROOT_SUBJECT, generate_key_pair, load_public_key


logger = logging.getLogger(__name__)

_PEM_MARKER = "-----BEGIN PUBLIC KEY-----"


@dataclass(frozen=True)
class RootKeyConfig:
    # Immutable root verification key loaded once at startup.
    public_key_pem: str


def load_root_key(config_value: str | None) -> RootKeyConfig:
    """Parse the configured root key.

    Accepts either the PEM text itself or base64 of it. The key must be a
    P-256 public key; anything else raises RootKeyConfigError so the
    process refuses to start.
    """
    if not config_value or not config_value.strip():
        raise RootKeyConfigError("ROOT_JWT_PUBLIC_KEY is not configured")
    value = config_value.strip()
    if _PEM_MARKER in value:
        pem = value
    else:
        try:
            pem = base64.b64decode(value, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise RootKeyConfigError("ROOT_JWT_PUBLIC_KEY is neither PEM nor base64 PEM") from exc
    pem = pem.strip() + "\n"
    if load_public_key(pem) is None:
        raise RootKeyConfigError("ROOT_JWT_PUBLIC_KEY is not a valid P-256 public key")
    return RootKeyConfig(public_key_pem=pem)


class KeyRegistry:
    """Resolve verification keys: the root key plus one active key per instance."""

    def __init__(self, root: RootKeyConfig) -> None:
        self._root = root

    @property
    def root_public_key(self) -> str:
        return self._root.public_key_pem

    async def store_instance_key(self, session: AsyncSession, instance_id: str, public_key: str) -> None:
        await key_pairs_repo.add(session, instance_id=instance_id, public_key=public_key)

    async def get_instance_key(self, session: AsyncSession, instance_id: str) -> str | None:
        key_pair = await key_pairs_repo.get_active(session, instance_id)
        return key_pair.public_key if key_pair else None

    async def revoke_instance_key(self, session: AsyncSession, instance_id: str) -> int:
        revoked = await key_pairs_repo.revoke_all(session, instance_id)
        logger.info("instance_key_revoked instance_id=%s keys=%s", instance_id, revoked)
        return revoked

    async def rotate_instance_key(self, session: AsyncSession, instance_id: str) -> str:
        # Revoke every current key and store a fresh one; returns the new private PEM.
        private_pem, public_pem = generate_key_pair()
        await self.revoke_instance_key(session, instance_id)
        await self.store_instance_key(session, instance_id, public_pem)
        logger.info("instance_key_rotated instance_id=%s", instance_id)
        return private_pem

    async def resolve_verification_key(
        self,
        session: AsyncSession,
        subject: str | None,
        tenant_id: str | None,
    ) -> str | None:
        if not subject:
            return None
        if subject == ROOT_SUBJECT:
            return self._root.public_key_pem
        # Instance tokens must be self-scoped.
        if subject != tenant_id:
            logger.warning("token_subject_mismatch sub=%s tenant_id=%s", subject, tenant_id)
            return None
        return await self.get_instance_key(session, subject)
