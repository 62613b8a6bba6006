from __future__ import annotations

from datetime import datetime
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.core.ids import utc_now
from keyforge.persistence.repos import revoked_tokens as revoked_tokens_repo
from keyforge.services.auth.tokens import TokenClaims, verify_token


logger = logging.getLogger(__name__)


async def revoke_token(
    session: AsyncSession,
    *,
    jti: str,
    instance_id: str,
    expires_at: datetime,
) -> bool:
    # Record the revocation; returns False when the pair was already revoked.
    added = await revoked_tokens_repo.add(
        session,
        jti=jti,
        instance_id=instance_id,
        expires_at=expires_at,
    )
    await session.commit()
    logger.info("token_revoked jti=%s instance_id=%s new=%s", jti, instance_id, added)
    return added


async def is_token_revoked(session: AsyncSession, *, jti: str, instance_id: str) -> bool:
    # Fail closed: a store we cannot read counts as revoked.
    try:
        return await revoked_tokens_repo.exists(session, jti=jti, instance_id=instance_id)
    except SQLAlchemyError as exc:
        logger.error(
            "revocation_check_failed jti=%s instance_id=%s",
            jti,
            instance_id,
            exc_info=exc,
        )
        await session.rollback()
        return True


async def prune_expired(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Callers commit; rows whose expiry has passed are no longer needed.
    return await revoked_tokens_repo.delete_expired(session, now=now or utc_now())


async def verify_token_with_revocation(
    session: AsyncSession,
    token: str,
    public_key_pem: str,
    *,
    now: int | None = None,
) -> TokenClaims | None:
    # Revocation is consulted only for tokens that already verify.
    claims = verify_token(token, public_key_pem, now=now)
    if claims is None:
        return None
    if await is_token_revoked(session, jti=claims.jti, instance_id=claims.tenant_id):
        logger.info("token_rejected reason=revoked jti=%s", claims.jti)
        return None
    return claims
