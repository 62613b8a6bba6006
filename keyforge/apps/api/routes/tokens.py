from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.apps.api.deps import Principal, get_db, require_instance
from keyforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from keyforge.apps.api.response import SuccessEnvelope, success_response
from keyforge.core.errors import ValidationError
from keyforge.services.auth.revocation import revoke_token


router = APIRouter(prefix="/instances/{instance_id}/tokens", tags=["tokens"], responses=DEFAULT_ERROR_RESPONSES)


class TokenRevokeRequest(BaseModel):
    # Omitted jti/exp mean "the token used for this request".
    jti: str | None = None
    expires_at: datetime | None = None


class TokenRevokeResponse(BaseModel):
    jti: str
    instance_id: str
    expires_at: str
    newly_revoked: bool


@router.post("/revoke", response_model=SuccessEnvelope[TokenRevokeResponse])
async def revoke(
    instance_id: str,
    payload: TokenRevokeRequest,
    request: Request,
    principal: Principal = Depends(require_instance()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if payload.jti is None:
        # The caller's own token is keyed by its tenant, which is what verification looks up.
        jti = principal.jti
        revoked_for = principal.tenant_id
        expires_at = datetime.fromtimestamp(principal.expires_at, tz=timezone.utc)
    else:
        if payload.expires_at is None:
            raise ValidationError("expires_at is required when revoking another token")
        jti = payload.jti
        revoked_for = instance_id
        expires_at = payload.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
    added = await revoke_token(db, jti=jti, instance_id=revoked_for, expires_at=expires_at)
    return success_response(
        request=request,
        data=TokenRevokeResponse(
            jti=jti,
            instance_id=revoked_for,
            expires_at=expires_at.isoformat(),
            newly_revoked=added,
        ),
    )
