from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.apps.api.deps import get_db, get_vault_backend
from keyforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from keyforge.apps.api.response import SuccessEnvelope, success_response
from keyforge.core.ids import utc_now
from keyforge.providers.vault.base import VaultBackend
from keyforge.services.instances import check_instance_health

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class VaultHealthResponse(BaseModel):
    status: str
    instance_id: str
    message: str | None = None
    checked_at: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    return success_response(request=request, data=HealthResponse(status="ok"))


@router.get("/health/vault/{instance_id}", response_model=SuccessEnvelope[VaultHealthResponse])
async def vault_health(
    instance_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    vault: VaultBackend = Depends(get_vault_backend),
) -> JSONResponse:
    # Unknown instances answer 404 and non-ready ones 503 through the error envelope.
    result = await check_instance_health(db, vault, instance_id)
    payload = VaultHealthResponse(
        status="healthy" if result.healthy else "unhealthy",
        instance_id=instance_id,
        message=result.error,
        checked_at=utc_now().isoformat(),
    )
    return JSONResponse(
        content=success_response(request=request, data=payload),
        status_code=200 if result.healthy else 503,
    )
