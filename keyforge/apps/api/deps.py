from __future__ import annotations

from typing import Any, AsyncGenerator, Callable

from fastapi import Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.apps.api.response import get_request_id
from keyforge.persistence.db import get_session
from keyforge.providers.provision.base import ProvisionBackend
from keyforge.providers.vault.base import VaultBackend
from keyforge.services.audit import record_auth_failure
from keyforge.services.auth.authenticate import (
    AccessDenied,
    AuthFailure,
    authenticate_token,
    ensure_admin,
    ensure_instance_access,
    is_admin,
    parse_bearer_token,
)
from keyforge.services.auth.key_registry import KeyRegistry
from keyforge.services.auth.tokens import TokenClaims
from keyforge.services.provisioning import ProvisioningOrchestrator


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_key_registry(request: Request) -> KeyRegistry:
    return request.app.state.key_registry


def get_provision_backend(request: Request) -> ProvisionBackend:
    return request.app.state.provision_backend


def get_vault_backend(request: Request) -> VaultBackend:
    return request.app.state.vault_backend


def get_orchestrator(
    backend: ProvisionBackend = Depends(get_provision_backend),
) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(backend)


class Principal(BaseModel):
    # Verified caller identity derived from token claims.
    subject: str
    tenant_id: str
    jti: str
    token_request_id: str
    expires_at: int
    is_admin: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_claims(cls, claims: TokenClaims) -> "Principal":
        return cls(
            subject=claims.sub,
            tenant_id=claims.tenant_id,
            jti=claims.jti,
            token_request_id=claims.request_id,
            expires_at=claims.exp,
            is_admin=is_admin(claims),
            metadata=dict(claims.metadata),
        )


async def _audit_rejection(request: Request, *, reason: str, status: int, instance_id: str | None = None) -> None:
    await record_auth_failure(
        endpoint=request.url.path,
        method=request.method,
        reason=reason,
        request_id=get_request_id(request),
        response_status=status,
        instance_id=instance_id,
    )


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: KeyRegistry = Depends(get_key_registry),
) -> Principal:
    # Every rejection is audited before the 401 goes out.
    try:
        token = parse_bearer_token(request.headers.get("Authorization"))
        claims = await authenticate_token(db, registry, token)
    except AuthFailure as exc:
        await _audit_rejection(request, reason=exc.reason, status=exc.status_code)
        raise
    principal = Principal.from_claims(claims)
    # The audit middleware reads this after the response is produced.
    request.state.principal = principal
    request.state.claims = claims
    return principal


async def require_admin(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    try:
        ensure_admin(request.state.claims)
    except AccessDenied as exc:
        await _audit_rejection(
            request,
            reason=exc.reason,
            status=exc.status_code,
            instance_id=principal.tenant_id,
        )
        raise
    return principal


def require_instance(param: str = "instance_id") -> Callable[..., Any]:
    # Admins pass; everyone else must target the instance named in their token.
    async def dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        instance_id = str(request.path_params.get(param, ""))
        try:
            ensure_instance_access(request.state.claims, instance_id)
        except AccessDenied as exc:
            await _audit_rejection(
                request,
                reason=exc.reason,
                status=exc.status_code,
                instance_id=principal.tenant_id,
            )
            raise
        return principal

    return dependency
