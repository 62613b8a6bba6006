from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.apps.api.deps import Principal, get_db, get_vault_backend, require_instance
from keyforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from keyforge.apps.api.response import SuccessEnvelope, success_response
from keyforge.core.ids import ensure_utc
from keyforge.domain.models import Organisation
from keyforge.providers.vault.base import CipherInput, VaultBackend
from keyforge.services import organisations as organisations_service
from keyforge.services import passwords as passwords_service


router = APIRouter(
    prefix="/instances/{instance_id}/organisations",
    tags=["organisations"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class OrganisationCreateRequest(BaseModel):
    # Optional at the schema level so a missing name gets the domain error message.
    name: str | None = None


class OrganisationResponse(BaseModel):
    id: str
    name: str
    instance_id: str
    backend_org_id: str | None
    backend_user_email: str | None
    status: str
    created_at: str


class PasswordCreateRequest(BaseModel):
    name: str | None = None
    password: str | None = None
    username: str | None = None
    totp: str | None = None
    uris: list[str] | None = None
    notes: str | None = None


class PasswordUpdateRequest(PasswordCreateRequest):
    pass


class PasswordResponse(BaseModel):
    id: str
    name: str
    password: str
    username: str | None = None
    totp: str | None = None
    uris: list[str] = Field(default_factory=list)
    notes: str | None = None
    created_at: str


class PasswordSummaryResponse(BaseModel):
    id: str
    name: str
    created_at: str


class PasswordDeleteResponse(BaseModel):
    id: str
    deleted: bool


def organisation_to_response(organisation: Organisation) -> OrganisationResponse:
    # The downstream user token stays server-side.
    return OrganisationResponse(
        id=organisation.id,
        name=organisation.name,
        instance_id=organisation.instance_id,
        backend_org_id=organisation.backend_org_id,
        backend_user_email=organisation.backend_user_email,
        status=organisation.status,
        created_at=ensure_utc(organisation.created_at).isoformat(),
    )


def _password_to_response(view: passwords_service.PasswordView) -> PasswordResponse:
    return PasswordResponse(
        id=view.id,
        name=view.name,
        password=view.password,
        username=view.username,
        totp=view.totp,
        uris=view.uris,
        notes=view.notes,
        created_at=view.created_at.isoformat(),
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[OrganisationResponse])
async def create_organisation(
    instance_id: str,
    payload: OrganisationCreateRequest,
    request: Request,
    _principal: Principal = Depends(require_instance()),
    db: AsyncSession = Depends(get_db),
    vault: VaultBackend = Depends(get_vault_backend),
) -> dict:
    organisation = await organisations_service.create_organisation(
        db,
        vault,
        instance_id=instance_id,
        name=payload.name,
    )
    return success_response(request=request, data=organisation_to_response(organisation))


@router.get("", response_model=SuccessEnvelope[list[OrganisationResponse]])
async def list_organisations(
    instance_id: str,
    request: Request,
    _principal: Principal = Depends(require_instance()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    organisations = await organisations_service.list_organisations(db, instance_id)
    return success_response(
        request=request,
        data=[organisation_to_response(organisation) for organisation in organisations],
    )


@router.get("/{organisation_id}", response_model=SuccessEnvelope[OrganisationResponse])
async def get_organisation(
    instance_id: str,
    organisation_id: str,
    request: Request,
    _principal: Principal = Depends(require_instance()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    organisation = await organisations_service.get_organisation(db, instance_id, organisation_id)
    return success_response(request=request, data=organisation_to_response(organisation))


@router.post(
    "/{organisation_id}/passwords",
    status_code=201,
    response_model=SuccessEnvelope[PasswordResponse],
)
async def create_password(
    instance_id: str,
    organisation_id: str,
    payload: PasswordCreateRequest,
    request: Request,
    _principal: Principal = Depends(require_instance()),
    db: AsyncSession = Depends(get_db),
    vault: VaultBackend = Depends(get_vault_backend),
) -> dict:
    cipher = CipherInput(
        name=payload.name or "",
        password=payload.password or "",
        username=payload.username,
        totp=payload.totp,
        uris=list(payload.uris or []),
        notes=payload.notes,
    )
    view = await passwords_service.create_password(
        db,
        vault,
        instance_id=instance_id,
        organisation_id=organisation_id,
        cipher=cipher,
    )
    return success_response(request=request, data=_password_to_response(view))


@router.get(
    "/{organisation_id}/passwords",
    response_model=SuccessEnvelope[list[PasswordSummaryResponse]],
)
async def list_passwords(
    instance_id: str,
    organisation_id: str,
    request: Request,
    _principal: Principal = Depends(require_instance()),
    db: AsyncSession = Depends(get_db),
    vault: VaultBackend = Depends(get_vault_backend),
) -> dict:
    summaries = await passwords_service.list_passwords(
        db,
        vault,
        instance_id=instance_id,
        organisation_id=organisation_id,
    )
    return success_response(
        request=request,
        data=[
            PasswordSummaryResponse(id=item.id, name=item.name, created_at=item.created_at.isoformat())
            for item in summaries
        ],
    )


@router.get(
    "/{organisation_id}/passwords/{password_id}",
    response_model=SuccessEnvelope[PasswordResponse],
)
async def get_password(
    instance_id: str,
    organisation_id: str,
    password_id: str,
    request: Request,
    _principal: Principal = Depends(require_instance()),
    db: AsyncSession = Depends(get_db),
    vault: VaultBackend = Depends(get_vault_backend),
) -> dict:
    view = await passwords_service.get_password(
        db,
        vault,
        instance_id=instance_id,
        organisation_id=organisation_id,
        password_id=password_id,
    )
    return success_response(request=request, data=_password_to_response(view))


@router.put(
    "/{organisation_id}/passwords/{password_id}",
    response_model=SuccessEnvelope[PasswordResponse],
)
async def update_password(
    instance_id: str,
    organisation_id: str,
    password_id: str,
    payload: PasswordUpdateRequest,
    request: Request,
    _principal: Principal = Depends(require_instance()),
    db: AsyncSession = Depends(get_db),
    vault: VaultBackend = Depends(get_vault_backend),
) -> dict:
    view = await passwords_service.update_password(
        db,
        vault,
        instance_id=instance_id,
        organisation_id=organisation_id,
        password_id=password_id,
        changes=passwords_service.PasswordUpdate(**payload.model_dump()),
    )
    return success_response(request=request, data=_password_to_response(view))


@router.delete(
    "/{organisation_id}/passwords/{password_id}",
    response_model=SuccessEnvelope[PasswordDeleteResponse],
)
async def delete_password(
    instance_id: str,
    organisation_id: str,
    password_id: str,
    request: Request,
    _principal: Principal = Depends(require_instance()),
    db: AsyncSession = Depends(get_db),
    vault: VaultBackend = Depends(get_vault_backend),
) -> dict:
    await passwords_service.delete_password(
        db,
        vault,
        instance_id=instance_id,
        organisation_id=organisation_id,
        password_id=password_id,
    )
    return success_response(request=request, data=PasswordDeleteResponse(id=password_id, deleted=True))
