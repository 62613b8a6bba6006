from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.apps.api.deps import (
    Principal,
    get_db,
    get_key_registry,
    get_orchestrator,
    get_provision_backend,
    require_admin,
)
from keyforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from keyforge.apps.api.response import SuccessEnvelope, get_request_id, success_response
from keyforge.apps.api.routes.organisations import OrganisationResponse, organisation_to_response
from keyforge.core.errors import ProvisionBackendError
from keyforge.core.ids import ensure_utc
from keyforge.domain.models import AuditLog, DeploymentEvent, DeploymentLog, Instance
from keyforge.persistence.repos import audit as audit_repo
from keyforge.providers.provision.base import ProvisionBackend
from keyforge.services import deployment_tracker
from keyforge.services import instances as instances_service
from keyforge.services.auth.key_registry import KeyRegistry
from keyforge.services.provisioning import ProvisioningOrchestrator
from keyforge.services.provisioning_queue import enqueue_provisioning


router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)


class InstanceCreateRequest(BaseModel):
    # Optional at the schema level so a missing name gets the domain error message.
    name: str | None = None


class InstanceCreateResponse(BaseModel):
    instance_id: str
    name: str
    backend_url: str
    admin_token: str
    jwt_private_key: str
    status: str


class InstanceResponse(BaseModel):
    id: str
    name: str
    backend_url: str
    status: str
    error: str | None
    created_at: str


class InstanceDeleteResponse(BaseModel):
    instance_id: str
    deleted: bool


class KeyRotateResponse(BaseModel):
    instance_id: str
    jwt_private_key: str


class DeploymentEventResponse(BaseModel):
    id: str
    deployment_id: str
    step: str
    status: str
    message: str | None
    created_at: str


class DeploymentLogResponse(BaseModel):
    id: str
    deployment_id: str
    level: str
    message: str
    created_at: str


class DeploymentLogPageResponse(BaseModel):
    logs: list[DeploymentLogResponse]
    total: int
    page: int
    limit: int


class DeploymentDetailResponse(BaseModel):
    instance: InstanceResponse
    organisations: list[OrganisationResponse]
    events: list[DeploymentEventResponse]


class AuditLogResponse(BaseModel):
    id: str
    timestamp: str
    endpoint: str
    method: str
    instance_id: str
    request_id: str | None
    metadata: dict
    response_status: int
    event_type: str


def _instance_to_response(instance: Instance) -> InstanceResponse:
    # The admin secret is only ever returned by the create call.
    return InstanceResponse(
        id=instance.id,
        name=instance.name,
        backend_url=instance.backend_url,
        status=instance.status,
        error=instance.error,
        created_at=ensure_utc(instance.created_at).isoformat(),
    )


def _event_to_response(event: DeploymentEvent) -> DeploymentEventResponse:
    return DeploymentEventResponse(
        id=event.id,
        deployment_id=event.deployment_id,
        step=event.step,
        status=event.status,
        message=event.message,
        created_at=ensure_utc(event.created_at).isoformat(),
    )


def _log_to_response(log: DeploymentLog) -> DeploymentLogResponse:
    return DeploymentLogResponse(
        id=log.id,
        deployment_id=log.deployment_id,
        level=log.level,
        message=log.message,
        created_at=ensure_utc(log.created_at).isoformat(),
    )


def _audit_to_response(entry: AuditLog) -> AuditLogResponse:
    return AuditLogResponse(
        id=entry.id,
        timestamp=ensure_utc(entry.timestamp).isoformat(),
        endpoint=entry.endpoint,
        method=entry.method,
        instance_id=entry.instance_id,
        request_id=entry.request_id,
        metadata=entry.metadata_json or {},
        response_status=entry.response_status,
        event_type=entry.event_type,
    )


@router.post("/instances", status_code=202, response_model=SuccessEnvelope[InstanceCreateResponse])
async def create_instance(
    payload: InstanceCreateRequest,
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    registry: KeyRegistry = Depends(get_key_registry),
    backend: ProvisionBackend = Depends(get_provision_backend),
) -> dict:
    # Respond as soon as the record exists; provisioning continues detached.
    created = await instances_service.create_instance(db, registry, name=payload.name)
    instance = created.instance
    response = InstanceCreateResponse(
        instance_id=instance.id,
        name=instance.name,
        backend_url=instance.backend_url,
        admin_token=created.admin_secret,
        jwt_private_key=created.private_key_pem,
        status=instance.status,
    )
    try:
        await enqueue_provisioning(instance.id, backend=backend, request_id=get_request_id(request))
    except Exception as exc:  # noqa: BLE001 - surface dispatch failures as upstream errors
        await instances_service.mark_dispatch_failed(db, instance.id, exc)
        raise ProvisionBackendError("Failed to dispatch provisioning") from exc
    return success_response(request=request, data=response)


@router.get("/instances", response_model=SuccessEnvelope[list[InstanceResponse]])
async def list_instances(
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    instances = await instances_service.list_instances(db)
    return success_response(request=request, data=[_instance_to_response(item) for item in instances])


@router.get("/instances/{instance_id}", response_model=SuccessEnvelope[InstanceResponse])
async def get_instance(
    instance_id: str,
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    instance = await instances_service.get_instance(db, instance_id)
    return success_response(request=request, data=_instance_to_response(instance))


@router.delete("/instances/{instance_id}", response_model=SuccessEnvelope[InstanceDeleteResponse])
async def delete_instance(
    instance_id: str,
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
) -> dict:
    await orchestrator.teardown(db, instance_id)
    return success_response(request=request, data=InstanceDeleteResponse(instance_id=instance_id, deleted=True))


@router.post("/instances/{instance_id}/keys/rotate", response_model=SuccessEnvelope[KeyRotateResponse])
async def rotate_instance_key(
    instance_id: str,
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    registry: KeyRegistry = Depends(get_key_registry),
) -> dict:
    private_pem = await instances_service.rotate_instance_key(db, registry, instance_id)
    return success_response(
        request=request,
        data=KeyRotateResponse(instance_id=instance_id, jwt_private_key=private_pem),
    )


@router.get("/deployments", response_model=SuccessEnvelope[list[InstanceResponse]])
async def list_deployments(
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    instances = await instances_service.list_instances(db)
    return success_response(request=request, data=[_instance_to_response(item) for item in instances])


@router.get("/deployments/{deployment_id}", response_model=SuccessEnvelope[DeploymentDetailResponse])
async def get_deployment(
    deployment_id: str,
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    detail = await instances_service.get_deployment_detail(db, deployment_id)
    response = DeploymentDetailResponse(
        instance=_instance_to_response(detail.instance),
        organisations=[organisation_to_response(item) for item in detail.organisations],
        events=[_event_to_response(item) for item in detail.events],
    )
    return success_response(request=request, data=response)


@router.get(
    "/deployments/{deployment_id}/events",
    response_model=SuccessEnvelope[list[DeploymentEventResponse]],
)
async def list_deployment_events(
    deployment_id: str,
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    events = await deployment_tracker.list_events(db, deployment_id)
    return success_response(request=request, data=[_event_to_response(item) for item in events])


@router.get(
    "/deployments/{deployment_id}/logs",
    response_model=SuccessEnvelope[DeploymentLogPageResponse],
)
async def list_deployment_logs(
    deployment_id: str,
    request: Request,
    level: str | None = Query(default=None),
    since: datetime | None = Query(default=None),
    page: int = Query(default=1),
    limit: int = Query(default=deployment_tracker.DEFAULT_LOG_LIMIT),
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Range checks live in the tracker so they answer with 400 like other input errors.
    result = await deployment_tracker.list_logs(
        db,
        deployment_id,
        level=level,
        since=ensure_utc(since),
        page=page,
        limit=limit,
    )
    response = DeploymentLogPageResponse(
        logs=[_log_to_response(item) for item in result.logs],
        total=result.total,
        page=result.page,
        limit=result.limit,
    )
    return success_response(request=request, data=response)


@router.get("/audit-logs", response_model=SuccessEnvelope[list[AuditLogResponse]])
async def list_audit_logs(
    request: Request,
    instance_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=500),
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    entries = await audit_repo.list_logs(
        db,
        instance_id=instance_id,
        event_type=event_type,
        offset=offset,
        limit=limit,
    )
    return success_response(request=request, data=[_audit_to_response(item) for item in entries])
