from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keyforge.core.config import get_settings
from keyforge.core.errors import NotFoundError, ProvisionBackendError
from keyforge.domain.models import (
    INSTANCE_STATUS_FAILED,
    INSTANCE_STATUS_PROVISIONING,
    INSTANCE_STATUS_READY,
)
from keyforge.persistence.db import SessionLocal
from keyforge.persistence.repos import instances as instances_repo
from keyforge.providers.provision.base import ProvisionBackend
from keyforge.services.deployment_tracker import log_event, log_message


logger = logging.getLogger(__name__)

INSTALL_STEP = "deploy_install"


def _ready_step(component: str) -> str:
    return f"{component}_ready"


def _failure_reason(exc: Exception) -> str:
    message = str(exc).strip()
    return message or exc.__class__.__name__


class ProvisioningOrchestrator:
    """Drive one instance from provisioning to ready or failed.

    The run installs the release, then waits for each component in order.
    Any error marks the instance failed with the reason; nothing is rolled
    back, so the partial state stays inspectable through the event trail.
    """

    def __init__(
        self,
        backend: ProvisionBackend,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        components: list[str] | None = None,
        poll_interval_s: float | None = None,
        ready_timeout_s: float | None = None,
        command_timeout_s: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = get_settings()
        self._backend = backend
        self._session_factory = session_factory or SessionLocal
        self._components = list(components if components is not None else settings.provision_components)
        self._poll_interval_s = poll_interval_s if poll_interval_s is not None else settings.provision_poll_interval_s
        self._ready_timeout_s = ready_timeout_s if ready_timeout_s is not None else settings.provision_ready_timeout_s
        self._command_timeout_s = (
            command_timeout_s if command_timeout_s is not None else settings.provision_command_timeout_s
        )
        self._sleep = sleep
        self._clock = clock

    async def run(self, instance_id: str) -> bool:
        # Returns True when the instance reached ready.
        async with self._session_factory() as session:
            instance = await instances_repo.get(session, instance_id)
            if instance is None:
                logger.warning("provisioning_skipped reason=missing instance_id=%s", instance_id)
                return False
            if instance.status != INSTANCE_STATUS_PROVISIONING:
                logger.info(
                    "provisioning_skipped reason=terminal instance_id=%s status=%s",
                    instance_id,
                    instance.status,
                )
                return instance.status == INSTANCE_STATUS_READY

            step = INSTALL_STEP
            try:
                await log_event(session, instance_id, step, "in_progress", "Installing vault release")
                await log_message(session, instance_id, "info", f"Starting deployment of {instance.name}")
                await asyncio.wait_for(
                    self._backend.create(instance_id, instance.backend_admin_secret),
                    timeout=self._command_timeout_s,
                )
                await log_event(session, instance_id, step, "success", "Vault release installed")

                for component in self._components:
                    step = _ready_step(component)
                    await log_event(session, instance_id, step, "in_progress", f"Waiting for {component}")
                    await self.wait_for_component(instance_id, component)
                    await log_event(session, instance_id, step, "success", f"{component} is ready")
                    await log_message(session, instance_id, "info", f"{component} is ready")

                await instances_repo.finalize_status(session, instance_id, status=INSTANCE_STATUS_READY)
                await session.commit()
            except Exception as exc:  # noqa: BLE001 - every failure becomes a persisted failed state
                await self._fail(session, instance_id, step, exc)
                return False

            await log_message(session, instance_id, "info", "Deployment completed successfully")
            logger.info("provisioning_completed instance_id=%s", instance_id)
            return True

    async def wait_for_component(self, namespace: str, component: str) -> None:
        # Fixed-interval poll with a hard ceiling that also bounds each check;
        # backend errors end the wait immediately.
        deadline = self._clock() + self._ready_timeout_s
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise self._readiness_timeout(component)
            try:
                ready = await asyncio.wait_for(
                    self._backend.is_ready(namespace, component),
                    timeout=min(self._command_timeout_s, remaining),
                )
            except asyncio.TimeoutError as exc:
                raise self._readiness_timeout(component) from exc
            if ready:
                return
            await self._sleep(self._poll_interval_s)

    def _readiness_timeout(self, component: str) -> ProvisionBackendError:
        return ProvisionBackendError(f"Timed out after {self._ready_timeout_s:g}s waiting for {component}")

    async def teardown(self, session: AsyncSession, instance_id: str) -> None:
        # The release must be gone before the registry forgets the instance.
        instance = await instances_repo.get(session, instance_id)
        if instance is None:
            raise NotFoundError("Instance not found")
        try:
            await asyncio.wait_for(self._backend.destroy(instance_id), timeout=self._command_timeout_s)
        except asyncio.TimeoutError as exc:
            raise ProvisionBackendError(f"Teardown of {instance_id} timed out") from exc
        await instances_repo.delete_by_id(session, instance_id)
        await session.commit()
        logger.info("instance_torn_down instance_id=%s", instance_id)

    async def _fail(self, session: AsyncSession, instance_id: str, step: str, exc: Exception) -> None:
        reason = _failure_reason(exc)
        logger.error("provisioning_failed instance_id=%s step=%s reason=%s", instance_id, step, reason)
        await session.rollback()
        try:
            await log_event(session, instance_id, step, "failed", reason)
        except SQLAlchemyError as event_exc:
            await session.rollback()
            logger.error("provisioning_event_write_failed instance_id=%s", instance_id, exc_info=event_exc)
        await log_message(session, instance_id, "error", f"Deployment failed at {step}: {reason}")
        await instances_repo.finalize_status(
            session,
            instance_id,
            status=INSTANCE_STATUS_FAILED,
            error=reason,
        )
        await session.commit()
