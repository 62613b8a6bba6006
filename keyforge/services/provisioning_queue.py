from __future__ import annotations

import asyncio
import logging

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel

from keyforge.core.config import get_settings
from keyforge.core.errors import ProviderConfigError
from keyforge.providers.provision.base import ProvisionBackend
from keyforge.providers.provision.factory import get_provision_backend
from keyforge.services.provisioning import ProvisioningOrchestrator


logger = logging.getLogger(__name__)

PROVISION_JOB_NAME = "provision_instance"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Keep references to in-process runs so they are not garbage collected.
_background_runs: set[asyncio.Task[bool]] = set()


class ProvisionJobPayload(BaseModel):
    # Only the id crosses the queue; the worker reads the secret from the registry.
    instance_id: str
    request_id: str | None = None


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.provision_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def process_provisioning_job(
    payload: ProvisionJobPayload,
    *,
    backend: ProvisionBackend | None = None,
) -> bool:
    # Shared by the worker, background and inline modes.
    orchestrator = ProvisioningOrchestrator(backend or get_provision_backend())
    return await orchestrator.run(payload.instance_id)


def _log_background_result(task: asyncio.Task[bool]) -> None:
    _background_runs.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("provisioning_background_run_crashed", exc_info=exc)


async def enqueue_provisioning(
    instance_id: str,
    *,
    backend: ProvisionBackend | None = None,
    request_id: str | None = None,
) -> str:
    """Dispatch a provisioning run and return its job id.

    The caller never waits on the run outcome except in inline mode, which
    exists for deterministic tests.
    """
    payload = ProvisionJobPayload(instance_id=instance_id, request_id=request_id)
    job_id = f"provision:{instance_id}"
    settings = get_settings()
    mode = settings.provision_execution_mode.lower()

    if mode == "inline":
        await process_provisioning_job(payload, backend=backend)
        return job_id
    if mode == "background":
        task = asyncio.create_task(process_provisioning_job(payload, backend=backend))
        _background_runs.add(task)
        task.add_done_callback(_log_background_result)
        return job_id
    if mode != "queue":
        raise ProviderConfigError(f"Unsupported provision execution mode: {mode}")

    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        PROVISION_JOB_NAME,
        payload.model_dump(),
        _job_id=job_id,
        _queue_name=settings.provision_queue_name,
    )
    logger.info("provisioning_enqueued instance_id=%s job_id=%s", instance_id, job_id)
    # When a job id already exists, arq returns None; keep tracing with the same id.
    return job.job_id if job else job_id


async def wait_for_background_runs() -> None:
    # Let in-process runs finish on shutdown.
    if _background_runs:
        await asyncio.gather(*list(_background_runs), return_exceptions=True)
