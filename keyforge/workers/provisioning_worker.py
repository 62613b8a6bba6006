from __future__ import annotations

import logging

from arq.connections import RedisSettings

from keyforge.core.config import get_settings
from keyforge.core.logging import configure_logging
from keyforge.providers.provision.factory import get_provision_backend
from keyforge.services.provisioning_queue import ProvisionJobPayload, process_provisioning_job


logger = logging.getLogger(__name__)


async def provision_instance(ctx, payload: dict) -> bool:
    # Validate the payload in the worker to enforce the job contract.
    job_payload = ProvisionJobPayload.model_validate(payload)
    logger.info(
        "provisioning_job_started instance_id=%s job_id=%s",
        job_payload.instance_id,
        ctx.get("job_id"),
    )
    return await process_provisioning_job(job_payload, backend=ctx["provision_backend"])


async def _startup(ctx) -> None:
    configure_logging()
    ctx["provision_backend"] = get_provision_backend()


async def _shutdown(ctx) -> None:
    ctx.pop("provision_backend", None)


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.provision_queue_name
    # A failed run is already persisted as failed; arq must not replay it.
    max_tries = 1
    # Readiness waits can run for minutes per component.
    job_timeout = int(
        settings.provision_command_timeout_s
        + settings.provision_ready_timeout_s * max(len(settings.provision_components), 1)
        + 60
    )
    functions = [provision_instance]
    on_startup = _startup
    on_shutdown = _shutdown
