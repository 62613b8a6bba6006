from __future__ import annotations

from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request

from keyforge.apps.api.errors import register_exception_handlers
from keyforge.apps.api.response import API_VERSION
from keyforge.apps.api.routes.admin import router as admin_router
from keyforge.apps.api.routes.health import router as health_router
from keyforge.apps.api.routes.organisations import router as organisations_router
from keyforge.apps.api.routes.tokens import router as tokens_router
from keyforge.core.config import get_settings
from keyforge.core.logging import configure_logging
from keyforge.providers.provision.base import ProvisionBackend
from keyforge.providers.provision.factory import get_provision_backend
from keyforge.providers.vault.base import VaultBackend
from keyforge.providers.vault.factory import get_vault_backend
from keyforge.services.audit import flush_pending_writes, schedule_request_log
from keyforge.services.auth.key_registry import KeyRegistry, load_root_key
from keyforge.services.provisioning_queue import wait_for_background_runs


def create_app(
    *,
    key_registry: KeyRegistry | None = None,
    provision_backend: ProvisionBackend | None = None,
    vault_backend: VaultBackend | None = None,
) -> FastAPI:
    """Build the API with its collaborators.

    Without an injected registry the root key is loaded from settings, and
    a missing or malformed key stops startup with RootKeyConfigError.
    """
    configure_logging()
    settings = get_settings()
    registry = key_registry or KeyRegistry(load_root_key(settings.root_jwt_public_key))
    vault = vault_backend or get_vault_backend()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await wait_for_background_runs()
        await flush_pending_writes()
        close = getattr(vault, "aclose", None)
        if close is not None:
            await close()

    app = FastAPI(title="Keyforge API", version=API_VERSION, lifespan=lifespan)
    app.state.key_registry = registry
    app.state.provision_backend = provision_backend or get_provision_backend()
    app.state.vault_backend = vault

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        # Authenticated requests are audited after the fact without holding the response.
        principal = getattr(request.state, "principal", None)
        if principal is not None:
            schedule_request_log(
                endpoint=request.url.path,
                method=request.method,
                instance_id=principal.tenant_id,
                request_id=request_id,
                response_status=response.status_code,
                metadata={"subject": principal.subject, "is_admin": principal.is_admin},
            )
        return response

    register_exception_handlers(app)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(admin_router, prefix=f"/{API_VERSION}")
    app.include_router(organisations_router, prefix=f"/{API_VERSION}")
    app.include_router(tokens_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
