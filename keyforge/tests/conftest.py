from __future__ import annotations

import os
import tempfile

# Settings are cached on first use, so the environment is fixed before any app module loads.
_TEST_DIR = tempfile.mkdtemp(prefix="keyforge-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/keyforge.db"
os.environ["PROVISION_EXECUTION_MODE"] = "inline"
os.environ["PROVISION_BACKEND"] = "fake"
os.environ["VAULT_BACKEND"] = "fake"
os.environ["PROVISION_POLL_INTERVAL_S"] = "0.01"
os.environ["PROVISION_READY_TIMEOUT_S"] = "0.5"
os.environ["PROVISION_COMMAND_TIMEOUT_S"] = "5"
os.environ["EXT_RETRY_BACKOFF_MS"] = "1"

from keyforge.tests.utils.keys import root_public_key_env_value  # noqa: E402

os.environ["ROOT_JWT_PUBLIC_KEY"] = root_public_key_env_value()

import pytest  # noqa: E402

from keyforge.core.config import get_settings  # noqa: E402

get_settings.cache_clear()

from keyforge.domain.models import Base  # noqa: E402
from keyforge.persistence.db import engine  # noqa: E402
from keyforge.services.audit import flush_pending_writes  # noqa: E402
from keyforge.services.provisioning_queue import wait_for_background_runs  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_database() -> None:
    # Fresh schema per test so rows never leak between cases.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await wait_for_background_runs()
    await flush_pending_writes()
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
