from __future__ import annotations

import asyncio

from keyforge.persistence.db import SessionLocal
from keyforge.services.maintenance import run_task


async def prune() -> None:
    async with SessionLocal() as session:
        deleted = await run_task(session, "prune_audit")
        print(f"pruned_audit_logs={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
