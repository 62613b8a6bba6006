from __future__ import annotations

import asyncio

from keyforge.persistence.db import SessionLocal
from keyforge.services.maintenance import run_task


async def prune() -> None:
    async with SessionLocal() as session:
        deleted = await run_task(session, "prune_revoked_tokens")
        print(f"pruned_revoked_tokens={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
