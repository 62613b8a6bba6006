from __future__ import annotations

from typing import Protocol


class ProvisionBackend(Protocol):
    async def create(self, instance_id: str, admin_secret: str) -> None:
        ...

    async def is_ready(self, namespace: str, component: str) -> bool:
        ...

    async def destroy(self, instance_id: str) -> None:
        ...
