from __future__ import annotations

from keyforge.core.errors import ProvisionBackendError


class FakeProvisionBackend:
    """In-memory cluster for local development and tests.

    ``fail_create`` and ``fail_destroy`` make the matching call raise;
    components listed in ``never_ready`` never report ready.
    """

    def __init__(
        self,
        *,
        fail_create: bool = False,
        fail_destroy: bool = False,
        never_ready: set[str] | None = None,
        ready_after_polls: int = 0,
    ) -> None:
        self.fail_create = fail_create
        self.fail_destroy = fail_destroy
        self.never_ready = set(never_ready or ())
        self.ready_after_polls = ready_after_polls
        self.releases: dict[str, str] = {}
        self.calls: list[tuple[str, ...]] = []
        self._polls: dict[tuple[str, str], int] = {}

    async def create(self, instance_id: str, admin_secret: str) -> None:
        self.calls.append(("create", instance_id))
        if self.fail_create:
            raise ProvisionBackendError(f"helm install failed for {instance_id}")
        self.releases[instance_id] = admin_secret

    async def is_ready(self, namespace: str, component: str) -> bool:
        self.calls.append(("is_ready", namespace, component))
        if namespace not in self.releases or component in self.never_ready:
            return False
        key = (namespace, component)
        self._polls[key] = self._polls.get(key, 0) + 1
        return self._polls[key] > self.ready_after_polls

    async def destroy(self, instance_id: str) -> None:
        self.calls.append(("destroy", instance_id))
        if self.fail_destroy:
            raise ProvisionBackendError(f"helm uninstall failed for {instance_id}")
        self.releases.pop(instance_id, None)
