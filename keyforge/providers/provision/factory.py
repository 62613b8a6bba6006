from __future__ import annotations

from keyforge.core.config import get_settings
from keyforge.core.errors import ProviderConfigError
from keyforge.providers.provision.base import ProvisionBackend
from keyforge.providers.provision.fake import FakeProvisionBackend
from keyforge.providers.provision.helm import HelmProvisionBackend


def get_provision_backend() -> ProvisionBackend:
    settings = get_settings()
    backend = (settings.provision_backend or "").lower()

    if backend == "helm":
        return HelmProvisionBackend()
    if backend == "fake":
        return FakeProvisionBackend()

    raise ProviderConfigError(f"Unsupported provision backend: {backend}")
