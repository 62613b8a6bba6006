from __future__ import annotations

from keyforge.core.config import get_settings
from keyforge.core.errors import ProviderConfigError
from keyforge.providers.vault.base import VaultBackend
from keyforge.providers.vault.fake import FakeVaultBackend
from keyforge.providers.vault.vaultwarden import VaultwardenBackend


def get_vault_backend() -> VaultBackend:
    settings = get_settings()
    backend = (settings.vault_backend or "").lower()

    if backend == "vaultwarden":
        return VaultwardenBackend()
    if backend == "fake":
        return FakeVaultBackend()

    raise ProviderConfigError(f"Unsupported vault backend: {backend}")
