from __future__ import annotations

import secrets

from keyforge.core.errors import VaultBackendError
from keyforge.providers.vault.base import CipherDetail, CipherInput, CipherSummary, HealthResult


class FakeVaultBackend:
    """Deterministic in-memory vault.

    Set ``fail_on`` to an operation name (``register_user``,
    ``create_cipher`` and so on) to make that call raise.
    """

    def __init__(self, *, fail_on: set[str] | None = None, healthy: bool = True) -> None:
        self.fail_on = set(fail_on or ())
        self.healthy = healthy
        self.calls: list[str] = []
        self.users: dict[tuple[str, str], str] = {}
        self.organizations: dict[str, str] = {}
        # cipher id -> (org id, fields)
        self.ciphers: dict[str, tuple[str, CipherInput]] = {}

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail_on:
            raise VaultBackendError(f"{operation} failed with status 500: fake failure", status=500)

    async def register_user(self, base_url: str, email: str, name: str) -> str:
        self._enter("register_user")
        secret = secrets.token_hex(8)
        self.users[(base_url, email)] = secret
        return secret

    async def authenticate_user(self, base_url: str, email: str, secret: str) -> str:
        self._enter("authenticate_user")
        if self.users.get((base_url, email)) != secret:
            raise VaultBackendError("authenticate failed with status 400: bad credentials", status=400)
        return f"token-{email}"

    async def create_organization(self, base_url: str, token: str, name: str) -> str:
        self._enter("create_organization")
        org_id = f"org-{secrets.token_hex(4)}"
        self.organizations[org_id] = name
        return org_id

    async def create_cipher(
        self, base_url: str, token: str, org_id: str, cipher: CipherInput
    ) -> str:
        self._enter("create_cipher")
        cipher_id = f"cipher-{secrets.token_hex(4)}"
        self.ciphers[cipher_id] = (org_id, cipher)
        return cipher_id

    async def get_cipher(self, base_url: str, token: str, cipher_id: str) -> CipherDetail:
        self._enter("get_cipher")
        if cipher_id not in self.ciphers:
            raise VaultBackendError("get_cipher failed with status 404: not found", status=404)
        _org_id, cipher = self.ciphers[cipher_id]
        return CipherDetail(
            id=cipher_id,
            name=cipher.name,
            username=cipher.username,
            password=cipher.password,
            totp=cipher.totp,
            uris=list(cipher.uris),
            notes=cipher.notes,
        )

    async def get_ciphers(self, base_url: str, token: str, org_id: str) -> list[CipherSummary]:
        self._enter("get_ciphers")
        return [
            CipherSummary(id=cipher_id, name=cipher.name)
            for cipher_id, (owner, cipher) in self.ciphers.items()
            if owner == org_id
        ]

    async def update_cipher(
        self, base_url: str, token: str, cipher_id: str, org_id: str, cipher: CipherInput
    ) -> None:
        self._enter("update_cipher")
        if cipher_id not in self.ciphers:
            raise VaultBackendError("update_cipher failed with status 404: not found", status=404)
        self.ciphers[cipher_id] = (org_id, cipher)

    async def delete_cipher(self, base_url: str, token: str, cipher_id: str) -> None:
        self._enter("delete_cipher")
        self.ciphers.pop(cipher_id, None)

    async def check_health(self, base_url: str) -> HealthResult:
        self.calls.append("check_health")
        if self.healthy:
            return HealthResult(healthy=True, status_code=200)
        return HealthResult(healthy=False, status_code=503, error="Vault returned status 503")
