from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class CipherInput:
    # Login fields written to the downstream vault.
    name: str
    password: str
    username: str | None = None
    totp: str | None = None
    uris: list[str] = field(default_factory=list)
    notes: str | None = None


@dataclass(frozen=True)
class CipherSummary:
    id: str
    name: str


@dataclass(frozen=True)
class CipherDetail:
    id: str
    name: str
    username: str | None
    password: str | None
    totp: str | None
    uris: list[str]
    notes: str | None

    def to_input(self) -> CipherInput:
        return CipherInput(
            name=self.name,
            password=self.password or "",
            username=self.username,
            totp=self.totp,
            uris=list(self.uris),
            notes=self.notes,
        )


@dataclass(frozen=True)
class HealthResult:
    healthy: bool
    status_code: int | None = None
    error: str | None = None


class VaultBackend(Protocol):
    async def register_user(self, base_url: str, email: str, name: str) -> str:
        ...

    async def authenticate_user(self, base_url: str, email: str, secret: str) -> str:
        ...

    async def create_organization(self, base_url: str, token: str, name: str) -> str:
        ...

    async def create_cipher(
        self, base_url: str, token: str, org_id: str, cipher: CipherInput
    ) -> str:
        ...

    async def get_cipher(self, base_url: str, token: str, cipher_id: str) -> CipherDetail:
        ...

    async def get_ciphers(self, base_url: str, token: str, org_id: str) -> list[CipherSummary]:
        ...

    async def update_cipher(
        self, base_url: str, token: str, cipher_id: str, org_id: str, cipher: CipherInput
    ) -> None:
        ...

    async def delete_cipher(self, base_url: str, token: str, cipher_id: str) -> None:
        ...

    async def check_health(self, base_url: str) -> HealthResult:
        ...
