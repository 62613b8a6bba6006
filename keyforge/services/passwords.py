from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.core.errors import NotFoundError, StateConflictError, ValidationError
from keyforge.core.ids import PASSWORD_PREFIX, ensure_utc, new_id
from keyforge.domain.models import Instance, Organisation, Password
from keyforge.persistence.repos import passwords as passwords_repo
from keyforge.providers.vault.base import CipherInput, VaultBackend
from keyforge.services.instances import get_instance
from keyforge.services.organisations import get_organisation


logger = logging.getLogger(__name__)

UNKNOWN_NAME = "Unknown"


@dataclass(frozen=True)
class PasswordSummary:
    id: str
    name: str
    created_at: datetime


@dataclass(frozen=True)
class PasswordView:
    id: str
    name: str
    password: str
    username: str | None
    totp: str | None
    uris: list[str]
    notes: str | None
    created_at: datetime


@dataclass(frozen=True)
class PasswordUpdate:
    # None means "keep the current value".
    name: str | None = None
    password: str | None = None
    username: str | None = None
    totp: str | None = None
    uris: list[str] | None = None
    notes: str | None = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (self.name, self.password, self.username, self.totp, self.uris, self.notes)
        )


@dataclass(frozen=True)
class _Scope:
    instance: Instance
    organisation: Organisation

    @property
    def base_url(self) -> str:
        return self.instance.backend_url

    @property
    def token(self) -> str:
        return self.organisation.backend_user_token or ""

    @property
    def org_id(self) -> str:
        return self.organisation.backend_org_id or ""


async def _resolve_scope(session: AsyncSession, instance_id: str, organisation_id: str) -> _Scope:
    instance = await get_instance(session, instance_id)
    organisation = await get_organisation(session, instance_id, organisation_id)
    if not organisation.backend_org_id or not organisation.backend_user_token:
        raise StateConflictError("Organisation not properly initialized")
    return _Scope(instance=instance, organisation=organisation)


async def _get_password_row(session: AsyncSession, organisation_id: str, password_id: str) -> Password:
    password = await passwords_repo.get_for_organisation(session, organisation_id, password_id)
    if password is None:
        raise NotFoundError("Password not found")
    return password


def _view(password: Password, cipher: CipherInput) -> PasswordView:
    return PasswordView(
        id=password.id,
        name=cipher.name,
        password=cipher.password,
        username=cipher.username,
        totp=cipher.totp,
        uris=list(cipher.uris),
        notes=cipher.notes,
        created_at=ensure_utc(password.created_at),
    )


async def create_password(
    session: AsyncSession,
    vault: VaultBackend,
    *,
    instance_id: str,
    organisation_id: str,
    cipher: CipherInput,
) -> PasswordView:
    if not cipher.name or not cipher.password:
        raise ValidationError("Name and password are required")
    scope = await _resolve_scope(session, instance_id, organisation_id)
    cipher_id = await vault.create_cipher(scope.base_url, scope.token, scope.org_id, cipher)
    password = await passwords_repo.create(
        session,
        password_id=new_id(PASSWORD_PREFIX),
        organisation_id=organisation_id,
        backend_cipher_id=cipher_id,
    )
    await session.commit()
    logger.info("password_created password_id=%s organisation_id=%s", password.id, organisation_id)
    return _view(password, cipher)


async def list_passwords(
    session: AsyncSession,
    vault: VaultBackend,
    *,
    instance_id: str,
    organisation_id: str,
) -> list[PasswordSummary]:
    # Local rows decide identity and order; names come from one bulk downstream read.
    scope = await _resolve_scope(session, instance_id, organisation_id)
    passwords = await passwords_repo.list_for_organisation(session, organisation_id)
    if not passwords:
        return []
    ciphers = await vault.get_ciphers(scope.base_url, scope.token, scope.org_id)
    names = {cipher.id: cipher.name for cipher in ciphers}
    return [
        PasswordSummary(
            id=password.id,
            name=names.get(password.backend_cipher_id, UNKNOWN_NAME),
            created_at=ensure_utc(password.created_at),
        )
        for password in passwords
    ]


async def get_password(
    session: AsyncSession,
    vault: VaultBackend,
    *,
    instance_id: str,
    organisation_id: str,
    password_id: str,
) -> PasswordView:
    scope = await _resolve_scope(session, instance_id, organisation_id)
    password = await _get_password_row(session, organisation_id, password_id)
    detail = await vault.get_cipher(scope.base_url, scope.token, password.backend_cipher_id)
    return _view(password, detail.to_input())


async def update_password(
    session: AsyncSession,
    vault: VaultBackend,
    *,
    instance_id: str,
    organisation_id: str,
    password_id: str,
    changes: PasswordUpdate,
) -> PasswordView:
    # Read-merge-write: omitted fields keep the values currently stored downstream.
    if changes.is_empty():
        raise ValidationError("At least one field must be provided")
    scope = await _resolve_scope(session, instance_id, organisation_id)
    password = await _get_password_row(session, organisation_id, password_id)
    current = (await vault.get_cipher(scope.base_url, scope.token, password.backend_cipher_id)).to_input()
    merged = replace(
        current,
        **{key: value for key, value in vars(changes).items() if value is not None},
    )
    await vault.update_cipher(scope.base_url, scope.token, password.backend_cipher_id, scope.org_id, merged)
    logger.info("password_updated password_id=%s", password_id)
    return _view(password, merged)


async def delete_password(
    session: AsyncSession,
    vault: VaultBackend,
    *,
    instance_id: str,
    organisation_id: str,
    password_id: str,
) -> None:
    # The local reference goes only after the downstream delete succeeds.
    scope = await _resolve_scope(session, instance_id, organisation_id)
    password = await _get_password_row(session, organisation_id, password_id)
    await vault.delete_cipher(scope.base_url, scope.token, password.backend_cipher_id)
    await passwords_repo.delete_by_id(session, password.id)
    await session.commit()
    logger.info("password_deleted password_id=%s", password_id)
