from __future__ import annotations

import base64
import hashlib
import logging
from typing import Any
import uuid

import httpx

from keyforge.core.config import get_settings
from keyforge.core.errors import VaultBackendError
from keyforge.providers.vault.base import CipherDetail, CipherInput, CipherSummary, HealthResult
from keyforge.services.resilience import RetryPolicy, retry_async


logger = logging.getLogger(__name__)

# Vaultwarden expects a login cipher (type 1) and the web client device type.
_CIPHER_TYPE_LOGIN = 1
_DEVICE_TYPE_WEB = "10"
_HEALTH_ATTEMPTS = 3
_HEALTH_DELAY_MS = 2000


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, TimeoutError)):
        return True
    status = getattr(exc, "status", None)
    return isinstance(status, int) and status >= 500


def master_password_hash(email: str, password: str, iterations: int) -> str:
    # PBKDF2-SHA256 over the password, salted with the lowercased email.
    derived = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        email.lower().encode("utf-8"),
        iterations,
        dklen=32,
    )
    return base64.b64encode(derived).decode("ascii")


def _login_payload(org_id: str, cipher: CipherInput) -> dict[str, Any]:
    return {
        "type": _CIPHER_TYPE_LOGIN,
        "organizationId": org_id,
        "name": cipher.name,
        "login": {
            "username": cipher.username or None,
            "password": cipher.password,
            "totp": cipher.totp or None,
            "uris": [{"uri": uri, "match": None} for uri in cipher.uris] if cipher.uris else None,
        },
        "notes": cipher.notes or None,
        "favorite": False,
        "folderId": None,
        "collectionIds": [],
    }


def _to_detail(payload: dict[str, Any]) -> CipherDetail:
    login = payload.get("login") or {}
    uris = [item.get("uri") for item in (login.get("uris") or []) if item.get("uri")]
    return CipherDetail(
        id=str(payload.get("id")),
        name=str(payload.get("name") or ""),
        username=login.get("username") or None,
        password=login.get("password") or "",
        totp=login.get("totp") or None,
        uris=uris,
        notes=payload.get("notes") or None,
    )


class VaultwardenBackend:
    """HTTP client for a tenant's Vaultwarden instance."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        health_retry_delay_ms: int = _HEALTH_DELAY_MS,
    ) -> None:
        self._settings = get_settings()
        self._client = client
        self._health_retry_delay_ms = health_retry_delay_ms

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client for connection pooling across tenants.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        token: str | None = None,
        json: dict[str, Any] | None = None,
        data: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        retry: bool = False,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        client = self._get_client()

        async def _call() -> httpx.Response:
            response = await client.request(
                method, url, headers=headers, json=json, data=data, params=params
            )
            if response.status_code >= 400:
                raise VaultBackendError(
                    f"{operation} failed with status {response.status_code}: {response.text[:200]}",
                    status=response.status_code,
                )
            return response

        policy = RetryPolicy(
            timeout_ms=self._settings.ext_call_timeout_ms,
            max_attempts=self._settings.ext_retry_max_attempts if retry else 1,
            backoff_ms=self._settings.ext_retry_backoff_ms,
        )
        try:
            return await retry_async(_call, policy=policy, retryable=_retryable)
        except VaultBackendError:
            raise
        except (httpx.HTTPError, TimeoutError) as exc:
            raise VaultBackendError(f"{operation} failed: {exc!r}") from exc

    @staticmethod
    def _json(operation: str, response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise VaultBackendError(f"{operation} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise VaultBackendError(f"{operation} returned an unexpected payload")
        return payload

    async def register_user(self, base_url: str, email: str, name: str) -> str:
        # The master password is random and only ever known to this service.
        master_password = str(uuid.uuid4())
        iterations = self._settings.vault_kdf_iterations
        await self._request(
            "register",
            "POST",
            f"{base_url}/identity/accounts/register",
            json={
                "email": email,
                "name": name,
                "masterPasswordHash": master_password_hash(email, master_password, iterations),
                "masterPasswordHint": "",
                "key": "",
                "keys": {"encryptedPrivateKey": "", "publicKey": ""},
                "kdf": 0,
                "kdfIterations": iterations,
            },
        )
        return master_password

    async def authenticate_user(self, base_url: str, email: str, secret: str) -> str:
        response = await self._request(
            "authenticate",
            "POST",
            f"{base_url}/identity/connect/token",
            data={
                "grant_type": "password",
                "username": email,
                "password": master_password_hash(email, secret, self._settings.vault_kdf_iterations),
                "scope": "api offline_access",
                "client_id": self._settings.vault_client_id,
                "deviceType": _DEVICE_TYPE_WEB,
                "deviceName": self._settings.vault_device_name,
                "deviceIdentifier": str(uuid.uuid4()),
            },
        )
        token = self._json("authenticate", response).get("access_token")
        if not token:
            raise VaultBackendError("authenticate returned no access token")
        return str(token)

    async def create_organization(self, base_url: str, token: str, name: str) -> str:
        response = await self._request(
            "create_organization",
            "POST",
            f"{base_url}/api/organizations",
            token=token,
            json={
                "name": name,
                "billingEmail": "noreply@example.com",
                "planType": 0,
                "key": "",
                "keys": {"encryptedPrivateKey": "", "publicKey": ""},
                "collectionName": "default",
            },
        )
        org_id = self._json("create_organization", response).get("id")
        if not org_id:
            raise VaultBackendError("create_organization returned no id")
        return str(org_id)

    async def create_cipher(
        self, base_url: str, token: str, org_id: str, cipher: CipherInput
    ) -> str:
        response = await self._request(
            "create_cipher",
            "POST",
            f"{base_url}/api/ciphers",
            token=token,
            json=_login_payload(org_id, cipher),
        )
        cipher_id = self._json("create_cipher", response).get("id")
        if not cipher_id:
            raise VaultBackendError("create_cipher returned no id")
        return str(cipher_id)

    async def get_cipher(self, base_url: str, token: str, cipher_id: str) -> CipherDetail:
        response = await self._request(
            "get_cipher",
            "GET",
            f"{base_url}/api/ciphers/{cipher_id}",
            token=token,
            retry=True,
        )
        return _to_detail(self._json("get_cipher", response))

    async def get_ciphers(self, base_url: str, token: str, org_id: str) -> list[CipherSummary]:
        response = await self._request(
            "get_ciphers",
            "GET",
            f"{base_url}/api/ciphers/organization-details",
            token=token,
            params={"organizationId": org_id},
            retry=True,
        )
        items = self._json("get_ciphers", response).get("data") or []
        return [
            CipherSummary(id=str(item.get("id")), name=str(item.get("name") or ""))
            for item in items
            if isinstance(item, dict) and item.get("id")
        ]

    async def update_cipher(
        self, base_url: str, token: str, cipher_id: str, org_id: str, cipher: CipherInput
    ) -> None:
        await self._request(
            "update_cipher",
            "PUT",
            f"{base_url}/api/ciphers/{cipher_id}",
            token=token,
            json=_login_payload(org_id, cipher),
        )

    async def delete_cipher(self, base_url: str, token: str, cipher_id: str) -> None:
        await self._request(
            "delete_cipher",
            "DELETE",
            f"{base_url}/api/ciphers/{cipher_id}",
            token=token,
        )

    async def check_health(self, base_url: str) -> HealthResult:
        # Connection failures retry on a fixed delay; any HTTP answer is final.
        client = self._get_client()

        async def _call() -> httpx.Response:
            return await client.get(f"{base_url}/api/alive")

        policy = RetryPolicy(
            timeout_ms=self._settings.ext_call_timeout_ms,
            max_attempts=_HEALTH_ATTEMPTS,
            backoff_ms=self._health_retry_delay_ms,
            fixed_delay=True,
        )
        try:
            response = await retry_async(_call, policy=policy, retryable=_retryable)
        except (httpx.HTTPError, TimeoutError) as exc:
            logger.warning("vault_health_unreachable base_url=%s", base_url, exc_info=exc)
            return HealthResult(healthy=False, error=str(exc) or exc.__class__.__name__)
        if response.is_success:
            return HealthResult(healthy=True, status_code=response.status_code)
        return HealthResult(
            healthy=False,
            status_code=response.status_code,
            error=f"Vault returned status {response.status_code}",
        )
