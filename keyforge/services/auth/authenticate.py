from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from keyforge.core.errors import AuthenticationError, AuthorizationError
from keyforge.services.auth.key_registry import KeyRegistry
from keyforge.services.auth.revocation import verify_token_with_revocation
from keyforge.services.auth.tokens import TokenClaims, decode_unverified


class AuthFailure(AuthenticationError):
    """Authentication rejection carrying the client message and the audit reason."""

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class AccessDenied(AuthorizationError):
    """Authorization rejection carrying the audit reason."""

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


def parse_bearer_token(header_value: str | None) -> str:
    # Enforce exactly "Bearer <token>".
    if not header_value:
        raise AuthFailure("No authorization token provided", reason="No authorization header")
    parts = header_value.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        raise AuthFailure("Invalid authorization header format", reason="Invalid header format")
    return parts[1]


async def authenticate_token(
    session: AsyncSession,
    registry: KeyRegistry,
    token: str,
) -> TokenClaims:
    # Pick the key from unverified claims, then verify fully including revocation.
    unverified = decode_unverified(token)
    if not unverified or not unverified.get("sub") or not unverified.get("tenantId"):
        raise AuthFailure("Invalid token", reason="Token decode failed")

    public_key = await registry.resolve_verification_key(
        session,
        str(unverified["sub"]),
        str(unverified["tenantId"]),
    )
    if public_key is None:
        raise AuthFailure("Unknown instance or invalid token", reason="Public key not found")

    claims = await verify_token_with_revocation(session, token, public_key)
    if claims is None:
        raise AuthFailure("Invalid or expired token", reason="Token verification failed")
    return claims


def is_admin(claims: TokenClaims) -> bool:
    # Admin rights come only from root-signed tokens.
    return claims.is_admin and claims.is_root


def ensure_admin(claims: TokenClaims) -> None:
    if not is_admin(claims):
        raise AccessDenied("Admin access required", reason="Admin access required")


def ensure_instance_access(claims: TokenClaims, instance_id: str) -> None:
    if is_admin(claims):
        return
    if claims.tenant_id != instance_id:
        raise AccessDenied("Access denied to this instance", reason="Instance access denied")
