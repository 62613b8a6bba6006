from __future__ import annotations


class KeyforgeError(Exception):
    """Base error for Keyforge."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(KeyforgeError):
    """Missing or malformed request input."""

    status_code = 400
    code = "BAD_REQUEST"


class NotFoundError(KeyforgeError):
    """Referenced instance, organisation, password or deployment is absent."""

    status_code = 404
    code = "NOT_FOUND"


class StateConflictError(KeyforgeError):
    """Resource exists but is not in a state that allows the operation."""

    status_code = 503
    code = "SERVICE_UNAVAILABLE"


class AuthenticationError(KeyforgeError):
    """Token missing, malformed, unverifiable, expired or revoked."""

    status_code = 401
    code = "AUTH_UNAUTHORIZED"


class AuthorizationError(KeyforgeError):
    """Verified caller lacks admin rights or instance scope."""

    status_code = 403
    code = "AUTH_FORBIDDEN"


class UpstreamError(KeyforgeError):
    """A downstream backend call failed."""

    status_code = 500
    code = "UPSTREAM_ERROR"


class ProvisionBackendError(UpstreamError):
    """Cluster install, readiness or teardown failure."""


class VaultBackendError(UpstreamError):
    """Downstream vault API failure."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        # Downstream HTTP status, when a response was received.
        self.status = status


class InternalError(KeyforgeError):
    """Unexpected local failure."""


class RootKeyConfigError(KeyforgeError):
    """Root verification key missing or unparseable at startup."""


class ProviderConfigError(KeyforgeError):
    """Unknown or incomplete backend selection."""
