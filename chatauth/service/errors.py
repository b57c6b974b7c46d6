from __future__ import annotations

from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` used
    in the response envelope. The ``message`` is what the client sees, so it
    must stay coarse; anything more specific belongs in the log.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidCredentialsError(ServiceError):
    """Unknown identifier or wrong password at login (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class UnauthenticatedError(ServiceError):
    """Any token rejection: expired, forged, revoked or superseded (401)."""
    status_code = 401
    error_code = "unauthorized"


class StoreUnavailableError(ServiceError):
    """Credential store unreachable or timed out (503)."""
    status_code = 503
    error_code = "store_unavailable"


class RequestTimeoutError(ServiceError):
    """Request exceeded the configured server timeout (408)."""
    status_code = 408
    error_code = "request_timeout"


class ConfigError(Exception):
    """Configuration failed validation; fatal at startup.

    ``field`` is the dotted path of the first offending setting and
    ``errors`` holds every violation found as ``(field, message)`` pairs.
    """

    def __init__(self, field: str, message: str, errors: Optional[List[tuple[str, str]]] = None):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message
        self.errors = errors or [(field, message)]


__all__ = [
    "ServiceError",
    "InvalidCredentialsError",
    "UnauthenticatedError",
    "StoreUnavailableError",
    "RequestTimeoutError",
    "ConfigError",
]
