from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
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


class IllegalArgumentError(ServiceError):
    """Operation called with an argument it cannot act on (400)."""
    status_code = 400
    error_code = "validation_error"


class UnauthorizedError(ServiceError):
    """Missing or unknown session (401)."""
    status_code = 401
    error_code = "unauthorized"


class BadCredentialsError(UnauthorizedError):
    """Credentials or token signature did not match (401)."""
    pass


class SessionExpiredError(UnauthorizedError):
    """Token is past its expiration (401)."""
    pass


class NonceExpiredError(BadCredentialsError):
    """Token predates a security-relevant change of its user (401)."""
    pass


class NotAllowedError(ServiceError):
    """Operation is forbidden for the caller or would break an invariant (403)."""
    status_code = 403
    error_code = "forbidden"


class ResourceNotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class TokenInvalidationError(ServiceError):
    """Bulk session invalidation failed; the triggering write must abort (500)."""
    status_code = 500
    error_code = "server_error"

    def __init__(
        self,
        message: str,
        *,
        cause: Optional[BaseException] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.cause = cause


__all__ = [
    "ServiceError",
    "IllegalArgumentError",
    "UnauthorizedError",
    "BadCredentialsError",
    "SessionExpiredError",
    "NonceExpiredError",
    "NotAllowedError",
    "ResourceNotFoundError",
    "ConflictError",
    "TokenInvalidationError",
]
