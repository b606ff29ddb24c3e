from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# credential lifecycle

class UserAlreadyExists(ConflictError):
    def __init__(self, message: str = "user already exists", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UserNotFound(NotFoundError):
    def __init__(self, message: str = "user not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentials(AuthenticationError):
    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidToken(AuthenticationError):
    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SigningError(ServerError):
    """A token could not be produced."""


class HashingError(ServerError):
    """The password hasher failed."""


class CredentialStoreError(ServerError):
    """The credential store reported an unexpected failure."""


# verifier outcomes; the lifecycle manager converts these to InvalidToken

class TokenVerificationError(Exception):
    pass


class InvalidSignature(TokenVerificationError):
    """Malformed token, unsupported algorithm or bad MAC."""


class TokenExpired(TokenVerificationError):
    pass


class WrongPurpose(TokenVerificationError):
    pass


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "UserAlreadyExists",
    "UserNotFound",
    "InvalidCredentials",
    "InvalidToken",
    "SigningError",
    "HashingError",
    "CredentialStoreError",
    "TokenVerificationError",
    "InvalidSignature",
    "TokenExpired",
    "WrongPurpose",
]
