from __future__ import annotations

from enum import IntEnum
from typing import Optional


class ErrorCode(IntEnum):
    """Stable four-digit error codes returned in every error body.

    1xxx codes describe problems with account data, 4xxx codes describe
    authentication and second-factor problems.
    """

    USER_NOT_FOUND = 1001
    BAD_EMAIL = 1002
    USERNAME_CONFLICT = 1003
    BAD_PHONE = 1004
    BAD_USERNAME = 1005
    METHOD_NOT_SET = 4001
    INVALID_PASSWORD = 4002
    INVALID_2FA = 4003
    TOKEN_EXPIRED = 4004
    TWO_FACTOR_REQUIRED = 4005

    @property
    def message(self) -> str:
        return _MESSAGES[self]


_MESSAGES = {
    ErrorCode.USER_NOT_FOUND: "User not found.",
    ErrorCode.BAD_EMAIL: "Invalid E-mail address.",
    ErrorCode.USERNAME_CONFLICT: "User already exists.",
    ErrorCode.BAD_PHONE: "Invalid phone number.",
    ErrorCode.BAD_USERNAME: "Invalid username.",
    ErrorCode.METHOD_NOT_SET: "2FA Method not set.",
    ErrorCode.INVALID_PASSWORD: "Invalid password.",
    ErrorCode.INVALID_2FA: "2FA Code wrong or expired.",
    ErrorCode.TOKEN_EXPIRED: "Token expired.",
    ErrorCode.TWO_FACTOR_REQUIRED: "Two-factor authentication required.",
}


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code``. ``error_code`` is one of the
    :class:`ErrorCode` values when the failure has a domain meaning and falls
    back to the HTTP status otherwise.
    """

    status_code: int = 400
    error_code: Optional[int] = None

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[int] = None,
    ) -> None:
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = int(error_code)
        if message is None:
            try:
                message = ErrorCode(self.error_code).message
            except ValueError:
                message = "request failed"
        super().__init__(message)
        self.message = message

    @property
    def code(self) -> int:
        return self.error_code if self.error_code is not None else self.status_code

    @classmethod
    def of(cls, code: ErrorCode) -> "ServiceError":
        return cls(code.message, error_code=code)


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500


__all__ = [
    "ErrorCode",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
