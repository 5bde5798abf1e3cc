from __future__ import annotations

from enum import Enum
from typing import Optional


class AuthErrorCode(str, Enum):
    """Stable failure codes returned by every auth use case.

    These are expected outcomes, not exceptions: the routing layer maps each
    one to a response code through ``status_code_for``.
    """

    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    MFA_REQUIRED = "MFA_REQUIRED"
    INVALID_MFA_CODE = "INVALID_MFA_CODE"
    MFA_NOT_ENABLED = "MFA_NOT_ENABLED"
    MFA_ALREADY_ENABLED = "MFA_ALREADY_ENABLED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_MALFORMED = "TOKEN_MALFORMED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    WEAK_PASSWORD = "WEAK_PASSWORD"
    USER_EXISTS = "USER_EXISTS"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    REGISTRATION_DISABLED = "REGISTRATION_DISABLED"
    SYSTEM_NOT_INITIALIZED = "SYSTEM_NOT_INITIALIZED"
    PASSWORD_MISMATCH = "PASSWORD_MISMATCH"
    API_KEY_NAME_INVALID = "API_KEY_NAME_INVALID"
    API_KEY_NAME_TAKEN = "API_KEY_NAME_TAKEN"
    API_KEY_NOT_FOUND = "API_KEY_NOT_FOUND"
    INFRASTRUCTURE_FAILURE = "INFRASTRUCTURE_FAILURE"


_STATUS_CODES = {
    AuthErrorCode.INVALID_CREDENTIALS: 401,
    AuthErrorCode.MFA_REQUIRED: 401,
    AuthErrorCode.INVALID_MFA_CODE: 401,
    AuthErrorCode.MFA_NOT_ENABLED: 400,
    AuthErrorCode.MFA_ALREADY_ENABLED: 409,
    AuthErrorCode.TOKEN_EXPIRED: 401,
    AuthErrorCode.TOKEN_MALFORMED: 401,
    AuthErrorCode.TOKEN_REVOKED: 401,
    AuthErrorCode.WEAK_PASSWORD: 400,
    AuthErrorCode.USER_EXISTS: 409,
    AuthErrorCode.USER_NOT_FOUND: 404,
    AuthErrorCode.REGISTRATION_DISABLED: 403,
    AuthErrorCode.SYSTEM_NOT_INITIALIZED: 403,
    AuthErrorCode.PASSWORD_MISMATCH: 400,
    AuthErrorCode.API_KEY_NAME_INVALID: 400,
    AuthErrorCode.API_KEY_NAME_TAKEN: 409,
    AuthErrorCode.API_KEY_NOT_FOUND: 404,
    AuthErrorCode.INFRASTRUCTURE_FAILURE: 503,
}


def status_code_for(code: Optional[AuthErrorCode]) -> int:
    if code is None:
        return 200
    return _STATUS_CODES.get(code, 500)


class ServiceError(Exception):
    """Base class for exceptional service-layer failures.

    Expected auth failures are returned as ``AuthResult`` values; these
    exceptions cover programming and infrastructure faults only.
    """

    status_code: int = 500
    error_code: str = "server_error"

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


class ConfigurationError(ServiceError):
    """A component was constructed with unusable parameters."""
    status_code = 500
    error_code = "configuration_error"


class InfrastructureError(ServiceError):
    """A collaborator (database, cache) failed; surfaced as a generic 503."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "AuthErrorCode",
    "status_code_for",
    "ServiceError",
    "ConfigurationError",
    "InfrastructureError",
]
