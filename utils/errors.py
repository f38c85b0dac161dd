"""
utils/errors.py
Error taxonomy for the crew API core

Every failure raised by the core is a CrewAPIError subclass carrying a
machine-readable kind, a stable error code and the HTTP status the
routers map it to. None of these are fatal to the process.
"""

from enum import Enum
from typing import Optional, Dict, Any


class AuthErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_DEACTIVATED = "account_deactivated"
    ALREADY_EXISTS = "already_exists"
    INVALID_CURRENT_SECRET = "invalid_current_secret"
    WEAK_PASSWORD = "weak_password"


class TokenErrorKind(str, Enum):
    INVALID = "invalid"
    EXPIRED = "expired"
    REVOKED = "revoked"
    WRONG_TYPE = "wrong_type"
    MALFORMED_FORMAT = "malformed_format"


class AuthzErrorKind(str, Enum):
    INSUFFICIENT_ROLE = "insufficient_role"
    INSUFFICIENT_CLEARANCE = "insufficient_clearance"
    DEPARTMENT_RESTRICTED = "department_restricted"


class CryptoErrorKind(str, Enum):
    ENCRYPTION_FAILED = "encryption_failed"
    DECRYPTION_FAILED = "decryption_failed"
    KEY_DERIVATION_FAILED = "key_derivation_failed"
    BACKUP_RESTORE_FAILED = "backup_restore_failed"


class ResourceErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    ACCESS_DENIED = "access_denied"
    RECIPIENT_NOT_FOUND = "recipient_not_found"
    RECIPIENT_INACTIVE = "recipient_inactive"
    DELETE_TIME_EXPIRED = "delete_time_expired"
    INSUFFICIENT_CLEARANCE = "insufficient_clearance"
    EXPIRED = "expired"
    INVALID_STATE = "invalid_state"
    VALIDATION = "validation"


class CrewAPIError(Exception):
    """Base class for all core errors"""

    default_status = 400
    status_by_kind: Dict[Enum, int] = {}
    code_by_kind: Dict[Enum, str] = {}

    def __init__(
        self,
        kind: Enum,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details or {}
        self.code = code or self.code_by_kind.get(kind, kind.name)
        self.status_code = self.status_by_kind.get(kind, self.default_status)

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "error": self.message,
            "code": self.code,
            "status_code": self.status_code,
        }
        if self.details:
            body["details"] = self.details
        return body

    def __repr__(self):
        return f"{type(self).__name__}({self.kind.name}: {self.message})"


class AuthError(CrewAPIError):
    """Credential and account-state failures"""

    default_status = 401
    status_by_kind = {
        AuthErrorKind.NOT_FOUND: 404,
        AuthErrorKind.INVALID_CREDENTIALS: 401,
        AuthErrorKind.ACCOUNT_LOCKED: 423,
        AuthErrorKind.ACCOUNT_DEACTIVATED: 401,
        AuthErrorKind.ALREADY_EXISTS: 409,
        AuthErrorKind.INVALID_CURRENT_SECRET: 400,
        AuthErrorKind.WEAK_PASSWORD: 400,
    }
    code_by_kind = {
        AuthErrorKind.NOT_FOUND: "USER_NOT_FOUND",
        AuthErrorKind.ALREADY_EXISTS: "USER_EXISTS",
        AuthErrorKind.INVALID_CURRENT_SECRET: "INVALID_CURRENT_PASSWORD",
    }


class TokenError(CrewAPIError):
    """Bearer token failures (always 401)"""

    default_status = 401
    code_by_kind = {
        TokenErrorKind.INVALID: "INVALID_TOKEN",
        TokenErrorKind.EXPIRED: "TOKEN_EXPIRED",
        TokenErrorKind.REVOKED: "TOKEN_REVOKED",
        TokenErrorKind.WRONG_TYPE: "INVALID_TOKEN_TYPE",
        TokenErrorKind.MALFORMED_FORMAT: "INVALID_TOKEN_FORMAT",
    }


class AuthzError(CrewAPIError):
    """Role, clearance and department denials (always 403)"""

    default_status = 403


class CryptoError(CrewAPIError):
    """Encryption, key derivation and backup failures"""

    default_status = 500
    status_by_kind = {
        CryptoErrorKind.BACKUP_RESTORE_FAILED: 400,
    }


class ResourceError(CrewAPIError):
    """Message and document access failures"""

    default_status = 400
    status_by_kind = {
        ResourceErrorKind.NOT_FOUND: 404,
        ResourceErrorKind.ACCESS_DENIED: 403,
        ResourceErrorKind.RECIPIENT_NOT_FOUND: 404,
        ResourceErrorKind.RECIPIENT_INACTIVE: 400,
        ResourceErrorKind.DELETE_TIME_EXPIRED: 400,
        ResourceErrorKind.INSUFFICIENT_CLEARANCE: 403,
        ResourceErrorKind.EXPIRED: 410,
        ResourceErrorKind.INVALID_STATE: 400,
        ResourceErrorKind.VALIDATION: 400,
    }
