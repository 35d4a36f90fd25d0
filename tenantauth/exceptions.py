"""
tenantauth error taxonomy.

Every failure a caller can observe is an ``AppError`` tagged with one
``ErrorKind``. The HTTP boundary dispatches on the kind, never on the
concrete class; the named subclasses below only fix a kind and a default
code so call sites read naturally.
"""

import enum
from typing import Any, Dict, Optional


class ErrorKind(str, enum.Enum):
    """Closed set of error kinds surfaced to callers."""

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    QUOTA_EXCEEDED = "quota_exceeded"
    TIMEOUT = "timeout"
    SERVICE_UNAVAILABLE = "service_unavailable"
    INTERNAL = "internal"


class AppError(Exception):
    """Base error carrying a kind, a stable code and optional details.

    Args:
        kind: Which branch of the taxonomy this error belongs to.
        code: Stable machine-readable code (upper snake case).
        message: Human-readable message safe to return to clients.
        details: Optional structured payload.
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    default_code: str = "INTERNAL_SERVER_ERROR"
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        kind: Optional[ErrorKind] = None,
    ) -> None:
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.details = details
        if kind is not None:
            self.kind = kind
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, code={self.code!r}, message={self.message!r})"


class ConfigurationError(ValueError):
    """Raised at startup when configuration is invalid. Never reaches HTTP."""


# ── Validation ─────────────────────────────────


class ValidationError(AppError):
    kind = ErrorKind.VALIDATION
    default_code = "INVALID_REQUEST"
    default_message = "Invalid request"


class WeakInputError(ValidationError):
    """A password failed the credential policy."""

    default_code = "WEAK_PASSWORD"
    default_message = "Password does not meet the password policy"


class InvalidClaimsError(ValidationError):
    """Token claims are incomplete; raised before anything is signed."""

    default_code = "INVALID_CLAIMS"
    default_message = "Token claims must include a subject and tenant"


# ── Authentication ─────────────────────────────


class AuthenticationError(AppError):
    kind = ErrorKind.AUTHENTICATION
    default_code = "INVALID_CREDENTIALS"
    default_message = "Invalid email or password"


class TokenExpiredError(AuthenticationError):
    default_code = "TOKEN_EXPIRED"
    default_message = "Token has expired"


class TokenInvalidError(AuthenticationError):
    default_code = "INVALID_TOKEN"
    default_message = "Invalid token"


class TokenTypeMismatchError(TokenInvalidError):
    default_code = "TOKEN_TYPE_MISMATCH"
    default_message = "Unexpected token type"


# ── Everything else ────────────────────────────


class AuthorizationError(AppError):
    kind = ErrorKind.AUTHORIZATION
    default_code = "FORBIDDEN"
    default_message = "You do not have permission to perform this action"


class NotFoundError(AppError):
    kind = ErrorKind.NOT_FOUND
    default_code = "NOT_FOUND"
    default_message = "Resource not found"


class ConflictError(AppError):
    kind = ErrorKind.CONFLICT
    default_code = "CONFLICT"
    default_message = "Resource already exists"


class QuotaExceededError(AppError):
    kind = ErrorKind.QUOTA_EXCEEDED
    default_code = "QUOTA_EXCEEDED"
    default_message = "Quota exceeded"


class RequestTimeoutError(AppError):
    kind = ErrorKind.TIMEOUT
    default_code = "REQUEST_TIMEOUT"
    default_message = "Request timed out"


class ServiceUnavailableError(AppError):
    kind = ErrorKind.SERVICE_UNAVAILABLE
    default_code = "SERVICE_UNAVAILABLE"
    default_message = "Service temporarily unavailable"


class InternalError(AppError):
    kind = ErrorKind.INTERNAL
