"""
Tenant-bound JWT issuance and verification.

Tokens are HS256 JWTs whose payload is exactly the claim bundle below
plus a ``jti``. A token without a tenant is never signed and never
accepted.
"""

import enum
import hashlib
import logging
import secrets
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

import jwt
from pydantic import BaseModel

from tenantauth.clock import Clock, utcnow
from tenantauth.config import Settings
from tenantauth.exceptions import (
    ConfigurationError,
    InvalidClaimsError,
    TokenExpiredError,
    TokenInvalidError,
    TokenTypeMismatchError,
)

logger = logging.getLogger(__name__)

_MIN_SECRET_LENGTH = 32


class TokenType(str, enum.Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenClaims(BaseModel):
    """Claims carried by every token.

    Attributes:
        sub: User id.
        tenant_id: Tenant id; mandatory and non-empty.
        role: Tenant-level role of the user.
        type: ``access`` or ``refresh``.
        iat: Issued-at, seconds since the epoch.
        exp: Expiry, seconds since the epoch.
        jti: Unique token id.
    """

    sub: str
    tenant_id: str
    role: str
    type: Optional[TokenType] = None
    iat: Optional[int] = None
    exp: Optional[int] = None
    jti: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "sub": self.sub,
            "tenantId": self.tenant_id,
            "role": self.role,
            "type": self.type.value if self.type else None,
            "iat": self.iat,
            "exp": self.exp,
            "jti": self.jti,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TokenClaims":
        """Map a decoded payload onto claims.

        Raises:
            TokenInvalidError: If a required claim is missing or malformed.
        """
        sub = payload.get("sub")
        tenant_id = payload.get("tenantId")
        role = payload.get("role")
        token_type = payload.get("type")
        iat = payload.get("iat")
        exp = payload.get("exp")
        if not _non_blank(sub) or not _non_blank(tenant_id) or not isinstance(role, str):
            raise TokenInvalidError("Token is missing required claims")
        if token_type not in (TokenType.ACCESS.value, TokenType.REFRESH.value):
            raise TokenInvalidError("Token has an unknown type")
        if not _is_timestamp(iat) or not _is_timestamp(exp):
            raise TokenInvalidError("Token timestamps are malformed")
        jti = payload.get("jti")
        return cls(
            sub=sub,
            tenant_id=tenant_id,
            role=role,
            type=TokenType(token_type),
            iat=int(iat),
            exp=int(exp),
            jti=jti if isinstance(jti, str) else None,
        )


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int


class TokenCodec:
    """Signs, verifies and decodes tenant-bound tokens.

    Args:
        secret: Shared HMAC secret.
        algorithm: JWT algorithm, HS256 by default.
        access_ttl: Lifetime of access tokens.
        refresh_ttl: Lifetime of refresh tokens.
        clock: Time source used for ``iat``, ``exp`` and expiry checks.
    """

    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Clock = utcnow,
    ) -> None:
        if not secret:
            raise ConfigurationError("JWT secret must not be empty")
        self._secret = secret
        self._algorithm = algorithm
        self._access_ttl = access_ttl
        self._refresh_ttl = refresh_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = utcnow) -> "TokenCodec":
        """Build a codec from settings, failing fast on a missing or weak secret.

        Raises:
            ConfigurationError: Outside the test environment, when
                ``JWT_SECRET`` is unset or shorter than 32 characters.
        """
        secret = settings.jwt_secret
        if not secret:
            if not settings.is_test:
                raise ConfigurationError("JWT_SECRET must be set")
            secret = secrets.token_urlsafe(48)
            logger.warning("JWT_SECRET not set; using a random secret for this test process")
        elif len(secret) < _MIN_SECRET_LENGTH and not settings.is_test:
            raise ConfigurationError(
                f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
            )
        return cls(
            secret,
            algorithm=settings.jwt_algorithm,
            access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
            refresh_ttl=timedelta(seconds=settings.refresh_token_ttl_seconds),
            clock=clock,
        )

    @property
    def access_ttl_seconds(self) -> int:
        return int(self._access_ttl.total_seconds())

    @property
    def refresh_ttl(self) -> timedelta:
        return self._refresh_ttl

    # ------------------------------------------------------------------
    # Issuing
    # ------------------------------------------------------------------

    def issue_access(self, claims: TokenClaims) -> str:
        return self._issue(claims, TokenType.ACCESS, self._access_ttl)

    def issue_refresh(self, claims: TokenClaims) -> str:
        return self._issue(claims, TokenType.REFRESH, self._refresh_ttl)

    def issue_pair(self, claims: TokenClaims) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access(claims),
            refresh_token=self.issue_refresh(claims),
            expires_in=self.access_ttl_seconds,
        )

    def _issue(self, claims: TokenClaims, token_type: TokenType, ttl: timedelta) -> str:
        if not _non_blank(claims.tenant_id):
            raise InvalidClaimsError("Token claims must include a tenant")
        if not _non_blank(claims.sub):
            raise InvalidClaimsError("Token claims must include a subject")
        now = self._clock()
        issued = claims.model_copy(
            update={
                "type": token_type,
                "iat": int(now.timestamp()),
                "exp": int((now + ttl).timestamp()),
                "jti": uuid.uuid4().hex,
            }
        )
        return jwt.encode(issued.to_payload(), self._secret, algorithm=self._algorithm)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, token: str, expected_type: Optional[TokenType] = None) -> TokenClaims:
        """Verify a token and return its claims.

        Expiry is judged before the signature, so an expired token is
        reported as expired whether or not its signature is valid.

        Raises:
            TokenInvalidError: Malformed token, bad signature or missing claims.
            TokenExpiredError: ``now > exp``.
            TokenTypeMismatchError: ``expected_type`` differs from the token's type.
        """
        try:
            unverified = jwt.decode(
                token,
                options={"verify_signature": False},
                algorithms=[self._algorithm],
            )
        except jwt.PyJWTError as exc:
            raise TokenInvalidError("Malformed token") from exc

        exp = unverified.get("exp")
        if not _is_timestamp(exp):
            raise TokenInvalidError("Token has no valid expiry")
        if self._clock().timestamp() > exp:
            raise TokenExpiredError()

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
            )
        except jwt.PyJWTError as exc:
            raise TokenInvalidError() from exc

        claims = TokenClaims.from_payload(payload)
        if expected_type is not None and claims.type != expected_type:
            raise TokenTypeMismatchError(
                f"Expected a {TokenType(expected_type).value} token"
            )
        return claims

    def decode_unsafe(self, token: str) -> Optional[TokenClaims]:
        """Decode claims WITHOUT checking signature or expiry.

        Only for diagnostics and flows that need claims from an
        already-expired token. Never base an authorization decision on it.
        """
        try:
            payload = jwt.decode(
                token,
                options={"verify_signature": False},
                algorithms=[self._algorithm],
            )
            return TokenClaims.from_payload(payload)
        except (jwt.PyJWTError, TokenInvalidError):
            return None


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Return the token from ``Bearer <token>``, or None for anything else."""
    if not header:
        return None
    parts = header.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def hash_token(token: str) -> str:
    """SHA-256 hex digest used to store tokens server-side."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _non_blank(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _is_timestamp(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
