"""Registration, login, refresh, logout and password changes.

This is the only service that writes credentials or sessions. Tenant
and owner creation share one transaction; token issuance, session
creation and auditing happen after it commits.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Optional

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantauth.clock import Clock, utcnow
from tenantauth.db import queries
from tenantauth.db.engine import SessionFactory, transaction
from tenantauth.db.models import Tenant, TenantStatus, User, UserStatus
from tenantauth.exceptions import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TokenInvalidError,
    ValidationError,
)
from tenantauth.security.passwords import CredentialHasher
from tenantauth.security.principal import ClientInfo, Principal
from tenantauth.security.tokens import TokenClaims, TokenCodec, TokenPair, TokenType
from tenantauth.services.audit import AuditAction, AuditEvent, AuditSink
from tenantauth.services.sessions import SessionStore

logger = logging.getLogger(__name__)

SLUG_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{1,98}[a-z0-9])$")
_MAX_NAME_LENGTH = 255


@dataclass
class AuthResult:
    user: User
    tenant: Tenant
    tokens: TokenPair
    session_id: uuid.UUID


@dataclass
class RefreshResult:
    access_token: str
    expires_in: int


def normalize_email(email: Optional[str]) -> str:
    """Validate syntax and return the lower-cased address.

    Raises:
        ValidationError: If the address is missing or malformed.
    """
    if not email or not email.strip():
        raise ValidationError("Email is required", details={"field": "email"})
    try:
        result = validate_email(email.strip(), check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValidationError("Invalid email address", details={"field": "email"}) from exc
    return result.normalized.lower()


def _parse_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


class IdentityService:
    """Orchestrates credential and session lifecycle.

    Args:
        session_factory: Database session factory.
        hasher: Password hasher.
        codec: Token codec.
        sessions: Session store.
        audit: Audit sink.
        allow_global_email_login: Permit login without a tenant hint by
            looking the email up across tenants.
        clock: Time source.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        hasher: CredentialHasher,
        codec: TokenCodec,
        sessions: SessionStore,
        audit: AuditSink,
        *,
        allow_global_email_login: bool = False,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._hasher = hasher
        self._codec = codec
        self._sessions = sessions
        self._audit = audit
        self._allow_global_email_login = allow_global_email_login
        self._clock = clock

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(
        self,
        *,
        tenant_name: str,
        tenant_slug: str,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> AuthResult:
        """Create a tenant with its owner user and sign them in.

        Raises:
            ValidationError: Malformed input (``WeakInputError`` for the password).
            ConflictError: The slug is taken.
        """
        client = client or ClientInfo()
        tenant_name = (tenant_name or "").strip()
        if not tenant_name or len(tenant_name) > _MAX_NAME_LENGTH:
            raise ValidationError("Tenant name is required", details={"field": "tenantName"})
        tenant_slug = (tenant_slug or "").strip()
        if not SLUG_RE.match(tenant_slug):
            raise ValidationError(
                "Tenant slug must be 3-100 lowercase letters, digits or hyphens",
                details={"field": "tenantSlug"},
            )
        email = normalize_email(email)
        password_hash = await self._hasher.hash(password)

        try:
            async with transaction(self._session_factory) as db:
                if await queries.find_tenant_by_slug(db, tenant_slug) is not None:
                    raise ConflictError(
                        "Tenant slug is already taken",
                        code="TENANT_SLUG_TAKEN",
                        details={"field": "tenantSlug"},
                    )
                tenant, user = await queries.create_tenant_with_owner(
                    db,
                    tenant_name=tenant_name,
                    tenant_slug=tenant_slug,
                    email=email,
                    password_hash=password_hash,
                    first_name=first_name,
                    last_name=last_name,
                )
        except IntegrityError as exc:
            raise ConflictError(
                "Tenant slug is already taken", code="TENANT_SLUG_TAKEN"
            ) from exc

        logger.info(
            "Tenant registered",
            extra={"tenant": str(tenant.id), "user_id": str(user.id)},
        )
        result = await self._start_session(user, tenant, client)
        await self._audit.emit(
            AuditEvent(
                tenant_id=tenant.id,
                user_id=user.id,
                action=AuditAction.USER_REGISTERED,
                resource_type="user",
                resource_id=str(user.id),
                details={"tenantSlug": tenant.slug},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        )
        return result

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(
        self,
        *,
        email: str,
        password: str,
        tenant_id: Optional[str] = None,
        tenant_slug: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> AuthResult:
        """Verify credentials and open a session.

        Every credential failure raises the same ``AuthenticationError``;
        an unknown tenant, unknown email and wrong password cannot be told
        apart.

        Raises:
            ValidationError: Missing fields or no tenant hint (unless global
                lookup is enabled).
            AuthenticationError: Credentials did not match.
            AuthorizationError: Correct credentials for a suspended or
                deleted user or tenant.
        """
        client = client or ClientInfo()
        if not email or not password:
            raise ValidationError("Email and password are required")
        if not tenant_id and not tenant_slug and not self._allow_global_email_login:
            raise ValidationError(
                "tenantId or tenantSlug is required",
                details={"fields": ["tenantId", "tenantSlug"]},
            )
        try:
            email = normalize_email(email)
        except ValidationError:
            await self._hasher.dummy_verify(password)
            raise AuthenticationError() from None

        async with transaction(self._session_factory) as db:
            user = await self._find_login_user(db, email, tenant_id, tenant_slug)
            if user is None:
                await self._hasher.dummy_verify(password)
                raise AuthenticationError()
            if not await self._hasher.verify(password, user.password_hash):
                raise AuthenticationError()

            tenant = await queries.get_tenant(db, user.tenant_id)
            if (
                tenant is None
                or tenant.status != TenantStatus.ACTIVE
                or user.status != UserStatus.ACTIVE
            ):
                raise AuthorizationError("Account is not active", code="ACCOUNT_INACTIVE")

            user.last_login_at = self._clock()
            if self._hasher.needs_rehash(user.password_hash):
                user.password_hash = await self._hasher.rehash(password)
                logger.info("Password hash upgraded", extra={"user_id": str(user.id)})

        result = await self._start_session(user, tenant, client)
        await self._audit.emit(
            AuditEvent(
                tenant_id=tenant.id,
                user_id=user.id,
                action=AuditAction.USER_LOGIN,
                resource_type="session",
                resource_id=str(result.session_id),
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        )
        return result

    async def _find_login_user(
        self,
        db: AsyncSession,
        email: str,
        tenant_id: Optional[str],
        tenant_slug: Optional[str],
    ) -> Optional[User]:
        if tenant_id:
            resolved = _parse_uuid(tenant_id)
            if resolved is None:
                return None
        elif tenant_slug:
            tenant = await queries.find_tenant_by_slug(db, tenant_slug.strip().lower())
            if tenant is None:
                return None
            resolved = tenant.id
        else:
            resolved = None

        users = await queries.find_users_by_email(db, email, resolved)
        if len(users) != 1:
            if len(users) > 1:
                logger.info("Global email login matched several tenants; refusing")
            return None
        return users[0]

    # ------------------------------------------------------------------
    # Refresh / logout
    # ------------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> RefreshResult:
        """Issue a new access token from a refresh token.

        The refresh token itself is not rotated and stays valid until it
        expires or its session is revoked.

        Raises:
            AuthenticationError: Invalid, expired or wrong-type token, a
                revoked session, or a user that is no longer active.
        """
        if not refresh_token:
            raise ValidationError("refreshToken is required", details={"field": "refreshToken"})
        claims = self._codec.verify(refresh_token, TokenType.REFRESH)
        user_id = _parse_uuid(claims.sub)
        tenant_id = _parse_uuid(claims.tenant_id)
        if user_id is None or tenant_id is None:
            raise TokenInvalidError()

        if await self._sessions.get_by_refresh_token(refresh_token, tenant_id) is None:
            raise AuthenticationError("Session is no longer active", code="SESSION_REVOKED")

        async with self._session_factory() as db:
            user = await queries.get_user(db, user_id, tenant_id)
            tenant = await queries.get_tenant(db, tenant_id)
        if (
            user is None
            or tenant is None
            or user.status != UserStatus.ACTIVE
            or tenant.status != TenantStatus.ACTIVE
        ):
            raise AuthenticationError("User is no longer active", code="ACCOUNT_INACTIVE")

        access_token = self._codec.issue_access(
            TokenClaims(sub=str(user.id), tenant_id=str(tenant_id), role=user.role.value)
        )
        return RefreshResult(access_token=access_token, expires_in=self._codec.access_ttl_seconds)

    async def logout(
        self,
        session_id: uuid.UUID,
        principal: Principal,
        client: Optional[ClientInfo] = None,
    ) -> None:
        """Revoke one of the caller's sessions. Idempotent."""
        client = client or ClientInfo()
        revoked = await self._sessions.revoke(
            session_id, tenant_id=principal.tenant_id, user_id=principal.user_id
        )
        await self._audit.emit(
            AuditEvent(
                tenant_id=principal.tenant_id,
                user_id=principal.user_id,
                action=AuditAction.USER_LOGOUT,
                resource_type="session",
                resource_id=str(session_id),
                details={"revoked": revoked},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        )

    # ------------------------------------------------------------------
    # Profile / password
    # ------------------------------------------------------------------

    async def get_profile(self, principal: Principal) -> tuple[User, Tenant]:
        async with self._session_factory() as db:
            user = await queries.get_user(db, principal.user_id, principal.tenant_id)
            tenant = await queries.get_tenant(db, principal.tenant_id)
        if user is None or tenant is None:
            raise NotFoundError("User not found")
        return user, tenant

    async def change_password(
        self,
        principal: Principal,
        *,
        current_password: str,
        new_password: str,
        keep_session_id: Optional[uuid.UUID] = None,
        client: Optional[ClientInfo] = None,
    ) -> int:
        """Replace the caller's password and revoke their other sessions.

        Returns:
            Number of sessions revoked.
        """
        client = client or ClientInfo()
        if current_password == new_password:
            raise ValidationError("New password must differ from the current one")
        async with transaction(self._session_factory) as db:
            user = await queries.get_user(db, principal.user_id, principal.tenant_id)
            if user is None:
                raise NotFoundError("User not found")
            if not await self._hasher.verify(current_password, user.password_hash):
                raise AuthenticationError(
                    "Current password is incorrect", code="INVALID_CREDENTIALS"
                )
            user.password_hash = await self._hasher.hash(new_password)

        revoked = await self._sessions.revoke_all_for_user(
            principal.user_id, principal.tenant_id, except_session_id=keep_session_id
        )
        await self._audit.emit(
            AuditEvent(
                tenant_id=principal.tenant_id,
                user_id=principal.user_id,
                action=AuditAction.PASSWORD_CHANGED,
                resource_type="user",
                resource_id=str(principal.user_id),
                details={"sessionsRevoked": revoked},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        )
        return revoked

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _start_session(self, user: User, tenant: Tenant, client: ClientInfo) -> AuthResult:
        tokens = self._codec.issue_pair(
            TokenClaims(sub=str(user.id), tenant_id=str(tenant.id), role=user.role.value)
        )
        record = await self._sessions.create(
            user_id=user.id,
            tenant_id=tenant.id,
            tokens=tokens,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        return AuthResult(user=user, tenant=tenant, tokens=tokens, session_id=record.id)
