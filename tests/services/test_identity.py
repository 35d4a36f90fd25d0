"""Tests for registration, login, refresh, logout and password changes."""

import pytest
from sqlalchemy import func, select

from tenantauth.context import AppContext
from tenantauth.db import queries
from tenantauth.db.models import AuditLog, Role, Tenant, TenantStatus, User, UserStatus
from tenantauth.exceptions import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    TokenInvalidError,
    TokenTypeMismatchError,
    ValidationError,
    WeakInputError,
)
from tenantauth.security.passwords import CredentialHasher, HasherConfig
from tenantauth.security.principal import ClientInfo, Principal
from tenantauth.security.tokens import TokenType
from tenantauth.services.identity import AuthResult, IdentityService

PASSWORD = "Passw0rd!"


@pytest.fixture
def identity(context: AppContext) -> IdentityService:
    return context.identity


async def _register(identity: IdentityService, slug: str = "acme", email: str = "a@x.com") -> AuthResult:
    return await identity.register(
        tenant_name="Acme",
        tenant_slug=slug,
        email=email,
        password=PASSWORD,
        client=ClientInfo(ip_address="127.0.0.1", user_agent="pytest"),
    )


def _principal(result: AuthResult) -> Principal:
    return Principal(user_id=result.user.id, tenant_id=result.tenant.id, role=result.user.role.value)


async def _row_counts(session_factory) -> tuple:
    async with session_factory() as session:
        tenants = await session.scalar(select(func.count(Tenant.id)))
        users = await session.scalar(select(func.count(User.id)))
    return tenants, users


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    async def test_creates_owner_and_session(self, identity: IdentityService, context: AppContext) -> None:
        result = await _register(identity)

        assert result.user.role == Role.OWNER
        assert result.user.email == "a@x.com"
        assert result.user.tenant_id == result.tenant.id
        assert result.tenant.slug == "acme"
        assert await context.sessions.get_by_id(result.session_id) is not None

        claims = context.codec.verify(result.tokens.access_token, TokenType.ACCESS)
        assert claims.sub == str(result.user.id)
        assert claims.tenant_id == str(result.tenant.id)

    async def test_password_is_hashed(self, identity: IdentityService, session_factory) -> None:
        result = await _register(identity)
        async with session_factory() as session:
            user = await session.get(User, result.user.id)
        assert user.password_hash != PASSWORD
        assert user.password_hash.startswith("scrypt$")

    async def test_email_is_lower_cased(self, identity: IdentityService) -> None:
        result = await _register(identity, email="Mixed.Case@Example.COM")
        assert result.user.email == "mixed.case@example.com"

    async def test_duplicate_slug_conflicts(self, identity: IdentityService) -> None:
        await _register(identity)
        with pytest.raises(ConflictError) as exc_info:
            await _register(identity, email="b@x.com")
        assert exc_info.value.code == "TENANT_SLUG_TAKEN"

    async def test_duplicate_slug_leaves_no_extra_rows(
        self, identity: IdentityService, session_factory
    ) -> None:
        await _register(identity)
        with pytest.raises(ConflictError):
            await _register(identity, email="b@x.com")
        assert await _row_counts(session_factory) == (1, 1)

    async def test_failure_after_inserts_rolls_back(
        self, identity: IdentityService, session_factory, monkeypatch
    ) -> None:
        create = queries.create_tenant_with_owner

        async def create_then_fail(*args, **kwargs):
            await create(*args, **kwargs)
            raise RuntimeError("connection lost")

        monkeypatch.setattr(queries, "create_tenant_with_owner", create_then_fail)
        with pytest.raises(RuntimeError):
            await _register(identity)
        assert await _row_counts(session_factory) == (0, 0)

    @pytest.mark.parametrize("slug", ["ab", "Acme", "acme!", "-acme", "acme-"])
    async def test_invalid_slug(self, identity: IdentityService, slug: str) -> None:
        with pytest.raises(ValidationError):
            await _register(identity, slug=slug)

    async def test_invalid_email(self, identity: IdentityService) -> None:
        with pytest.raises(ValidationError):
            await _register(identity, email="not-an-email")

    async def test_weak_password(self, identity: IdentityService) -> None:
        with pytest.raises(WeakInputError):
            await identity.register(
                tenant_name="Acme", tenant_slug="acme", email="a@x.com", password="password"
            )

    async def test_writes_audit_row(self, identity: IdentityService, session_factory) -> None:
        result = await _register(identity)
        async with session_factory() as session:
            rows = (await session.execute(select(AuditLog))).scalars().all()
        assert [r.action for r in rows] == ["USER_REGISTERED"]
        assert rows[0].tenant_id == result.tenant.id
        assert rows[0].ip_address == "127.0.0.1"


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    async def test_login_by_slug(self, identity: IdentityService) -> None:
        registered = await _register(identity)
        result = await identity.login(email="A@X.com", password=PASSWORD, tenant_slug="acme")
        assert result.user.id == registered.user.id
        assert result.user.last_login_at is not None
        assert result.session_id != registered.session_id

    async def test_login_by_tenant_id(self, identity: IdentityService) -> None:
        registered = await _register(identity)
        result = await identity.login(
            email="a@x.com", password=PASSWORD, tenant_id=str(registered.tenant.id)
        )
        assert result.tenant.id == registered.tenant.id

    async def test_unicode_email_matches_registration(self, identity: IdentityService) -> None:
        registered = await _register(identity, email="jos\u00e9@example.com")
        decomposed = "jose\u0301@example.com"
        result = await identity.login(email=decomposed, password=PASSWORD, tenant_slug="acme")
        assert result.user.id == registered.user.id

    async def test_malformed_email_is_a_credential_failure(self, identity: IdentityService) -> None:
        await _register(identity)
        with pytest.raises(AuthenticationError) as exc_info:
            await identity.login(email="not-an-email", password=PASSWORD, tenant_slug="acme")
        assert exc_info.value.message == "Invalid email or password"

    async def test_same_email_in_two_tenants(self, identity: IdentityService) -> None:
        first = await _register(identity, slug="acme")
        second = await _register(identity, slug="globex")
        result = await identity.login(email="a@x.com", password=PASSWORD, tenant_slug="globex")
        assert result.tenant.id == second.tenant.id
        assert result.user.id != first.user.id

    async def test_tenant_hint_required(self, identity: IdentityService) -> None:
        await _register(identity)
        with pytest.raises(ValidationError):
            await identity.login(email="a@x.com", password=PASSWORD)

    async def test_global_lookup_when_enabled(self, context: AppContext) -> None:
        identity = IdentityService(
            context.session_factory,
            context.hasher,
            context.codec,
            context.sessions,
            context.audit,
            allow_global_email_login=True,
        )
        registered = await _register(identity)
        result = await identity.login(email="a@x.com", password=PASSWORD)
        assert result.user.id == registered.user.id

        await _register(identity, slug="globex")
        with pytest.raises(AuthenticationError):
            await identity.login(email="a@x.com", password=PASSWORD)

    @pytest.mark.parametrize(
        "email, password, slug",
        [
            ("a@x.com", "Wr0ngPassword", "acme"),
            ("nobody@x.com", PASSWORD, "acme"),
            ("a@x.com", PASSWORD, "unknown-tenant"),
        ],
    )
    async def test_failures_are_indistinguishable(
        self, identity: IdentityService, email: str, password: str, slug: str
    ) -> None:
        await _register(identity)
        with pytest.raises(AuthenticationError) as exc_info:
            await identity.login(email=email, password=password, tenant_slug=slug)
        assert exc_info.value.code == "INVALID_CREDENTIALS"
        assert exc_info.value.message == "Invalid email or password"

    async def test_malformed_tenant_id(self, identity: IdentityService) -> None:
        await _register(identity)
        with pytest.raises(AuthenticationError):
            await identity.login(email="a@x.com", password=PASSWORD, tenant_id="not-a-uuid")

    async def test_suspended_user(self, identity: IdentityService, session_factory) -> None:
        registered = await _register(identity)
        async with session_factory() as session:
            user = await session.get(User, registered.user.id)
            user.status = UserStatus.SUSPENDED
            await session.commit()
        with pytest.raises(AuthorizationError) as exc_info:
            await identity.login(email="a@x.com", password=PASSWORD, tenant_slug="acme")
        assert exc_info.value.code == "ACCOUNT_INACTIVE"

    async def test_suspended_tenant(self, identity: IdentityService, session_factory) -> None:
        registered = await _register(identity)
        async with session_factory() as session:
            tenant = await session.get(Tenant, registered.tenant.id)
            tenant.status = TenantStatus.SUSPENDED
            await session.commit()
        with pytest.raises(AuthorizationError):
            await identity.login(email="a@x.com", password=PASSWORD, tenant_slug="acme")

    async def test_outdated_hash_is_upgraded(self, context: AppContext, session_factory) -> None:
        legacy = IdentityService(
            context.session_factory,
            CredentialHasher(HasherConfig(algorithm="pbkdf2_sha256", pbkdf2_iterations=100_000)),
            context.codec,
            context.sessions,
            context.audit,
        )
        registered = await _register(legacy)

        await context.identity.login(email="a@x.com", password=PASSWORD, tenant_slug="acme")

        async with session_factory() as session:
            user = await session.get(User, registered.user.id)
        assert user.password_hash.startswith("scrypt$1024$8$1:")


# ---------------------------------------------------------------------------
# Refresh / logout
# ---------------------------------------------------------------------------


class TestRefreshAndLogout:
    async def test_refresh_issues_access_token(self, identity: IdentityService, context: AppContext) -> None:
        registered = await _register(identity)
        result = await identity.refresh(registered.tokens.refresh_token)
        claims = context.codec.verify(result.access_token, TokenType.ACCESS)
        assert claims.tenant_id == str(registered.tenant.id)
        assert result.expires_in == 900

    async def test_refresh_rejects_access_token(self, identity: IdentityService) -> None:
        registered = await _register(identity)
        with pytest.raises(TokenTypeMismatchError):
            await identity.refresh(registered.tokens.access_token)

    async def test_refresh_rejects_garbage(self, identity: IdentityService) -> None:
        with pytest.raises(TokenInvalidError):
            await identity.refresh("garbage")

    async def test_refresh_after_logout_fails(self, identity: IdentityService) -> None:
        registered = await _register(identity)
        await identity.logout(registered.session_id, _principal(registered))
        with pytest.raises(AuthenticationError) as exc_info:
            await identity.refresh(registered.tokens.refresh_token)
        assert exc_info.value.code == "SESSION_REVOKED"

    async def test_logout_is_idempotent(self, identity: IdentityService, context: AppContext) -> None:
        registered = await _register(identity)
        principal = _principal(registered)
        await identity.logout(registered.session_id, principal)
        await identity.logout(registered.session_id, principal)
        assert await context.sessions.get_by_id(registered.session_id) is None

    async def test_logout_cannot_touch_other_users_session(
        self, identity: IdentityService, context: AppContext
    ) -> None:
        victim = await _register(identity, slug="acme")
        attacker = await _register(identity, slug="globex", email="evil@x.com")
        await identity.logout(victim.session_id, _principal(attacker))
        assert await context.sessions.get_by_id(victim.session_id) is not None


# ---------------------------------------------------------------------------
# Password change
# ---------------------------------------------------------------------------


class TestChangePassword:
    async def test_revokes_other_sessions(self, identity: IdentityService, context: AppContext) -> None:
        registered = await _register(identity)
        other = await identity.login(email="a@x.com", password=PASSWORD, tenant_slug="acme")

        revoked = await identity.change_password(
            _principal(registered),
            current_password=PASSWORD,
            new_password="N3wPassword!",
            keep_session_id=registered.session_id,
        )

        assert revoked == 1
        assert await context.sessions.get_by_id(registered.session_id) is not None
        assert await context.sessions.get_by_id(other.session_id) is None
        await identity.login(email="a@x.com", password="N3wPassword!", tenant_slug="acme")

    async def test_wrong_current_password(self, identity: IdentityService) -> None:
        registered = await _register(identity)
        with pytest.raises(AuthenticationError):
            await identity.change_password(
                _principal(registered), current_password="Wr0ngPass!", new_password="N3wPassword!"
            )

    async def test_new_password_must_meet_policy(self, identity: IdentityService) -> None:
        registered = await _register(identity)
        with pytest.raises(WeakInputError):
            await identity.change_password(
                _principal(registered), current_password=PASSWORD, new_password="weak"
            )
