"""Test fixtures for tenantauth.

Each test gets its own in-memory SQLite database, an AppContext wired to
it with a controllable clock and cheap password hashing, and an httpx
AsyncClient bound to the FastAPI app.
"""

import os
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

# Module-level app construction in tenantauth.main reads these.
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["JWT_SECRET"] = "test-secret-for-module-level-app-0123456789"
os.environ.setdefault("LOG_FORMAT", "plain")

from tenantauth.clock import utcnow  # noqa: E402
from tenantauth.config import Settings  # noqa: E402
from tenantauth.context import AppContext  # noqa: E402
from tenantauth.db.engine import SessionFactory  # noqa: E402
from tenantauth.db.models import Base, ModelCatalog, Plan, Role, User  # noqa: E402
from tenantauth.main import create_app  # noqa: E402
from tenantauth.security.passwords import CredentialHasher, HasherConfig  # noqa: E402

TEST_JWT_SECRET = "unit-test-jwt-secret-that-is-long-enough-0123"
STRONG_PASSWORD = "Passw0rd!"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="test",
        database_url="sqlite+aiosqlite://",
        jwt_secret=TEST_JWT_SECRET,
        redis_url=None,
        plan_member_limits={"free": 3, "pro": 50, "paygo": 500},
    )


@pytest.fixture
def hasher() -> CredentialHasher:
    """Low-cost scrypt so tests stay fast."""
    return CredentialHasher(HasherConfig(scrypt_n=2**10))


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory SQLite database with all tables created."""
    test_engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def context(
    settings: Settings, engine: AsyncEngine, hasher: CredentialHasher, clock: FakeClock
) -> AppContext:
    return AppContext.build(settings, engine=engine, hasher=hasher, clock=clock)


@pytest.fixture
def session_factory(context: AppContext) -> SessionFactory:
    return context.session_factory


@pytest.fixture
def app(context: AppContext) -> Any:
    return create_app(context)


@pytest.fixture
async def client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX AsyncClient bound to the FastAPI app."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac


@pytest.fixture
def register(client: AsyncClient) -> Callable[..., Awaitable[Dict[str, Any]]]:
    """Register a tenant over HTTP and return the response body."""

    async def _register(
        slug: str = "acme",
        email: str = "a@x.com",
        password: str = STRONG_PASSWORD,
        name: str = "Acme",
    ) -> Dict[str, Any]:
        resp = await client.post(
            "/auth/register",
            json={
                "tenantName": name,
                "tenantSlug": slug,
                "email": email,
                "password": password,
            },
        )
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _register


def bearer(body: Dict[str, Any]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {body['accessToken']}"}


@pytest.fixture
def auth_headers() -> Callable[[Dict[str, Any]], Dict[str, str]]:
    """Build an Authorization header from an auth response body."""
    return bearer


@pytest.fixture
async def catalog(session_factory: SessionFactory) -> Dict[str, ModelCatalog]:
    """Seed the model catalog: one model per plan plus a retired one."""
    rows = {
        "free": ModelCatalog(
            name="gpt-4o-mini", display_name="GPT-4o mini", provider="openai",
            required_plan=Plan.FREE, description="Small general-purpose chat model",
        ),
        "pro": ModelCatalog(
            name="claude-sonnet", display_name="Claude Sonnet", provider="anthropic",
            required_plan=Plan.PRO, supports_streaming=True,
        ),
        "paygo": ModelCatalog(
            name="gpt-4o", display_name="GPT-4o", provider="openai",
            required_plan=Plan.PAYGO, supports_streaming=True,
        ),
        "retired": ModelCatalog(
            name="legacy-model", display_name="Legacy", provider="openai",
            required_plan=Plan.FREE, is_active=False,
        ),
    }
    async with session_factory() as session:
        session.add_all(rows.values())
        await session.commit()
    return rows


@pytest.fixture
def make_user(
    session_factory: SessionFactory, hasher: CredentialHasher
) -> Callable[..., Awaitable[User]]:
    """Insert an extra user into an existing tenant."""

    async def _make_user(tenant_id: Any, email: str, password: str = STRONG_PASSWORD) -> User:
        user = User(
            tenant_id=uuid.UUID(str(tenant_id)),
            email=email,
            password_hash=hasher.hash_blocking(password),
            role=Role.VIEWER,
        )
        async with session_factory() as session:
            session.add(user)
            await session.commit()
        return user

    return _make_user
