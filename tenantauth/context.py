"""Process-wide application context.

Built once at startup (or per test) and attached to ``app.state.context``.
Holds every collaborator the request handlers need, so nothing lives in
module-level state except the cached settings.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine

from tenantauth.clock import Clock, utcnow
from tenantauth.config import Settings, get_settings
from tenantauth.db.engine import SessionFactory, create_engine, create_session_factory
from tenantauth.security.passwords import CredentialHasher
from tenantauth.security.tokens import TokenCodec
from tenantauth.services.audit import AuditSink
from tenantauth.services.cache import MemoryEligibilityCache, RedisEligibilityCache
from tenantauth.services.identity import IdentityService
from tenantauth.services.membership import MembershipAuthority
from tenantauth.services.models import ModelService
from tenantauth.services.sessions import SessionStore
from tenantauth.services.workspaces import WorkspaceService

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    engine: AsyncEngine
    session_factory: SessionFactory
    hasher: CredentialHasher
    codec: TokenCodec
    sessions: SessionStore
    audit: AuditSink
    identity: IdentityService
    membership: MembershipAuthority
    workspaces: WorkspaceService
    models: ModelService
    redis: Optional[Any] = None

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        *,
        engine: Optional[AsyncEngine] = None,
        hasher: Optional[CredentialHasher] = None,
        clock: Clock = utcnow,
    ) -> "AppContext":
        """Wire every component from settings.

        Raises:
            ConfigurationError: If the JWT secret is missing or too weak.
        """
        settings = settings or get_settings()
        codec = TokenCodec.from_settings(settings, clock=clock)
        engine = engine or create_engine(settings)
        session_factory = create_session_factory(engine)
        hasher = hasher or CredentialHasher.from_settings(settings)

        audit = AuditSink(session_factory)
        sessions = SessionStore(
            session_factory, ttl_seconds=settings.refresh_token_ttl_seconds, clock=clock
        )
        identity = IdentityService(
            session_factory,
            hasher,
            codec,
            sessions,
            audit,
            allow_global_email_login=settings.allow_global_email_login,
            clock=clock,
        )
        membership = MembershipAuthority(
            session_factory,
            audit,
            plan_member_limits=settings.plan_member_limits,
            clock=clock,
        )
        workspaces = WorkspaceService(
            session_factory,
            membership,
            audit,
            invite_ttl_days=settings.invite_ttl_days,
            clock=clock,
        )
        cache = MemoryEligibilityCache(
            ttl_seconds=settings.eligibility_cache_ttl_seconds,
            max_entries=settings.eligibility_cache_max_entries,
        )
        models = ModelService(session_factory, membership, cache, audit, clock=clock)
        return cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            hasher=hasher,
            codec=codec,
            sessions=sessions,
            audit=audit,
            identity=identity,
            membership=membership,
            workspaces=workspaces,
            models=models,
        )

    async def connect_redis(self) -> None:
        """Switch the eligibility cache to Redis when REDIS_URL is reachable."""
        if not self.settings.redis_url:
            return
        try:
            client = aioredis.from_url(self.settings.redis_url, decode_responses=True)
            await client.ping()
        except Exception:
            logger.warning("Redis not available; eligibility cache stays in process memory")
            return
        self.use_redis(client)
        logger.info("Redis connected; eligibility cache shared across processes")

    def use_redis(self, client: Any) -> None:
        self.redis = client
        self.models.use_cache(
            RedisEligibilityCache(
                client, ttl_seconds=self.settings.eligibility_cache_ttl_seconds
            )
        )

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
        await self.engine.dispose()
