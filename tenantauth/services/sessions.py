"""Server-side session records for issued token pairs.

Only SHA-256 hashes of the tokens are stored. A session is either
active, revoked (terminal) or expired (terminal, decided at read time);
revoked rows are never written again.
"""

import logging
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update

from tenantauth.clock import Clock, utcnow
from tenantauth.db.engine import SessionFactory, transaction
from tenantauth.db.models import AuthSession
from tenantauth.security.tokens import TokenPair, hash_token

logger = logging.getLogger(__name__)


class SessionStore:
    """Create, look up and revoke sessions.

    Args:
        session_factory: Database session factory.
        ttl_seconds: Session lifetime, equal to the refresh token lifetime.
        clock: Time source.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        ttl_seconds: int,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    async def create(
        self,
        *,
        user_id: uuid.UUID,
        tenant_id: uuid.UUID,
        tokens: TokenPair,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthSession:
        now = self._clock()
        record = AuthSession(
            user_id=user_id,
            tenant_id=tenant_id,
            access_token_hash=hash_token(tokens.access_token),
            refresh_token_hash=hash_token(tokens.refresh_token),
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            expires_at=now + timedelta(seconds=self._ttl_seconds),
        )
        async with transaction(self._session_factory) as db:
            db.add(record)
        logger.info(
            "Session created",
            extra={"session_id": str(record.id), "user_id": str(user_id)},
        )
        return record

    async def get_by_id(
        self,
        session_id: uuid.UUID,
        tenant_id: Optional[uuid.UUID] = None,
    ) -> Optional[AuthSession]:
        """Return the session only if it is unrevoked and unexpired.

        Unknown, expired and revoked sessions all come back as None.
        """
        stmt = select(AuthSession).where(
            AuthSession.id == session_id,
            AuthSession.revoked_at.is_(None),
            AuthSession.expires_at > self._clock(),
        )
        if tenant_id is not None:
            stmt = stmt.where(AuthSession.tenant_id == tenant_id)
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def revoke(
        self,
        session_id: uuid.UUID,
        *,
        tenant_id: Optional[uuid.UUID] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> bool:
        """Revoke a session. Idempotent.

        Returns:
            True if this call revoked a live session, False if there was
            nothing to revoke.
        """
        stmt = (
            update(AuthSession)
            .where(AuthSession.id == session_id, AuthSession.revoked_at.is_(None))
            .values(revoked_at=self._clock())
        )
        if tenant_id is not None:
            stmt = stmt.where(AuthSession.tenant_id == tenant_id)
        if user_id is not None:
            stmt = stmt.where(AuthSession.user_id == user_id)
        async with transaction(self._session_factory) as db:
            result = await db.execute(stmt)
        return result.rowcount > 0

    async def revoke_all_for_user(
        self,
        user_id: uuid.UUID,
        tenant_id: uuid.UUID,
        *,
        except_session_id: Optional[uuid.UUID] = None,
    ) -> int:
        stmt = (
            update(AuthSession)
            .where(
                AuthSession.user_id == user_id,
                AuthSession.tenant_id == tenant_id,
                AuthSession.revoked_at.is_(None),
            )
            .values(revoked_at=self._clock())
        )
        if except_session_id is not None:
            stmt = stmt.where(AuthSession.id != except_session_id)
        async with transaction(self._session_factory) as db:
            result = await db.execute(stmt)
        return result.rowcount

    async def get_by_refresh_token(
        self, refresh_token: str, tenant_id: uuid.UUID
    ) -> Optional[AuthSession]:
        """Return the live session that issued ``refresh_token``, if any."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(AuthSession).where(
                    AuthSession.refresh_token_hash == hash_token(refresh_token),
                    AuthSession.tenant_id == tenant_id,
                    AuthSession.revoked_at.is_(None),
                    AuthSession.expires_at > self._clock(),
                )
            )
            return result.scalar_one_or_none()
