"""Audit sink: best-effort writes of immutable AuditLog records.

Events are emitted after the primary transaction has committed, in a
session of their own. A failed write is logged and dropped; it never
fails the operation that produced it.

Usage:
    await audit.emit(AuditEvent(tenant_id=..., user_id=..., action=AuditAction.USER_LOGIN,
                                resource_type="session", resource_id=str(session.id)))
"""

import enum
import logging
import uuid
from typing import Any, Dict, Optional

from pydantic import BaseModel

from tenantauth.db.engine import SessionFactory
from tenantauth.db.models import AuditLog

logger = logging.getLogger(__name__)


class AuditAction(str, enum.Enum):
    USER_REGISTERED = "USER_REGISTERED"
    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    WORKSPACE_CREATED = "WORKSPACE_CREATED"
    WORKSPACE_UPDATED = "WORKSPACE_UPDATED"
    WORKSPACE_DELETED = "WORKSPACE_DELETED"
    MEMBER_INVITED = "MEMBER_INVITED"
    MEMBER_JOINED = "MEMBER_JOINED"
    MEMBER_ROLE_CHANGED = "MEMBER_ROLE_CHANGED"
    MEMBER_REMOVED = "MEMBER_REMOVED"
    MODEL_ENABLED = "MODEL_ENABLED"
    MODEL_DISABLED = "MODEL_DISABLED"


class AuditEvent(BaseModel):
    """One audit event.

    Attributes:
        tenant_id: Tenant the action happened in.
        user_id: Acting user, if any.
        action: What happened.
        resource_type: Kind of resource acted upon.
        resource_id: Identifier of that resource.
        details: Action-specific payload. Must not carry secrets.
        ip_address: Client IP, if available.
        user_agent: Client user-agent, if available.
    """

    tenant_id: uuid.UUID
    user_id: Optional[uuid.UUID] = None
    action: AuditAction
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuditSink:
    """Writes audit events through its own sessions."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def emit(self, event: AuditEvent) -> None:
        try:
            async with self._session_factory() as session:
                session.add(
                    AuditLog(
                        tenant_id=event.tenant_id,
                        user_id=event.user_id,
                        action=event.action.value,
                        resource_type=event.resource_type,
                        resource_id=event.resource_id,
                        details=event.details,
                        ip_address=event.ip_address,
                        user_agent=event.user_agent,
                    )
                )
                await session.commit()
        except Exception:
            logger.exception(
                "Failed to write audit event",
                extra={"action": event.action.value, "tenant": str(event.tenant_id)},
            )
