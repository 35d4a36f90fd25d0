"""Workspace lifecycle and invitations.

Every lookup is scoped to the caller's tenant; a workspace belonging to
another tenant is reported as not found.
"""

import logging
import secrets
import uuid
from datetime import timedelta
from typing import List, Optional, Tuple, Union

from sqlalchemy import select

from tenantauth.clock import Clock, utcnow
from tenantauth.db import queries
from tenantauth.db.engine import SessionFactory, transaction
from tenantauth.db.models import (
    Role,
    User,
    Workspace,
    WorkspaceInvite,
    WorkspaceMember,
    WorkspaceRole,
    WorkspaceStatus,
)
from tenantauth.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from tenantauth.security.permissions import DEFAULT_ROLES, Permission
from tenantauth.security.principal import ClientInfo, Principal
from tenantauth.security.tokens import hash_token
from tenantauth.services.audit import AuditAction, AuditEvent, AuditSink
from tenantauth.services.identity import normalize_email
from tenantauth.services.membership import MembershipAuthority, load_workspace

logger = logging.getLogger(__name__)

_MAX_NAME_LENGTH = 255


def _clean_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name or len(name) > _MAX_NAME_LENGTH:
        raise ValidationError("Workspace name is required", details={"field": "name"})
    return name


class WorkspaceService:
    """Create, read, update and delete workspaces; issue invitations.

    Args:
        session_factory: Database session factory.
        membership: Membership authority used for every permission check.
        audit: Audit sink.
        invite_ttl_days: Lifetime of invitation tokens.
        clock: Time source.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        membership: MembershipAuthority,
        audit: AuditSink,
        *,
        invite_ttl_days: int = 7,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._membership = membership
        self._audit = audit
        self._invite_ttl = timedelta(days=invite_ttl_days)
        self._clock = clock

    # ------------------------------------------------------------------
    # Workspaces
    # ------------------------------------------------------------------

    async def create_workspace(
        self,
        principal: Principal,
        *,
        name: str,
        description: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Workspace:
        """Create a workspace owned by the caller, with its role table seeded."""
        client = client or ClientInfo()
        name = _clean_name(name)
        async with transaction(self._session_factory) as db:
            tenant = await queries.get_tenant(db, principal.tenant_id)
            if tenant is None:
                raise NotFoundError("Tenant not found")
            workspace = Workspace(
                tenant_id=tenant.id,
                name=name,
                description=description,
                plan=tenant.plan,
                created_by=principal.user_id,
            )
            db.add(workspace)
            await db.flush()

            db.add(
                WorkspaceMember(
                    workspace_id=workspace.id,
                    user_id=principal.user_id,
                    role=Role.OWNER,
                )
            )
            for definition in DEFAULT_ROLES.values():
                db.add(
                    WorkspaceRole(
                        workspace_id=workspace.id,
                        name=definition.name,
                        permissions=[p.value for p in definition.permissions],
                        description=definition.description,
                    )
                )

        logger.info(
            "Workspace created",
            extra={"workspace_id": str(workspace.id), "tenant": str(principal.tenant_id)},
        )
        await self._audit.emit(
            AuditEvent(
                tenant_id=principal.tenant_id,
                user_id=principal.user_id,
                action=AuditAction.WORKSPACE_CREATED,
                resource_type="workspace",
                resource_id=str(workspace.id),
                details={"name": workspace.name},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        )
        return workspace

    async def list_workspaces(self, principal: Principal) -> List[Tuple[Workspace, Role]]:
        """Active workspaces of the caller's tenant that the caller belongs to."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Workspace, WorkspaceMember.role)
                .join(WorkspaceMember, WorkspaceMember.workspace_id == Workspace.id)
                .where(
                    Workspace.tenant_id == principal.tenant_id,
                    Workspace.status == WorkspaceStatus.ACTIVE,
                    WorkspaceMember.user_id == principal.user_id,
                )
                .order_by(Workspace.created_at)
            )
            return [(w, role) for w, role in result.all()]

    async def get_workspace(
        self, principal: Principal, workspace_id: uuid.UUID
    ) -> Tuple[Workspace, Role, List[WorkspaceRole]]:
        async with self._session_factory() as db:
            workspace = await load_workspace(db, workspace_id, principal.tenant_id)
            member = await self._membership.require_member(
                workspace_id, principal.user_id, db=db
            )
            result = await db.execute(
                select(WorkspaceRole)
                .where(WorkspaceRole.workspace_id == workspace_id)
                .order_by(WorkspaceRole.name)
            )
            return workspace, member.role, list(result.scalars().all())

    async def update_workspace(
        self,
        principal: Principal,
        workspace_id: uuid.UUID,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Workspace:
        client = client or ClientInfo()
        changes = {}
        async with transaction(self._session_factory) as db:
            workspace = await load_workspace(db, workspace_id, principal.tenant_id)
            await self._membership.require_permission(
                workspace_id, principal.user_id, Permission.WORKSPACE_UPDATE, db=db
            )
            if name is not None:
                workspace.name = changes["name"] = _clean_name(name)
            if description is not None:
                workspace.description = changes["description"] = description

        await self._audit.emit(
            AuditEvent(
                tenant_id=principal.tenant_id,
                user_id=principal.user_id,
                action=AuditAction.WORKSPACE_UPDATED,
                resource_type="workspace",
                resource_id=str(workspace_id),
                details=changes,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        )
        return workspace

    async def delete_workspace(
        self,
        principal: Principal,
        workspace_id: uuid.UUID,
        client: Optional[ClientInfo] = None,
    ) -> None:
        """Soft-delete: the row stays with status ``deleted``."""
        client = client or ClientInfo()
        async with transaction(self._session_factory) as db:
            workspace = await load_workspace(db, workspace_id, principal.tenant_id)
            await self._membership.require_permission(
                workspace_id, principal.user_id, Permission.WORKSPACE_DELETE, db=db
            )
            workspace.status = WorkspaceStatus.DELETED

        await self._audit.emit(
            AuditEvent(
                tenant_id=principal.tenant_id,
                user_id=principal.user_id,
                action=AuditAction.WORKSPACE_DELETED,
                resource_type="workspace",
                resource_id=str(workspace_id),
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        )

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    async def invite_member(
        self,
        principal: Principal,
        workspace_id: uuid.UUID,
        *,
        email: str,
        role: Union[Role, str],
        client: Optional[ClientInfo] = None,
    ) -> Tuple[WorkspaceInvite, str]:
        """Create a pending invitation.

        Returns:
            The invite and the raw token. Only the token's hash is stored,
            so this is the one time the token is available.

        Raises:
            ValidationError: Bad email or role.
            AuthorizationError: Caller lacks ``member:invite``, or a
                non-owner invites an owner.
            ConflictError: The address already belongs to a member.
        """
        client = client or ClientInfo()
        email = normalize_email(email)
        try:
            role = Role(role)
        except ValueError as exc:
            raise ValidationError("Invalid role", details={"field": "role"}) from exc

        raw_token = secrets.token_urlsafe(32)
        async with transaction(self._session_factory) as db:
            await load_workspace(db, workspace_id, principal.tenant_id)
            actor = await self._membership.require_permission(
                workspace_id, principal.user_id, Permission.MEMBER_INVITE, db=db
            )
            if role == Role.OWNER and actor.role != Role.OWNER:
                raise AuthorizationError("Only owners can invite owners", code="OWNER_REQUIRED")

            existing = await db.execute(
                select(WorkspaceMember.id)
                .join(User, User.id == WorkspaceMember.user_id)
                .where(
                    WorkspaceMember.workspace_id == workspace_id,
                    User.tenant_id == principal.tenant_id,
                    User.email == email,
                )
            )
            if existing.first() is not None:
                raise ConflictError(
                    "User is already a member of this workspace", code="ALREADY_MEMBER"
                )

            invite = WorkspaceInvite(
                workspace_id=workspace_id,
                email=email,
                role=role,
                token_hash=hash_token(raw_token),
                invited_by=principal.user_id,
                expires_at=self._clock() + self._invite_ttl,
            )
            db.add(invite)

        await self._audit.emit(
            AuditEvent(
                tenant_id=principal.tenant_id,
                user_id=principal.user_id,
                action=AuditAction.MEMBER_INVITED,
                resource_type="workspace_invite",
                resource_id=str(invite.id),
                details={"workspaceId": str(workspace_id), "email": email, "role": role.value},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        )
        return invite, raw_token

    async def list_pending_invites(
        self, principal: Principal, workspace_id: uuid.UUID
    ) -> List[WorkspaceInvite]:
        async with self._session_factory() as db:
            await load_workspace(db, workspace_id, principal.tenant_id)
            await self._membership.require_permission(
                workspace_id, principal.user_id, Permission.MEMBER_INVITE, db=db
            )
            result = await db.execute(
                select(WorkspaceInvite)
                .where(
                    WorkspaceInvite.workspace_id == workspace_id,
                    WorkspaceInvite.accepted_at.is_(None),
                    WorkspaceInvite.expires_at > self._clock(),
                )
                .order_by(WorkspaceInvite.created_at)
            )
            return list(result.scalars().all())
