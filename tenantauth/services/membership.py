"""Workspace membership authority.

Guards consulted before every workspace mutation, plus the membership
mutations themselves. Any change that could leave a workspace without
an owner locks the workspace's owner rows in the same transaction as
the change.
"""

import logging
import uuid
from typing import Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantauth.clock import Clock, utcnow
from tenantauth.db import queries
from tenantauth.db.engine import SessionFactory, transaction
from tenantauth.db.models import Role, User, Workspace, WorkspaceInvite, WorkspaceMember
from tenantauth.exceptions import (
    AuthorizationError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)
from tenantauth.security.permissions import Permission, has_permission
from tenantauth.security.principal import ClientInfo, Principal
from tenantauth.security.tokens import hash_token
from tenantauth.services.audit import AuditAction, AuditEvent, AuditSink
from tenantauth.services.eligibility import effective_plan

logger = logging.getLogger(__name__)

LAST_OWNER_MESSAGE = "cannot remove last owner"


async def load_workspace(
    db: AsyncSession, workspace_id: uuid.UUID, tenant_id: uuid.UUID
) -> Workspace:
    """Return the caller-tenant's workspace or raise NotFoundError."""
    workspace = await queries.get_workspace(db, workspace_id, tenant_id)
    if workspace is None:
        raise NotFoundError("Workspace not found", code="WORKSPACE_NOT_FOUND")
    return workspace


class MembershipAuthority:
    """Role checks and membership changes for workspaces.

    Args:
        session_factory: Database session factory.
        audit: Audit sink.
        plan_member_limits: Maximum members per workspace, by plan.
        clock: Time source.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        audit: AuditSink,
        *,
        plan_member_limits: Optional[Dict[str, int]] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._audit = audit
        self._plan_member_limits = plan_member_limits or {}
        self._clock = clock

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    async def require_member(
        self,
        workspace_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        db: Optional[AsyncSession] = None,
    ) -> WorkspaceMember:
        """Return the caller's membership.

        Raises:
            AuthorizationError: If the user is not a member.
        """
        if db is None:
            async with self._session_factory() as session:
                member = await queries.get_membership(session, workspace_id, user_id)
        else:
            member = await queries.get_membership(db, workspace_id, user_id)
        if member is None:
            raise AuthorizationError(
                "You are not a member of this workspace", code="NOT_A_MEMBER"
            )
        return member

    async def require_role(
        self,
        workspace_id: uuid.UUID,
        user_id: uuid.UUID,
        allowed_roles: Iterable[Union[Role, str]],
        *,
        db: Optional[AsyncSession] = None,
    ) -> WorkspaceMember:
        member = await self.require_member(workspace_id, user_id, db=db)
        if member.role not in {Role(r) for r in allowed_roles}:
            raise AuthorizationError("Insufficient permissions", code="INSUFFICIENT_ROLE")
        return member

    async def require_permission(
        self,
        workspace_id: uuid.UUID,
        user_id: uuid.UUID,
        permission: Permission,
        *,
        db: Optional[AsyncSession] = None,
    ) -> WorkspaceMember:
        member = await self.require_member(workspace_id, user_id, db=db)
        if not has_permission(member.role, permission):
            raise AuthorizationError(
                "Insufficient permissions",
                code="INSUFFICIENT_PERMISSION",
                details={"permission": permission.value},
            )
        return member

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_members(
        self, principal: Principal, workspace_id: uuid.UUID
    ) -> List[Tuple[WorkspaceMember, User]]:
        async with self._session_factory() as db:
            await load_workspace(db, workspace_id, principal.tenant_id)
            await self.require_member(workspace_id, principal.user_id, db=db)
            result = await db.execute(
                select(WorkspaceMember, User)
                .join(User, User.id == WorkspaceMember.user_id)
                .where(WorkspaceMember.workspace_id == workspace_id)
                .order_by(WorkspaceMember.joined_at)
            )
            return [(m, u) for m, u in result.all()]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def change_role(
        self,
        principal: Principal,
        workspace_id: uuid.UUID,
        target_user_id: uuid.UUID,
        new_role: Union[Role, str],
        client: Optional[ClientInfo] = None,
    ) -> WorkspaceMember:
        """Change a member's role.

        Raises:
            NotFoundError: Unknown workspace or target member.
            AuthorizationError: Caller lacks ``member:roleUpdate``, or a
                non-owner tries to grant or revoke ``owner``.
            ValidationError: The change would leave no owner.
        """
        client = client or ClientInfo()
        new_role = Role(new_role)
        async with transaction(self._session_factory) as db:
            await load_workspace(db, workspace_id, principal.tenant_id)
            actor = await self.require_permission(
                workspace_id, principal.user_id, Permission.MEMBER_ROLE_UPDATE, db=db
            )
            owners = await queries.lock_owner_rows(db, workspace_id)
            target = await self._lock_target(db, workspace_id, target_user_id)

            if Role.OWNER in (target.role, new_role) and actor.role != Role.OWNER:
                raise AuthorizationError(
                    "Only owners can grant or revoke the owner role", code="OWNER_REQUIRED"
                )
            if target.role == Role.OWNER and new_role != Role.OWNER and len(owners) <= 1:
                raise ValidationError(LAST_OWNER_MESSAGE, code="LAST_OWNER")

            previous = target.role
            target.role = new_role

        logger.info(
            "Member role changed",
            extra={
                "workspace_id": str(workspace_id),
                "target_user_id": str(target_user_id),
                "from_role": previous.value,
                "to_role": new_role.value,
            },
        )
        await self._audit.emit(
            AuditEvent(
                tenant_id=principal.tenant_id,
                user_id=principal.user_id,
                action=AuditAction.MEMBER_ROLE_CHANGED,
                resource_type="workspace_member",
                resource_id=str(target_user_id),
                details={
                    "workspaceId": str(workspace_id),
                    "from": previous.value,
                    "to": new_role.value,
                },
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        )
        return target

    async def remove_member(
        self,
        principal: Principal,
        workspace_id: uuid.UUID,
        target_user_id: uuid.UUID,
        client: Optional[ClientInfo] = None,
    ) -> None:
        """Remove a member. Members may always remove themselves.

        Raises:
            NotFoundError: Unknown workspace or target member.
            AuthorizationError: Caller lacks ``member:remove``, or a
                non-owner tries to remove an owner.
            ValidationError: The target is the last owner.
        """
        client = client or ClientInfo()
        leaving = target_user_id == principal.user_id
        async with transaction(self._session_factory) as db:
            await load_workspace(db, workspace_id, principal.tenant_id)
            if leaving:
                actor = await self.require_member(workspace_id, principal.user_id, db=db)
            else:
                actor = await self.require_permission(
                    workspace_id, principal.user_id, Permission.MEMBER_REMOVE, db=db
                )
            owners = await queries.lock_owner_rows(db, workspace_id)
            target = await self._lock_target(db, workspace_id, target_user_id)

            if target.role == Role.OWNER:
                if not leaving and actor.role != Role.OWNER:
                    raise AuthorizationError(
                        "Only owners can remove an owner", code="OWNER_REQUIRED"
                    )
                if len(owners) <= 1:
                    raise ValidationError(LAST_OWNER_MESSAGE, code="LAST_OWNER")

            removed_role = target.role
            await db.delete(target)

        await self._audit.emit(
            AuditEvent(
                tenant_id=principal.tenant_id,
                user_id=principal.user_id,
                action=AuditAction.MEMBER_REMOVED,
                resource_type="workspace_member",
                resource_id=str(target_user_id),
                details={"workspaceId": str(workspace_id), "role": removed_role.value},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        )

    async def accept_invitation(
        self,
        principal: Principal,
        token: str,
        client: Optional[ClientInfo] = None,
    ) -> WorkspaceMember:
        """Join a workspace with an invitation token.

        Unknown, expired, already-accepted and other-tenant tokens all
        raise the same NotFoundError.

        Raises:
            NotFoundError: The token does not resolve to a pending invite.
            AuthorizationError: The invite was addressed to another email.
            ValidationError: The caller is already a member.
            QuotaExceededError: The workspace is at its plan's member limit.
        """
        client = client or ClientInfo()
        now = self._clock()
        async with transaction(self._session_factory) as db:
            result = await db.execute(
                select(WorkspaceInvite)
                .where(
                    WorkspaceInvite.token_hash == hash_token(token or ""),
                    WorkspaceInvite.accepted_at.is_(None),
                    WorkspaceInvite.expires_at > now,
                )
                .with_for_update()
            )
            invite = result.scalar_one_or_none()
            workspace = None
            if invite is not None:
                workspace = await queries.get_workspace(
                    db, invite.workspace_id, principal.tenant_id
                )
            if invite is None or workspace is None:
                raise NotFoundError(
                    "Invitation not found or expired", code="INVITE_NOT_FOUND"
                )

            user = await queries.get_user(db, principal.user_id, principal.tenant_id)
            if user is None or user.email.lower() != invite.email.lower():
                raise AuthorizationError(
                    "This invitation was sent to a different email address",
                    code="INVITE_EMAIL_MISMATCH",
                )
            if await queries.get_membership(db, workspace.id, principal.user_id) is not None:
                raise ValidationError(
                    "You are already a member of this workspace", code="ALREADY_MEMBER"
                )

            tenant = await queries.get_tenant(db, principal.tenant_id)
            plan = effective_plan(workspace.plan, tenant.plan)
            limit = self._plan_member_limits.get(plan.value)
            if limit is not None and await queries.count_members(db, workspace.id) >= limit:
                raise QuotaExceededError(
                    f"The {plan.value} plan allows at most {limit} members per workspace",
                    code="MEMBER_LIMIT_REACHED",
                    details={"plan": plan.value, "limit": limit},
                )

            member = WorkspaceMember(
                workspace_id=workspace.id,
                user_id=principal.user_id,
                role=invite.role,
                invited_by=invite.invited_by,
                joined_at=now,
            )
            db.add(member)
            invite.accepted_at = now

        await self._audit.emit(
            AuditEvent(
                tenant_id=principal.tenant_id,
                user_id=principal.user_id,
                action=AuditAction.MEMBER_JOINED,
                resource_type="workspace",
                resource_id=str(member.workspace_id),
                details={"role": member.role.value, "inviteId": str(invite.id)},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        )
        return member

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _lock_target(
        self, db: AsyncSession, workspace_id: uuid.UUID, user_id: uuid.UUID
    ) -> WorkspaceMember:
        target = await queries.get_membership(db, workspace_id, user_id, for_update=True)
        if target is None:
            raise NotFoundError("Member not found", code="MEMBER_NOT_FOUND")
        return target
