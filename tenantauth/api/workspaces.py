"""Workspace routes: CRUD, membership management and invitations.

All endpoints require a bearer token. Workspaces of another tenant are
reported as 404; non-members get 403.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends

from tenantauth.api.deps import get_client, get_context, get_principal
from tenantauth.api.schemas import CamelModel, OkResponse
from tenantauth.context import AppContext
from tenantauth.db.models import Role, Workspace, WorkspaceInvite
from tenantauth.security.principal import ClientInfo, Principal

router = APIRouter()


# ── Pydantic schemas ──────────────────────────


class WorkspaceCreateRequest(CamelModel):
    name: str
    description: Optional[str] = None


class WorkspaceUpdateRequest(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None


class InviteRequest(CamelModel):
    email: str
    role: Role = Role.VIEWER


class RoleUpdateRequest(CamelModel):
    role: Role


class WorkspaceOut(CamelModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    name: str
    description: Optional[str] = None
    plan: str
    status: str
    role: Optional[str] = None
    created_at: Optional[datetime] = None


class WorkspaceRoleOut(CamelModel):
    name: str
    permissions: List[str]
    description: Optional[str] = None


class WorkspaceDetailOut(WorkspaceOut):
    roles: List[WorkspaceRoleOut]


class MemberOut(CamelModel):
    user_id: uuid.UUID
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str
    joined_at: Optional[datetime] = None


class InviteOut(CamelModel):
    id: uuid.UUID
    workspace_id: uuid.UUID
    email: str
    role: str
    expires_at: datetime
    created_at: Optional[datetime] = None


class InviteCreatedOut(InviteOut):
    token: str


class AcceptedOut(CamelModel):
    ok: bool = True
    workspace_id: uuid.UUID
    role: str


def _workspace_out(workspace: Workspace, role: Optional[Role] = None) -> WorkspaceOut:
    return WorkspaceOut(
        id=workspace.id,
        tenant_id=workspace.tenant_id,
        name=workspace.name,
        description=workspace.description,
        plan=workspace.plan.value,
        status=workspace.status.value,
        role=role.value if role else None,
        created_at=workspace.created_at,
    )


def _invite_fields(invite: WorkspaceInvite) -> dict:
    return {
        "id": invite.id,
        "workspace_id": invite.workspace_id,
        "email": invite.email,
        "role": invite.role.value,
        "expires_at": invite.expires_at,
        "created_at": invite.created_at,
    }


# ── Invitations (token-addressed) ─────────────


@router.post("/invites/{token}/accept", response_model=AcceptedOut)
async def accept_invite(
    token: str,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
    client: ClientInfo = Depends(get_client),
):
    """Join the workspace the invitation points at."""
    member = await ctx.membership.accept_invitation(principal, token, client)
    return AcceptedOut(workspace_id=member.workspace_id, role=member.role.value)


# ── Workspaces ────────────────────────────────


@router.post("", response_model=WorkspaceOut, status_code=201)
async def create_workspace(
    body: WorkspaceCreateRequest,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
    client: ClientInfo = Depends(get_client),
):
    workspace = await ctx.workspaces.create_workspace(
        principal, name=body.name, description=body.description, client=client
    )
    return _workspace_out(workspace, Role.OWNER)


@router.get("", response_model=List[WorkspaceOut])
async def list_workspaces(
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
):
    rows = await ctx.workspaces.list_workspaces(principal)
    return [_workspace_out(ws, role) for ws, role in rows]


@router.get("/{workspace_id}", response_model=WorkspaceDetailOut)
async def get_workspace(
    workspace_id: uuid.UUID,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
):
    workspace, role, roles = await ctx.workspaces.get_workspace(principal, workspace_id)
    base = _workspace_out(workspace, role)
    return WorkspaceDetailOut(
        **base.model_dump(),
        roles=[
            WorkspaceRoleOut(
                name=r.name.value, permissions=list(r.permissions), description=r.description
            )
            for r in roles
        ],
    )


@router.patch("/{workspace_id}", response_model=WorkspaceOut)
async def update_workspace(
    workspace_id: uuid.UUID,
    body: WorkspaceUpdateRequest,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
    client: ClientInfo = Depends(get_client),
):
    workspace = await ctx.workspaces.update_workspace(
        principal, workspace_id, name=body.name, description=body.description, client=client
    )
    return _workspace_out(workspace)


@router.delete("/{workspace_id}", response_model=OkResponse)
async def delete_workspace(
    workspace_id: uuid.UUID,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
    client: ClientInfo = Depends(get_client),
):
    await ctx.workspaces.delete_workspace(principal, workspace_id, client)
    return OkResponse()


# ── Members ───────────────────────────────────


@router.get("/{workspace_id}/members", response_model=List[MemberOut])
async def list_members(
    workspace_id: uuid.UUID,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
):
    rows = await ctx.membership.list_members(principal, workspace_id)
    return [
        MemberOut(
            user_id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=member.role.value,
            joined_at=member.joined_at,
        )
        for member, user in rows
    ]


@router.patch("/{workspace_id}/members/{user_id}", response_model=OkResponse)
async def update_member_role(
    workspace_id: uuid.UUID,
    user_id: uuid.UUID,
    body: RoleUpdateRequest,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
    client: ClientInfo = Depends(get_client),
):
    await ctx.membership.change_role(principal, workspace_id, user_id, body.role, client)
    return OkResponse()


@router.delete("/{workspace_id}/members/{user_id}", response_model=OkResponse)
async def remove_member(
    workspace_id: uuid.UUID,
    user_id: uuid.UUID,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
    client: ClientInfo = Depends(get_client),
):
    await ctx.membership.remove_member(principal, workspace_id, user_id, client)
    return OkResponse()


# ── Invitations ───────────────────────────────


@router.post("/{workspace_id}/invites", response_model=InviteCreatedOut, status_code=201)
async def invite_member(
    workspace_id: uuid.UUID,
    body: InviteRequest,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
    client: ClientInfo = Depends(get_client),
):
    """Create an invitation. The raw token is returned once, here."""
    invite, token = await ctx.workspaces.invite_member(
        principal, workspace_id, email=body.email, role=body.role, client=client
    )
    return InviteCreatedOut(**_invite_fields(invite), token=token)


@router.get("/{workspace_id}/invites", response_model=List[InviteOut])
async def list_invites(
    workspace_id: uuid.UUID,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
):
    invites = await ctx.workspaces.list_pending_invites(principal, workspace_id)
    return [InviteOut(**_invite_fields(i)) for i in invites]
