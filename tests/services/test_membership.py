"""Tests for workspace guards, role changes, removal and invitations."""

from typing import Any, Dict

import pytest
from sqlalchemy import select

from tenantauth.context import AppContext
from tenantauth.db.models import AuditLog, Role, WorkspaceRole
from tenantauth.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)
from tenantauth.security.permissions import Permission
from tenantauth.security.principal import Principal

PASSWORD = "Passw0rd!"


def _principal(user) -> Principal:
    return Principal(user_id=user.id, tenant_id=user.tenant_id, role=user.role.value)


@pytest.fixture
async def setup(context: AppContext, make_user) -> Dict[str, Any]:
    """Tenant ``acme`` with an owner, a workspace and one extra tenant user."""
    registered = await context.identity.register(
        tenant_name="Acme", tenant_slug="acme", email="owner@x.com", password=PASSWORD
    )
    owner = _principal(registered.user)
    workspace = await context.workspaces.create_workspace(owner, name="Research")
    bob = await make_user(registered.tenant.id, "bob@x.com")
    return {
        "tenant": registered.tenant,
        "owner": owner,
        "workspace": workspace,
        "bob": _principal(bob),
    }


async def _add_member(context: AppContext, setup: Dict[str, Any], who: Principal, email: str, role: Role):
    _, token = await context.workspaces.invite_member(
        setup["owner"], setup["workspace"].id, email=email, role=role
    )
    return await context.membership.accept_invitation(who, token)


# ---------------------------------------------------------------------------
# Workspace creation
# ---------------------------------------------------------------------------


class TestCreateWorkspace:
    async def test_creator_is_owner(self, context: AppContext, setup) -> None:
        member = await context.membership.require_member(
            setup["workspace"].id, setup["owner"].user_id
        )
        assert member.role == Role.OWNER

    async def test_role_table_is_seeded(self, context: AppContext, setup, session_factory) -> None:
        async with session_factory() as session:
            rows = (
                await session.execute(
                    select(WorkspaceRole).where(WorkspaceRole.workspace_id == setup["workspace"].id)
                )
            ).scalars().all()
        by_name = {r.name: r for r in rows}
        assert set(by_name) == set(Role)
        assert len(by_name[Role.OWNER].permissions) == 16
        assert "workspace:delete" not in by_name[Role.ADMIN].permissions

    async def test_plan_comes_from_tenant(self, setup) -> None:
        assert setup["workspace"].plan == setup["tenant"].plan


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


class TestGuards:
    async def test_non_member(self, context: AppContext, setup) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            await context.membership.require_member(setup["workspace"].id, setup["bob"].user_id)
        assert exc_info.value.code == "NOT_A_MEMBER"

    async def test_require_role(self, context: AppContext, setup) -> None:
        await _add_member(context, setup, setup["bob"], "bob@x.com", Role.VIEWER)
        ws_id = setup["workspace"].id
        await context.membership.require_role(ws_id, setup["bob"].user_id, [Role.VIEWER, "editor"])
        with pytest.raises(AuthorizationError):
            await context.membership.require_role(ws_id, setup["bob"].user_id, [Role.ADMIN])

    async def test_require_permission(self, context: AppContext, setup) -> None:
        await _add_member(context, setup, setup["bob"], "bob@x.com", Role.VIEWER)
        with pytest.raises(AuthorizationError) as exc_info:
            await context.membership.require_permission(
                setup["workspace"].id, setup["bob"].user_id, Permission.MEMBER_INVITE
            )
        assert exc_info.value.details == {"permission": "member:invite"}


# ---------------------------------------------------------------------------
# Role changes and removal
# ---------------------------------------------------------------------------


class TestLastOwner:
    async def test_sole_owner_cannot_demote_self(self, context: AppContext, setup) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await context.membership.change_role(
                setup["owner"], setup["workspace"].id, setup["owner"].user_id, Role.ADMIN
            )
        assert exc_info.value.message == "cannot remove last owner"
        assert exc_info.value.code == "LAST_OWNER"

    async def test_sole_owner_cannot_leave(self, context: AppContext, setup) -> None:
        with pytest.raises(ValidationError):
            await context.membership.remove_member(
                setup["owner"], setup["workspace"].id, setup["owner"].user_id
            )

    async def test_handover_then_demote(self, context: AppContext, setup) -> None:
        ws_id = setup["workspace"].id
        await _add_member(context, setup, setup["bob"], "bob@x.com", Role.ADMIN)
        await context.membership.change_role(setup["owner"], ws_id, setup["bob"].user_id, Role.OWNER)
        await context.membership.change_role(setup["owner"], ws_id, setup["owner"].user_id, Role.VIEWER)

        # Bob is now the only owner.
        with pytest.raises(ValidationError):
            await context.membership.change_role(setup["bob"], ws_id, setup["bob"].user_id, Role.ADMIN)
        members = await context.membership.list_members(setup["bob"], ws_id)
        assert sorted(m.role.value for m, _ in members) == ["owner", "viewer"]

    async def test_admin_cannot_touch_owner(self, context: AppContext, setup) -> None:
        await _add_member(context, setup, setup["bob"], "bob@x.com", Role.ADMIN)
        with pytest.raises(AuthorizationError) as exc_info:
            await context.membership.change_role(
                setup["bob"], setup["workspace"].id, setup["owner"].user_id, Role.VIEWER
            )
        assert exc_info.value.code == "OWNER_REQUIRED"
        with pytest.raises(AuthorizationError):
            await context.membership.change_role(
                setup["bob"], setup["workspace"].id, setup["bob"].user_id, Role.OWNER
            )

    async def test_unknown_target(self, context: AppContext, setup, make_user) -> None:
        carol = await make_user(setup["tenant"].id, "carol@x.com")
        with pytest.raises(NotFoundError) as exc_info:
            await context.membership.change_role(
                setup["owner"], setup["workspace"].id, carol.id, Role.EDITOR
            )
        assert exc_info.value.code == "MEMBER_NOT_FOUND"


class TestRemoveMember:
    async def test_removing_one_of_two_owners(self, context: AppContext, setup) -> None:
        ws_id = setup["workspace"].id
        await _add_member(context, setup, setup["bob"], "bob@x.com", Role.OWNER)

        await context.membership.remove_member(setup["owner"], ws_id, setup["bob"].user_id)

        members = await context.membership.list_members(setup["owner"], ws_id)
        owners = [m for m, _ in members if m.role == Role.OWNER]
        assert len(owners) == 1
        assert owners[0].user_id == setup["owner"].user_id
        with pytest.raises(ValidationError):
            await context.membership.remove_member(setup["owner"], ws_id, setup["owner"].user_id)

    async def test_member_can_leave(self, context: AppContext, setup) -> None:
        await _add_member(context, setup, setup["bob"], "bob@x.com", Role.VIEWER)
        await context.membership.remove_member(
            setup["bob"], setup["workspace"].id, setup["bob"].user_id
        )
        with pytest.raises(AuthorizationError):
            await context.membership.require_member(setup["workspace"].id, setup["bob"].user_id)

    async def test_viewer_cannot_remove_others(self, context: AppContext, setup) -> None:
        await _add_member(context, setup, setup["bob"], "bob@x.com", Role.VIEWER)
        with pytest.raises(AuthorizationError):
            await context.membership.remove_member(
                setup["bob"], setup["workspace"].id, setup["owner"].user_id
            )

    async def test_owner_removes_member_and_audits(
        self, context: AppContext, setup, session_factory
    ) -> None:
        await _add_member(context, setup, setup["bob"], "bob@x.com", Role.EDITOR)
        await context.membership.remove_member(
            setup["owner"], setup["workspace"].id, setup["bob"].user_id
        )
        async with session_factory() as session:
            actions = (await session.execute(select(AuditLog.action))).scalars().all()
        assert "MEMBER_REMOVED" in actions


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


class TestInvitations:
    async def test_accept_grants_invited_role(self, context: AppContext, setup) -> None:
        member = await _add_member(context, setup, setup["bob"], "Bob@X.com", Role.EDITOR)
        assert member.role == Role.EDITOR
        assert member.invited_by == setup["owner"].user_id

    async def test_token_is_single_use(self, context: AppContext, setup) -> None:
        _, token = await context.workspaces.invite_member(
            setup["owner"], setup["workspace"].id, email="bob@x.com", role=Role.VIEWER
        )
        await context.membership.accept_invitation(setup["bob"], token)
        with pytest.raises(NotFoundError) as exc_info:
            await context.membership.accept_invitation(setup["bob"], token)
        assert exc_info.value.code == "INVITE_NOT_FOUND"

    async def test_expired_invite(self, context: AppContext, setup, clock) -> None:
        _, token = await context.workspaces.invite_member(
            setup["owner"], setup["workspace"].id, email="bob@x.com", role=Role.VIEWER
        )
        clock.advance(days=7, seconds=1)
        with pytest.raises(NotFoundError):
            await context.membership.accept_invitation(setup["bob"], token)

    async def test_email_mismatch(self, context: AppContext, setup, make_user) -> None:
        carol = _principal(await make_user(setup["tenant"].id, "carol@x.com"))
        _, token = await context.workspaces.invite_member(
            setup["owner"], setup["workspace"].id, email="bob@x.com", role=Role.VIEWER
        )
        with pytest.raises(AuthorizationError) as exc_info:
            await context.membership.accept_invitation(carol, token)
        assert exc_info.value.code == "INVITE_EMAIL_MISMATCH"

    async def test_other_tenant_cannot_accept(self, context: AppContext, setup) -> None:
        other = await context.identity.register(
            tenant_name="Globex", tenant_slug="globex", email="bob@x.com", password=PASSWORD
        )
        _, token = await context.workspaces.invite_member(
            setup["owner"], setup["workspace"].id, email="bob@x.com", role=Role.VIEWER
        )
        with pytest.raises(NotFoundError):
            await context.membership.accept_invitation(_principal(other.user), token)

    async def test_second_invite_for_member(self, context: AppContext, setup) -> None:
        ws_id = setup["workspace"].id
        _, first = await context.workspaces.invite_member(
            setup["owner"], ws_id, email="bob@x.com", role=Role.VIEWER
        )
        _, second = await context.workspaces.invite_member(
            setup["owner"], ws_id, email="bob@x.com", role=Role.EDITOR
        )
        await context.membership.accept_invitation(setup["bob"], first)
        with pytest.raises(ValidationError) as exc_info:
            await context.membership.accept_invitation(setup["bob"], second)
        assert exc_info.value.code == "ALREADY_MEMBER"

    async def test_inviting_existing_member_conflicts(self, context: AppContext, setup) -> None:
        with pytest.raises(ConflictError):
            await context.workspaces.invite_member(
                setup["owner"], setup["workspace"].id, email="owner@x.com", role=Role.VIEWER
            )

    async def test_only_owner_invites_owner(self, context: AppContext, setup, make_user) -> None:
        await _add_member(context, setup, setup["bob"], "bob@x.com", Role.ADMIN)
        with pytest.raises(AuthorizationError) as exc_info:
            await context.workspaces.invite_member(
                setup["bob"], setup["workspace"].id, email="carol@x.com", role=Role.OWNER
            )
        assert exc_info.value.code == "OWNER_REQUIRED"

    async def test_member_limit(self, context: AppContext, setup, make_user) -> None:
        # Free plan allows three members in the test settings.
        await _add_member(context, setup, setup["bob"], "bob@x.com", Role.VIEWER)
        carol = _principal(await make_user(setup["tenant"].id, "carol@x.com"))
        await _add_member(context, setup, carol, "carol@x.com", Role.VIEWER)
        dave = _principal(await make_user(setup["tenant"].id, "dave@x.com"))
        with pytest.raises(QuotaExceededError) as exc_info:
            await _add_member(context, setup, dave, "dave@x.com", Role.VIEWER)
        assert exc_info.value.details == {"plan": "free", "limit": 3}
