"""Query capabilities used by the services.

Each function takes an open ``AsyncSession`` and leaves transaction
control to the caller. Every lookup of a tenant-owned row takes the
tenant id; the only cross-tenant query is ``find_users_by_email`` called
without one.
"""

import uuid
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from tenantauth.db.models import (
    ModelCatalog,
    Role,
    Tenant,
    User,
    Workspace,
    WorkspaceMember,
    WorkspaceModel,
    WorkspaceStatus,
)


# ── Tenants and users ─────────────────────────


async def get_tenant(session: AsyncSession, tenant_id: uuid.UUID) -> Optional[Tenant]:
    return await session.get(Tenant, tenant_id)


async def find_tenant_by_slug(session: AsyncSession, slug: str) -> Optional[Tenant]:
    result = await session.execute(select(Tenant).where(Tenant.slug == slug))
    return result.scalar_one_or_none()


async def get_user(
    session: AsyncSession, user_id: uuid.UUID, tenant_id: uuid.UUID
) -> Optional[User]:
    result = await session.execute(
        select(User).where(User.id == user_id, User.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def find_users_by_email(
    session: AsyncSession, email: str, tenant_id: Optional[uuid.UUID] = None
) -> Sequence[User]:
    """Return users with ``email``, within one tenant or across all of them."""
    stmt = select(User).where(User.email == email.lower())
    if tenant_id is not None:
        stmt = stmt.where(User.tenant_id == tenant_id)
    result = await session.execute(stmt.limit(2))
    return result.scalars().all()


async def create_tenant_with_owner(
    session: AsyncSession,
    *,
    tenant_name: str,
    tenant_slug: str,
    email: str,
    password_hash: str,
    first_name: Optional[str],
    last_name: Optional[str],
) -> tuple[Tenant, User]:
    """Stage a tenant and its owner user in the caller's transaction."""
    tenant = Tenant(name=tenant_name, slug=tenant_slug)
    session.add(tenant)
    await session.flush()

    user = User(
        tenant_id=tenant.id,
        email=email.lower(),
        password_hash=password_hash,
        first_name=first_name,
        last_name=last_name,
        role=Role.OWNER,
    )
    session.add(user)
    await session.flush()
    return tenant, user


# ── Workspaces and memberships ────────────────


async def get_workspace(
    session: AsyncSession, workspace_id: uuid.UUID, tenant_id: uuid.UUID
) -> Optional[Workspace]:
    """Return an active workspace owned by ``tenant_id``."""
    result = await session.execute(
        select(Workspace).where(
            Workspace.id == workspace_id,
            Workspace.tenant_id == tenant_id,
            Workspace.status == WorkspaceStatus.ACTIVE,
        )
    )
    return result.scalar_one_or_none()


async def get_membership(
    session: AsyncSession,
    workspace_id: uuid.UUID,
    user_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> Optional[WorkspaceMember]:
    stmt = select(WorkspaceMember).where(
        WorkspaceMember.workspace_id == workspace_id,
        WorkspaceMember.user_id == user_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def lock_owner_rows(
    session: AsyncSession, workspace_id: uuid.UUID
) -> Sequence[WorkspaceMember]:
    """Lock and return every owner membership of a workspace.

    Row locks (not an aggregate) so that concurrent demotions serialise on
    the same rows and the second one sees the committed owner count.
    """
    result = await session.execute(
        select(WorkspaceMember)
        .where(
            WorkspaceMember.workspace_id == workspace_id,
            WorkspaceMember.role == Role.OWNER,
        )
        .order_by(WorkspaceMember.id)
        .with_for_update()
    )
    return result.scalars().all()


async def count_members(session: AsyncSession, workspace_id: uuid.UUID) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(WorkspaceMember)
        .where(WorkspaceMember.workspace_id == workspace_id)
    )
    return result.scalar_one()


# ── Model enablement ──────────────────────────


async def get_catalog_model(
    session: AsyncSession, model_id: uuid.UUID
) -> Optional[ModelCatalog]:
    return await session.get(ModelCatalog, model_id)


async def enabled_model_ids(
    session: AsyncSession, workspace_id: uuid.UUID
) -> set[uuid.UUID]:
    result = await session.execute(
        select(WorkspaceModel.model_id).where(
            WorkspaceModel.workspace_id == workspace_id,
            WorkspaceModel.is_enabled.is_(True),
        )
    )
    return set(result.scalars().all())


async def upsert_workspace_model(
    session: AsyncSession,
    *,
    workspace_id: uuid.UUID,
    model_id: uuid.UUID,
    enabled: bool,
    now: datetime,
) -> None:
    """Insert or update the enablement row for (workspace, model)."""
    dialect = session.get_bind().dialect.name
    insert = pg_insert if dialect == "postgresql" else sqlite_insert

    values = {
        "id": uuid.uuid4(),
        "workspace_id": workspace_id,
        "model_id": model_id,
        "is_enabled": enabled,
    }
    changes: dict = {"is_enabled": enabled}
    if enabled:
        values["enabled_at"] = now
        changes["enabled_at"] = now
    else:
        values["disabled_at"] = now
        changes["disabled_at"] = now

    stmt = insert(WorkspaceModel).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[WorkspaceModel.workspace_id, WorkspaceModel.model_id],
        set_=changes,
    )
    await session.execute(stmt)
