"""Response/request models shared across routers.

Bodies are camelCase on the wire. ORM rows are mapped field by field so
that nothing (notably ``password_hash``) leaks by accident.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from tenantauth.db.models import Tenant, User


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OkResponse(CamelModel):
    ok: bool = True


class UserOut(CamelModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str
    email_verified: bool
    status: str
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, user: User) -> "UserOut":
        return cls(
            id=user.id,
            tenant_id=user.tenant_id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role.value,
            email_verified=user.email_verified,
            status=user.status.value,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class TenantOut(CamelModel):
    id: uuid.UUID
    name: str
    slug: str
    status: str
    plan: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, tenant: Tenant) -> "TenantOut":
        return cls(
            id=tenant.id,
            name=tenant.name,
            slug=tenant.slug,
            status=tenant.status.value,
            plan=tenant.plan.value,
            created_at=tenant.created_at,
        )
