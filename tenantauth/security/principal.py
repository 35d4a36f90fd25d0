"""The authenticated caller attached to each request."""

import uuid
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Principal:
    """Who is calling, as established from a verified access token.

    Attributes:
        user_id: Authenticated user.
        tenant_id: Tenant the user (and the token) belong to.
        role: Tenant-level role from the token.
    """

    user_id: uuid.UUID
    tenant_id: uuid.UUID
    role: str


@dataclass(frozen=True)
class ClientInfo:
    """Request metadata recorded on sessions and audit events."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
