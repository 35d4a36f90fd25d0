"""Authentication middleware: bearer access token -> request.state.principal.

Rules:
1. Public paths skip auth entirely: /health, /auth/register, /auth/login,
   /auth/refresh and the API docs.
2. Every other path needs ``Authorization: Bearer <access token>``.
3. The token must verify as an ``access`` token, and its subject must be
   an active user of an active tenant named by the token's ``tenantId``.
4. On success: attach a Principal to request.state.principal.
"""

import logging
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from tenantauth.api.errors import error_body
from tenantauth.db import queries
from tenantauth.db.models import TenantStatus, UserStatus
from tenantauth.exceptions import AppError
from tenantauth.logging_config import tenant_id_var
from tenantauth.security.principal import Principal
from tenantauth.security.tokens import TokenType, extract_bearer

logger = logging.getLogger(__name__)

PUBLIC_PATHS = frozenset(
    {
        "/health",
        "/auth/register",
        "/auth/login",
        "/auth/refresh",
    }
)

PUBLIC_PATH_PREFIXES = (
    "/docs",
    "/openapi.json",
    "/redoc",
)


def _unauthorized(code: str, message: str) -> JSONResponse:
    return JSONResponse(error_body(code, message), status_code=401)


class AuthMiddleware(BaseHTTPMiddleware):
    """Authenticate requests with tenant-bound access tokens."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path.rstrip("/") or "/"
        if (
            request.method == "OPTIONS"
            or path in PUBLIC_PATHS
            or path.startswith(PUBLIC_PATH_PREFIXES)
        ):
            return await call_next(request)

        token = extract_bearer(request.headers.get("Authorization"))
        if token is None:
            return _unauthorized("AUTH_REQUIRED", "Authentication required")

        context = request.app.state.context
        try:
            claims = context.codec.verify(token, TokenType.ACCESS)
        except AppError as exc:
            logger.info("Access token rejected", extra={"code": exc.code, "path": path})
            return _unauthorized(exc.code, exc.message)

        try:
            user_id = uuid.UUID(claims.sub)
            tenant_id = uuid.UUID(claims.tenant_id)
        except ValueError:
            return _unauthorized("INVALID_TOKEN", "Invalid token")

        async with context.session_factory() as session:
            user = await queries.get_user(session, user_id, tenant_id)
            tenant = await queries.get_tenant(session, tenant_id)

        if (
            user is None
            or tenant is None
            or user.status != UserStatus.ACTIVE
            or tenant.status != TenantStatus.ACTIVE
        ):
            return _unauthorized("INVALID_TOKEN", "User is no longer active")

        request.state.principal = Principal(
            user_id=user.id, tenant_id=tenant.id, role=user.role.value
        )
        tenant_id_var.set(str(tenant.id))
        return await call_next(request)
