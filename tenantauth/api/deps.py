"""FastAPI dependencies shared by the routers."""

from fastapi import Request

from tenantauth.context import AppContext
from tenantauth.exceptions import AuthenticationError
from tenantauth.security.principal import ClientInfo, Principal


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_principal(request: Request) -> Principal:
    """Principal attached by AuthMiddleware."""
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise AuthenticationError("Authentication required", code="AUTH_REQUIRED")
    return principal


def get_client(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
