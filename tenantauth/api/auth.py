"""Auth routes: registration, login, token refresh, logout, profile.

POST /auth/register       Create a tenant with its owner and sign in.
POST /auth/login          Credentials (+ tenant hint) -> token pair + session.
POST /auth/refresh        Refresh token -> new access token.
POST /auth/logout         Revoke one of the caller's sessions.
GET  /auth/me             Caller's user and tenant.
GET  /auth/sessions/{id}  One live session owned by the caller.
POST /auth/password       Change password and revoke other sessions.
"""

import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends

from tenantauth.api.deps import get_client, get_context, get_principal
from tenantauth.api.schemas import CamelModel, OkResponse, TenantOut, UserOut
from tenantauth.context import AppContext
from tenantauth.exceptions import NotFoundError
from tenantauth.security.principal import ClientInfo, Principal
from tenantauth.services.identity import AuthResult

router = APIRouter()


# ── Pydantic schemas ──────────────────────────


class RegisterRequest(CamelModel):
    tenant_name: str
    tenant_slug: str
    email: str
    password: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class LoginRequest(CamelModel):
    email: str
    password: str
    tenant_id: Optional[str] = None
    tenant_slug: Optional[str] = None


class RefreshRequest(CamelModel):
    refresh_token: str


class LogoutRequest(CamelModel):
    session_id: uuid.UUID


class ChangePasswordRequest(CamelModel):
    current_password: str
    new_password: str
    session_id: Optional[uuid.UUID] = None


class AuthResponse(CamelModel):
    ok: bool = True
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: uuid.UUID
    user: UserOut
    tenant: TenantOut


class RefreshResponse(CamelModel):
    ok: bool = True
    access_token: str
    expires_in: int


class ProfileResponse(CamelModel):
    ok: bool = True
    user: UserOut
    tenant: TenantOut


class SessionOut(CamelModel):
    id: uuid.UUID
    user_id: uuid.UUID
    tenant_id: uuid.UUID
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None
    expires_at: datetime


class PasswordChangedResponse(CamelModel):
    ok: bool = True
    sessions_revoked: int


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        expires_in=result.tokens.expires_in,
        session_id=result.session_id,
        user=UserOut.from_row(result.user),
        tenant=TenantOut.from_row(result.tenant),
    )


# ── Endpoints ─────────────────────────────────


@router.post("/register", response_model=AuthResponse, status_code=201)
async def register(
    body: RegisterRequest,
    ctx: AppContext = Depends(get_context),
    client: ClientInfo = Depends(get_client),
):
    """Create a tenant, its owner user and a first session."""
    result = await ctx.identity.register(
        tenant_name=body.tenant_name,
        tenant_slug=body.tenant_slug,
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        client=client,
    )
    return _auth_response(result)


@router.post("/login", response_model=AuthResponse)
async def login(
    body: LoginRequest,
    ctx: AppContext = Depends(get_context),
    client: ClientInfo = Depends(get_client),
):
    result = await ctx.identity.login(
        email=body.email,
        password=body.password,
        tenant_id=body.tenant_id,
        tenant_slug=body.tenant_slug,
        client=client,
    )
    return _auth_response(result)


@router.post("/refresh", response_model=RefreshResponse)
async def refresh(body: RefreshRequest, ctx: AppContext = Depends(get_context)):
    result = await ctx.identity.refresh(body.refresh_token)
    return RefreshResponse(access_token=result.access_token, expires_in=result.expires_in)


@router.post("/logout", response_model=OkResponse)
async def logout(
    body: LogoutRequest,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
    client: ClientInfo = Depends(get_client),
):
    await ctx.identity.logout(body.session_id, principal, client)
    return OkResponse()


@router.get("/me", response_model=ProfileResponse)
async def me(
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
):
    user, tenant = await ctx.identity.get_profile(principal)
    return ProfileResponse(user=UserOut.from_row(user), tenant=TenantOut.from_row(tenant))


@router.get("/sessions/{session_id}", response_model=SessionOut)
async def get_session(
    session_id: uuid.UUID,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
):
    """A live session belonging to the caller; anything else is 404."""
    record = await ctx.sessions.get_by_id(session_id, principal.tenant_id)
    if record is None or record.user_id != principal.user_id:
        raise NotFoundError("Session not found", code="SESSION_NOT_FOUND")
    return SessionOut(
        id=record.id,
        user_id=record.user_id,
        tenant_id=record.tenant_id,
        ip_address=record.ip_address,
        user_agent=record.user_agent,
        created_at=record.created_at,
        expires_at=record.expires_at,
    )


@router.post("/password", response_model=PasswordChangedResponse)
async def change_password(
    body: ChangePasswordRequest,
    ctx: AppContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
    client: ClientInfo = Depends(get_client),
):
    revoked = await ctx.identity.change_password(
        principal,
        current_password=body.current_password,
        new_password=body.new_password,
        keep_session_id=body.session_id,
        client=client,
    )
    return PasswordChangedResponse(sessions_revoked=revoked)
