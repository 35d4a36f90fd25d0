"""HTTP tests for /workspaces: CRUD, members, invitations, tenant isolation."""

from typing import Any, Dict

import pytest
from httpx import AsyncClient

PASSWORD = "Passw0rd!"


@pytest.fixture
async def owner(register) -> Dict[str, Any]:
    return await register(slug="acme", email="owner@x.com")


@pytest.fixture
async def workspace(client: AsyncClient, owner, auth_headers) -> Dict[str, Any]:
    resp = await client.post(
        "/workspaces",
        json={"name": "Research", "description": "R&D"},
        headers=auth_headers(owner),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _login(client: AsyncClient, email: str, slug: str = "acme") -> Dict[str, Any]:
    resp = await client.post(
        "/auth/login", json={"email": email, "password": PASSWORD, "tenantSlug": slug}
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


async def _join(
    client: AsyncClient, owner, workspace, auth_headers, make_user, email: str, role: str
) -> Dict[str, Any]:
    """Invite ``email`` with ``role``, create the user, accept; return their login body."""
    await make_user(owner["tenant"]["id"], email)
    resp = await client.post(
        f"/workspaces/{workspace['id']}/invites",
        json={"email": email, "role": role},
        headers=auth_headers(owner),
    )
    assert resp.status_code == 201, resp.text
    token = resp.json()["token"]

    member = await _login(client, email)
    resp = await client.post(f"/workspaces/invites/{token}/accept", headers=auth_headers(member))
    assert resp.status_code == 200, resp.text
    assert resp.json()["role"] == role
    return member


# ── CRUD ──────────────────────────────────────


async def test_create_and_list(client: AsyncClient, owner, workspace, auth_headers) -> None:
    assert workspace["name"] == "Research"
    assert workspace["role"] == "owner"
    assert workspace["plan"] == "free"
    assert workspace["tenantId"] == owner["tenant"]["id"]

    resp = await client.get("/workspaces", headers=auth_headers(owner))
    assert resp.status_code == 200
    assert [w["id"] for w in resp.json()] == [workspace["id"]]


async def test_get_includes_roles(client: AsyncClient, owner, workspace, auth_headers) -> None:
    resp = await client.get(f"/workspaces/{workspace['id']}", headers=auth_headers(owner))
    assert resp.status_code == 200
    data = resp.json()
    assert data["role"] == "owner"
    assert {r["name"] for r in data["roles"]} == {"owner", "admin", "editor", "viewer"}


async def test_update_and_delete(client: AsyncClient, owner, workspace, auth_headers) -> None:
    headers = auth_headers(owner)
    resp = await client.patch(
        f"/workspaces/{workspace['id']}", json={"name": "Renamed"}, headers=headers
    )
    assert resp.status_code == 200
    assert resp.json()["name"] == "Renamed"

    resp = await client.delete(f"/workspaces/{workspace['id']}", headers=headers)
    assert resp.status_code == 200

    resp = await client.get(f"/workspaces/{workspace['id']}", headers=headers)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "WORKSPACE_NOT_FOUND"


async def test_blank_name_rejected(client: AsyncClient, owner, auth_headers) -> None:
    resp = await client.post("/workspaces", json={"name": "   "}, headers=auth_headers(owner))
    assert resp.status_code == 400


async def test_other_tenant_sees_not_found(
    client: AsyncClient, register, workspace, auth_headers
) -> None:
    outsider = await register(slug="globex", email="g@x.com")
    headers = auth_headers(outsider)

    resp = await client.get(f"/workspaces/{workspace['id']}", headers=headers)
    assert resp.status_code == 404
    resp = await client.get(f"/workspaces/{workspace['id']}/members", headers=headers)
    assert resp.status_code == 404
    resp = await client.get("/workspaces", headers=headers)
    assert resp.json() == []


async def test_non_member_is_forbidden(
    client: AsyncClient, owner, workspace, auth_headers, make_user
) -> None:
    await make_user(owner["tenant"]["id"], "stranger@x.com")
    stranger = await _login(client, "stranger@x.com")
    resp = await client.get(f"/workspaces/{workspace['id']}", headers=auth_headers(stranger))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "NOT_A_MEMBER"


# ── Members ───────────────────────────────────


async def test_invite_accept_and_list_members(
    client: AsyncClient, owner, workspace, auth_headers, make_user
) -> None:
    await _join(client, owner, workspace, auth_headers, make_user, "bob@x.com", "editor")

    resp = await client.get(f"/workspaces/{workspace['id']}/members", headers=auth_headers(owner))
    assert resp.status_code == 200
    members = {m["email"]: m["role"] for m in resp.json()}
    assert members == {"owner@x.com": "owner", "bob@x.com": "editor"}


async def test_viewer_cannot_manage_members(
    client: AsyncClient, owner, workspace, auth_headers, make_user
) -> None:
    viewer = await _join(client, owner, workspace, auth_headers, make_user, "v@x.com", "viewer")
    headers = auth_headers(viewer)

    resp = await client.post(
        f"/workspaces/{workspace['id']}/invites",
        json={"email": "new@x.com", "role": "viewer"},
        headers=headers,
    )
    assert resp.status_code == 403

    resp = await client.patch(
        f"/workspaces/{workspace['id']}/members/{owner['user']['id']}",
        json={"role": "viewer"},
        headers=headers,
    )
    assert resp.status_code == 403

    resp = await client.patch(
        f"/workspaces/{workspace['id']}", json={"name": "Hijacked"}, headers=headers
    )
    assert resp.status_code == 403


async def test_last_owner_protection(client: AsyncClient, owner, workspace, auth_headers) -> None:
    resp = await client.patch(
        f"/workspaces/{workspace['id']}/members/{owner['user']['id']}",
        json={"role": "admin"},
        headers=auth_headers(owner),
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "cannot remove last owner"

    resp = await client.delete(
        f"/workspaces/{workspace['id']}/members/{owner['user']['id']}",
        headers=auth_headers(owner),
    )
    assert resp.status_code == 400


async def test_change_role_and_remove(
    client: AsyncClient, owner, workspace, auth_headers, make_user
) -> None:
    bob = await _join(client, owner, workspace, auth_headers, make_user, "bob@x.com", "viewer")
    ws = workspace["id"]

    resp = await client.patch(
        f"/workspaces/{ws}/members/{bob['user']['id']}",
        json={"role": "admin"},
        headers=auth_headers(owner),
    )
    assert resp.status_code == 200

    resp = await client.delete(
        f"/workspaces/{ws}/members/{bob['user']['id']}", headers=auth_headers(owner)
    )
    assert resp.status_code == 200

    resp = await client.get(f"/workspaces/{ws}", headers=auth_headers(bob))
    assert resp.status_code == 403


async def test_invalid_role_value(client: AsyncClient, owner, workspace, auth_headers) -> None:
    resp = await client.post(
        f"/workspaces/{workspace['id']}/invites",
        json={"email": "x@x.com", "role": "superuser"},
        headers=auth_headers(owner),
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_REQUEST"


async def test_pending_invites(client: AsyncClient, owner, workspace, auth_headers) -> None:
    headers = auth_headers(owner)
    resp = await client.post(
        f"/workspaces/{workspace['id']}/invites",
        json={"email": "Pending@X.com"},
        headers=headers,
    )
    assert resp.status_code == 201
    created = resp.json()
    assert created["role"] == "viewer"
    assert created["email"] == "pending@x.com"

    resp = await client.get(f"/workspaces/{workspace['id']}/invites", headers=headers)
    assert resp.status_code == 200
    invites = resp.json()
    assert [i["id"] for i in invites] == [created["id"]]
    assert "token" not in invites[0]


async def test_unknown_invite_token(client: AsyncClient, owner, auth_headers) -> None:
    resp = await client.post("/workspaces/invites/not-a-token/accept", headers=auth_headers(owner))
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "INVITE_NOT_FOUND"


async def test_member_limit_returns_429(
    client: AsyncClient, owner, workspace, auth_headers, make_user
) -> None:
    await _join(client, owner, workspace, auth_headers, make_user, "b@x.com", "viewer")
    await _join(client, owner, workspace, auth_headers, make_user, "c@x.com", "viewer")

    await make_user(owner["tenant"]["id"], "d@x.com")
    resp = await client.post(
        f"/workspaces/{workspace['id']}/invites",
        json={"email": "d@x.com"},
        headers=auth_headers(owner),
    )
    token = resp.json()["token"]
    dave = await _login(client, "d@x.com")
    resp = await client.post(f"/workspaces/invites/{token}/accept", headers=auth_headers(dave))
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "MEMBER_LIMIT_REACHED"
