# tests/test_access.py - Access tier chain: decision table and HTTP wiring
from typing import Dict, Optional, Tuple

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError

from access import (
    AccessContext, AccessPolicy, SqlAccessStore, resolve_access, tenant_id,
    PUBLIC, PROTECTED, CLIENT, CLIENT_EDITOR, CLIENT_MANAGER, PREMIUM_CLIENT, ADMIN,
)
from auth import CurrentUser
from errors import Forbidden, InternalError, NotFound, PreconditionFailed, Unauthorized
from models import AuthAssurance, ClientRole, PlanTier
from tests.conftest import get_auth_headers, make_client, add_membership


class FakeStore:
    """In-memory AccessStore"""

    def __init__(
        self,
        memberships: Optional[Dict[Tuple[str, str], str]] = None,
        plans: Optional[Dict[str, str]] = None,
        mfa: Optional[Dict[str, bool]] = None,
        fail_plan_lookup: bool = False,
    ):
        self.memberships = memberships or {}
        self.plans = plans or {}
        self.mfa = mfa or {}
        self.fail_plan_lookup = fail_plan_lookup
        self.membership_lookups = 0

    async def get_membership_role(self, user_id, client_id):
        self.membership_lookups += 1
        return self.memberships.get((user_id, client_id))

    async def get_plan_tier(self, client_id):
        if self.fail_plan_lookup:
            raise OperationalError("SELECT plan_tier", {}, Exception("connection reset"))
        return self.plans.get(client_id)

    async def get_require_mfa(self, client_id):
        return self.mfa.get(client_id, False)


def _user(user_id="u1", role="user") -> CurrentUser:
    return CurrentUser(id=user_id, email=f"{user_id}@example.test", display_name=user_id, role=role, is_active=True)


def _ctx(user=None, client_id=None, aal="aal1") -> AccessContext:
    return AccessContext(user=user, client_id=client_id, aal=aal if user else None)


# ============================================================
# DECISION TABLE
# ============================================================

@pytest.mark.asyncio
async def test_public_allows_anonymous():
    ctx = await resolve_access(PUBLIC, _ctx(), FakeStore())
    assert ctx.user is None


@pytest.mark.asyncio
@pytest.mark.parametrize("policy", [PROTECTED, CLIENT, CLIENT_EDITOR, PREMIUM_CLIENT, ADMIN, CLIENT.with_mfa()])
async def test_missing_identity_is_unauthorized(policy):
    with pytest.raises(Unauthorized):
        await resolve_access(policy, _ctx(client_id="c1"), FakeStore())


@pytest.mark.asyncio
async def test_admin_tier_rejects_plain_user():
    with pytest.raises(Forbidden):
        await resolve_access(ADMIN, _ctx(_user()), FakeStore())


@pytest.mark.asyncio
@pytest.mark.parametrize("role", ["super_admin", "admin", "owner"])
async def test_admin_tier_accepts_elevated_roles(role):
    ctx = await resolve_access(ADMIN, _ctx(_user(role=role)), FakeStore())
    assert ctx.is_elevated


@pytest.mark.asyncio
async def test_elevated_identity_gets_owner_role_without_lookup():
    store = FakeStore(memberships={("u1", "c1"): "viewer"})
    ctx = await resolve_access(CLIENT, _ctx(_user(role="admin"), client_id="c1"), store)
    assert ctx.client_role == ClientRole.OWNER.value
    assert store.membership_lookups == 0


@pytest.mark.asyncio
async def test_tenant_scope_without_client_id_is_forbidden():
    with pytest.raises(Forbidden) as exc:
        await resolve_access(CLIENT, _ctx(_user()), FakeStore())
    assert "Client ID is required" in exc.value.detail


@pytest.mark.asyncio
async def test_tenant_scope_without_membership_is_forbidden():
    with pytest.raises(Forbidden) as exc:
        await resolve_access(CLIENT, _ctx(_user(), client_id="c1"), FakeStore())
    assert "No access" in exc.value.detail


@pytest.mark.asyncio
@pytest.mark.parametrize("role", ["owner", "admin", "editor", "viewer"])
async def test_tenant_scope_attaches_membership_role(role):
    store = FakeStore(memberships={("u1", "c1"): role})
    ctx = await resolve_access(CLIENT, _ctx(_user(), client_id="c1"), store)
    assert ctx.client_role == role


@pytest.mark.asyncio
async def test_editor_tier_rejects_viewer():
    store = FakeStore(memberships={("u1", "c1"): "viewer"})
    with pytest.raises(Forbidden) as exc:
        await resolve_access(CLIENT_EDITOR, _ctx(_user(), client_id="c1"), store)
    assert exc.value.detail == "Read-only access"


@pytest.mark.asyncio
@pytest.mark.parametrize("role", ["owner", "admin", "editor"])
async def test_editor_tier_accepts_writers(role):
    store = FakeStore(memberships={("u1", "c1"): role})
    ctx = await resolve_access(CLIENT_EDITOR, _ctx(_user(), client_id="c1"), store)
    assert ctx.client_role == role


@pytest.mark.asyncio
async def test_editor_without_membership_for_other_client_is_forbidden():
    store = FakeStore(memberships={("u1", "c1"): "editor"})
    ctx = await resolve_access(CLIENT_EDITOR, _ctx(_user(), client_id="c1"), store)
    assert ctx.client_role == "editor"
    with pytest.raises(Forbidden):
        await resolve_access(CLIENT_EDITOR, _ctx(_user(), client_id="c2"), store)


@pytest.mark.asyncio
async def test_manager_tier_rejects_editor():
    store = FakeStore(memberships={("u1", "c1"): "editor"})
    with pytest.raises(Forbidden):
        await resolve_access(CLIENT_MANAGER, _ctx(_user(), client_id="c1"), store)


@pytest.mark.asyncio
@pytest.mark.parametrize("plan", ["free", "startup"])
async def test_premium_tier_rejects_low_plans_for_members(plan):
    store = FakeStore(memberships={("u1", "c1"): "editor"}, plans={"c1": plan})
    with pytest.raises(PreconditionFailed) as exc:
        await resolve_access(PREMIUM_CLIENT, _ctx(_user(), client_id="c1"), store)
    assert exc.value.code == "GRC-BILL-001"


@pytest.mark.asyncio
@pytest.mark.parametrize("plan", ["pro", "enterprise"])
async def test_premium_tier_accepts_paid_plans(plan):
    store = FakeStore(memberships={("u1", "c1"): "viewer"}, plans={"c1": plan})
    ctx = await resolve_access(PREMIUM_CLIENT, _ctx(_user(), client_id="c1"), store)
    assert ctx.is_premium


@pytest.mark.asyncio
@pytest.mark.parametrize("role", ["owner", "admin"])
async def test_premium_tier_bypassed_by_tenant_managers(role):
    store = FakeStore(memberships={("u1", "c1"): role}, plans={"c1": "free"})
    ctx = await resolve_access(PREMIUM_CLIENT, _ctx(_user(), client_id="c1"), store)
    assert ctx.is_premium


@pytest.mark.asyncio
async def test_premium_tier_bypassed_by_elevated_identity():
    ctx = await resolve_access(PREMIUM_CLIENT, _ctx(_user(role="super_admin"), client_id="c1"), FakeStore())
    assert ctx.is_premium


@pytest.mark.asyncio
async def test_premium_tier_missing_client_is_not_found():
    store = FakeStore(memberships={("u1", "c1"): "editor"})
    with pytest.raises(NotFound):
        await resolve_access(PREMIUM_CLIENT, _ctx(_user(), client_id="c1"), store)


@pytest.mark.asyncio
async def test_premium_lookup_failure_is_internal_error():
    store = FakeStore(memberships={("u1", "c1"): "editor"}, fail_plan_lookup=True)
    with pytest.raises(InternalError):
        await resolve_access(PREMIUM_CLIENT, _ctx(_user(), client_id="c1"), store)


@pytest.mark.asyncio
async def test_mfa_mandate_rejects_aal1_session():
    store = FakeStore(memberships={("u1", "c1"): "editor"}, mfa={"c1": True})
    with pytest.raises(PreconditionFailed) as exc:
        await resolve_access(CLIENT.with_mfa(), _ctx(_user(), client_id="c1", aal="aal1"), store)
    assert exc.value.code == "GRC-AUTH-006"


@pytest.mark.asyncio
async def test_mfa_mandate_accepts_aal2_session():
    store = FakeStore(memberships={("u1", "c1"): "editor"}, mfa={"c1": True})
    ctx = await resolve_access(CLIENT.with_mfa(), _ctx(_user(), client_id="c1", aal="aal2"), store)
    assert ctx.aal == "aal2"


@pytest.mark.asyncio
async def test_mfa_check_skipped_without_client():
    policy = AccessPolicy("mfa_only", authenticated=True, mfa=True)
    ctx = await resolve_access(policy, _ctx(_user(role="admin")), FakeStore(mfa={"c1": True}))
    assert ctx.client_id is None


@pytest.mark.asyncio
async def test_first_failing_check_wins():
    # Viewer on a free plan: the editor check fails before the plan is consulted
    store = FakeStore(memberships={("u1", "c1"): "viewer"}, plans={"c1": "free"})
    policy = AccessPolicy("editor_premium", tenant=True, editor=True, premium=True)
    with pytest.raises(Forbidden):
        await resolve_access(policy, _ctx(_user(), client_id="c1"), store)


def test_policy_chain_order():
    policy = AccessPolicy("everything", admin=True, tenant=True, editor=True, manager=True, premium=True, mfa=True)
    names = [check.__name__ for check in policy.chain()]
    assert names == [
        "check_authenticated", "check_admin", "check_tenant", "check_editor",
        "check_manager", "check_premium", "check_mfa",
    ]
    assert PUBLIC.chain() == []


def test_tenant_id_requires_client():
    with pytest.raises(Forbidden):
        tenant_id(AccessContext(user=_user(role="admin")))
    assert tenant_id(AccessContext(user=_user(), client_id="c1")) == "c1"


# ============================================================
# SQL STORE
# ============================================================

@pytest.mark.asyncio
async def test_sql_store_lookups(db_session, tenant, editor_user):
    store = SqlAccessStore(db_session)
    assert await store.get_membership_role(editor_user.id, tenant.id) == "editor"
    assert await store.get_membership_role(editor_user.id, "missing") is None
    assert await store.get_plan_tier(tenant.id) == PlanTier.FREE.value
    assert await store.get_plan_tier("missing") is None
    assert await store.get_require_mfa(tenant.id) is False


# ============================================================
# HTTP
# ============================================================

@pytest.mark.asyncio
async def test_http_anonymous_is_401(client: AsyncClient, tenant):
    resp = await client.get("/api/v1/policies", params={"client_id": tenant.id})
    assert resp.status_code == 401
    body = resp.json()
    assert body["code"] == "GRC-AUTH-001"
    assert body["request_id"]


@pytest.mark.asyncio
async def test_http_client_id_from_header(client: AsyncClient, tenant, viewer_user):
    resp = await client.get("/api/v1/policies", headers=get_auth_headers(viewer_user, client_id=tenant.id))
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_http_client_id_from_query(client: AsyncClient, tenant, viewer_user):
    resp = await client.get(
        "/api/v1/policies", params={"client_id": tenant.id}, headers=get_auth_headers(viewer_user),
    )
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_http_client_id_from_body(client: AsyncClient, tenant, editor_user):
    resp = await client.post(
        "/api/v1/policies",
        json={"client_id": tenant.id, "name": "Access Control Policy"},
        headers=get_auth_headers(editor_user),
    )
    assert resp.status_code == 200
    assert resp.json()["client_id"] == tenant.id


@pytest.mark.asyncio
async def test_http_input_field_beats_header(client: AsyncClient, db_session, tenant, viewer_user):
    other = await make_client(db_session, "Other Co")
    # The header names a client the viewer cannot see; the query wins
    headers = get_auth_headers(viewer_user, client_id=other.id)
    resp = await client.get("/api/v1/policies", params={"client_id": tenant.id}, headers=headers)
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_http_missing_client_id_is_403(client: AsyncClient, viewer_user):
    resp = await client.get("/api/v1/policies", headers=get_auth_headers(viewer_user))
    assert resp.status_code == 403
    assert resp.json()["code"] == "GRC-AUTH-003"


@pytest.mark.asyncio
async def test_http_elevated_without_client_id_is_403(client: AsyncClient, admin_user):
    resp = await client.get("/api/v1/policies", headers=get_auth_headers(admin_user))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_http_non_member_is_403(client: AsyncClient, tenant, outsider):
    resp = await client.get("/api/v1/policies", headers=get_auth_headers(outsider, client_id=tenant.id))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_http_viewer_cannot_write(client: AsyncClient, tenant, viewer_user):
    resp = await client.post(
        "/api/v1/policies", json={"name": "Nope"}, headers=get_auth_headers(viewer_user, client_id=tenant.id),
    )
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Read-only access"


@pytest.mark.asyncio
async def test_http_premium_gate_is_412(client: AsyncClient, tenant, editor_user):
    resp = await client.get("/api/v1/vendors", headers=get_auth_headers(editor_user, client_id=tenant.id))
    assert resp.status_code == 412
    assert resp.json()["code"] == "GRC-BILL-001"


@pytest.mark.asyncio
async def test_http_mfa_gate_is_412(client: AsyncClient, db_session, mfa_tenant, editor_user):
    await add_membership(db_session, editor_user, mfa_tenant, ClientRole.EDITOR)
    create = await client.post(
        "/api/v1/policies", json={"name": "Key Management"},
        headers=get_auth_headers(editor_user, client_id=mfa_tenant.id),
    )
    policy_id = create.json()["id"]

    resp = await client.post(
        f"/api/v1/policies/{policy_id}/approve",
        headers=get_auth_headers(editor_user, client_id=mfa_tenant.id),
    )
    assert resp.status_code == 412
    assert resp.json()["code"] == "GRC-AUTH-006"

    resp = await client.post(
        f"/api/v1/policies/{policy_id}/approve",
        headers=get_auth_headers(editor_user, aal=AuthAssurance.AAL2, client_id=mfa_tenant.id),
    )
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_http_invalid_token_is_401(client: AsyncClient):
    resp = await client.get("/api/v1/clients", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 401
    assert resp.json()["code"] == "GRC-AUTH-002"
