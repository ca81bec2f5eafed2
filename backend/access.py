"""
Access tiers for every API procedure.

A procedure declares an AccessPolicy; the policy expands into an ordered
chain of checks that run before the handler:

    authenticated -> admin -> tenant -> editor -> manager -> premium -> mfa

Each check receives the AccessContext built so far and either returns it
(possibly enriched with the tenant role or premium flag) or raises one of
the taxonomy errors from errors.py. Lookups go through an AccessStore so the
chain itself does not depend on FastAPI or SQLAlchemy.
"""

import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, List, Optional, Protocol

from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, get_optional_user
from database import get_db_session
from errors import Forbidden, GRCError, InternalError, NotFound, PreconditionFailed, Unauthorized
from models import AuthAssurance, Client, ClientMembership, ClientRole, PlanTier, UserRole
from telemetry import span

logger = logging.getLogger("grc.access")

CLIENT_ID_HEADER = "X-Client-ID"

# Global roles that bypass tenant membership
ELEVATED_ROLES = frozenset({UserRole.SUPER_ADMIN.value, UserRole.ADMIN.value, UserRole.OWNER.value})
EDITOR_ROLES = frozenset({ClientRole.OWNER.value, ClientRole.ADMIN.value, ClientRole.EDITOR.value})
MANAGER_ROLES = frozenset({ClientRole.OWNER.value, ClientRole.ADMIN.value})
PREMIUM_TIERS = frozenset({PlanTier.PRO.value, PlanTier.ENTERPRISE.value})


def _value(v) -> Optional[str]:
    if v is None:
        return None
    return v.value if hasattr(v, "value") else str(v)


# ============================================================
# CONTEXT & STORE
# ============================================================

@dataclass
class AccessContext:
    user: Optional[CurrentUser]
    client_id: Optional[str] = None
    client_role: Optional[str] = None
    aal: Optional[str] = None
    is_premium: bool = False

    @property
    def is_elevated(self) -> bool:
        return self.user is not None and self.user.role in ELEVATED_ROLES

    @property
    def has_full_access(self) -> bool:
        """Global elevated identity or tenant owner/admin"""
        return self.is_elevated or self.client_role in MANAGER_ROLES


class AccessStore(Protocol):
    async def get_membership_role(self, user_id: str, client_id: str) -> Optional[str]: ...

    async def get_plan_tier(self, client_id: str) -> Optional[str]: ...

    async def get_require_mfa(self, client_id: str) -> bool: ...


class SqlAccessStore:
    """AccessStore backed by the request's database session"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_membership_role(self, user_id: str, client_id: str) -> Optional[str]:
        stmt = (
            select(ClientMembership.role)
            .join(Client, Client.id == ClientMembership.client_id)
            .where(
                ClientMembership.user_id == user_id,
                ClientMembership.client_id == client_id,
                Client.deleted_at.is_(None),
            )
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return _value(result.scalar_one_or_none())

    async def get_plan_tier(self, client_id: str) -> Optional[str]:
        result = await self.db.execute(select(Client.plan_tier).where(Client.id == client_id))
        return _value(result.scalar_one_or_none())

    async def get_require_mfa(self, client_id: str) -> bool:
        result = await self.db.execute(select(Client.require_mfa).where(Client.id == client_id))
        return bool(result.scalar_one_or_none())


# ============================================================
# CHECKS
# ============================================================

Check = Callable[[AccessContext, AccessStore], Awaitable[AccessContext]]


async def check_authenticated(ctx: AccessContext, store: AccessStore) -> AccessContext:
    if ctx.user is None:
        raise Unauthorized()
    return ctx


async def check_admin(ctx: AccessContext, store: AccessStore) -> AccessContext:
    if not ctx.is_elevated:
        raise Forbidden("Admin access required")
    return ctx


async def check_tenant(ctx: AccessContext, store: AccessStore) -> AccessContext:
    if ctx.is_elevated:
        return replace(ctx, client_role=ClientRole.OWNER.value)

    if not ctx.client_id:
        raise Forbidden("Client ID is required for this operation")

    role = await store.get_membership_role(ctx.user.id, ctx.client_id)
    if role is None:
        raise Forbidden("No access to this client workspace")
    return replace(ctx, client_role=role)


async def check_editor(ctx: AccessContext, store: AccessStore) -> AccessContext:
    if ctx.client_role not in EDITOR_ROLES:
        raise Forbidden("Read-only access")
    return ctx


async def check_manager(ctx: AccessContext, store: AccessStore) -> AccessContext:
    if ctx.client_role not in MANAGER_ROLES:
        raise Forbidden("Owner or admin access required")
    return ctx


async def check_premium(ctx: AccessContext, store: AccessStore) -> AccessContext:
    if ctx.has_full_access:
        return replace(ctx, is_premium=True)

    try:
        tier = await store.get_plan_tier(ctx.client_id)
    except SQLAlchemyError as e:
        logger.error(f"Plan lookup failed for client {ctx.client_id}: {e}")
        raise InternalError("Failed to verify subscription status")

    if tier is None:
        raise NotFound("Client not found")
    if tier not in PREMIUM_TIERS:
        logger.info(f"Premium feature denied for client {ctx.client_id} on plan {tier}")
        raise PreconditionFailed(
            "This feature requires a Pro or Enterprise subscription",
            code="GRC-BILL-001",
        )
    return replace(ctx, is_premium=True)


async def check_mfa(ctx: AccessContext, store: AccessStore) -> AccessContext:
    if not ctx.client_id:
        return ctx
    if await store.get_require_mfa(ctx.client_id) and ctx.aal != AuthAssurance.AAL2.value:
        raise PreconditionFailed("Multi-factor authentication required")
    return ctx


# ============================================================
# POLICIES
# ============================================================

@dataclass(frozen=True)
class AccessPolicy:
    name: str
    authenticated: bool = False
    admin: bool = False
    tenant: bool = False
    editor: bool = False
    manager: bool = False
    premium: bool = False
    mfa: bool = False

    @property
    def scoped(self) -> bool:
        return self.tenant or self.editor or self.manager or self.premium or self.mfa

    def chain(self) -> List[Check]:
        steps: List[Check] = []
        if self.authenticated or self.admin or self.scoped:
            steps.append(check_authenticated)
        if self.admin:
            steps.append(check_admin)
        if self.scoped:
            steps.append(check_tenant)
        if self.editor:
            steps.append(check_editor)
        if self.manager:
            steps.append(check_manager)
        if self.premium:
            steps.append(check_premium)
        if self.mfa:
            steps.append(check_mfa)
        return steps

    def with_mfa(self) -> "AccessPolicy":
        return replace(self, name=f"{self.name}+mfa", mfa=True)


PUBLIC = AccessPolicy("public")
PROTECTED = AccessPolicy("protected", authenticated=True)
CLIENT = AccessPolicy("client", tenant=True)
CLIENT_EDITOR = AccessPolicy("client_editor", tenant=True, editor=True)
CLIENT_MANAGER = AccessPolicy("client_manager", tenant=True, manager=True)
PREMIUM_CLIENT = AccessPolicy("premium_client", tenant=True, premium=True)
PREMIUM_CLIENT_EDITOR = AccessPolicy("premium_client_editor", tenant=True, editor=True, premium=True)
ADMIN = AccessPolicy("admin", authenticated=True, admin=True)


async def resolve_access(policy: AccessPolicy, ctx: AccessContext, store: AccessStore) -> AccessContext:
    """Run the policy's checks in order; the first failure wins."""
    for check in policy.chain():
        ctx = await check(ctx, store)
    return ctx


# ============================================================
# FASTAPI INTEGRATION
# ============================================================

async def resolve_client_id(request: Request) -> Optional[str]:
    """Tenant id from the call's input (path, query, JSON body), then the header."""
    value = request.path_params.get("client_id") or request.query_params.get("client_id")

    if not value and request.method in ("POST", "PUT", "PATCH"):
        if request.headers.get("content-type", "").startswith("application/json") and await request.body():
            try:
                body = await request.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                value = body.get("client_id")

    if not value:
        value = request.headers.get(CLIENT_ID_HEADER)
    return str(value) if value else None


def tenant_id(ctx: AccessContext) -> str:
    """The resolved tenant for a handler that needs one.

    Elevated callers pass the tenant check without naming a client, so a
    handler that reads or writes tenant rows still needs the id.
    """
    if not ctx.client_id:
        raise Forbidden("Client ID is required for this operation")
    return ctx.client_id


def require_access(policy: AccessPolicy):
    """Dependency factory: run the access chain for `policy`"""
    async def _dependency(
        request: Request,
        user: Optional[CurrentUser] = Depends(get_optional_user),
        db: AsyncSession = Depends(get_db_session),
    ) -> AccessContext:
        ctx = AccessContext(
            user=user,
            client_id=await resolve_client_id(request),
            aal=user.aal if user else None,
        )
        try:
            with span("access.resolve", **{"access.tier": policy.name, "access.client_id": ctx.client_id}):
                return await resolve_access(policy, ctx, SqlAccessStore(db))
        except GRCError as e:
            logger.info(
                f"Denied {request.method} {request.url.path} tier={policy.name} "
                f"user={user.id if user else None} client={ctx.client_id}: {e.detail}"
            )
            raise
    return _dependency


public = require_access(PUBLIC)
protected = require_access(PROTECTED)
client_scoped = require_access(CLIENT)
client_editor = require_access(CLIENT_EDITOR)
client_manager = require_access(CLIENT_MANAGER)
premium_client = require_access(PREMIUM_CLIENT)
premium_editor = require_access(PREMIUM_CLIENT_EDITOR)
admin_only = require_access(ADMIN)
mfa_required = require_access(CLIENT.with_mfa())
