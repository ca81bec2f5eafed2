# routers/clients.py - Client (tenant) workspaces and their members
from typing import Optional, List

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from access import (
    AccessContext, CLIENT_MANAGER, protected, client_scoped, client_editor,
    client_manager, admin_only, require_access,
)
from audit import (
    record_audit, EntityCreated, EntityUpdated, EntityDeleted, StatusChanged, MembershipChanged,
)
from database import get_db_session
from errors import Conflict, NotFound
from models import Client, ClientMembership, ClientRole, PlanTier, User, AuditSeverity, utcnow
from routers.common import ts, val, apply_updates

router = APIRouter(prefix="/api/v1/clients", tags=["Clients"])

# Changing security settings needs a manager on an aal2 session when the
# client already mandates MFA
security_manager = require_access(CLIENT_MANAGER.with_mfa())


# --- Schemas ---

class ClientOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    industry: Optional[str] = None
    size: Optional[str] = None
    status: str
    plan_tier: str
    require_mfa: bool
    primary_contact_name: Optional[str] = None
    primary_contact_email: Optional[str] = None
    member_count: int = 0
    my_role: Optional[str] = None
    created_at: Optional[str] = None


class ClientCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)
    description: Optional[str] = None
    industry: Optional[str] = None
    size: Optional[str] = None
    primary_contact_name: Optional[str] = None
    primary_contact_email: Optional[EmailStr] = None


class ClientUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=200)
    description: Optional[str] = None
    industry: Optional[str] = None
    size: Optional[str] = None
    status: Optional[str] = None
    primary_contact_name: Optional[str] = None
    primary_contact_email: Optional[EmailStr] = None


class SecuritySettings(BaseModel):
    require_mfa: bool


class PlanChange(BaseModel):
    plan_tier: PlanTier


class MemberAdd(BaseModel):
    email: EmailStr
    role: ClientRole = ClientRole.VIEWER


class MemberUpdate(BaseModel):
    role: ClientRole


class MemberOut(BaseModel):
    user_id: str
    email: str
    display_name: str
    role: str
    joined_at: Optional[str] = None


# --- Helpers ---

async def _get_client(client_id: str, db: AsyncSession) -> Client:
    stmt = select(Client).where(Client.id == client_id, Client.deleted_at.is_(None))
    result = await db.execute(stmt)
    client = result.scalar_one_or_none()
    if not client:
        raise NotFound("Client not found")
    return client


async def _member_count(client_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(ClientMembership.id)).where(ClientMembership.client_id == client_id)
    )
    return result.scalar() or 0


async def _client_out(client: Client, db: AsyncSession, my_role: Optional[str] = None) -> ClientOut:
    return ClientOut(
        id=client.id,
        name=client.name,
        description=client.description,
        industry=client.industry,
        size=client.size,
        status=client.status or "active",
        plan_tier=val(client.plan_tier),
        require_mfa=bool(client.require_mfa),
        primary_contact_name=client.primary_contact_name,
        primary_contact_email=client.primary_contact_email,
        member_count=await _member_count(client.id, db),
        my_role=my_role,
        created_at=ts(client.created_at),
    )


async def _get_membership(client_id: str, user_id: str, db: AsyncSession) -> ClientMembership:
    stmt = select(ClientMembership).where(
        ClientMembership.client_id == client_id, ClientMembership.user_id == user_id,
    )
    result = await db.execute(stmt)
    membership = result.scalar_one_or_none()
    if not membership:
        raise NotFound("Member not found")
    return membership


async def _ensure_other_owner(client_id: str, user_id: str, db: AsyncSession) -> None:
    """A client always keeps at least one owner"""
    stmt = select(func.count(ClientMembership.id)).where(
        ClientMembership.client_id == client_id,
        ClientMembership.role == ClientRole.OWNER,
        ClientMembership.user_id != user_id,
    )
    if not (await db.execute(stmt)).scalar():
        raise Conflict("A client must keep at least one owner")


# --- Clients ---

@router.get("", response_model=List[ClientOut])
async def list_clients(
    ctx: AccessContext = Depends(protected),
    db: AsyncSession = Depends(get_db_session),
    limit: int = Query(default=50, le=200),
):
    """Clients the caller belongs to (elevated identities see all)"""
    if ctx.is_elevated:
        stmt = (
            select(Client)
            .where(Client.deleted_at.is_(None))
            .order_by(Client.created_at.desc())
            .limit(limit)
        )
        rows = [(c, ClientRole.OWNER.value) for c in (await db.execute(stmt)).scalars().all()]
    else:
        stmt = (
            select(Client, ClientMembership.role)
            .join(ClientMembership, ClientMembership.client_id == Client.id)
            .where(ClientMembership.user_id == ctx.user.id, Client.deleted_at.is_(None))
            .order_by(Client.created_at.desc())
            .limit(limit)
        )
        rows = [(c, val(role)) for c, role in (await db.execute(stmt)).all()]

    return [await _client_out(c, db, role) for c, role in rows]


@router.post("", response_model=ClientOut)
async def create_client(
    data: ClientCreate,
    request: Request,
    ctx: AccessContext = Depends(protected),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a client workspace; the creator becomes its owner"""
    client = Client(**data.model_dump())
    db.add(client)
    await db.flush()

    db.add(ClientMembership(user_id=ctx.user.id, client_id=client.id, role=ClientRole.OWNER))
    record_audit(
        db, user_id=ctx.user.id, client_id=client.id, action="create", entity_type="client",
        entity_id=client.id, details=EntityCreated(name=client.name), request=request,
    )
    await db.commit()
    await db.refresh(client)
    return await _client_out(client, db, ClientRole.OWNER.value)


@router.get("/{client_id}", response_model=ClientOut)
async def get_client(
    client_id: str,
    ctx: AccessContext = Depends(client_scoped),
    db: AsyncSession = Depends(get_db_session),
):
    client = await _get_client(client_id, db)
    return await _client_out(client, db, ctx.client_role)


@router.patch("/{client_id}", response_model=ClientOut)
async def update_client(
    client_id: str,
    data: ClientUpdate,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    """Update the client profile"""
    client = await _get_client(client_id, db)
    fields = apply_updates(client, data)
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="update", entity_type="client",
        entity_id=client_id, details=EntityUpdated(fields=fields), request=request,
    )
    await db.commit()
    await db.refresh(client)
    return await _client_out(client, db, ctx.client_role)


@router.put("/{client_id}/security", response_model=ClientOut)
async def update_security_settings(
    client_id: str,
    data: SecuritySettings,
    request: Request,
    ctx: AccessContext = Depends(security_manager),
    db: AsyncSession = Depends(get_db_session),
):
    """Turn the client's MFA mandate on or off"""
    client = await _get_client(client_id, db)
    previous = bool(client.require_mfa)
    client.require_mfa = data.require_mfa
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="update_security", entity_type="client",
        entity_id=client_id, severity=AuditSeverity.WARNING, request=request,
        details=StatusChanged(
            from_status="mfa_required" if previous else "mfa_optional",
            to_status="mfa_required" if data.require_mfa else "mfa_optional",
        ),
    )
    await db.commit()
    await db.refresh(client)
    return await _client_out(client, db, ctx.client_role)


@router.put("/{client_id}/plan", response_model=ClientOut)
async def change_plan(
    client_id: str,
    data: PlanChange,
    request: Request,
    ctx: AccessContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db_session),
):
    """Move a client to another plan tier (platform admins)"""
    client = await _get_client(client_id, db)
    previous = val(client.plan_tier)
    client.plan_tier = data.plan_tier
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="change_plan", entity_type="client",
        entity_id=client_id, details=StatusChanged(from_status=previous, to_status=data.plan_tier.value),
        request=request,
    )
    await db.commit()
    await db.refresh(client)
    return await _client_out(client, db, ClientRole.OWNER.value)


@router.delete("/{client_id}")
async def delete_client(
    client_id: str,
    request: Request,
    ctx: AccessContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db_session),
):
    """Soft-delete a client workspace"""
    client = await _get_client(client_id, db)
    client.deleted_at = utcnow()
    client.status = "archived"
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="delete", entity_type="client",
        entity_id=client_id, details=EntityDeleted(name=client.name),
        severity=AuditSeverity.CRITICAL, request=request,
    )
    await db.commit()
    return {"status": "deleted", "client_id": client_id}


# --- Members ---

@router.get("/{client_id}/members", response_model=List[MemberOut])
async def list_members(
    client_id: str,
    ctx: AccessContext = Depends(client_scoped),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = (
        select(ClientMembership, User)
        .join(User, User.id == ClientMembership.user_id)
        .where(ClientMembership.client_id == client_id, User.deleted_at.is_(None))
        .order_by(ClientMembership.joined_at.asc())
    )
    rows = (await db.execute(stmt)).all()
    return [
        MemberOut(
            user_id=u.id, email=u.email, display_name=u.display_name or "",
            role=val(m.role), joined_at=ts(m.joined_at),
        )
        for m, u in rows
    ]


@router.post("/{client_id}/members", response_model=MemberOut)
async def add_member(
    client_id: str,
    data: MemberAdd,
    request: Request,
    ctx: AccessContext = Depends(client_manager),
    db: AsyncSession = Depends(get_db_session),
):
    """Grant an existing user a role in this client"""
    await _get_client(client_id, db)
    result = await db.execute(select(User).where(User.email == data.email, User.deleted_at.is_(None)))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFound("User not found")

    existing = await db.execute(select(ClientMembership.id).where(
        ClientMembership.client_id == client_id, ClientMembership.user_id == user.id,
    ))
    if existing.scalar_one_or_none():
        raise Conflict("User is already a member of this client")

    membership = ClientMembership(user_id=user.id, client_id=client_id, role=data.role)
    db.add(membership)
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="add_member", entity_type="client_membership",
        entity_id=user.id, details=MembershipChanged(member_id=user.id, role=data.role.value),
        request=request,
    )
    await db.commit()
    await db.refresh(membership)
    return MemberOut(
        user_id=user.id, email=user.email, display_name=user.display_name or "",
        role=data.role.value, joined_at=ts(membership.joined_at),
    )


@router.patch("/{client_id}/members/{user_id}", response_model=MemberOut)
async def update_member(
    client_id: str,
    user_id: str,
    data: MemberUpdate,
    request: Request,
    ctx: AccessContext = Depends(client_manager),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await _get_membership(client_id, user_id, db)
    if membership.role == ClientRole.OWNER and data.role != ClientRole.OWNER:
        await _ensure_other_owner(client_id, user_id, db)

    membership.role = data.role
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="update_member", entity_type="client_membership",
        entity_id=user_id, details=MembershipChanged(member_id=user_id, role=data.role.value),
        request=request,
    )
    await db.commit()

    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one()
    return MemberOut(
        user_id=user.id, email=user.email, display_name=user.display_name or "",
        role=data.role.value, joined_at=ts(membership.joined_at),
    )


@router.delete("/{client_id}/members/{user_id}")
async def remove_member(
    client_id: str,
    user_id: str,
    request: Request,
    ctx: AccessContext = Depends(client_manager),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await _get_membership(client_id, user_id, db)
    if membership.role == ClientRole.OWNER:
        await _ensure_other_owner(client_id, user_id, db)

    await db.delete(membership)
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="remove_member", entity_type="client_membership",
        entity_id=user_id, details=MembershipChanged(member_id=user_id, role=None),
        severity=AuditSeverity.WARNING, request=request,
    )
    await db.commit()
    return {"status": "removed", "user_id": user_id}
