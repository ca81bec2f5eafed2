# routers/policies.py - Client policies: CRUD, approval and AI drafting
import logging
from datetime import timedelta
from typing import Optional, List

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access import (
    AccessContext, CLIENT_EDITOR, client_scoped, client_editor, premium_editor,
    require_access, tenant_id,
)
from audit import record_audit, EntityCreated, EntityUpdated, EntityDeleted, StatusChanged
from database import get_db_session
from errors import NotFound
from llm import generate_text
from models import Client, Policy, PolicyStatus, utcnow
from routers.common import ts, val, get_scoped_or_404, apply_updates

logger = logging.getLogger("grc.policies")

router = APIRouter(prefix="/api/v1/policies", tags=["Policies"])

approver = require_access(CLIENT_EDITOR.with_mfa())

DEFAULT_SECTIONS = ["Purpose", "Scope", "Roles and Responsibilities", "Policy Statements", "Compliance", "Review"]


# --- Schemas ---

class PolicyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=300)
    content: Optional[str] = None
    status: PolicyStatus = PolicyStatus.DRAFT
    owner: Optional[str] = None


class PolicyUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=300)
    content: Optional[str] = None
    status: Optional[PolicyStatus] = None
    owner: Optional[str] = None


class PolicyGenerate(BaseModel):
    name: str = Field(..., min_length=1, max_length=300)
    sections: List[str] = Field(default_factory=lambda: list(DEFAULT_SECTIONS))
    instructions: Optional[str] = Field(default=None, max_length=4000)
    owner: Optional[str] = None


class PolicyOut(BaseModel):
    id: str
    client_id: str
    name: str
    content: Optional[str] = None
    status: str
    version: int
    owner: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def _policy_out(p: Policy) -> PolicyOut:
    return PolicyOut(
        id=p.id, client_id=p.client_id, name=p.name, content=p.content, status=val(p.status),
        version=p.version or 1, owner=p.owner, approved_by=p.approved_by, approved_at=ts(p.approved_at),
        created_at=ts(p.created_at), updated_at=ts(p.updated_at),
    )


def template_policy(name: str, client: Client, sections: List[str]) -> str:
    """Plain section template used when no model output is available"""
    today = utcnow()
    review = today + timedelta(days=365)
    header = [
        f"# {name}",
        "",
        f"**Organisation:** {client.name}",
        f"**Industry:** {client.industry or '[Industry]'}",
        f"**Effective date:** {today.strftime('%B %d, %Y')}",
        f"**Next review:** {review.strftime('%B %d, %Y')}",
    ]
    body = [
        f"## {section}\n\n[Describe how {client.name} addresses {section.lower()} for this policy.]"
        for section in sections
    ]
    return "\n".join(header) + "\n\n" + "\n\n".join(body)


def stamp_approval(policy: Policy, user_id: str) -> str:
    """Publish the policy as a new approved version; returns the previous status"""
    old_status = val(policy.status)
    policy.status = PolicyStatus.APPROVED
    policy.version = (policy.version or 0) + 1
    policy.approved_by = user_id
    policy.approved_at = utcnow()
    return old_status


# --- Endpoints ---

@router.get("", response_model=List[PolicyOut])
async def list_policies(
    ctx: AccessContext = Depends(client_scoped),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[PolicyStatus] = None,
):
    client_id = tenant_id(ctx)
    stmt = select(Policy).where(Policy.client_id == client_id).order_by(Policy.name)
    if status is not None:
        stmt = stmt.where(Policy.status == status)
    result = await db.execute(stmt)
    return [_policy_out(p) for p in result.scalars().all()]


@router.get("/{policy_id}", response_model=PolicyOut)
async def get_policy(
    policy_id: str,
    ctx: AccessContext = Depends(client_scoped),
    db: AsyncSession = Depends(get_db_session),
):
    policy = await get_scoped_or_404(db, Policy, policy_id, tenant_id(ctx), "Policy")
    return _policy_out(policy)


@router.post("", response_model=PolicyOut)
async def create_policy(
    data: PolicyCreate,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    """New policies start unapproved; approval goes through /approve."""
    client_id = tenant_id(ctx)
    if data.status == PolicyStatus.APPROVED:
        data.status = PolicyStatus.REVIEW
    policy = Policy(client_id=client_id, version=1, **data.model_dump())
    db.add(policy)
    await db.flush()
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="create", entity_type="policy",
        entity_id=policy.id, details=EntityCreated(name=policy.name), request=request,
    )
    await db.commit()
    return _policy_out(policy)


@router.patch("/{policy_id}", response_model=PolicyOut)
async def update_policy(
    policy_id: str,
    data: PolicyUpdate,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    """Edit a policy. Approval goes through /approve so it stays MFA-gated."""
    client_id = tenant_id(ctx)
    policy = await get_scoped_or_404(db, Policy, policy_id, client_id, "Policy")
    if data.status == PolicyStatus.APPROVED and policy.status != PolicyStatus.APPROVED:
        data.status = PolicyStatus.REVIEW

    fields = apply_updates(policy, data)
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="update", entity_type="policy",
        entity_id=policy.id, details=EntityUpdated(fields=fields), request=request,
    )
    await db.commit()
    await db.refresh(policy)
    return _policy_out(policy)


@router.delete("/{policy_id}")
async def delete_policy(
    policy_id: str,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    policy = await get_scoped_or_404(db, Policy, policy_id, client_id, "Policy")
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="delete", entity_type="policy",
        entity_id=policy.id, details=EntityDeleted(name=policy.name), request=request,
    )
    await db.delete(policy)
    await db.commit()
    return {"status": "deleted", "policy_id": policy_id}


@router.post("/{policy_id}/approve", response_model=PolicyOut)
async def approve_policy(
    policy_id: str,
    request: Request,
    ctx: AccessContext = Depends(approver),
    db: AsyncSession = Depends(get_db_session),
):
    """Approve a policy and publish it as a new version"""
    client_id = tenant_id(ctx)
    policy = await get_scoped_or_404(db, Policy, policy_id, client_id, "Policy")
    old_status = stamp_approval(policy, ctx.user.id)
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="approve", entity_type="policy",
        entity_id=policy.id, details=StatusChanged(from_status=old_status, to_status=PolicyStatus.APPROVED.value),
        request=request,
    )
    await db.commit()
    await db.refresh(policy)
    return _policy_out(policy)


@router.post("/generate", response_model=PolicyOut)
async def generate_policy(
    data: PolicyGenerate,
    request: Request,
    ctx: AccessContext = Depends(premium_editor),
    db: AsyncSession = Depends(get_db_session),
):
    """Draft a policy with the configured LLM, falling back to the section template"""
    client_id = tenant_id(ctx)
    client = (await db.execute(select(Client).where(Client.id == client_id))).scalar_one_or_none()
    if not client:
        raise NotFound("Client not found")

    prompt = (
        f"Write a {data.name} for {client.name}"
        f"{f', a company in the {client.industry} industry' if client.industry else ''}. "
        f"Use Markdown with these sections: {', '.join(data.sections)}."
    )
    if data.instructions:
        prompt += f"\nAdditional instructions: {data.instructions}"

    generated = await generate_text(prompt, fallback=template_policy(data.name, client, data.sections))
    logger.info(f"Drafted policy '{data.name}' for client {client_id} via {generated['source']}")

    policy = Policy(
        client_id=client_id, name=data.name, content=generated["content"],
        status=PolicyStatus.DRAFT, version=1, owner=data.owner,
    )
    db.add(policy)
    await db.flush()
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="generate", entity_type="policy",
        entity_id=policy.id, details=EntityCreated(name=policy.name), request=request,
    )
    await db.commit()
    return _policy_out(policy)
