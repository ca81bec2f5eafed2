# routers/controls.py - Control catalog, client controls, compliance score and evidence
import re
from collections import defaultdict
from datetime import datetime
from typing import Optional, List, Dict

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access import AccessContext, protected, admin_only, client_scoped, client_editor, tenant_id
from audit import record_audit, EntityCreated, EntityUpdated, EntityDeleted, StatusChanged
from database import get_db_session
from errors import Conflict, NotFound
from models import Control, ClientControl, Evidence, ControlStatus, EvidenceStatus, utcnow
from routers.common import ts, val, get_scoped_or_404, apply_updates

router = APIRouter(prefix="/api/v1/controls", tags=["Controls"])

# (trigger words found in evidence text, control keywords they point at)
EVIDENCE_KEYWORD_GROUPS = {
    "storage": (
        ("storage", "bucket", "s3", "blob", "backup", "encrypt"),
        ("Encryption at Rest", "Storage", "Access Control"),
    ),
    "identity": (
        ("mfa", "multi-factor", "iam", "sso", "login", "password", "identity"),
        ("MFA", "Multi-factor", "Identification", "Authentication"),
    ),
    "vulnerability": (
        ("vulnerab", "patch", "scan", "intrusion", "ids", "cve", "server"),
        ("Intrusion", "Vulnerability", "Patch"),
    ),
}


def _trigger_pattern(triggers) -> re.Pattern:
    # Short acronyms (s3, iam, ids) must be whole words; longer triggers are stems
    parts = [rf"\b{re.escape(t)}\b" if len(t) <= 3 else re.escape(t) for t in triggers]
    return re.compile("|".join(parts))


TRIGGER_PATTERNS = {group: _trigger_pattern(triggers) for group, (triggers, _) in EVIDENCE_KEYWORD_GROUPS.items()}


# ============================================================
# SCHEMAS
# ============================================================

class ControlCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=300)
    framework: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None


class ControlOut(BaseModel):
    id: str
    code: str
    name: str
    framework: str
    description: Optional[str] = None


class ClientControlCreate(BaseModel):
    control_id: str
    custom_description: Optional[str] = None
    status: ControlStatus = ControlStatus.NOT_IMPLEMENTED
    owner: Optional[str] = None
    due_date: Optional[datetime] = None


class ClientControlUpdate(BaseModel):
    custom_description: Optional[str] = None
    status: Optional[ControlStatus] = None
    owner: Optional[str] = None
    due_date: Optional[datetime] = None


class ClientControlOut(BaseModel):
    id: str
    client_id: str
    control_id: str
    code: Optional[str] = None
    name: Optional[str] = None
    framework: Optional[str] = None
    description: Optional[str] = None
    status: str
    owner: Optional[str] = None
    due_date: Optional[str] = None
    implementation_date: Optional[str] = None
    updated_at: Optional[str] = None


class EvidenceCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None
    evidence_type: Optional[str] = None
    status: EvidenceStatus = EvidenceStatus.PENDING
    owner: Optional[str] = None
    location: Optional[str] = None
    due_date: Optional[datetime] = None


class EvidenceUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=300)
    description: Optional[str] = None
    evidence_type: Optional[str] = None
    status: Optional[EvidenceStatus] = None
    owner: Optional[str] = None
    location: Optional[str] = None
    due_date: Optional[datetime] = None


class EvidenceOut(BaseModel):
    id: str
    client_control_id: str
    title: str
    description: Optional[str] = None
    evidence_type: Optional[str] = None
    status: str
    owner: Optional[str] = None
    location: Optional[str] = None
    due_date: Optional[str] = None
    last_verified_at: Optional[str] = None
    created_at: Optional[str] = None


class EvidenceSuggestRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=5000)


# ============================================================
# HELPERS
# ============================================================

def _control_out(c: Control) -> ControlOut:
    return ControlOut(id=c.id, code=c.code, name=c.name, framework=c.framework, description=c.description)


def _client_control_out(cc: ClientControl) -> ClientControlOut:
    c = cc.control
    return ClientControlOut(
        id=cc.id,
        client_id=cc.client_id,
        control_id=cc.control_id,
        code=c.code if c else None,
        name=c.name if c else None,
        framework=c.framework if c else None,
        description=cc.custom_description or (c.description if c else None),
        status=val(cc.status),
        owner=cc.owner,
        due_date=ts(cc.due_date),
        implementation_date=ts(cc.implementation_date),
        updated_at=ts(cc.updated_at),
    )


def _evidence_out(e: Evidence) -> EvidenceOut:
    return EvidenceOut(
        id=e.id, client_control_id=e.client_control_id, title=e.title, description=e.description,
        evidence_type=e.evidence_type, status=val(e.status), owner=e.owner, location=e.location,
        due_date=ts(e.due_date), last_verified_at=ts(e.last_verified_at), created_at=ts(e.created_at),
    )


def compliance_score(statuses: List[str]) -> int:
    """Percent of applicable controls implemented; 0 with nothing applicable"""
    applicable = [s for s in statuses if s != ControlStatus.NOT_APPLICABLE.value]
    if not applicable:
        return 0
    implemented = sum(1 for s in applicable if s == ControlStatus.IMPLEMENTED.value)
    return round(implemented / len(applicable) * 100)


def match_keyword_groups(text: str) -> List[str]:
    lowered = text.lower()
    return [group for group, pattern in TRIGGER_PATTERNS.items() if pattern.search(lowered)]


# ============================================================
# CATALOG
# ============================================================

@router.get("/catalog", response_model=List[ControlOut])
async def list_catalog(
    ctx: AccessContext = Depends(protected),
    db: AsyncSession = Depends(get_db_session),
    framework: Optional[str] = None,
    limit: int = Query(default=500, le=2000),
):
    stmt = select(Control).order_by(Control.framework, Control.code).limit(limit)
    if framework:
        stmt = stmt.where(Control.framework == framework)
    result = await db.execute(stmt)
    return [_control_out(c) for c in result.scalars().all()]


@router.post("/catalog", response_model=ControlOut)
async def create_catalog_control(
    data: ControlCreate,
    request: Request,
    ctx: AccessContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db_session),
):
    """Add a control to the shared catalog (platform admins)"""
    existing = await db.execute(select(Control.id).where(
        Control.framework == data.framework, Control.code == data.code,
    ))
    if existing.scalar_one_or_none():
        raise Conflict(f"Control {data.code} already exists in {data.framework}")

    control = Control(**data.model_dump())
    db.add(control)
    await db.flush()
    record_audit(
        db, user_id=ctx.user.id, action="create", entity_type="control",
        entity_id=control.id, details=EntityCreated(name=control.code), request=request,
    )
    await db.commit()
    return _control_out(control)


# ============================================================
# CLIENT CONTROLS
# ============================================================

@router.get("/client", response_model=List[ClientControlOut])
async def list_client_controls(
    ctx: AccessContext = Depends(client_scoped),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[ControlStatus] = None,
    framework: Optional[str] = None,
):
    client_id = tenant_id(ctx)
    stmt = select(ClientControl).where(ClientControl.client_id == client_id)
    if status is not None:
        stmt = stmt.where(ClientControl.status == status)
    if framework:
        stmt = stmt.join(Control, Control.id == ClientControl.control_id).where(Control.framework == framework)
    result = await db.execute(stmt)
    return [_client_control_out(cc) for cc in result.unique().scalars().all()]


@router.post("/client", response_model=ClientControlOut)
async def assign_control(
    data: ClientControlCreate,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    """Bring a catalog control into the client's scope"""
    client_id = tenant_id(ctx)
    control = (await db.execute(select(Control).where(Control.id == data.control_id))).scalar_one_or_none()
    if not control:
        raise NotFound("Control not found")

    existing = await db.execute(select(ClientControl.id).where(
        ClientControl.client_id == client_id, ClientControl.control_id == data.control_id,
    ))
    if existing.scalar_one_or_none():
        raise Conflict("Control is already assigned to this client")

    cc = ClientControl(client_id=client_id, **data.model_dump())
    if cc.status == ControlStatus.IMPLEMENTED:
        cc.implementation_date = utcnow()
    db.add(cc)
    await db.flush()
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="create", entity_type="client_control",
        entity_id=cc.id, details=EntityCreated(name=control.code), request=request,
    )
    await db.commit()
    cc = await get_scoped_or_404(db, ClientControl, cc.id, client_id, "Client control")
    return _client_control_out(cc)


@router.patch("/client/{client_control_id}", response_model=ClientControlOut)
async def update_client_control(
    client_control_id: str,
    data: ClientControlUpdate,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    cc = await get_scoped_or_404(db, ClientControl, client_control_id, client_id, "Client control")
    old_status = val(cc.status)
    fields = apply_updates(cc, data)

    if data.status is not None and data.status.value != old_status:
        if data.status == ControlStatus.IMPLEMENTED:
            cc.implementation_date = utcnow()
        details = StatusChanged(from_status=old_status, to_status=data.status.value)
    else:
        details = EntityUpdated(fields=fields)

    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="update", entity_type="client_control",
        entity_id=cc.id, details=details, request=request,
    )
    await db.commit()
    cc = await get_scoped_or_404(db, ClientControl, client_control_id, client_id, "Client control")
    return _client_control_out(cc)


@router.delete("/client/{client_control_id}")
async def delete_client_control(
    client_control_id: str,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    """Remove a control from the client's scope along with its evidence"""
    client_id = tenant_id(ctx)
    cc = await get_scoped_or_404(db, ClientControl, client_control_id, client_id, "Client control")
    evidence = await db.execute(select(Evidence).where(Evidence.client_control_id == cc.id))
    for e in evidence.scalars().all():
        await db.delete(e)
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="delete", entity_type="client_control",
        entity_id=cc.id, details=EntityDeleted(name=cc.control.code if cc.control else None), request=request,
    )
    await db.delete(cc)
    await db.commit()
    return {"status": "deleted", "client_control_id": client_control_id}


# ============================================================
# COMPLIANCE SCORE
# ============================================================

@router.get("/score")
async def get_compliance_score(
    ctx: AccessContext = Depends(client_scoped),
    db: AsyncSession = Depends(get_db_session),
):
    """Overall and per-framework compliance percentage"""
    client_id = tenant_id(ctx)
    stmt = (
        select(Control.framework, ClientControl.status)
        .join(Control, Control.id == ClientControl.control_id)
        .where(ClientControl.client_id == client_id)
    )
    rows = (await db.execute(stmt)).all()

    by_framework: Dict[str, List[str]] = defaultdict(list)
    counts: Dict[str, int] = {s.value: 0 for s in ControlStatus}
    for framework, status in rows:
        by_framework[framework].append(val(status))
        counts[val(status)] += 1

    all_statuses = [s for statuses in by_framework.values() for s in statuses]
    return {
        "client_id": client_id,
        "score": compliance_score(all_statuses),
        "total_controls": len(all_statuses),
        "status_counts": counts,
        "frameworks": {
            fw: {"score": compliance_score(statuses), "total_controls": len(statuses)}
            for fw, statuses in sorted(by_framework.items())
        },
    }


# ============================================================
# EVIDENCE
# ============================================================

@router.get("/client/{client_control_id}/evidence", response_model=List[EvidenceOut])
async def list_evidence(
    client_control_id: str,
    ctx: AccessContext = Depends(client_scoped),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    await get_scoped_or_404(db, ClientControl, client_control_id, client_id, "Client control")
    stmt = (
        select(Evidence)
        .where(Evidence.client_id == client_id, Evidence.client_control_id == client_control_id)
        .order_by(Evidence.created_at.desc())
    )
    result = await db.execute(stmt)
    return [_evidence_out(e) for e in result.scalars().all()]


@router.post("/client/{client_control_id}/evidence", response_model=EvidenceOut)
async def create_evidence(
    client_control_id: str,
    data: EvidenceCreate,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    await get_scoped_or_404(db, ClientControl, client_control_id, client_id, "Client control")
    evidence = Evidence(client_id=client_id, client_control_id=client_control_id, **data.model_dump())
    if evidence.status == EvidenceStatus.VERIFIED:
        evidence.last_verified_at = utcnow()
    db.add(evidence)
    await db.flush()
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="create", entity_type="evidence",
        entity_id=evidence.id, details=EntityCreated(name=evidence.title), request=request,
    )
    await db.commit()
    return _evidence_out(evidence)


@router.patch("/evidence/{evidence_id}", response_model=EvidenceOut)
async def update_evidence(
    evidence_id: str,
    data: EvidenceUpdate,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    evidence = await get_scoped_or_404(db, Evidence, evidence_id, client_id, "Evidence")
    fields = apply_updates(evidence, data)
    if data.status == EvidenceStatus.VERIFIED:
        evidence.last_verified_at = utcnow()
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="update", entity_type="evidence",
        entity_id=evidence.id, details=EntityUpdated(fields=fields), request=request,
    )
    await db.commit()
    await db.refresh(evidence)
    return _evidence_out(evidence)


@router.delete("/evidence/{evidence_id}")
async def delete_evidence(
    evidence_id: str,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    evidence = await get_scoped_or_404(db, Evidence, evidence_id, client_id, "Evidence")
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="delete", entity_type="evidence",
        entity_id=evidence.id, details=EntityDeleted(name=evidence.title), request=request,
    )
    await db.delete(evidence)
    await db.commit()
    return {"status": "deleted", "evidence_id": evidence_id}


@router.post("/evidence/suggest")
async def suggest_evidence_mapping(
    data: EvidenceSuggestRequest,
    ctx: AccessContext = Depends(client_scoped),
    db: AsyncSession = Depends(get_db_session),
):
    """Client controls an evidence description most likely supports.

    The text selects keyword groups; controls whose name or description
    contains one of those groups' keywords are returned.
    """
    client_id = tenant_id(ctx)
    groups = match_keyword_groups(data.text)
    keywords = [kw.lower() for g in groups for kw in EVIDENCE_KEYWORD_GROUPS[g][1]]

    matches: List[ClientControlOut] = []
    if keywords:
        result = await db.execute(select(ClientControl).where(ClientControl.client_id == client_id))
        for cc in result.unique().scalars().all():
            haystack = " ".join(filter(None, [
                cc.control.name if cc.control else None,
                cc.control.description if cc.control else None,
                cc.custom_description,
            ])).lower()
            if any(kw in haystack for kw in keywords):
                matches.append(_client_control_out(cc))

    return {"groups": groups, "controls": matches}
