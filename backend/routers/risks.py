# routers/risks.py - Risk register: assessments and their treatments
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from access import AccessContext, client_scoped, client_editor, tenant_id
from audit import record_audit, EntityCreated, EntityUpdated, EntityDeleted, StatusChanged
from database import get_db_session
from models import RiskAssessment, RiskTreatment, TreatmentType, TreatmentStatus, TaskPriority
from routers.common import ts, val, get_scoped_or_404, apply_updates

router = APIRouter(prefix="/api/v1/risks", tags=["Risk Register"])


def risk_level(score: int) -> str:
    """Band a likelihood x impact score (1-25)"""
    if score < 5:
        return "low"
    if score < 10:
        return "medium"
    if score < 15:
        return "high"
    return "critical"


# ============================================================
# SCHEMAS
# ============================================================

class AssessmentCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None
    likelihood: int = Field(default=1, ge=1, le=5)
    impact: int = Field(default=1, ge=1, le=5)
    status: str = "open"
    assessor: Optional[str] = None


class AssessmentUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=300)
    description: Optional[str] = None
    likelihood: Optional[int] = Field(default=None, ge=1, le=5)
    impact: Optional[int] = Field(default=None, ge=1, le=5)
    status: Optional[str] = None
    assessor: Optional[str] = None


class AssessmentOut(BaseModel):
    id: str
    client_id: str
    title: str
    description: Optional[str] = None
    likelihood: int
    impact: int
    score: int
    level: str
    status: str
    assessor: Optional[str] = None
    treatment_count: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class TreatmentCreate(BaseModel):
    risk_assessment_id: Optional[str] = None
    treatment_type: TreatmentType = TreatmentType.MITIGATE
    strategy: Optional[str] = None
    justification: Optional[str] = None
    owner: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TreatmentStatus = TreatmentStatus.PLANNED
    due_date: Optional[datetime] = None


class TreatmentUpdate(BaseModel):
    treatment_type: Optional[TreatmentType] = None
    strategy: Optional[str] = None
    justification: Optional[str] = None
    owner: Optional[str] = None
    priority: Optional[TaskPriority] = None
    status: Optional[TreatmentStatus] = None
    due_date: Optional[datetime] = None


class TreatmentOut(BaseModel):
    id: str
    client_id: str
    risk_assessment_id: Optional[str] = None
    treatment_type: str
    strategy: Optional[str] = None
    justification: Optional[str] = None
    owner: Optional[str] = None
    priority: str
    status: str
    due_date: Optional[str] = None
    created_at: Optional[str] = None


def _assessment_out(r: RiskAssessment, treatment_count: int = 0) -> AssessmentOut:
    return AssessmentOut(
        id=r.id, client_id=r.client_id, title=r.title, description=r.description,
        likelihood=r.likelihood, impact=r.impact, score=r.score, level=r.level, status=r.status,
        assessor=r.assessor, treatment_count=treatment_count,
        created_at=ts(r.created_at), updated_at=ts(r.updated_at),
    )


def _treatment_out(t: RiskTreatment) -> TreatmentOut:
    return TreatmentOut(
        id=t.id, client_id=t.client_id, risk_assessment_id=t.risk_assessment_id,
        treatment_type=val(t.treatment_type), strategy=t.strategy, justification=t.justification,
        owner=t.owner, priority=val(t.priority), status=val(t.status), due_date=ts(t.due_date),
        created_at=ts(t.created_at),
    )


def _rescore(r: RiskAssessment) -> None:
    r.score = r.likelihood * r.impact
    r.level = risk_level(r.score)


# ============================================================
# ASSESSMENTS
# ============================================================

@router.get("/assessments", response_model=List[AssessmentOut])
async def list_assessments(
    ctx: AccessContext = Depends(client_scoped),
    db: AsyncSession = Depends(get_db_session),
    level: Optional[str] = None,
):
    """Risks for the client, highest score first"""
    client_id = tenant_id(ctx)
    stmt = select(RiskAssessment).where(RiskAssessment.client_id == client_id).order_by(RiskAssessment.score.desc())
    if level:
        stmt = stmt.where(RiskAssessment.level == level)
    risks = (await db.execute(stmt)).scalars().all()

    treatments = await db.execute(
        select(RiskTreatment.risk_assessment_id).where(RiskTreatment.client_id == client_id)
    )
    counts: dict = {}
    for risk_id in treatments.scalars().all():
        counts[risk_id] = counts.get(risk_id, 0) + 1
    return [_assessment_out(r, counts.get(r.id, 0)) for r in risks]


@router.get("/assessments/{risk_id}", response_model=AssessmentOut)
async def get_assessment(
    risk_id: str,
    ctx: AccessContext = Depends(client_scoped),
    db: AsyncSession = Depends(get_db_session),
):
    risk = await get_scoped_or_404(db, RiskAssessment, risk_id, tenant_id(ctx), "Risk assessment")
    count = await db.execute(
        select(func.count(RiskTreatment.id)).where(RiskTreatment.risk_assessment_id == risk.id)
    )
    return _assessment_out(risk, count.scalar_one())


@router.post("/assessments", response_model=AssessmentOut)
async def create_assessment(
    data: AssessmentCreate,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    risk = RiskAssessment(client_id=client_id, **data.model_dump())
    _rescore(risk)
    db.add(risk)
    await db.flush()
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="create", entity_type="risk_assessment",
        entity_id=risk.id, details=EntityCreated(name=risk.title), request=request,
    )
    await db.commit()
    return _assessment_out(risk)


@router.patch("/assessments/{risk_id}", response_model=AssessmentOut)
async def update_assessment(
    risk_id: str,
    data: AssessmentUpdate,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    risk = await get_scoped_or_404(db, RiskAssessment, risk_id, client_id, "Risk assessment")
    fields = apply_updates(risk, data)
    _rescore(risk)
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="update", entity_type="risk_assessment",
        entity_id=risk.id, details=EntityUpdated(fields=fields), request=request,
    )
    await db.commit()
    await db.refresh(risk)
    return _assessment_out(risk)


@router.delete("/assessments/{risk_id}")
async def delete_assessment(
    risk_id: str,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a risk; its treatments are kept but unlinked"""
    client_id = tenant_id(ctx)
    risk = await get_scoped_or_404(db, RiskAssessment, risk_id, client_id, "Risk assessment")
    linked = await db.execute(select(RiskTreatment).where(RiskTreatment.risk_assessment_id == risk.id))
    for t in linked.scalars().all():
        t.risk_assessment_id = None
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="delete", entity_type="risk_assessment",
        entity_id=risk.id, details=EntityDeleted(name=risk.title), request=request,
    )
    await db.flush()
    await db.delete(risk)
    await db.commit()
    return {"status": "deleted", "risk_id": risk_id}


# ============================================================
# TREATMENTS
# ============================================================

@router.get("/treatments", response_model=List[TreatmentOut])
async def list_treatments(
    ctx: AccessContext = Depends(client_scoped),
    db: AsyncSession = Depends(get_db_session),
    risk_assessment_id: Optional[str] = None,
):
    client_id = tenant_id(ctx)
    stmt = select(RiskTreatment).where(RiskTreatment.client_id == client_id).order_by(RiskTreatment.created_at.desc())
    if risk_assessment_id:
        stmt = stmt.where(RiskTreatment.risk_assessment_id == risk_assessment_id)
    result = await db.execute(stmt)
    return [_treatment_out(t) for t in result.scalars().all()]


@router.post("/treatments", response_model=TreatmentOut)
async def create_treatment(
    data: TreatmentCreate,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    if data.risk_assessment_id:
        await get_scoped_or_404(db, RiskAssessment, data.risk_assessment_id, client_id, "Risk assessment")

    treatment = RiskTreatment(client_id=client_id, **data.model_dump())
    db.add(treatment)
    await db.flush()
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="create", entity_type="risk_treatment",
        entity_id=treatment.id, details=EntityCreated(name=treatment.strategy), request=request,
    )
    await db.commit()
    return _treatment_out(treatment)


@router.patch("/treatments/{treatment_id}", response_model=TreatmentOut)
async def update_treatment(
    treatment_id: str,
    data: TreatmentUpdate,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    treatment = await get_scoped_or_404(db, RiskTreatment, treatment_id, client_id, "Risk treatment")
    old_status = val(treatment.status)
    fields = apply_updates(treatment, data)

    if data.status is not None and data.status.value != old_status:
        details = StatusChanged(from_status=old_status, to_status=data.status.value)
    else:
        details = EntityUpdated(fields=fields)
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="update", entity_type="risk_treatment",
        entity_id=treatment.id, details=details, request=request,
    )
    await db.commit()
    await db.refresh(treatment)
    return _treatment_out(treatment)


@router.delete("/treatments/{treatment_id}")
async def delete_treatment(
    treatment_id: str,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    treatment = await get_scoped_or_404(db, RiskTreatment, treatment_id, client_id, "Risk treatment")
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="delete", entity_type="risk_treatment",
        entity_id=treatment.id, details=EntityDeleted(name=treatment.strategy), request=request,
    )
    await db.delete(treatment)
    await db.commit()
    return {"status": "deleted", "treatment_id": treatment_id}
