# routers/privacy.py - Data subject access requests (DSAR)
#
# Each request gets a per-client reference DSAR-{year}-{NNN}, numbered in
# order of creation within the year. The statutory response window is 30
# days from the request date unless the caller sets a due date.
from datetime import datetime, timedelta, timezone
from typing import Optional, List

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from access import AccessContext, client_scoped, client_editor, tenant_id
from audit import record_audit, EntityCreated, EntityUpdated, EntityDeleted, StatusChanged
from database import get_db_session
from errors import Conflict
from models import DsarRequest, DsarType, DsarStatus, TaskPriority, utcnow
from routers.common import ts, val, get_scoped_or_404, apply_updates

router = APIRouter(prefix="/api/v1/privacy", tags=["Privacy"])

RESPONSE_WINDOW_DAYS = 30
CLOSED_STATUSES = (DsarStatus.COMPLETED, DsarStatus.REJECTED)


class DsarCreate(BaseModel):
    request_type: DsarType
    subject_email: EmailStr
    subject_name: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    request_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    notes: Optional[str] = None


class DsarUpdate(BaseModel):
    status: Optional[DsarStatus] = None
    verification_status: Optional[str] = Field(default=None, max_length=50)
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    notes: Optional[str] = None


class DsarOut(BaseModel):
    id: str
    client_id: str
    reference: str
    request_type: str
    status: str
    priority: str
    subject_name: Optional[str] = None
    subject_email: Optional[str] = None
    verification_status: str
    request_date: Optional[str] = None
    due_date: Optional[str] = None
    completed_at: Optional[str] = None
    notes: Optional[str] = None


def _dsar_out(d: DsarRequest) -> DsarOut:
    return DsarOut(
        id=d.id, client_id=d.client_id, reference=d.reference, request_type=val(d.request_type),
        status=val(d.status), priority=val(d.priority), subject_name=d.subject_name,
        subject_email=d.subject_email, verification_status=d.verification_status or "pending",
        request_date=ts(d.request_date), due_date=ts(d.due_date), completed_at=ts(d.completed_at),
        notes=d.notes,
    )


def default_due_date(request_date: datetime) -> datetime:
    return request_date + timedelta(days=RESPONSE_WINDOW_DAYS)


async def next_reference(db: AsyncSession, client_id: str, year: int) -> str:
    """One past the highest number issued this year; gaps from deletes are not reused"""
    prefix = f"DSAR-{year}-"
    stmt = select(DsarRequest.reference).where(
        DsarRequest.client_id == client_id, DsarRequest.reference.like(f"{prefix}%"),
    )
    numbers = [
        int(ref[len(prefix):]) for ref in (await db.execute(stmt)).scalars().all()
        if ref[len(prefix):].isdigit()
    ]
    return f"{prefix}{max(numbers, default=0) + 1:03d}"


@router.get("/dsar", response_model=List[DsarOut])
async def list_requests(
    ctx: AccessContext = Depends(client_scoped),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[DsarStatus] = None,
):
    """Requests for the client, newest first"""
    client_id = tenant_id(ctx)
    stmt = select(DsarRequest).where(DsarRequest.client_id == client_id).order_by(DsarRequest.request_date.desc())
    if status is not None:
        stmt = stmt.where(DsarRequest.status == status)
    result = await db.execute(stmt)
    return [_dsar_out(d) for d in result.scalars().all()]


@router.get("/dsar/{request_id}", response_model=DsarOut)
async def get_request(
    request_id: str,
    ctx: AccessContext = Depends(client_scoped),
    db: AsyncSession = Depends(get_db_session),
):
    dsar = await get_scoped_or_404(db, DsarRequest, request_id, tenant_id(ctx), "Request")
    return _dsar_out(dsar)


@router.post("/dsar", response_model=DsarOut)
async def create_request(
    data: DsarCreate,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    request_date = data.request_date or utcnow()
    if request_date.tzinfo is None:
        request_date = request_date.replace(tzinfo=timezone.utc)

    dsar = DsarRequest(
        client_id=client_id,
        reference=await next_reference(db, client_id, request_date.year),
        request_type=data.request_type,
        status=DsarStatus.NEW,
        priority=data.priority,
        subject_email=data.subject_email,
        subject_name=data.subject_name,
        request_date=request_date,
        due_date=data.due_date or default_due_date(request_date),
        notes=data.notes,
    )
    db.add(dsar)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise Conflict("Request reference already taken, retry the request")

    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="create", entity_type="dsar_request",
        entity_id=dsar.id, details=EntityCreated(name=dsar.reference), request=request,
    )
    await db.commit()
    return _dsar_out(dsar)


@router.patch("/dsar/{request_id}", response_model=DsarOut)
async def update_request(
    request_id: str,
    data: DsarUpdate,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    """Advance a request; closing it stamps completed_at"""
    client_id = tenant_id(ctx)
    dsar = await get_scoped_or_404(db, DsarRequest, request_id, client_id, "Request")
    old_status = val(dsar.status)
    fields = apply_updates(dsar, data)

    if data.status is not None and data.status.value != old_status:
        dsar.completed_at = utcnow() if data.status in CLOSED_STATUSES else None
        details = StatusChanged(from_status=old_status, to_status=data.status.value)
    else:
        details = EntityUpdated(fields=fields)

    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="update", entity_type="dsar_request",
        entity_id=dsar.id, details=details, request=request,
    )
    await db.commit()
    await db.refresh(dsar)
    return _dsar_out(dsar)


@router.delete("/dsar/{request_id}")
async def delete_request(
    request_id: str,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    dsar = await get_scoped_or_404(db, DsarRequest, request_id, client_id, "Request")
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="delete", entity_type="dsar_request",
        entity_id=dsar.id, details=EntityDeleted(name=dsar.reference), request=request,
    )
    await db.delete(dsar)
    await db.commit()
    return {"status": "deleted", "request_id": request_id}
