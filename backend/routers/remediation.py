# routers/remediation.py - Remediation tasks raised against client controls
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access import AccessContext, client_scoped, client_editor, tenant_id
from audit import record_audit, EntityCreated, EntityUpdated, EntityDeleted, StatusChanged
from database import get_db_session
from errors import NotFound
from models import ClientControl, RemediationTask, RemediationStatus, TaskPriority, User
from routers.common import ts, val, get_scoped_or_404, apply_updates

router = APIRouter(prefix="/api/v1/remediation", tags=["Remediation"])


class RemediationCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    client_control_id: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    status: RemediationStatus = RemediationStatus.OPEN
    assignee_id: Optional[str] = None
    due_date: Optional[datetime] = None


class RemediationUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = None
    client_control_id: Optional[str] = None
    priority: Optional[TaskPriority] = None
    status: Optional[RemediationStatus] = None
    assignee_id: Optional[str] = None
    due_date: Optional[datetime] = None


class RemediationOut(BaseModel):
    id: str
    client_id: str
    client_control_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    priority: str
    status: str
    assignee_id: Optional[str] = None
    assignee_name: Optional[str] = None
    due_date: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def _task_out(t: RemediationTask) -> RemediationOut:
    return RemediationOut(
        id=t.id, client_id=t.client_id, client_control_id=t.client_control_id, title=t.title,
        description=t.description, priority=val(t.priority), status=val(t.status),
        assignee_id=t.assignee_id, assignee_name=t.assignee.display_name if t.assignee else None,
        due_date=ts(t.due_date), created_at=ts(t.created_at), updated_at=ts(t.updated_at),
    )


async def _check_links(db: AsyncSession, client_id: str, client_control_id: Optional[str], assignee_id: Optional[str]) -> None:
    if client_control_id:
        await get_scoped_or_404(db, ClientControl, client_control_id, client_id, "Client control")
    if assignee_id:
        found = await db.execute(select(User.id).where(User.id == assignee_id, User.deleted_at.is_(None)))
        if found.scalar_one_or_none() is None:
            raise NotFound("Assignee not found")


@router.get("", response_model=List[RemediationOut])
async def list_remediation(
    ctx: AccessContext = Depends(client_scoped),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[RemediationStatus] = None,
    assignee_id: Optional[str] = None,
):
    client_id = tenant_id(ctx)
    stmt = select(RemediationTask).where(RemediationTask.client_id == client_id).order_by(RemediationTask.created_at.desc())
    if status is not None:
        stmt = stmt.where(RemediationTask.status == status)
    if assignee_id:
        stmt = stmt.where(RemediationTask.assignee_id == assignee_id)
    result = await db.execute(stmt)
    return [_task_out(t) for t in result.unique().scalars().all()]


@router.post("", response_model=RemediationOut)
async def create_remediation(
    data: RemediationCreate,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    await _check_links(db, client_id, data.client_control_id, data.assignee_id)
    task = RemediationTask(client_id=client_id, **data.model_dump())
    db.add(task)
    await db.flush()
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="create", entity_type="remediation_task",
        entity_id=task.id, details=EntityCreated(name=task.title), request=request,
    )
    await db.commit()
    task = await get_scoped_or_404(db, RemediationTask, task.id, client_id, "Remediation task")
    return _task_out(task)


@router.patch("/{task_id}", response_model=RemediationOut)
async def update_remediation(
    task_id: str,
    data: RemediationUpdate,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    task = await get_scoped_or_404(db, RemediationTask, task_id, client_id, "Remediation task")
    await _check_links(db, client_id, data.client_control_id, data.assignee_id)
    old_status = val(task.status)
    fields = apply_updates(task, data)

    if data.status is not None and data.status.value != old_status:
        details = StatusChanged(from_status=old_status, to_status=data.status.value)
    else:
        details = EntityUpdated(fields=fields)
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="update", entity_type="remediation_task",
        entity_id=task.id, details=details, request=request,
    )
    await db.commit()
    task = await get_scoped_or_404(db, RemediationTask, task_id, client_id, "Remediation task")
    return _task_out(task)


@router.delete("/{task_id}")
async def delete_remediation(
    task_id: str,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    task = await get_scoped_or_404(db, RemediationTask, task_id, client_id, "Remediation task")
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="delete", entity_type="remediation_task",
        entity_id=task.id, details=EntityDeleted(name=task.title), request=request,
    )
    await db.delete(task)
    await db.commit()
    return {"status": "deleted", "task_id": task_id}
