# routers/board.py - Unified task board across every kind of work item
#
# Project tasks are native cards. Remediation tasks, risk treatments, client
# controls and policies are projected onto the same four columns through
# status_mapping; moving one of those cards writes the mapped status back to
# the source row.
import logging
from datetime import datetime, timezone
from typing import Optional, List

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from access import AccessContext, SqlAccessStore, check_mfa, client_scoped, client_editor, tenant_id
from audit import record_audit, EntityCreated, EntityUpdated, EntityDeleted, StatusChanged
from database import get_db_session
from errors import BadRequest, InternalError, NotFound
from models import (
    ProjectTask, RemediationTask, RiskTreatment, ClientControl, Policy, User,
    BoardStatus, TaskPriority, PolicyStatus,
)
from routers.common import ts, val, get_scoped_or_404, apply_updates
from routers.policies import stamp_approval
from status_mapping import SourceType, to_board_status, from_board_status

logger = logging.getLogger("grc.board")

router = APIRouter(prefix="/api/v1/board", tags=["Task Board"])

POSITION_STEP = 1000


# ============================================================
# SCHEMAS
# ============================================================

class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    status: BoardStatus = BoardStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    assignee_id: Optional[str] = None
    due_date: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = None
    status: Optional[BoardStatus] = None
    priority: Optional[TaskPriority] = None
    assignee_id: Optional[str] = None
    due_date: Optional[datetime] = None
    tags: Optional[List[str]] = None


class CardMove(BaseModel):
    source_type: str = SourceType.PROJECT_TASK.value
    status: BoardStatus
    position: Optional[int] = None


class CardOut(BaseModel):
    id: str
    source_type: str
    source_id: str
    client_id: str
    title: str
    description: Optional[str] = None
    status: str
    priority: str
    due_date: Optional[str] = None
    assignee_id: Optional[str] = None
    assignee_name: str = "Unassigned"
    assignee_initials: str = "NA"
    position: int = 0
    tags: list = []
    can_edit: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

def _initials(name: Optional[str]) -> str:
    return name[:2].upper() if name else "NA"


def _sort_stamp(dt) -> float:
    if dt is None:
        return 0.0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _project_card(t: ProjectTask) -> CardOut:
    name = t.assignee.display_name if t.assignee else None
    return CardOut(
        id=t.id, source_type=SourceType.PROJECT_TASK.value, source_id=t.id, client_id=t.client_id,
        title=t.title, description=t.description,
        status=to_board_status(SourceType.PROJECT_TASK, t.status),
        priority=val(t.priority), due_date=ts(t.due_date),
        assignee_id=t.assignee_id, assignee_name=name or "Unassigned", assignee_initials=_initials(name),
        position=t.position or 0, tags=t.tags or [], can_edit=True,
        created_at=ts(t.created_at), updated_at=ts(t.updated_at),
    )


def _remediation_card(t: RemediationTask) -> CardOut:
    name = t.assignee.display_name if t.assignee else None
    return CardOut(
        id=t.id, source_type=SourceType.REMEDIATION.value, source_id=t.id, client_id=t.client_id,
        title=t.title, description=t.description,
        status=to_board_status(SourceType.REMEDIATION, t.status),
        priority=val(t.priority), due_date=ts(t.due_date),
        assignee_id=t.assignee_id, assignee_name=name or "Unassigned", assignee_initials=_initials(name),
        tags=["Remediation"],
        created_at=ts(t.created_at), updated_at=ts(t.updated_at),
    )


def _treatment_card(t: RiskTreatment) -> CardOut:
    return CardOut(
        id=t.id, source_type=SourceType.RISK_TREATMENT.value, source_id=t.id, client_id=t.client_id,
        title=t.strategy or "Risk Treatment", description=t.justification,
        status=to_board_status(SourceType.RISK_TREATMENT, t.status),
        priority=val(t.priority) or TaskPriority.MEDIUM.value, due_date=ts(t.due_date),
        assignee_name=t.owner or "Unassigned", assignee_initials=_initials(t.owner),
        tags=["Risk"],
        created_at=ts(t.created_at), updated_at=ts(t.updated_at),
    )


def _control_card(cc: ClientControl) -> CardOut:
    control = cc.control
    return CardOut(
        id=cc.id, source_type=SourceType.CONTROL.value, source_id=cc.id, client_id=cc.client_id,
        title=control.name if control else "Control",
        description=cc.custom_description or (control.description if control else None),
        status=to_board_status(SourceType.CONTROL, cc.status),
        # Controls carry no priority of their own
        priority=TaskPriority.MEDIUM.value, due_date=ts(cc.due_date),
        assignee_name=cc.owner or "Unassigned", assignee_initials=_initials(cc.owner),
        tags=["Control", control.framework] if control else ["Control"],
        created_at=ts(cc.created_at), updated_at=ts(cc.updated_at),
    )


def _policy_card(p: Policy) -> CardOut:
    return CardOut(
        id=p.id, source_type=SourceType.POLICY.value, source_id=p.id, client_id=p.client_id,
        title=p.name, description="Policy Document",
        status=to_board_status(SourceType.POLICY, p.status),
        priority=TaskPriority.MEDIUM.value,
        assignee_name=p.owner or "Unassigned", assignee_initials=_initials(p.owner),
        tags=["Policy"],
        created_at=ts(p.created_at), updated_at=ts(p.updated_at),
    )


async def _next_position(db: AsyncSession, client_id: str, status: BoardStatus) -> int:
    """One step past the highest card in the column"""
    stmt = select(func.max(ProjectTask.position)).where(
        ProjectTask.client_id == client_id, ProjectTask.status == status,
    )
    result = await db.execute(stmt)
    return (result.scalar() or 0) + POSITION_STEP


async def _check_assignee(db: AsyncSession, assignee_id: Optional[str]) -> None:
    if assignee_id is None:
        return
    result = await db.execute(select(User.id).where(User.id == assignee_id, User.deleted_at.is_(None)))
    if result.scalar_one_or_none() is None:
        raise NotFound("Assignee not found")


# ============================================================
# ENDPOINTS
# ============================================================

@router.get("/tasks", response_model=List[CardOut])
async def list_cards(
    ctx: AccessContext = Depends(client_scoped),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[BoardStatus] = Query(default=None),
):
    """All work items for the client as board cards.

    Members without owner/admin rights only see project and remediation
    tasks assigned to them.
    """
    client_id = tenant_id(ctx)
    full = ctx.has_full_access

    pt_stmt = select(ProjectTask).where(ProjectTask.client_id == client_id)
    rt_stmt = select(RemediationTask).where(RemediationTask.client_id == client_id)
    if not full:
        pt_stmt = pt_stmt.where(ProjectTask.assignee_id == ctx.user.id)
        rt_stmt = rt_stmt.where(RemediationTask.assignee_id == ctx.user.id)

    cards: List[CardOut] = []
    cards += [_project_card(t) for t in (await db.execute(pt_stmt)).unique().scalars().all()]
    cards += [_remediation_card(t) for t in (await db.execute(rt_stmt)).unique().scalars().all()]

    if full:
        treatments = await db.execute(select(RiskTreatment).where(RiskTreatment.client_id == client_id))
        controls = await db.execute(select(ClientControl).where(ClientControl.client_id == client_id))
        policies = await db.execute(select(Policy).where(Policy.client_id == client_id))
        cards += [_treatment_card(t) for t in treatments.scalars().all()]
        cards += [_control_card(c) for c in controls.unique().scalars().all()]
        cards += [_policy_card(p) for p in policies.scalars().all()]

    if status is not None:
        cards = [c for c in cards if c.status == status.value]

    cards.sort(
        key=lambda c: (c.position, _sort_stamp(datetime.fromisoformat(c.updated_at) if c.updated_at else None)),
        reverse=True,
    )
    return cards


@router.post("/tasks", response_model=CardOut)
async def create_task(
    data: TaskCreate,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a project task at the end of its column"""
    client_id = tenant_id(ctx)
    await _check_assignee(db, data.assignee_id)

    task = ProjectTask(
        client_id=client_id,
        title=data.title,
        description=data.description,
        status=data.status,
        priority=data.priority,
        assignee_id=data.assignee_id,
        due_date=data.due_date,
        tags=data.tags,
        position=await _next_position(db, client_id, data.status),
    )
    db.add(task)
    await db.flush()

    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="create", entity_type="project_task",
        entity_id=task.id, details=EntityCreated(name=task.title), request=request,
    )
    await db.commit()
    task = await get_scoped_or_404(db, ProjectTask, task.id, client_id, "Task")
    return _project_card(task)


@router.patch("/tasks/{task_id}", response_model=CardOut)
async def update_task(
    task_id: str,
    data: TaskUpdate,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    """Update a project task; omitted fields are left alone, null clears"""
    client_id = tenant_id(ctx)
    task = await get_scoped_or_404(db, ProjectTask, task_id, client_id, "Task")
    if data.assignee_id is not None:
        await _check_assignee(db, data.assignee_id)

    fields = apply_updates(task, data)
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="update", entity_type="project_task",
        entity_id=task.id, details=EntityUpdated(fields=fields), request=request,
    )
    await db.commit()
    task = await get_scoped_or_404(db, ProjectTask, task_id, client_id, "Task")
    return _project_card(task)


@router.post("/tasks/{card_id}/move")
async def move_card(
    card_id: str,
    data: CardMove,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    """Drop a card into a column, writing the mapped status to its source row"""
    client_id = tenant_id(ctx)
    try:
        source = SourceType(data.source_type)
    except ValueError:
        raise BadRequest(f"Unknown card source type: {data.source_type}")
    model = {
        SourceType.PROJECT_TASK: ProjectTask,
        SourceType.REMEDIATION: RemediationTask,
        SourceType.RISK_TREATMENT: RiskTreatment,
        SourceType.CONTROL: ClientControl,
        SourceType.POLICY: Policy,
    }[source]

    obj = await get_scoped_or_404(db, model, card_id, client_id, "Card")
    # Cards hidden from restricted members cannot be moved by them either
    if not ctx.has_full_access:
        if source not in (SourceType.PROJECT_TASK, SourceType.REMEDIATION) or obj.assignee_id != ctx.user.id:
            raise NotFound("Card not found")

    old_status = val(obj.status)
    new_status = from_board_status(source, data.status)
    logger.info(f"Moving {source.value} {card_id} to {data.status.value} ({new_status})")
    # Approving a policy from the board carries the same MFA gate and versioning as /approve
    approving = (
        source == SourceType.POLICY
        and new_status == PolicyStatus.APPROVED.value
        and old_status != new_status
    )
    if approving:
        await check_mfa(ctx, SqlAccessStore(db))

    try:
        if approving:
            stamp_approval(obj, ctx.user.id)
        else:
            obj.status = model.__table__.c.status.type.enum_class(new_status)
        if source == SourceType.PROJECT_TASK:
            obj.position = (
                data.position if data.position is not None
                else await _next_position(db, client_id, data.status)
            )
        record_audit(
            db, user_id=ctx.user.id, client_id=client_id, action="move", entity_type=source.value,
            entity_id=card_id, details=StatusChanged(from_status=old_status, to_status=new_status),
            request=request,
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Board move failed for {source.value} {card_id}: {e}")
        raise InternalError(str(e))

    return {"success": True, "source_type": source.value, "id": card_id, "status": new_status}


@router.delete("/tasks/{task_id}")
async def delete_task(
    task_id: str,
    request: Request,
    ctx: AccessContext = Depends(client_editor),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a project task"""
    client_id = tenant_id(ctx)
    task = await get_scoped_or_404(db, ProjectTask, task_id, client_id, "Task")
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="delete", entity_type="project_task",
        entity_id=task.id, details=EntityDeleted(name=task.title), request=request,
    )
    await db.delete(task)
    await db.commit()
    return {"status": "deleted", "task_id": task_id}
