# routers/audit.py - Read access to the append-only audit trail
import logging
from typing import Optional, List, Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access import AccessContext, mfa_required, admin_only, tenant_id
from audit import parse_details
from database import get_db_session
from models import AuditLog, AuditSeverity
from routers.common import ts, val

logger = logging.getLogger("grc.audit")

router = APIRouter(prefix="/api/v1/audit", tags=["Audit"])


class AuditLogOut(BaseModel):
    id: str
    timestamp: Optional[str] = None
    client_id: Optional[str] = None
    user_id: Optional[str] = None
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    details: Optional[Any] = None
    severity: str
    ip_address: Optional[str] = None
    request_id: Optional[str] = None


def _log_out(entry: AuditLog) -> AuditLogOut:
    try:
        details = parse_details(entry.details)
    except ValidationError:
        # Rows written before the details shapes existed are passed through as-is
        logger.warning(f"Audit row {entry.id} has unrecognised details")
        details = entry.details
    return AuditLogOut(
        id=entry.id,
        timestamp=ts(entry.timestamp),
        client_id=entry.client_id,
        user_id=entry.user_id,
        action=entry.action,
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        details=details.model_dump() if isinstance(details, BaseModel) else details,
        severity=val(entry.severity),
        ip_address=entry.ip_address,
        request_id=entry.request_id,
    )


def _filtered(stmt, entity_type: Optional[str], action: Optional[str], severity: Optional[AuditSeverity]):
    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == entity_type)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if severity is not None:
        stmt = stmt.where(AuditLog.severity == severity)
    return stmt


@router.get("/logs", response_model=List[AuditLogOut])
async def list_client_logs(
    ctx: AccessContext = Depends(mfa_required),
    db: AsyncSession = Depends(get_db_session),
    entity_type: Optional[str] = None,
    action: Optional[str] = None,
    severity: Optional[AuditSeverity] = None,
    limit: int = Query(default=100, le=1000),
):
    """Audit trail for one client, newest first (AAL2 when the client mandates MFA)"""
    stmt = select(AuditLog).where(AuditLog.client_id == tenant_id(ctx))
    stmt = _filtered(stmt, entity_type, action, severity).order_by(AuditLog.timestamp.desc()).limit(limit)
    result = await db.execute(stmt)
    return [_log_out(e) for e in result.scalars().all()]


@router.get("/logs/all", response_model=List[AuditLogOut])
async def list_all_logs(
    ctx: AccessContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db_session),
    client_id: Optional[str] = None,
    user_id: Optional[str] = None,
    entity_type: Optional[str] = None,
    action: Optional[str] = None,
    severity: Optional[AuditSeverity] = None,
    limit: int = Query(default=100, le=1000),
):
    """Platform-wide audit trail (platform admins)"""
    stmt = select(AuditLog)
    if client_id:
        stmt = stmt.where(AuditLog.client_id == client_id)
    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    stmt = _filtered(stmt, entity_type, action, severity).order_by(AuditLog.timestamp.desc()).limit(limit)
    result = await db.execute(stmt)
    return [_log_out(e) for e in result.scalars().all()]
