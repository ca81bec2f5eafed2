# audit.py - Audit trail writer with typed event details
#
# Audit rows are append-only. The free-form `details` column only ever holds
# one of the event shapes below, tagged by `kind`, so readers can rely on
# its structure.
from typing import Annotated, List, Literal, Optional, Union

from fastapi import Request
from pydantic import BaseModel, Field, TypeAdapter
from sqlalchemy.ext.asyncio import AsyncSession

from models import AuditLog, AuditSeverity


class EntityCreated(BaseModel):
    kind: Literal["created"] = "created"
    name: Optional[str] = None


class EntityUpdated(BaseModel):
    kind: Literal["updated"] = "updated"
    fields: List[str] = Field(default_factory=list)


class EntityDeleted(BaseModel):
    kind: Literal["deleted"] = "deleted"
    name: Optional[str] = None


class StatusChanged(BaseModel):
    kind: Literal["status_changed"] = "status_changed"
    from_status: Optional[str] = None
    to_status: str


class MembershipChanged(BaseModel):
    kind: Literal["membership_changed"] = "membership_changed"
    member_id: str
    role: Optional[str] = None  # None when the membership was removed


AuditDetails = Annotated[
    Union[EntityCreated, EntityUpdated, EntityDeleted, StatusChanged, MembershipChanged],
    Field(discriminator="kind"),
]

audit_details_adapter = TypeAdapter(AuditDetails)


def parse_details(raw: Optional[dict]):
    """Validate a stored details payload back into its event shape"""
    if raw is None:
        return None
    return audit_details_adapter.validate_python(raw)


def record_audit(
    db: AsyncSession,
    *,
    user_id: Optional[str],
    action: str,
    entity_type: str,
    entity_id: Optional[str] = None,
    client_id: Optional[str] = None,
    details: Optional[AuditDetails] = None,
    severity: AuditSeverity = AuditSeverity.INFO,
    request: Optional[Request] = None,
) -> AuditLog:
    """Stage an audit row on the session; the caller's commit persists it."""
    entry = AuditLog(
        client_id=client_id,
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details.model_dump() if details is not None else None,
        severity=severity,
        ip_address=request.client.host if request is not None and request.client else None,
        user_agent=request.headers.get("user-agent") if request is not None else None,
        request_id=getattr(request.state, "request_id", None) if request is not None else None,
    )
    db.add(entry)
    return entry
