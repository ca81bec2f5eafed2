# routers/common.py - Helpers shared by the tenant-scoped routers
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import NotFound

T = TypeVar("T")


def ts(dt) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() if isinstance(dt, datetime) else str(dt)


def val(v) -> Optional[str]:
    """Plain string for an enum member (or whatever SQLAlchemy handed back)"""
    if v is None:
        return None
    return v.value if hasattr(v, "value") else str(v)


async def get_scoped_or_404(db: AsyncSession, model: Type[T], entity_id: str, client_id: str, label: str) -> T:
    """Fetch a tenant-owned row; rows of other tenants are reported as missing."""
    stmt = (
        select(model)
        .where(model.id == entity_id, model.client_id == client_id)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    obj = result.unique().scalar_one_or_none()
    if obj is None:
        raise NotFound(f"{label} not found")
    return obj


def apply_updates(obj: Any, data: BaseModel) -> List[str]:
    """Copy the fields the caller actually sent onto `obj`.

    Omitted fields stay unchanged; an explicit null clears the column.
    Null sent for a NOT NULL column is ignored. Returns the names of the
    fields written.
    """
    columns = obj.__table__.columns
    written: List[str] = []
    changes: Dict[str, Any] = data.model_dump(exclude_unset=True)
    for field, value in changes.items():
        if value is None and field in columns and not columns[field].nullable:
            continue
        setattr(obj, field, value)
        written.append(field)
    return sorted(written)
