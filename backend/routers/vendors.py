# routers/vendors.py - Third-party vendor register (Pro and Enterprise plans)
from typing import Literal, Optional, List

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access import AccessContext, premium_client, premium_editor, tenant_id
from audit import record_audit, EntityCreated, EntityUpdated, EntityDeleted
from database import get_db_session
from models import Vendor
from routers.common import ts, get_scoped_or_404, apply_updates

router = APIRouter(prefix="/api/v1/vendors", tags=["Vendor Risk"])


Criticality = Literal["high", "medium", "low"]
DataAccess = Literal["restricted", "confidential", "internal", "public"]


class VendorCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None
    website: Optional[str] = None
    criticality: Criticality = "low"
    data_access: DataAccess = "internal"
    status: str = "active"


class VendorUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=300)
    description: Optional[str] = None
    website: Optional[str] = None
    criticality: Optional[Criticality] = None
    data_access: Optional[DataAccess] = None
    status: Optional[str] = None


class VendorOut(BaseModel):
    id: str
    client_id: str
    name: str
    description: Optional[str] = None
    website: Optional[str] = None
    criticality: str
    data_access: str
    status: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def _vendor_out(v: Vendor) -> VendorOut:
    return VendorOut(
        id=v.id, client_id=v.client_id, name=v.name, description=v.description, website=v.website,
        criticality=v.criticality, data_access=v.data_access, status=v.status,
        created_at=ts(v.created_at), updated_at=ts(v.updated_at),
    )


@router.get("", response_model=List[VendorOut])
async def list_vendors(
    ctx: AccessContext = Depends(premium_client),
    db: AsyncSession = Depends(get_db_session),
    criticality: Optional[Criticality] = None,
):
    client_id = tenant_id(ctx)
    stmt = select(Vendor).where(Vendor.client_id == client_id).order_by(Vendor.name)
    if criticality is not None:
        stmt = stmt.where(Vendor.criticality == criticality)
    result = await db.execute(stmt)
    return [_vendor_out(v) for v in result.scalars().all()]


@router.get("/{vendor_id}", response_model=VendorOut)
async def get_vendor(
    vendor_id: str,
    ctx: AccessContext = Depends(premium_client),
    db: AsyncSession = Depends(get_db_session),
):
    vendor = await get_scoped_or_404(db, Vendor, vendor_id, tenant_id(ctx), "Vendor")
    return _vendor_out(vendor)


@router.post("", response_model=VendorOut)
async def create_vendor(
    data: VendorCreate,
    request: Request,
    ctx: AccessContext = Depends(premium_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    vendor = Vendor(client_id=client_id, **data.model_dump())
    db.add(vendor)
    await db.flush()
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="create", entity_type="vendor",
        entity_id=vendor.id, details=EntityCreated(name=vendor.name), request=request,
    )
    await db.commit()
    return _vendor_out(vendor)


@router.patch("/{vendor_id}", response_model=VendorOut)
async def update_vendor(
    vendor_id: str,
    data: VendorUpdate,
    request: Request,
    ctx: AccessContext = Depends(premium_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    vendor = await get_scoped_or_404(db, Vendor, vendor_id, client_id, "Vendor")
    fields = apply_updates(vendor, data)
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="update", entity_type="vendor",
        entity_id=vendor.id, details=EntityUpdated(fields=fields), request=request,
    )
    await db.commit()
    await db.refresh(vendor)
    return _vendor_out(vendor)


@router.delete("/{vendor_id}")
async def delete_vendor(
    vendor_id: str,
    request: Request,
    ctx: AccessContext = Depends(premium_editor),
    db: AsyncSession = Depends(get_db_session),
):
    client_id = tenant_id(ctx)
    vendor = await get_scoped_or_404(db, Vendor, vendor_id, client_id, "Vendor")
    record_audit(
        db, user_id=ctx.user.id, client_id=client_id, action="delete", entity_type="vendor",
        entity_id=vendor.id, details=EntityDeleted(name=vendor.name), request=request,
    )
    await db.delete(vendor)
    await db.commit()
    return {"status": "deleted", "vendor_id": vendor_id}
