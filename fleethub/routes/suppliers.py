import uuid
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import get_current_user, require_permissions, primary_role
from ..models.models import Supplier, Machine
from ..schemas.fleet import SupplierCreate, SupplierUpdate, SupplierResponse, SupplierWithMachinesResponse
from ..services.audit import create_audit_log, compute_diff, snapshot
from ..services.allocation_service import supplier_scope

router = APIRouter(prefix="/suppliers", tags=["suppliers"])

SUPPLIER_AUDIT_FIELDS = ("name", "legal_name", "tax_number", "email", "phone", "contact_name", "is_active", "notes")


@router.get("", response_model=List[SupplierResponse])
def list_suppliers(
    search: Optional[str] = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    query = db.query(Supplier)
    scope = supplier_scope(user)
    if scope is not None:
        query = query.filter(Supplier.id == scope)
    if not include_inactive:
        query = query.filter(Supplier.is_active == True)  # noqa: E712
    if search:
        like = f"%{search}%"
        query = query.filter(or_(Supplier.name.ilike(like), Supplier.legal_name.ilike(like), Supplier.tax_number.ilike(like)))
    return query.order_by(Supplier.name.asc()).all()


@router.get("/{supplier_id}", response_model=SupplierWithMachinesResponse)
def get_supplier(
    supplier_id: uuid.UUID,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """Supplier detail with its rented machines"""
    scope = supplier_scope(user)
    supplier = db.query(Supplier).filter(Supplier.id == supplier_id).first()
    if not supplier or (scope is not None and supplier.id != scope):
        raise HTTPException(status_code=404, detail="Supplier not found")
    return supplier


@router.post("", response_model=SupplierResponse)
def create_supplier(
    payload: SupplierCreate,
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_manage_suppliers")),
):
    supplier = Supplier(**payload.dict())
    db.add(supplier)
    db.commit()
    db.refresh(supplier)
    create_audit_log(db, "supplier", supplier.id, "CREATE", actor_id=user.id, actor_role=primary_role(user),
                     source="api", changes_json=snapshot(supplier, SUPPLIER_AUDIT_FIELDS))
    return supplier


@router.put("/{supplier_id}", response_model=SupplierResponse)
def update_supplier(
    supplier_id: uuid.UUID,
    payload: SupplierUpdate,
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_manage_suppliers")),
):
    supplier = db.query(Supplier).filter(Supplier.id == supplier_id).first()
    if not supplier:
        raise HTTPException(status_code=404, detail="Supplier not found")
    before = snapshot(supplier, SUPPLIER_AUDIT_FIELDS)
    for key, value in payload.dict(exclude_unset=True).items():
        setattr(supplier, key, value)
    supplier.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(supplier)
    create_audit_log(db, "supplier", supplier.id, "UPDATE", actor_id=user.id, actor_role=primary_role(user),
                     source="api", changes_json=compute_diff(before, snapshot(supplier, SUPPLIER_AUDIT_FIELDS)))
    return supplier


@router.delete("/{supplier_id}")
def delete_supplier(
    supplier_id: uuid.UUID,
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_manage_suppliers")),
):
    """Deactivate a supplier; suppliers with active machines are kept"""
    supplier = db.query(Supplier).filter(Supplier.id == supplier_id).first()
    if not supplier:
        raise HTTPException(status_code=404, detail="Supplier not found")
    active_machines = db.query(Machine).filter(Machine.supplier_id == supplier.id, Machine.is_active == True).count()  # noqa: E712
    if active_machines:
        raise HTTPException(status_code=409, detail="Supplier has active machines")
    supplier.is_active = False
    supplier.updated_at = datetime.now(timezone.utc)
    db.commit()
    create_audit_log(db, "supplier", supplier.id, "DELETE", actor_id=user.id, actor_role=primary_role(user), source="api")
    return {"message": "Supplier deactivated successfully"}
