import uuid
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import get_current_user, require_permissions, primary_role
from ..models.models import Site
from ..schemas.fleet import SiteCreate, SiteUpdate, SiteResponse
from ..schemas.allocations import SiteAllocationSummary
from ..services.audit import create_audit_log, compute_diff, snapshot
from ..services.allocation_service import get_site_allocation_summary

router = APIRouter(prefix="/sites", tags=["sites"])

SITE_AUDIT_FIELDS = ("title", "address", "latitude", "longitude", "is_active", "notes")


@router.get("", response_model=List[SiteResponse])
def list_sites(
    search: Optional[str] = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    """List jobsites"""
    query = db.query(Site)
    if not include_inactive:
        query = query.filter(Site.is_active == True)  # noqa: E712
    if search:
        like = f"%{search}%"
        query = query.filter(or_(Site.title.ilike(like), Site.address.ilike(like)))
    return query.order_by(Site.title.asc()).all()


@router.get("/{site_id}", response_model=SiteResponse)
def get_site(
    site_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    site = db.query(Site).filter(Site.id == site_id).first()
    if not site:
        raise HTTPException(status_code=404, detail="Site not found")
    return site


@router.get("/{site_id}/allocations", response_model=SiteAllocationSummary)
def get_site_allocations(
    site_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    """Machines currently allocated at the site"""
    site = db.query(Site).filter(Site.id == site_id).first()
    if not site:
        raise HTTPException(status_code=404, detail="Site not found")
    summary = get_site_allocation_summary(db, site.id)
    summary["site_title"] = site.title
    return summary


@router.post("", response_model=SiteResponse)
def create_site(
    payload: SiteCreate,
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_manage_sites")),
):
    """Create a jobsite"""
    site = Site(**payload.dict(), created_by=user.id)
    db.add(site)
    db.commit()
    db.refresh(site)
    create_audit_log(db, "site", site.id, "CREATE", actor_id=user.id, actor_role=primary_role(user),
                     source="api", changes_json=snapshot(site, SITE_AUDIT_FIELDS))
    return site


@router.put("/{site_id}", response_model=SiteResponse)
def update_site(
    site_id: uuid.UUID,
    payload: SiteUpdate,
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_manage_sites")),
):
    site = db.query(Site).filter(Site.id == site_id).first()
    if not site:
        raise HTTPException(status_code=404, detail="Site not found")
    before = snapshot(site, SITE_AUDIT_FIELDS)
    for key, value in payload.dict(exclude_unset=True).items():
        setattr(site, key, value)
    site.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(site)
    create_audit_log(db, "site", site.id, "UPDATE", actor_id=user.id, actor_role=primary_role(user),
                     source="api", changes_json=compute_diff(before, snapshot(site, SITE_AUDIT_FIELDS)))
    return site


@router.delete("/{site_id}")
def delete_site(
    site_id: uuid.UUID,
    db: Session = Depends(get_db),
    user=Depends(require_permissions("can_manage_sites")),
):
    """Archive a jobsite (soft delete). Sites with allocated machines cannot be archived."""
    site = db.query(Site).filter(Site.id == site_id).first()
    if not site:
        raise HTTPException(status_code=404, detail="Site not found")
    if get_site_allocation_summary(db, site.id)["total_machines"]:
        raise HTTPException(status_code=409, detail="Site has allocated machines")
    site.is_active = False
    site.updated_at = datetime.now(timezone.utc)
    db.commit()
    create_audit_log(db, "site", site.id, "DELETE", actor_id=user.id, actor_role=primary_role(user), source="api")
    return {"message": "Site archived successfully"}
