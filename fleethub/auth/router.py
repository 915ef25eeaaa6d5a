import uuid
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import or_
from sqlalchemy.orm import Session
import structlog

from ..db import get_db
from ..models.models import User, Supplier
from ..schemas.auth import (
    LoginRequest,
    RefreshRequest,
    TokenResponse,
    MeResponse,
    UserCreate,
    UserUpdate,
    UserResponse,
)
from ..services.audit import create_audit_log, compute_diff
from ..services.permissions import ensure_roles
from .security import (
    get_password_hash,
    verify_password,
    create_access_token,
    create_refresh_token,
    decode_token,
    get_current_user,
    get_user_permission_map,
    require_permissions,
    role_names,
    primary_role,
)


router = APIRouter(prefix="/auth", tags=["auth"])
logger = structlog.get_logger(__name__)


def _user_out(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        name=user.name,
        email=user.email,
        is_active=bool(user.is_active),
        supplier_id=user.supplier_id,
        roles=role_names(user),
        created_at=user.created_at,
        last_login_at=user.last_login_at,
    )


def _user_snapshot(user: User) -> dict:
    return {
        "name": user.name,
        "email": user.email,
        "is_active": user.is_active,
        "supplier_id": str(user.supplier_id) if user.supplier_id else None,
        "roles": role_names(user),
        "permissions_override": user.permissions_override,
    }


def _check_supplier(db: Session, role: Optional[str], supplier_id: Optional[uuid.UUID]):
    if role == "supplier" and supplier_id is None:
        raise HTTPException(status_code=400, detail="Supplier users need a supplier_id")
    if supplier_id is not None and not db.query(Supplier).filter(Supplier.id == supplier_id).first():
        raise HTTPException(status_code=400, detail="Supplier not found")


@router.post("/login", response_model=TokenResponse)
def login(req: LoginRequest, db: Session = Depends(get_db)):
    identifier = req.identifier.strip()
    user = db.query(User).filter(
        (User.username == identifier) | (User.email == identifier.lower())
    ).first()
    if not user or not verify_password(req.password, user.password_hash):
        logger.info("login_failed", identifier=identifier)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="User not active")
    access = create_access_token(str(user.id), roles=role_names(user))
    refresh = create_refresh_token(str(user.id))
    user.last_login_at = datetime.now(timezone.utc)
    db.commit()
    logger.info("login_succeeded", user_id=str(user.id))
    return TokenResponse(access_token=access, refresh_token=refresh)


@router.post("/refresh", response_model=TokenResponse)
def refresh(req: RefreshRequest, db: Session = Depends(get_db)):
    payload = decode_token(req.refresh_token)
    if payload.get("type") != "refresh":
        raise HTTPException(status_code=400, detail="Invalid refresh token")
    try:
        user_uuid = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid refresh token")
    user = db.query(User).filter(User.id == user_uuid).first()
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="User not active")
    access = create_access_token(str(user.id), roles=role_names(user))
    return TokenResponse(access_token=access, refresh_token=create_refresh_token(str(user.id)))


@router.get("/me", response_model=MeResponse)
def me(user: User = Depends(get_current_user)):
    perm_map = get_user_permission_map(user)
    granted = sorted([k for k, v in perm_map.items() if v])
    return MeResponse(
        id=str(user.id),
        username=user.username,
        name=user.name,
        email=user.email,
        supplier_id=str(user.supplier_id) if user.supplier_id else None,
        roles=role_names(user),
        permissions=granted,
    )


# User management
@router.get("/users", response_model=List[UserResponse])
def list_users(
    search: Optional[str] = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    _=Depends(require_permissions("can_manage_users")),
):
    query = db.query(User)
    if not include_inactive:
        query = query.filter(User.is_active == True)  # noqa: E712
    if search:
        like = f"%{search}%"
        query = query.filter(or_(User.username.ilike(like), User.name.ilike(like), User.email.ilike(like)))
    return [_user_out(u) for u in query.order_by(User.username.asc()).all()]


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    admin: User = Depends(require_permissions("can_manage_users")),
):
    username = payload.username.strip()
    email = payload.email.lower() if payload.email else None
    if db.query(User).filter(User.username == username).first():
        raise HTTPException(status_code=409, detail="Username already exists")
    if email and db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=409, detail="Email already exists")
    _check_supplier(db, payload.role.value, payload.supplier_id)

    roles = ensure_roles(db)
    user = User(
        username=username,
        name=payload.name.strip(),
        email=email,
        password_hash=get_password_hash(payload.password),
        supplier_id=payload.supplier_id,
        is_active=True,
    )
    user.roles = [roles[payload.role.value]]
    db.add(user)
    db.commit()
    db.refresh(user)
    create_audit_log(db, "user", user.id, "CREATE", actor_id=admin.id, actor_role=primary_role(admin),
                     source="api", changes_json=_user_snapshot(user))
    logger.info("user_created", user_id=str(user.id), role=payload.role.value)
    return _user_out(user)


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(require_permissions("can_manage_users")),
):
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return _user_out(user)


@router.put("/users/{user_id}", response_model=UserResponse)
def update_user(
    user_id: uuid.UUID,
    payload: UserUpdate,
    db: Session = Depends(get_db),
    admin: User = Depends(require_permissions("can_manage_users")),
):
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    before = _user_snapshot(user)
    data = payload.dict(exclude_unset=True)

    if "email" in data:
        email = data["email"].lower() if data["email"] else None
        if email and db.query(User).filter(User.email == email, User.id != user.id).first():
            raise HTTPException(status_code=409, detail="Email already exists")
        user.email = email
    if data.get("password"):
        user.password_hash = get_password_hash(data["password"])
    role = data.get("role")
    if role is not None:
        role = role.value if hasattr(role, "value") else role
    supplier_id = data["supplier_id"] if "supplier_id" in data else user.supplier_id
    if role is not None or "supplier_id" in data:
        _check_supplier(db, role or primary_role(user), supplier_id)
        user.supplier_id = supplier_id
    if role is not None:
        user.roles = [ensure_roles(db)[role]]
    for key in ("name", "is_active", "permissions_override"):
        if key in data:
            setattr(user, key, data[key])

    db.commit()
    db.refresh(user)
    create_audit_log(db, "user", user.id, "UPDATE", actor_id=admin.id, actor_role=primary_role(admin),
                     source="api", changes_json=compute_diff(before, _user_snapshot(user)))
    return _user_out(user)


@router.delete("/users/{user_id}")
def deactivate_user(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    admin: User = Depends(require_permissions("can_manage_users")),
):
    """Deactivate a user; accounts are never hard-deleted since events reference them"""
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.id == admin.id:
        raise HTTPException(status_code=400, detail="Cannot deactivate your own account")
    user.is_active = False
    db.commit()
    create_audit_log(db, "user", user.id, "DELETE", actor_id=admin.id, actor_role=primary_role(admin), source="api")
    return {"message": "User deactivated successfully"}
