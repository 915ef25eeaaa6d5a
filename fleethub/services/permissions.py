"""
Role permission maps and role/admin seeding.
"""
from typing import Dict, Optional
from sqlalchemy.orm import Session

from ..models.models import User, Role

PERMISSION_KEYS = (
    "can_view_dashboard",
    "can_view_map",
    "can_manage_sites",
    "can_manage_machines",
    "can_register_events",
    "can_approve_events",
    "can_view_financial",
    "can_manage_suppliers",
    "can_manage_users",
    "can_view_logs",
)

_ALL = {key: True for key in PERMISSION_KEYS}

DEFAULT_PERMISSIONS: Dict[str, Dict[str, bool]] = {
    "admin": dict(_ALL),
    "dev": dict(_ALL),
    "operator": {
        **{key: False for key in PERMISSION_KEYS},
        "can_view_dashboard": True,
        "can_view_map": True,
        "can_manage_machines": True,
        "can_register_events": True,
    },
    # Supplier accounts only see their own machines
    "supplier": {
        **{key: False for key in PERMISSION_KEYS},
        "can_view_dashboard": True,
        "can_view_map": True,
    },
}

ROLE_DESCRIPTIONS = {
    "admin": "Administrador",
    "dev": "Desenvolvedor",
    "operator": "Operador",
    "supplier": "Fornecedor",
}


def get_default_permissions(role: str) -> Dict[str, bool]:
    return dict(DEFAULT_PERMISSIONS.get(role, DEFAULT_PERMISSIONS["operator"]))


def ensure_roles(db: Session) -> Dict[str, Role]:
    """Create missing roles with their default permission map. Existing maps are left untouched."""
    roles = {r.name: r for r in db.query(Role).all()}
    for name, perms in DEFAULT_PERMISSIONS.items():
        if name not in roles:
            role = Role(name=name, description=ROLE_DESCRIPTIONS.get(name), permissions=dict(perms))
            db.add(role)
            roles[name] = role
    db.commit()
    return roles


def ensure_admin_user(db: Session, username: Optional[str], password: Optional[str]) -> Optional[User]:
    """Create the first admin account when the users table is empty."""
    from ..auth.security import get_password_hash

    if not username or not password:
        return None
    if db.query(User).first() is not None:
        return None
    roles = ensure_roles(db)
    user = User(
        username=username,
        name="Administrador",
        password_hash=get_password_hash(password),
        is_active=True,
    )
    user.roles = [roles["admin"]]
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
