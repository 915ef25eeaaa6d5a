"""
Create the default roles (admin, dev, operator, supplier) and, optionally,
the first admin account.

Usage:
  python scripts/seed_roles.py [--reset-permissions]

SEED_ADMIN_USERNAME / SEED_ADMIN_PASSWORD are read from the environment (.env).
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from fleethub.config import settings
from fleethub.db import SessionLocal, Base, engine
from fleethub.models.models import Role
from fleethub.services.permissions import ensure_roles, ensure_admin_user, get_default_permissions


def seed_roles(reset_permissions: bool = False):
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        roles = ensure_roles(db)
        if reset_permissions:
            for name, role in roles.items():
                role.permissions = get_default_permissions(name)
            db.commit()
            print(f"Reset permissions for {len(roles)} roles")
        for role in db.query(Role).order_by(Role.name.asc()).all():
            granted = sorted(k for k, v in (role.permissions or {}).items() if v)
            print(f"  {role.name}: {', '.join(granted) or '-'}")
        admin = ensure_admin_user(db, settings.seed_admin_username, settings.seed_admin_password)
        if admin is not None:
            print(f"Created admin user '{admin.username}'")
    finally:
        db.close()


if __name__ == "__main__":
    seed_roles(reset_permissions="--reset-permissions" in sys.argv)
