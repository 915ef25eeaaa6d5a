"""Shared test fixtures: in-memory database, app client and seeded users."""

import os
import tempfile

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTO_CREATE_DB"] = "false"
os.environ["RATE_LIMIT"] = "10000/minute"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["STORAGE_DIR"] = tempfile.mkdtemp(prefix="fleethub-storage-")

import uuid
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fleethub.db import Base, get_db
from fleethub.main import app
from fleethub.models.models import FileObject, Machine, MachineType, Site, Supplier, User
from fleethub.auth.security import create_access_token, get_password_hash
from fleethub.services.permissions import ensure_roles

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, username, role, password="1234", supplier_id=None):
    roles = ensure_roles(db)
    user = User(
        username=username,
        name=username.title(),
        password_hash=get_password_hash(password),
        is_active=True,
        supplier_id=supplier_id,
    )
    user.roles = [roles[role]]
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(str(user.id))}"}


@pytest.fixture
def admin(db):
    return make_user(db, "admin", "admin")


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin)


@pytest.fixture
def operator(db):
    return make_user(db, "operador", "operator")


@pytest.fixture
def operator_headers(operator):
    return auth_headers(operator)


@pytest.fixture
def excavator_type(db):
    mt = MachineType(name="Escavadeira", is_attachment=False)
    db.add(mt)
    db.commit()
    db.refresh(mt)
    return mt


@pytest.fixture
def bucket_type(db):
    mt = MachineType(name="Caçamba", is_attachment=True)
    db.add(mt)
    db.commit()
    db.refresh(mt)
    return mt


@pytest.fixture
def supplier(db):
    s = Supplier(name="Locadora Alfa", is_active=True)
    db.add(s)
    db.commit()
    db.refresh(s)
    return s


@pytest.fixture
def machine(db, excavator_type):
    m = Machine(unit_number="ESC-001", machine_type_id=excavator_type.id, ownership_type="owned", status="available")
    db.add(m)
    db.commit()
    db.refresh(m)
    return m


@pytest.fixture
def rented_machine(db, excavator_type, supplier):
    m = Machine(
        unit_number="ESC-900",
        machine_type_id=excavator_type.id,
        ownership_type="rented",
        supplier_id=supplier.id,
        billing_type="monthly",
        monthly_rate=3000,
        status="available",
    )
    db.add(m)
    db.commit()
    db.refresh(m)
    return m


@pytest.fixture
def bucket(db, bucket_type):
    m = Machine(unit_number="CAC-100", machine_type_id=bucket_type.id, ownership_type="owned", status="available")
    db.add(m)
    db.commit()
    db.refresh(m)
    return m


@pytest.fixture
def site(db):
    s = Site(title="Residencial Jardim Norte", address="Av. Norte, 1200", is_active=True)
    db.add(s)
    db.commit()
    db.refresh(s)
    return s


@pytest.fixture
def other_site(db):
    s = Site(title="Condomínio Vila Verde", is_active=True)
    db.add(s)
    db.commit()
    db.refresh(s)
    return s


@pytest.fixture
def document(db):
    fo = FileObject(
        provider="local",
        container="local",
        key=f"/tests/{uuid.uuid4().hex}.pdf",
        original_name="nota.pdf",
        content_type="application/pdf",
        created_at=datetime.now(timezone.utc),
    )
    db.add(fo)
    db.commit()
    db.refresh(fo)
    return fo


@pytest.fixture
def user_factory(db):
    def _make(username, role, password="1234", supplier_id=None):
        return make_user(db, username, role, password, supplier_id)

    return _make


@pytest.fixture
def headers_for():
    return auth_headers
