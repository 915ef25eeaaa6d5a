"""
Seed the local database with sample suppliers, machine types, machines,
jobsites and users.

Usage:
  python scripts/seed_test_data.py

This script is idempotent: running it multiple times will upsert the same
records based on unique fields (username for users, unit_number for machines,
name for machine types and suppliers, title for sites).
"""
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from fleethub.db import SessionLocal, Base, engine
from fleethub.models.models import User, Supplier, MachineType, Machine, Site
from fleethub.auth.security import get_password_hash
from fleethub.services.permissions import ensure_roles


MACHINE_TYPES = [
    ("Escavadeira", False),
    ("Retroescavadeira", False),
    ("Plataforma Elevatória", False),
    ("Manipulador Telescópico", False),
    ("Caçamba", True),
    ("Garfo Paleteiro", True),
]

SITES = [
    ("Residencial Jardim Norte", "Av. Norte, 1200"),
    ("Condomínio Vila Verde", "Rua das Palmeiras, 45"),
]


def ensure_supplier(session, name: str, email: str) -> Supplier:
    supplier = session.query(Supplier).filter(Supplier.name == name).first()
    if supplier:
        return supplier
    supplier = Supplier(name=name, email=email, is_active=True)
    session.add(supplier)
    session.flush()
    return supplier


def ensure_machine_type(session, name: str, is_attachment: bool) -> MachineType:
    mt = session.query(MachineType).filter(MachineType.name == name).first()
    if mt:
        mt.is_attachment = is_attachment
        return mt
    mt = MachineType(name=name, is_attachment=is_attachment)
    session.add(mt)
    session.flush()
    return mt


def ensure_machine(session, unit_number: str, machine_type: MachineType, **fields) -> Machine:
    machine = session.query(Machine).filter(Machine.unit_number == unit_number).first()
    if machine is None:
        machine = Machine(unit_number=unit_number, machine_type_id=machine_type.id)
        session.add(machine)
    machine.machine_type_id = machine_type.id
    for key, value in fields.items():
        setattr(machine, key, value)
    session.flush()
    return machine


def ensure_site(session, title: str, address: str) -> Site:
    site = session.query(Site).filter(Site.title == title).first()
    if site:
        return site
    site = Site(title=title, address=address, is_active=True)
    session.add(site)
    session.flush()
    return site


def ensure_user(session, roles: dict, username: str, name: str, password: str, role: str, supplier=None) -> User:
    user = session.query(User).filter(User.username == username).first()
    if user is None:
        user = User(username=username, name=name, password_hash=get_password_hash(password), is_active=True)
        session.add(user)
    user.name = name
    user.supplier_id = supplier.id if supplier else None
    user.roles = [roles[role]]
    session.flush()
    return user


def main():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        roles = ensure_roles(session)
        types = {name: ensure_machine_type(session, name, att) for name, att in MACHINE_TYPES}
        locadora = ensure_supplier(session, "Locadora Alfa", "contato@locadora-alfa.com.br")
        ensure_supplier(session, "Máquinas Beta", "comercial@maquinas-beta.com.br")

        ensure_machine(session, "ESC-001", types["Escavadeira"], ownership_type="owned")
        ensure_machine(session, "RET-002", types["Retroescavadeira"], ownership_type="owned")
        ensure_machine(session, "PLT-010", types["Plataforma Elevatória"], ownership_type="rented",
                       supplier_id=locadora.id, billing_type="monthly", monthly_rate=9000)
        ensure_machine(session, "TEL-020", types["Manipulador Telescópico"], ownership_type="rented",
                       supplier_id=locadora.id, billing_type="weekly", weekly_rate=3500)
        ensure_machine(session, "CAC-100", types["Caçamba"], ownership_type="owned")
        ensure_machine(session, "GAR-200", types["Garfo Paleteiro"], ownership_type="owned")

        for title, address in SITES:
            ensure_site(session, title, address)

        ensure_user(session, roles, "operador", "Operador de Campo", "1234", "operator")
        ensure_user(session, roles, "alfa", "Locadora Alfa", "1234", "supplier", supplier=locadora)

        session.commit()
        print("Seeded sample fleet data")
    finally:
        session.close()


if __name__ == "__main__":
    main()
