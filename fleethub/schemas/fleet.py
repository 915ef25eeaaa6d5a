import uuid
from datetime import datetime
from typing import List, Optional
from enum import Enum

from pydantic import BaseModel, EmailStr, field_validator


# Enums
class OwnershipType(str, Enum):
    owned = "owned"
    rented = "rented"


class BillingType(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


class MachineStatus(str, Enum):
    available = "available"
    allocated = "allocated"
    maintenance = "maintenance"
    in_transit = "in_transit"
    inactive = "inactive"


MACHINE_STATUS_LABELS = {
    MachineStatus.available: "Disponível",
    MachineStatus.allocated: "Alocada",
    MachineStatus.maintenance: "Em Manutenção",
    MachineStatus.in_transit: "Em Trânsito",
    MachineStatus.inactive: "Inativa",
}

OWNERSHIP_LABELS = {
    OwnershipType.owned: "Própria",
    OwnershipType.rented: "Alugada",
}


# Machine Type Schemas
class MachineTypeBase(BaseModel):
    name: str
    icon: Optional[str] = None
    is_attachment: bool = False


class MachineTypeCreate(MachineTypeBase):
    pass


class MachineTypeUpdate(BaseModel):
    name: Optional[str] = None
    icon: Optional[str] = None
    is_attachment: Optional[bool] = None


class MachineTypeResponse(MachineTypeBase):
    id: uuid.UUID
    created_at: datetime

    class Config:
        from_attributes = True


# Machine Schemas
class MachineBase(BaseModel):
    unit_number: str
    machine_type_id: uuid.UUID
    ownership_type: OwnershipType = OwnershipType.owned
    supplier_id: Optional[uuid.UUID] = None
    billing_type: Optional[BillingType] = None
    daily_rate: Optional[float] = None
    weekly_rate: Optional[float] = None
    monthly_rate: Optional[float] = None
    notes: Optional[str] = None

    @field_validator("unit_number")
    @classmethod
    def _strip_unit_number(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("unit_number must not be empty")
        return v


class MachineCreate(MachineBase):
    pass


class MachineUpdate(BaseModel):
    unit_number: Optional[str] = None
    machine_type_id: Optional[uuid.UUID] = None
    ownership_type: Optional[OwnershipType] = None
    supplier_id: Optional[uuid.UUID] = None
    billing_type: Optional[BillingType] = None
    daily_rate: Optional[float] = None
    weekly_rate: Optional[float] = None
    monthly_rate: Optional[float] = None
    is_active: Optional[bool] = None
    notes: Optional[str] = None


class MachineResponse(MachineBase):
    id: uuid.UUID
    status: MachineStatus
    current_site_id: Optional[uuid.UUID] = None
    is_active: bool
    machine_type: Optional[MachineTypeResponse] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    created_by: Optional[uuid.UUID] = None

    class Config:
        from_attributes = True


# Site Schemas
class SiteBase(BaseModel):
    title: str
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    notes: Optional[str] = None


class SiteCreate(SiteBase):
    pass


class SiteUpdate(BaseModel):
    title: Optional[str] = None
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    is_active: Optional[bool] = None
    notes: Optional[str] = None


class SiteResponse(SiteBase):
    id: uuid.UUID
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None
    created_by: Optional[uuid.UUID] = None

    class Config:
        from_attributes = True


# Supplier Schemas
class SupplierBase(BaseModel):
    name: str
    legal_name: Optional[str] = None
    tax_number: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    contact_name: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def _blank_email(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class SupplierCreate(SupplierBase):
    pass


class SupplierUpdate(BaseModel):
    name: Optional[str] = None
    legal_name: Optional[str] = None
    tax_number: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    contact_name: Optional[str] = None
    is_active: Optional[bool] = None
    notes: Optional[str] = None


class SupplierResponse(SupplierBase):
    id: uuid.UUID
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SupplierWithMachinesResponse(SupplierResponse):
    machines: List[MachineResponse] = []
