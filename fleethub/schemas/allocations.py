import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


# Projection Schemas
class AttachedExtension(BaseModel):
    extension_id: uuid.UUID
    extension_unit_number: Optional[str] = None
    extension_type: Optional[str] = None
    attached_at: datetime


class ActiveAllocationResponse(BaseModel):
    allocation_event_id: uuid.UUID
    machine_id: uuid.UUID
    machine_unit_number: Optional[str] = None
    machine_type: Optional[str] = None
    machine_ownership: Optional[str] = None
    machine_supplier_id: Optional[uuid.UUID] = None
    machine_supplier_name: Optional[str] = None
    site_id: Optional[uuid.UUID] = None
    site_title: Optional[str] = None
    construction_type: Optional[str] = None
    lot_building_number: Optional[str] = None
    allocation_start: datetime
    end_date: Optional[datetime] = None
    is_in_downtime: bool = False
    current_downtime_event_id: Optional[uuid.UUID] = None
    current_downtime_reason: Optional[str] = None
    current_downtime_start: Optional[datetime] = None
    attached_extensions: List[AttachedExtension] = []


class ActiveDowntimeResponse(BaseModel):
    downtime_event_id: uuid.UUID
    machine_id: uuid.UUID
    machine_unit_number: Optional[str] = None
    site_id: Optional[uuid.UUID] = None
    site_title: Optional[str] = None
    downtime_reason: Optional[str] = None
    downtime_description: Optional[str] = None
    downtime_start: datetime


class AllocationsSummary(BaseModel):
    total_allocated: int
    in_downtime: int
    working: int
    owned: int
    rented: int


class ActiveAllocationsListResponse(BaseModel):
    allocations: List[ActiveAllocationResponse]
    summary: AllocationsSummary


class SiteAllocationSummary(BaseModel):
    site_id: uuid.UUID
    site_title: Optional[str] = None
    total_machines: int
    machines_in_downtime: int
    machines_working: int
    allocations: List[ActiveAllocationResponse]


class IntegrityWarningResponse(BaseModel):
    kind: str
    machine_id: str
    event_id: Optional[str] = None
    message: str


class MachineProjectionResponse(BaseModel):
    machine_id: uuid.UUID
    active_allocation: Optional[ActiveAllocationResponse] = None
    active_downtime: Optional[ActiveDowntimeResponse] = None
    in_transit: bool = False
    warnings: List[IntegrityWarningResponse] = []


class SyncResult(BaseModel):
    updated: int
    total: int


# Financial Schemas
class FinancialCalculationRequest(BaseModel):
    machine_id: uuid.UUID
    start_date: datetime
    end_date: Optional[datetime] = None


class FinancialCalculationResponse(BaseModel):
    machine_id: uuid.UUID
    ownership_type: str
    billing_type: Optional[str] = None
    total_days: int
    downtime_days: int
    billable_days: int
    daily_rate: float
    estimated_cost: float


# Report Schemas
class RentExpirationItem(BaseModel):
    allocation_event_id: uuid.UUID
    machine_id: uuid.UUID
    machine_unit_number: Optional[str] = None
    machine_type: Optional[str] = None
    supplier_name: Optional[str] = None
    billing_type: Optional[str] = None
    site_id: Optional[uuid.UUID] = None
    site_title: Optional[str] = None
    allocation_start: datetime
    expiration_date: datetime
    days_until_expiration: int
    is_overdue: bool
    is_expiring_soon: bool


class SiteAllocationsReportItem(BaseModel):
    site_id: Optional[uuid.UUID] = None
    site_title: Optional[str] = None
    machines: int
    in_downtime: int
    allocations: List[ActiveAllocationResponse]


class DashboardStats(BaseModel):
    total_machines: int
    machines_by_status: dict
    owned_machines: int
    rented_machines: int
    total_extensions: int
    active_sites: int
    active_allocations: int
    active_downtimes: int
    pending_events: int
    expiring_rentals: int
