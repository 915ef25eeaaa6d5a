import uuid
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional, List


class RoleName(str, Enum):
    admin = "admin"
    dev = "dev"
    operator = "operator"
    supplier = "supplier"


class LoginRequest(BaseModel):
    identifier: str  # username or email
    password: str  # password or PIN


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class MeResponse(BaseModel):
    id: str
    username: str
    name: str
    email: Optional[EmailStr] = None
    supplier_id: Optional[str] = None
    roles: List[str] = []
    permissions: List[str] = []


class UserCreate(BaseModel):
    username: str = Field(min_length=3)
    name: str
    email: Optional[EmailStr] = None
    password: str = Field(min_length=4)  # 4-digit PIN allowed
    role: RoleName = RoleName.operator
    supplier_id: Optional[uuid.UUID] = None

    @field_validator("email", mode="before")
    @classmethod
    def _blank_email(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(default=None, min_length=4)
    role: Optional[RoleName] = None
    supplier_id: Optional[uuid.UUID] = None
    is_active: Optional[bool] = None
    permissions_override: Optional[dict] = None


class UserResponse(BaseModel):
    id: uuid.UUID
    username: str
    name: str
    email: Optional[str] = None
    is_active: bool
    supplier_id: Optional[uuid.UUID] = None
    roles: List[str] = []
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
