import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class FileObjectResponse(BaseModel):
    id: uuid.UUID
    key: str
    original_name: Optional[str] = None
    size_bytes: Optional[int] = None
    content_type: Optional[str] = None
    checksum_sha256: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
