import hashlib
import os
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Form, File, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session
from slugify import slugify

from ..db import get_db
from ..auth.security import get_current_user, require_permissions
from ..models.models import FileObject
from ..schemas.files import FileObjectResponse
from ..storage.local_provider import LocalStorageProvider
from ..storage.provider import StorageProvider


router = APIRouter(prefix="/files", tags=["files"])

MAX_UPLOAD_BYTES = 20 * 1024 * 1024


def get_storage() -> StorageProvider:
    return LocalStorageProvider()


def canonical_key(category: Optional[str], original_name: str) -> str:
    now = datetime.utcnow()
    safe_name = slugify(os.path.splitext(original_name)[0]) or "file"
    ext = os.path.splitext(original_name)[1].lower()
    folder = slugify(category or "documents")
    # Random suffix keeps same-name uploads from overwriting each other
    return f"/{now.strftime('%Y')}/{folder}/{now.strftime('%Y-%m-%d')}_{safe_name}_{uuid.uuid4().hex[:8]}{ext}"


@router.post("/upload", response_model=FileObjectResponse)
async def upload(
    file: UploadFile = File(...),
    category: str = Form("documents"),
    db: Session = Depends(get_db),
    storage: StorageProvider = Depends(get_storage),
    user=Depends(require_permissions("can_register_events")),
):
    """Store an event document and return its file id"""
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="File too large")

    original_name = file.filename or "upload"
    key = canonical_key(category, original_name)
    storage.save(key, content)

    fo = FileObject(
        provider=storage.name,
        container=storage.name,
        key=key,
        original_name=original_name,
        size_bytes=len(content),
        checksum_sha256=hashlib.sha256(content).hexdigest(),
        content_type=file.content_type or "application/octet-stream",
        created_by=user.id,
    )
    db.add(fo)
    db.commit()
    db.refresh(fo)
    return fo


@router.get("/{file_id}", response_model=FileObjectResponse)
def get_file(file_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(get_current_user)):
    fo = db.query(FileObject).filter(FileObject.id == file_id).first()
    if not fo:
        raise HTTPException(status_code=404, detail="File not found")
    return fo


@router.get("/{file_id}/download")
def download(
    file_id: uuid.UUID,
    db: Session = Depends(get_db),
    storage: LocalStorageProvider = Depends(get_storage),
    _=Depends(get_current_user),
):
    fo = db.query(FileObject).filter(FileObject.id == file_id).first()
    if not fo:
        raise HTTPException(status_code=404, detail="File not found")
    if not storage.exists(fo.key):
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(
        path=str(storage.path_for(fo.key)),
        media_type=fo.content_type or "application/octet-stream",
        filename=fo.original_name or os.path.basename(fo.key),
    )
