"""
Local filesystem storage provider.
Event documents are written under STORAGE_DIR/uploads.
"""
from pathlib import Path
from typing import BinaryIO, Optional

import structlog

from ..config import settings
from .provider import StorageProvider

logger = structlog.get_logger(__name__)


class LocalStorageProvider(StorageProvider):
    name = "local"

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or settings.storage_dir)
        (self.base_dir / "uploads").mkdir(parents=True, exist_ok=True)

    def _get_path(self, key: str) -> Path:
        """Filesystem path for a key; keys never escape the uploads directory."""
        clean_key = key.lstrip("/").replace("..", "").replace("\\", "/")
        path = (self.base_dir / "uploads" / clean_key).resolve()
        if not str(path).startswith(str((self.base_dir / "uploads").resolve())):
            raise ValueError(f"Invalid storage key: {key}")
        return path

    def save(self, key: str, data: bytes) -> None:
        path = self._get_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        logger.info("file_stored", key=key, size_bytes=len(data))

    def open(self, key: str) -> Optional[BinaryIO]:
        path = self._get_path(key)
        if not path.exists():
            return None
        return open(path, "rb")

    def path_for(self, key: str) -> Path:
        return self._get_path(key)

    def exists(self, key: str) -> bool:
        return self._get_path(key).exists()

    def delete(self, key: str) -> None:
        path = self._get_path(key)
        if path.exists():
            path.unlink()
            logger.info("file_deleted", key=key)
