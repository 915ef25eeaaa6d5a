from typing import BinaryIO, Optional


class StorageProvider:
    name = "base"

    def save(self, key: str, data: bytes) -> None:
        raise NotImplementedError

    def open(self, key: str) -> Optional[BinaryIO]:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError
