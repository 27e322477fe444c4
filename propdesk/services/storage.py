from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Protocol, Sequence

from propdesk.core.config import get_settings
from propdesk.core.errors import StorageError


logger = logging.getLogger(__name__)


class StorageClient(Protocol):
    # Blob storage is external; callers only need upload and remove.
    async def upload(self, bucket: str, path: str, data: bytes, content_type: str | None = None) -> str:
        ...

    async def remove(self, bucket: str, paths: Sequence[str]) -> None:
        ...


def _safe_relative(path: str) -> Path:
    relative = Path(path)
    if relative.is_absolute() or ".." in relative.parts:
        raise StorageError(f"Invalid storage path: {path}")
    return relative


@dataclass(frozen=True)
class LocalStorageClient:
    # Default local filesystem adapter for development and tests.
    base_dir: Path
    public_base_url: str

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str | None = None) -> str:
        target = self.base_dir / bucket / _safe_relative(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StorageError(str(exc)) from exc
        logger.info("storage_object_written bucket=%s path=%s bytes=%s", bucket, path, len(data))
        return f"{self.public_base_url.rstrip('/')}/{bucket}/{path}"

    async def remove(self, bucket: str, paths: Sequence[str]) -> None:
        for path in paths:
            target = self.base_dir / bucket / _safe_relative(path)
            try:
                target.unlink(missing_ok=True)
            except OSError as exc:
                raise StorageError(str(exc)) from exc


def build_object_path(owner_id: str, filename: str, stamp_ms: int, *, keep_name: bool = True) -> str:
    # Owner-scoped key so objects of one lease or request share a prefix.
    name = Path(filename).name
    if keep_name:
        return f"{owner_id}/{stamp_ms}-{name}"
    return f"{owner_id}/{stamp_ms}{Path(name).suffix}"


def object_path_from_url(file_url: str, bucket: str) -> str | None:
    marker = f"/{bucket}/"
    index = file_url.find(marker)
    if index < 0:
        return None
    return file_url[index + len(marker):] or None


def get_storage_client() -> StorageClient:
    settings = get_settings()
    return LocalStorageClient(Path(settings.storage_dir), settings.storage_public_base_url)
