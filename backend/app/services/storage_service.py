from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import logging
from pathlib import Path
from typing import Protocol
import uuid

from app.core.config import settings
from app.core.errors import StorageError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlobMetadata:
    attempt_id: uuid.UUID
    section_id: str
    question_id: str
    file_name: str
    content_type: str | None = None


@dataclass(frozen=True)
class StoredBlob:
    path: str
    file_name: str
    size: int


class BlobStorage(Protocol):
    def store(self, data: bytes, metadata: BlobMetadata) -> StoredBlob:
        ...

    def delete(self, path: str) -> None:
        ...


class LocalBlobStorage:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def store(self, data: bytes, metadata: BlobMetadata) -> StoredBlob:
        suffix = Path(metadata.file_name).suffix[:16]
        target_dir = self.root / str(metadata.attempt_id)
        target = target_dir / f'{metadata.section_id}_{metadata.question_id}_{uuid.uuid4().hex}{suffix}'
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            logger.error('Failed to store upload for attempt %s: %s', metadata.attempt_id, exc)
            raise StorageError('Could not store uploaded file') from exc
        return StoredBlob(path=target.as_posix(), file_name=metadata.file_name, size=len(data))

    def delete(self, path: str) -> None:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning('Failed to remove stored upload %s: %s', path, exc)


@lru_cache
def get_blob_storage() -> BlobStorage:
    return LocalBlobStorage(settings.UPLOAD_DIR)
