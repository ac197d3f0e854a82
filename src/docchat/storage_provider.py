"""
File storage abstraction for uploaded documents.
Default implementation uses the local filesystem; interface allows cloud backends later.
"""
from __future__ import annotations

import time
import uuid
from pathlib import Path
from typing import BinaryIO, Protocol

from .errors import InvalidUploadError, UploadTooLargeError
from .extractors import CSV_MIME, DOCX_MIME, TEXT_MIME
from .observability import get_logger

logger = get_logger(__name__)

ALLOWED_MIME_TYPES = frozenset({CSV_MIME, TEXT_MIME, DOCX_MIME})
ALLOWED_EXTENSIONS = frozenset({".csv", ".txt", ".docx"})
_COPY_BUFFER_BYTES = 64 * 1024


def check_upload_allowed(original_name: str, mime_type: str | None):
    """Accepts a known MIME type, falling back to the extension check."""
    if (mime_type or "").lower() in ALLOWED_MIME_TYPES:
        return
    if Path(original_name or "").suffix.lower() in ALLOWED_EXTENSIONS:
        return
    raise InvalidUploadError("Invalid file type. Allowed types: CSV, TXT, DOCX")


class FileStorageProvider(Protocol):
    @property
    def root(self) -> Path:
        ...

    def ensure_ready(self):
        ...

    def save_stream(self, stream: BinaryIO, original_name: str) -> Path:
        ...

    def delete(self, path: Path) -> bool:
        ...


class LocalFileStorageProvider:
    def __init__(self, root: Path, max_bytes: int | None = None):
        self._root = Path(root)
        self._max_bytes = max_bytes

    @property
    def root(self) -> Path:
        return self._root

    def ensure_ready(self):
        self._root.mkdir(parents=True, exist_ok=True)

    def storage_name(self, original_name: str) -> str:
        """`report.txt` becomes `report-<epoch millis>-<8 hex chars>.txt`."""
        name = Path(original_name or "file").name
        suffix = Path(name).suffix
        stem = name[: -len(suffix)] if suffix else name
        return f"{stem}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}{suffix}"

    def save_stream(self, stream: BinaryIO, original_name: str) -> Path:
        self.ensure_ready()
        destination = self._root / self.storage_name(original_name)
        written = 0
        try:
            with open(destination, "xb") as handle:
                while True:
                    block = stream.read(_COPY_BUFFER_BYTES)
                    if not block:
                        break
                    written += len(block)
                    if self._max_bytes is not None and written > self._max_bytes:
                        raise UploadTooLargeError(
                            f"File exceeds the maximum upload size of {self._max_bytes} bytes"
                        )
                    handle.write(block)
        except UploadTooLargeError:
            self.delete(destination)
            raise
        logger.info("upload_stored", original_name=str(original_name), stored_file=str(destination), bytes=written)
        return destination

    def delete(self, path: Path) -> bool:
        """Best-effort removal; failures are logged and reported as False."""
        target = Path(path)
        try:
            target.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("file_delete_failed", stored_file=str(target), error=str(exc))
            return False
        return True
