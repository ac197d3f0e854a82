# /docchat/document_manager.py
"""
Handles document ingestion (extract -> summarize -> store) and the per-owner
in-memory registry of ingested files.
"""
from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from .errors import DocChatError
from .extractors import extract_text
from .observability import get_logger
from .storage_provider import FileStorageProvider
from .text_processing import summarize
from .tokenization import estimate_token_count

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IngestedFile:
    id: str
    owner_id: str
    display_name: str
    stored_name: str
    stored_path: str
    mime_type: str
    extracted_text: str
    summary: str
    token_count: int
    size_bytes: int
    uploaded_at: datetime = field(default_factory=_utcnow)


class FileRegistry:
    """
    Process-wide store of ingested files keyed by owner.
    Construct once at startup and pass by reference; `clear()` is the teardown hook.
    """

    def __init__(self, storage: FileStorageProvider | None = None):
        self.storage = storage
        self._lock = threading.RLock()
        self._files: dict[str, list[IngestedFile]] = {}

    def store(
        self,
        owner_id: str,
        *,
        display_name: str,
        stored_path: str | Path,
        mime_type: str,
        extracted_text: str,
        summary: str,
        size_bytes: int,
        uploaded_at: datetime | None = None,
    ) -> IngestedFile:
        """Assigns a fresh id, appends the record to the owner's list and returns it."""
        path = Path(stored_path)
        record = IngestedFile(
            id=str(uuid.uuid4()),
            owner_id=str(owner_id),
            display_name=str(display_name),
            stored_name=path.name,
            stored_path=str(path),
            mime_type=str(mime_type or ""),
            extracted_text=extracted_text,
            summary=summary,
            token_count=estimate_token_count(extracted_text),
            size_bytes=int(size_bytes or 0),
            uploaded_at=uploaded_at or _utcnow(),
        )
        with self._lock:
            self._files.setdefault(record.owner_id, []).append(record)
        logger.info(
            "file_registered",
            owner_id=record.owner_id,
            file_id=record.id,
            display_name=record.display_name,
            token_count=record.token_count,
        )
        return record

    def list(self, owner_id: str) -> list[IngestedFile]:
        with self._lock:
            return list(self._files.get(str(owner_id), ()))

    def get(self, owner_id: str, file_id: str) -> IngestedFile | None:
        with self._lock:
            for record in self._files.get(str(owner_id), ()):
                if record.id == file_id:
                    return record
        return None

    def delete(self, owner_id: str, file_id: str) -> bool:
        """Removes the record, then deletes the stored bytes best-effort."""
        with self._lock:
            owned = self._files.get(str(owner_id))
            if not owned:
                return False
            index = next((i for i, record in enumerate(owned) if record.id == file_id), None)
            if index is None:
                return False
            record = owned.pop(index)

        removed = False
        if self.storage is not None:
            try:
                removed = self.storage.delete(Path(record.stored_path))
            except OSError as exc:
                logger.warning("file_delete_failed", file_id=record.id, stored_file=record.stored_path, error=str(exc))
        logger.info("file_deleted", owner_id=record.owner_id, file_id=record.id, bytes_removed=bool(removed))
        return True

    def clear(self):
        with self._lock:
            self._files.clear()


class DocumentIngestor:
    """Runs extract -> summarize -> store for a single stored upload."""

    def __init__(
        self,
        registry: FileRegistry,
        *,
        extractor: Callable[[Path, str], str] = extract_text,
    ):
        self.registry = registry
        self.extractor = extractor

    async def ingest(
        self,
        owner_id: str,
        stored_path: str | Path,
        mime_type: str,
        size_bytes: int,
        display_name: str,
    ) -> IngestedFile:
        path = Path(stored_path)
        loop = asyncio.get_running_loop()
        try:
            # Blocking file parsing runs off the event loop.
            text = await loop.run_in_executor(None, self.extractor, path, mime_type)
        except DocChatError as exc:
            logger.warning(
                "file_ingest_failed",
                owner_id=str(owner_id),
                display_name=str(display_name),
                code=exc.code,
                error=exc.message,
            )
            self._discard(path)
            raise
        except Exception as exc:
            logger.error(
                "file_ingest_crashed",
                owner_id=str(owner_id),
                display_name=str(display_name),
                error=str(exc),
                exc_info=True,
            )
            self._discard(path)
            raise

        record = self.registry.store(
            owner_id,
            display_name=display_name,
            stored_path=path,
            mime_type=mime_type,
            extracted_text=text,
            summary=summarize(text),
            size_bytes=size_bytes,
        )
        logger.info("file_ingested", owner_id=record.owner_id, file_id=record.id, summary_chars=len(record.summary))
        return record

    def _discard(self, path: Path):
        # No record owns these bytes.
        if self.registry.storage is not None:
            self.registry.storage.delete(path)
