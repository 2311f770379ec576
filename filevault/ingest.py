"""Ingestion and deletion of file content.

Two stores hold a file: a metadata row and a blob on disk. Ingestion commits
the row first (the dedup transaction decides whether this upload is the
canonical copy) and writes the blob second. If the blob write fails the row
is deleted again, so a row without a blob only exists for the duration of a
single ingestion. Deletion runs in the opposite order: the row goes first and
the blob is removed on a best-effort basis, since a blob without a row is
never reachable.
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
import re
import time
import uuid
from typing import Any, Optional

import anyio
from loguru import logger
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from .blobs import BlobStore
from .checksum import ChecksumComputer, materialize
from .exceptions import (
    FileVaultError,
    MetadataConflict,
    MetadataDeleteFailure,
    NotFoundError,
    OrphanRecoveryFailure,
    PayloadTooLarge,
    StorageWriteFailure,
    ValidationError,
)
from .metrics import FileMetrics
from .models import FileCandidate, FileRecord
from .stats import StatsAggregator
from .store import MetadataStore

DEFAULT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_MAX_UPLOAD_BYTES = 100 * 1024 * 1024
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_MAX_KEY_NAME = 200


def generate_storage_key(display_name: str) -> str:
    """Build a fresh blob key: ``{epoch_ms}_{random}_{sanitized name}``."""
    name = _UNSAFE_KEY_CHARS.sub("_", Path(display_name).name).strip("._")
    name = name[:_MAX_KEY_NAME] or "unnamed"
    return f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}_{name}"


@dataclass(frozen=True)
class IngestResult:
    record: FileRecord
    # True when the content was already stored; record is the existing one
    duplicate: bool


class IngestionCoordinator:
    def __init__(
        self,
        store: MetadataStore,
        blobs: BlobStore,
        stats: StatsAggregator,
        checksums: Optional[ChecksumComputer] = None,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        instance_id: str = "unknown",
        uploaded_by: str = "api-user",
        metrics: Optional[FileMetrics] = None,
    ):
        self.store = store
        self.blobs = blobs
        self.stats = stats
        self.metrics = metrics or FileMetrics()
        self.checksums = checksums or ChecksumComputer()
        self.max_upload_bytes = max_upload_bytes
        self.instance_id = instance_id
        self.uploaded_by = uploaded_by

    async def ingest(
        self,
        content: Any,
        display_name: str,
        content_type: Optional[str] = None,
        origin_instance: Optional[str] = None,
        uploaded_by: Optional[str] = None,
    ) -> IngestResult:
        """Store ``content`` once and return the record that holds it.

        Raises:
            ValidationError: missing name or empty content.
            PayloadTooLarge: content above ``max_upload_bytes``; nothing hashed.
            LockTimeoutError: the dedup lock was not granted in time.
            MetadataConflict: the metadata store rejected the insert.
            StorageWriteFailure: the blob write failed, the row was removed.
            OrphanRecoveryFailure: the blob write failed and the row could
                not be removed.
        """
        with self.metrics.track("upload"):
            result = await self._ingest(content, display_name, content_type, origin_instance, uploaded_by)
        if not result.duplicate:
            self.metrics.uploaded_size.observe(result.record.size_bytes)
        return result

    async def _ingest(self, content, display_name, content_type, origin_instance, uploaded_by) -> IngestResult:
        if not display_name:
            raise ValidationError("no file name provided")
        data = materialize(content, limit=self.max_upload_bytes)
        if len(data) > self.max_upload_bytes:
            raise PayloadTooLarge(
                f"file too large (max {self.max_upload_bytes} bytes)",
                {"filename": display_name, "limit": self.max_upload_bytes},
            )
        if not data:
            raise ValidationError("empty file", {"filename": display_name})

        checksum = self.checksums.compute(data)
        try:
            candidate = FileCandidate(
                storage_key=generate_storage_key(display_name),
                display_name=display_name,
                size_bytes=len(data),
                content_type=content_type or DEFAULT_CONTENT_TYPE,
                checksum=checksum,
                uploaded_by=uploaded_by or self.uploaded_by,
                origin_instance=origin_instance or self.instance_id,
            )
        except PydanticValidationError as exc:
            raise ValidationError("invalid file metadata", {"errors": exc.errors()}) from exc

        record, is_new = await self._insert_settled(candidate)

        if not is_new:
            logger.info(
                "duplicate upload {!r} resolved to {} ({})",
                display_name,
                record.id,
                record.display_name,
            )
            return IngestResult(record=record, duplicate=True)

        await self._write_blob(record, data)
        logger.info("stored {!r} as {} ({} bytes, {})", display_name, record.id, record.size_bytes, checksum)
        self.stats.schedule_refresh()
        return IngestResult(record=record, duplicate=False)

    async def _insert_settled(self, candidate: FileCandidate):
        """Run the dedup insert so that its outcome is never lost.

        The insert runs in its own task. If the caller is cancelled while the
        worker thread is still busy, the insert is awaited to completion
        anyway; a row it committed is removed again before the cancellation
        propagates.
        """
        insert = asyncio.ensure_future(self._insert(candidate))
        try:
            return await asyncio.shield(insert)
        except asyncio.CancelledError as cancelled:
            try:
                with anyio.CancelScope(shield=True):
                    record, is_new = await insert
            except Exception:
                # nothing was committed
                raise cancelled
            if is_new:
                await self._compensate_cancelled(record, cancelled)
            raise

    async def _insert(self, candidate: FileCandidate):
        try:
            return await anyio.to_thread.run_sync(self.store.insert_or_get_existing, candidate)
        except FileVaultError:
            raise
        except SQLAlchemyError as exc:
            logger.opt(exception=True).error("metadata insert failed for {!r}", candidate.display_name)
            raise MetadataConflict(
                "failed to save file metadata",
                {"filename": candidate.display_name},
            ) from exc

    async def _write_blob(self, record: FileRecord, data: bytes) -> None:
        try:
            await self.blobs.write(record.storage_key, data)
        except Exception as exc:
            await self._compensate(record, exc)
            raise StorageWriteFailure(
                "failed to save file to disk",
                {"id": record.id, "storage_key": record.storage_key},
            ) from exc
        except BaseException as cancelled:
            await self._compensate_cancelled(record, cancelled)
            raise

    async def _compensate_cancelled(self, record: FileRecord, cancelled: BaseException) -> None:
        """Compensate on cancellation without replacing the cancellation."""
        try:
            await self._compensate(record, cancelled)
        except OrphanRecoveryFailure:
            # already logged at CRITICAL; the caller re-raises the cancellation
            pass

    async def _compensate(self, record: FileRecord, cause: BaseException) -> None:
        """Delete the row of an ingestion that did not complete."""
        logger.warning(
            "ingestion of {} aborted ({!r}); removing metadata row {}",
            record.storage_key,
            cause,
            record.id,
        )
        try:
            with anyio.CancelScope(shield=True):
                await anyio.to_thread.run_sync(self.store.delete_record, record.id)
        except Exception as exc:
            logger.opt(exception=True).critical(
                "orphaned metadata row {} (storage key {}): manual reconciliation required",
                record.id,
                record.storage_key,
            )
            raise OrphanRecoveryFailure(
                "metadata row left without a blob",
                {"id": record.id, "storage_key": record.storage_key, "checksum": record.checksum},
            ) from exc

    async def delete(self, display_name: str) -> FileRecord:
        """Remove the most recent record named ``display_name`` and its blob.

        Raises:
            NotFoundError: no record carries the name.
            MetadataDeleteFailure: the row could not be deleted.
        """
        with self.metrics.track("delete"):
            return await self._delete(display_name)

    async def _delete(self, display_name: str) -> FileRecord:
        try:
            record = await anyio.to_thread.run_sync(self.store.delete_latest_by_name, display_name)
        except FileVaultError:
            raise
        except SQLAlchemyError as exc:
            logger.opt(exception=True).error("failed to delete metadata for {!r}", display_name)
            raise MetadataDeleteFailure(
                "failed to delete file metadata",
                {"filename": display_name},
            ) from exc
        if record is None:
            raise NotFoundError("file not found", {"filename": display_name})

        try:
            removed = await self.blobs.delete(record.storage_key)
        except (OSError, ValueError):
            logger.opt(exception=True).warning(
                "metadata for {} deleted but blob {} was not",
                record.id,
                record.storage_key,
            )
        else:
            if not removed:
                logger.warning("blob {} for {} was already missing", record.storage_key, record.id)

        logger.info("deleted {!r} ({})", display_name, record.id)
        self.stats.schedule_refresh()
        return record
