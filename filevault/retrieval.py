"""Read-only queries over stored files."""

from pathlib import Path
from typing import List, Optional, Tuple

from .blobs import BlobStore
from .exceptions import NotFoundError, ValidationError
from .metrics import FileMetrics
from .models import FileRecord
from .store import MetadataStore

MAX_PAGE_SIZE = 1000


def _check_limit(limit: int) -> None:
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", {"limit": limit})


class RetrievalService:
    """List, search and resolve files by display name.

    Results are ordered newest first. A display name may belong to several
    records; lookups by name always resolve to the most recent one.
    """

    def __init__(self, store: MetadataStore, blobs: BlobStore, metrics: Optional[FileMetrics] = None):
        self.store = store
        self.blobs = blobs
        self.metrics = metrics or FileMetrics()

    def list_files(self, limit: int = 100, offset: int = 0) -> List[FileRecord]:
        with self.metrics.track("list"):
            _check_limit(limit)
            if offset < 0:
                raise ValidationError("offset must not be negative", {"offset": offset})
            return self.store.list_page(limit=limit, offset=offset)

    def search(self, query: str, limit: int = 50) -> List[FileRecord]:
        if not query or not query.strip():
            raise ValidationError("search query required")
        _check_limit(limit)
        return self.store.search(query, limit=limit)

    def recent(self, limit: int = 10) -> List[FileRecord]:
        _check_limit(limit)
        return self.store.recent(limit=limit)

    def by_instance(self, origin_instance: str, limit: int = MAX_PAGE_SIZE) -> List[FileRecord]:
        _check_limit(limit)
        return self.store.by_instance(origin_instance, limit=limit)

    def get_by_name(self, display_name: str) -> FileRecord:
        record = self.store.latest_by_name(display_name)
        if record is None:
            raise NotFoundError("file not found", {"filename": display_name})
        return record

    def open_download(self, display_name: str) -> Tuple[FileRecord, Path]:
        """Resolve a name to its record and blob path.

        Raises:
            NotFoundError: no record carries the name, or its blob is gone.
        """
        with self.metrics.track("download"):
            record = self.get_by_name(display_name)
            path = self.blobs.path_for(record.storage_key)
            if not path.is_file():
                raise NotFoundError(
                    "file not found on disk",
                    {"filename": display_name, "storage_key": record.storage_key},
                )
            return record, path
