"""
Shared fixtures: a file-backed SQLite database and blob directory per test.
"""

import hashlib
from pathlib import Path

import pytest

from filevault.blobs import BlobStore
from filevault.ingest import IngestionCoordinator
from filevault.metrics import FileMetrics
from filevault.models import FileCandidate
from filevault.retrieval import RetrievalService
from filevault.settings import Settings
from filevault.stats import StatsAggregator
from filevault.store import MetadataStore, build_engine


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'files.db'}",
        STORAGE_DIR=tmp_path / "uploads",
        INSTANCE_ID="test-1",
        API_KEY="test-key",
        MAX_UPLOAD_BYTES=1024,
        LOCK_TIMEOUT_SECONDS=5.0,
        LOG_TO_FILE=False,
        LOG_DIR=tmp_path / "logs",
    )


@pytest.fixture
def store(settings: Settings):
    engine = build_engine(settings.DATABASE_URL, settings.LOCK_TIMEOUT_SECONDS)
    metadata_store = MetadataStore(engine, lock_timeout=settings.LOCK_TIMEOUT_SECONDS)
    metadata_store.create_schema()
    yield metadata_store
    engine.dispose()


@pytest.fixture
def blobs(settings: Settings) -> BlobStore:
    blob_store = BlobStore(settings.STORAGE_DIR)
    blob_store.ensure_dir()
    return blob_store


@pytest.fixture
def metrics() -> FileMetrics:
    return FileMetrics()


@pytest.fixture
def stats(store: MetadataStore, metrics: FileMetrics) -> StatsAggregator:
    return StatsAggregator(store, metrics)


@pytest.fixture
def retrieval(store: MetadataStore, blobs: BlobStore, metrics: FileMetrics) -> RetrievalService:
    return RetrievalService(store, blobs, metrics)


@pytest.fixture
async def coordinator(store, blobs, stats, settings, metrics):
    """Coordinator wired to the test stores; waits for stats refreshes on teardown."""
    ingestion = IngestionCoordinator(
        store,
        blobs,
        stats,
        max_upload_bytes=settings.MAX_UPLOAD_BYTES,
        instance_id=settings.INSTANCE_ID,
        metrics=metrics,
    )
    yield ingestion
    await stats.wait_idle()


def make_candidate(
    name: str,
    content: bytes,
    content_type: str = "text/plain",
    origin_instance: str = "test-1",
    storage_key: str | None = None,
) -> FileCandidate:
    """Build a valid candidate for ``content``."""
    return FileCandidate(
        storage_key=storage_key or f"key_{hashlib.sha256(name.encode() + content).hexdigest()[:16]}",
        display_name=name,
        size_bytes=len(content),
        content_type=content_type,
        checksum=hashlib.sha256(content).hexdigest(),
        origin_instance=origin_instance,
    )


def blob_files(blobs: BlobStore) -> list[Path]:
    return sorted(p for p in blobs.base_dir.iterdir() if p.is_file())
