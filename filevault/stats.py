"""Aggregate usage figures derived from the metadata store."""

import asyncio
from typing import Optional, Set

import anyio
from loguru import logger

from .metrics import FileMetrics
from .schemas import InstanceUsage, StorageStats
from .store import MetadataStore


class StatsAggregator:
    """Recomputes storage statistics by scanning the metadata store.

    ``compute`` always reads current state. ``schedule_refresh`` runs the same
    computation in the background after a mutation and keeps the result in
    ``latest``; it never delays the caller and never raises.
    """

    def __init__(self, store: MetadataStore, metrics: Optional[FileMetrics] = None):
        self.store = store
        self.metrics = metrics or FileMetrics()
        self.latest: Optional[StorageStats] = None
        self._pending: Set[asyncio.Task] = set()

    def compute(self) -> StorageStats:
        totals, per_instance = self.store.aggregate()
        total_files, total_size, average_size, earliest, latest = totals
        return StorageStats(
            total_files=int(total_files),
            total_size=int(total_size or 0),
            average_size=float(average_size or 0),
            earliest_upload=earliest,
            latest_upload=latest,
            instance_distribution={
                origin: InstanceUsage(files=int(count), size=int(size or 0))
                for origin, count, size in per_instance
            },
        )

    async def snapshot(self) -> StorageStats:
        return await anyio.to_thread.run_sync(self.compute)

    def schedule_refresh(self) -> None:
        task = asyncio.get_running_loop().create_task(self._refresh())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _refresh(self) -> None:
        try:
            self.latest = await self.snapshot()
        except Exception:
            logger.opt(exception=True).warning("storage stats refresh failed")
            return
        self.metrics.storage_usage.set(self.latest.total_size)
        logger.debug(
            "storage stats refreshed: {} files, {} bytes",
            self.latest.total_files,
            self.latest.total_size,
        )

    async def wait_idle(self) -> None:
        """Wait for every scheduled refresh to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
