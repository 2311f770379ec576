"""Prometheus instruments for file operations.

Each ``FileMetrics`` owns its registry, so several applications (or tests) in
one process never share counters.
"""

from contextlib import contextmanager
from typing import Iterator, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

UPLOAD_SIZE_BUCKETS = (1024, 10 * 1024, 100 * 1024, 1024 * 1024, 10 * 1024 * 1024, 100 * 1024 * 1024)

SUCCESS = "success"
ERROR = "error"


class FileMetrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.operations = Counter(
            "file_operations_total",
            "Total number of file operations",
            ["operation", "status"],
            registry=self.registry,
        )
        self.uploaded_size = Histogram(
            "uploaded_files_size_bytes",
            "Size of uploaded files in bytes",
            buckets=UPLOAD_SIZE_BUCKETS,
            registry=self.registry,
        )
        self.storage_usage = Gauge(
            "storage_usage_bytes",
            "Total bytes held by stored files",
            registry=self.registry,
        )

    def record(self, operation: str, status: str) -> None:
        self.operations.labels(operation=operation, status=status).inc()

    @contextmanager
    def track(self, operation: str) -> Iterator[None]:
        """Count one ``operation``: success on normal exit, error otherwise."""
        try:
            yield
        except BaseException:
            self.record(operation, ERROR)
            raise
        self.record(operation, SUCCESS)

    def value(self, operation: str, status: str) -> float:
        """Current count for ``operation``/``status``; 0 when never recorded."""
        sample = self.registry.get_sample_value(
            "file_operations_total", {"operation": operation, "status": status}
        )
        return sample or 0.0
