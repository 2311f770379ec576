"""
Error taxonomy for file ingestion and retrieval.

Every failure leaving the ingestion/deletion boundary is one of these kinds.
Each class carries a stable ``kind`` string and the HTTP status the API layer
answers with, so the mapping lives next to the error and not in the routes.
"""

from typing import Any, Dict, Optional


class FileVaultError(Exception):
    """Base exception for all filevault errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    kind = "error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ValidationError(FileVaultError):
    """Bad input rejected before any side effect."""

    kind = "validation"
    status_code = 400


class UnsupportedInputKind(ValidationError):
    """Content that cannot be materialized into bytes (e.g. ``str``)."""

    kind = "unsupported_input"


class PayloadTooLarge(ValidationError):
    """Raised before hashing when content exceeds the upload limit.

    Context should include:
        - limit: The configured maximum in bytes
    """

    kind = "payload_too_large"
    status_code = 413


class NotFoundError(FileVaultError):
    kind = "not_found"
    status_code = 404


class MetadataConflict(FileVaultError):
    """The metadata store refused the ingestion."""

    kind = "metadata_conflict"
    status_code = 409


class MetadataInsertError(MetadataConflict):
    """Insert violated a constraint other than the (checksum, size) dedup key.

    Storage keys are generated per attempt, so this points at a key
    generation problem rather than at concurrent identical uploads.
    """

    kind = "metadata_insert"


class LockTimeoutError(FileVaultError):
    """Waiting on the dedup row lock exceeded the configured timeout."""

    kind = "lock_timeout"
    status_code = 503
    retryable = True


class StorageWriteFailure(FileVaultError):
    """Blob write failed; the metadata row was removed again."""

    kind = "storage_write"
    status_code = 500


class OrphanRecoveryFailure(FileVaultError):
    """Blob write failed and so did removing the metadata row.

    The store now holds a row pointing at a missing blob. Nothing repairs
    this automatically; context carries the record id and storage key
    needed to reconcile by hand.
    """

    kind = "orphan_recovery"
    status_code = 500


class MetadataDeleteFailure(FileVaultError):
    kind = "metadata_delete"
    status_code = 500
