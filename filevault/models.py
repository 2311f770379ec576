from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime, timezone
import re
import uuid
from pydantic import field_validator
from sqlalchemy import BigInteger, CheckConstraint, Column, DateTime, UniqueConstraint

from .checksum import CHECKSUM_LENGTH

_HEX_DIGEST = re.compile(r"^[0-9a-f]{%d}$" % CHECKSUM_LENGTH)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FileCandidate(SQLModel):
    """Validated shape of a record about to be inserted.

    Rows are only ever built from a candidate, so every field that reaches the
    ``files`` table has passed these checks.
    """

    storage_key: str = Field(min_length=1, max_length=255)
    display_name: str = Field(min_length=1, max_length=255)
    size_bytes: int = Field(gt=0)
    content_type: str = Field(default="application/octet-stream", max_length=100)
    checksum: str
    uploaded_by: str = Field(default="api-user", max_length=100)
    origin_instance: str = Field(min_length=1, max_length=50)

    @field_validator("checksum")
    @classmethod
    def _hex_digest(cls, value: str) -> str:
        if not _HEX_DIGEST.match(value):
            raise ValueError(f"checksum must be {CHECKSUM_LENGTH} lowercase hex characters")
        return value


class FileRecord(SQLModel, table=True):
    __tablename__ = "files"
    # (checksum, size_bytes) is the dedup key
    __table_args__ = (
        UniqueConstraint("checksum", "size_bytes", name="uq_files_checksum_size"),
        CheckConstraint("size_bytes > 0", name="ck_files_size_positive"),
    )

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=36)
    # blob location under STORAGE_DIR; assigned once, never changed
    storage_key: str = Field(max_length=255, unique=True)
    display_name: str = Field(max_length=255, index=True)
    size_bytes: int = Field(sa_column=Column(BigInteger, nullable=False))
    content_type: str = Field(default="application/octet-stream", max_length=100)
    checksum: str = Field(max_length=CHECKSUM_LENGTH, index=True)
    uploaded_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    uploaded_by: str = Field(default="api-user", max_length=100)
    origin_instance: str = Field(max_length=50, index=True)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, onupdate=utcnow),
    )
