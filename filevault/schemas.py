"""Response schemas.

Python code stays snake_case; API JSON output is camelCase.
"""
from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from typing import Dict, List, Optional
from datetime import datetime


class CamelModel(BaseModel):
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "from_attributes": True,
    }


class FileRead(CamelModel):
    id: str
    filename: str
    size: int
    type: str
    checksum: str
    uploaded_at: datetime
    uploaded_by: Optional[str] = None
    instance: Optional[str] = None

    @classmethod
    def from_record(cls, record) -> "FileRead":
        return cls(
            id=record.id,
            filename=record.display_name,
            size=record.size_bytes,
            type=record.content_type,
            checksum=record.checksum,
            uploaded_at=record.uploaded_at,
            uploaded_by=record.uploaded_by,
            instance=record.origin_instance,
        )


class UploadResponse(CamelModel):
    message: str
    id: str
    filename: str
    size: int
    type: str
    checksum: str
    uploaded_at: datetime
    duplicate: bool


class FileList(CamelModel):
    files: List[FileRead]
    count: int
    total_size: Optional[int] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    query: Optional[str] = None


class DeleteResponse(CamelModel):
    message: str
    filename: str


class InstanceUsage(CamelModel):
    files: int
    size: int


class StorageStats(CamelModel):
    total_files: int
    total_size: int
    average_size: float
    earliest_upload: Optional[datetime] = None
    latest_upload: Optional[datetime] = None
    instance_distribution: Dict[str, InstanceUsage] = {}


class Health(CamelModel):
    status: str
    instance: str
    database: str
    latency_ms: Optional[float] = None
    error: Optional[str] = None
