from datetime import datetime, timezone
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictInt, field_validator


class FileMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    root: str
    filename: str | None = None
    length: int = Field(ge=0)
    chunk_size: int = Field(gt=0)
    checksum: str
    upload_date: datetime
    content_type: str | None = None
    aliases: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    chunks_id: str | None = None

    @field_validator("upload_date")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        # sqlite hands back naive datetimes; everything is stored as UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def chunk_count(self) -> int:
        return -(-self.length // self.chunk_size)

    @property
    def chunk_key(self) -> str:
        """Key the chunks are stored under; differs from ``id`` once the file has been rewritten."""
        return self.chunks_id or self.id


class WriteOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: Any = Field(default=None, validation_alias=AliasChoices("id", "_id"))
    filename: str | None = None
    root: str | None = Field(default=None, min_length=1)
    chunk_size: StrictInt | None = Field(default=None, gt=0, validation_alias=AliasChoices("chunk_size", "chunkSize"))
    content_type: str | None = Field(default=None, validation_alias=AliasChoices("content_type", "contentType"))
    aliases: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ReadOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: Any = Field(default=None, validation_alias=AliasChoices("id", "_id"))
    filename: str | None = None
    root: str | None = Field(default=None, min_length=1)
    range_start: StrictInt | None = None
    range_end: StrictInt | None = None


class RemoveResponse(BaseModel):
    file_id: str
    root: str
    removed: int


class CollectResponse(BaseModel):
    root: str
    orphaned_files: int
    chunks_deleted: int
    failures: int


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    request_id: str | None = None
    file_id: str | None = None
