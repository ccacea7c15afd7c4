import hashlib
from dataclasses import dataclass

from pydantic_settings import BaseSettings, SettingsConfigDict

from gridstream.errors import InvalidArgument

DEFAULT_ROOT = "fs"
DEFAULT_CHUNK_SIZE = 255 * 1024
DEFAULT_CONTENT_TYPE = "binary/octet-stream"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "gridstream"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    database_url: str = "sqlite:///./gridstream.db"
    store_backend: str = "sql"
    mongo_url: str = "mongodb://localhost:27017"
    mongo_database: str = "gridstream"
    default_root: str = DEFAULT_ROOT
    chunk_size_bytes: int = DEFAULT_CHUNK_SIZE
    default_content_type: str = DEFAULT_CONTENT_TYPE
    checksum_algorithm: str = "md5"
    orphan_grace_seconds: int = 3600
    gc_enabled: bool = False
    gc_interval_seconds: int = 900
    tracing_enabled: bool = False
    tracing_service_name: str = "gridstream"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True


settings = Settings()


@dataclass(frozen=True)
class GridConfig:
    """Defaults handed to every read/write session.

    Sessions never consult global state; changing the root namespace means
    building a new config (see ``Grid.with_root``).
    """

    root: str = DEFAULT_ROOT
    chunk_size: int = DEFAULT_CHUNK_SIZE
    content_type: str = DEFAULT_CONTENT_TYPE
    checksum_algorithm: str = "md5"

    def __post_init__(self) -> None:
        if not self.root:
            raise InvalidArgument("root namespace must be a non-empty string")
        if isinstance(self.chunk_size, bool) or not isinstance(self.chunk_size, int) or self.chunk_size <= 0:
            raise InvalidArgument(f"chunk_size must be a positive integer, got {self.chunk_size!r}")
        if self.checksum_algorithm not in hashlib.algorithms_available:
            raise InvalidArgument(f"unsupported checksum algorithm: {self.checksum_algorithm}")

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "GridConfig":
        source = source or settings
        return cls(
            root=source.default_root,
            chunk_size=source.chunk_size_bytes,
            content_type=source.default_content_type,
            checksum_algorithm=source.checksum_algorithm,
        )

    def new_digest(self):
        return hashlib.new(self.checksum_algorithm)
