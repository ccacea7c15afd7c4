from gridstream.caching import CacheDisposition, cache_disposition
from gridstream.config import GridConfig
from gridstream.errors import (
    GridError,
    InvalidArgument,
    InvalidRange,
    MissingChunk,
    NotFound,
    SessionFailed,
    StoreError,
    WriteAfterClose,
)
from gridstream.grid import Grid
from gridstream.reader import ReadSession
from gridstream.store import ChunkStore, FileCriteria, MemoryChunkStore, SqlChunkStore
from gridstream.writer import WriteSession

__all__ = [
    "CacheDisposition",
    "ChunkStore",
    "FileCriteria",
    "Grid",
    "GridConfig",
    "GridError",
    "InvalidArgument",
    "InvalidRange",
    "MemoryChunkStore",
    "MissingChunk",
    "NotFound",
    "ReadSession",
    "SessionFailed",
    "SqlChunkStore",
    "StoreError",
    "WriteAfterClose",
    "WriteSession",
    "cache_disposition",
]
