from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from threading import Lock

from sqlalchemy import Engine, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from gridstream.config import settings
from gridstream.db import Base, engine
from gridstream.errors import StoreError
from gridstream.models import ChunkRecord, FileRecord, utc_now
from gridstream.schemas import FileMetadata


@dataclass(frozen=True)
class FileCriteria:
    root: str
    file_id: str | None = None
    filename: str | None = None

    def matches(self, record: FileMetadata) -> bool:
        if record.root != self.root:
            return False
        if self.file_id is not None and record.id != self.file_id:
            return False
        if self.filename is not None and record.filename != self.filename:
            return False
        return True


def newest_first(records: list[FileMetadata]) -> list[FileMetadata]:
    return sorted(records, key=lambda r: (r.upload_date, r.id), reverse=True)


class ChunkStore:
    """Persistence capability consumed by the read and write sessions.

    Chunks are keyed by ``(root, file_id, seq)`` and metadata by
    ``(root, id)``. For chunk calls ``file_id`` is the record's
    ``chunk_key``, which equals the file id unless the file was rewritten.
    Every driver failure must surface as ``StoreError``.
    """

    def put_chunk(self, root: str, file_id: str, seq: int, data: bytes) -> None:
        raise NotImplementedError

    def get_chunk(self, root: str, file_id: str, seq: int) -> bytes | None:
        raise NotImplementedError

    def put_metadata(self, record: FileMetadata) -> None:
        raise NotImplementedError

    def find_metadata(self, criteria: FileCriteria) -> list[FileMetadata]:
        """Return matching records, newest ``upload_date`` first."""
        raise NotImplementedError

    def delete_chunks(self, root: str, file_id: str) -> int:
        raise NotImplementedError

    def delete_metadata(self, root: str, file_id: str) -> int:
        raise NotImplementedError

    def orphaned_file_ids(self, root: str, older_than: datetime) -> list[str]:
        """Chunk keys no metadata record points at, last written before ``older_than``."""
        raise NotImplementedError

    def close(self) -> None:
        return None


class MemoryChunkStore(ChunkStore):
    def __init__(self) -> None:
        self._chunks: dict[tuple[str, str], dict[int, tuple[bytes, datetime]]] = {}
        self._files: dict[tuple[str, str], FileMetadata] = {}
        self._lock = Lock()

    def put_chunk(self, root: str, file_id: str, seq: int, data: bytes) -> None:
        with self._lock:
            self._chunks.setdefault((root, file_id), {})[seq] = (bytes(data), utc_now())

    def get_chunk(self, root: str, file_id: str, seq: int) -> bytes | None:
        with self._lock:
            entry = self._chunks.get((root, file_id), {}).get(seq)
        return entry[0] if entry else None

    def put_metadata(self, record: FileMetadata) -> None:
        with self._lock:
            self._files[(record.root, record.id)] = record

    def find_metadata(self, criteria: FileCriteria) -> list[FileMetadata]:
        with self._lock:
            records = [record for record in self._files.values() if criteria.matches(record)]
        return newest_first(records)

    def delete_chunks(self, root: str, file_id: str) -> int:
        with self._lock:
            return len(self._chunks.pop((root, file_id), {}))

    def delete_metadata(self, root: str, file_id: str) -> int:
        with self._lock:
            return 0 if self._files.pop((root, file_id), None) is None else 1

    def orphaned_file_ids(self, root: str, older_than: datetime) -> list[str]:
        with self._lock:
            known = {record.chunk_key for record in self._files.values() if record.root == root}
            orphans = []
            for (chunk_root, file_id), chunks in self._chunks.items():
                if chunk_root != root or file_id in known or not chunks:
                    continue
                if max(written for _, written in chunks.values()) < older_than:
                    orphans.append(file_id)
        return sorted(orphans)

    def chunk_count(self, root: str, file_id: str) -> int:
        with self._lock:
            return len(self._chunks.get((root, file_id), {}))


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise StoreError(f"{action}: {exc}") from exc


def _to_metadata(row: FileRecord) -> FileMetadata:
    return FileMetadata(
        id=row.id,
        root=row.root,
        filename=row.filename,
        length=row.length,
        chunk_size=row.chunk_size,
        checksum=row.checksum,
        upload_date=row.upload_date,
        content_type=row.content_type,
        aliases=list(row.aliases or []),
        metadata=dict(row.extra_metadata or {}),
        chunks_id=row.chunks_id,
    )


class SqlChunkStore(ChunkStore):
    def __init__(self, bind: Engine = engine) -> None:
        self.engine = bind
        self._session_factory = sessionmaker(bind=bind, autoflush=False, autocommit=False, class_=Session)

    def create_schema(self) -> None:
        with _store_errors("failed to create grid tables"):
            Base.metadata.create_all(bind=self.engine)

    def put_chunk(self, root: str, file_id: str, seq: int, data: bytes) -> None:
        with _store_errors(f"failed to write chunk {seq} of {file_id}"), self._session_factory() as db:
            existing = db.scalar(
                select(ChunkRecord).where(
                    ChunkRecord.root == root, ChunkRecord.file_id == file_id, ChunkRecord.seq == seq
                )
            )
            if existing:
                existing.data = bytes(data)
                existing.created_at = utc_now()
            else:
                db.add(ChunkRecord(root=root, file_id=file_id, seq=seq, data=bytes(data)))
            db.commit()

    def get_chunk(self, root: str, file_id: str, seq: int) -> bytes | None:
        with _store_errors(f"failed to read chunk {seq} of {file_id}"), self._session_factory() as db:
            data = db.scalar(
                select(ChunkRecord.data).where(
                    ChunkRecord.root == root, ChunkRecord.file_id == file_id, ChunkRecord.seq == seq
                )
            )
        return bytes(data) if data is not None else None

    def put_metadata(self, record: FileMetadata) -> None:
        with _store_errors(f"failed to write metadata for {record.id}"), self._session_factory() as db:
            row = db.get(FileRecord, (record.root, record.id))
            if row is None:
                row = FileRecord(root=record.root, id=record.id)
                db.add(row)
            row.filename = record.filename
            row.length = record.length
            row.chunk_size = record.chunk_size
            row.checksum = record.checksum
            row.upload_date = record.upload_date
            row.content_type = record.content_type
            row.aliases = list(record.aliases)
            row.extra_metadata = dict(record.metadata)
            row.chunks_id = record.chunks_id
            db.commit()

    def find_metadata(self, criteria: FileCriteria) -> list[FileMetadata]:
        query = select(FileRecord).where(FileRecord.root == criteria.root)
        if criteria.file_id is not None:
            query = query.where(FileRecord.id == criteria.file_id)
        if criteria.filename is not None:
            query = query.where(FileRecord.filename == criteria.filename)
        query = query.order_by(FileRecord.upload_date.desc(), FileRecord.id.desc())
        with _store_errors("failed to query file metadata"), self._session_factory() as db:
            return [_to_metadata(row) for row in db.scalars(query).all()]

    def delete_chunks(self, root: str, file_id: str) -> int:
        with _store_errors(f"failed to delete chunks of {file_id}"), self._session_factory() as db:
            deleted = db.execute(
                delete(ChunkRecord).where(ChunkRecord.root == root, ChunkRecord.file_id == file_id)
            ).rowcount
            db.commit()
        return deleted or 0

    def delete_metadata(self, root: str, file_id: str) -> int:
        with _store_errors(f"failed to delete metadata of {file_id}"), self._session_factory() as db:
            deleted = db.execute(delete(FileRecord).where(FileRecord.root == root, FileRecord.id == file_id)).rowcount
            db.commit()
        return deleted or 0

    def orphaned_file_ids(self, root: str, older_than: datetime) -> list[str]:
        known = select(func.coalesce(FileRecord.chunks_id, FileRecord.id)).where(FileRecord.root == root)
        query = (
            select(ChunkRecord.file_id)
            .where(ChunkRecord.root == root, ChunkRecord.file_id.not_in(known))
            .group_by(ChunkRecord.file_id)
            .having(func.max(ChunkRecord.created_at) < older_than)
            .order_by(ChunkRecord.file_id)
        )
        with _store_errors("failed to list orphaned chunks"), self._session_factory() as db:
            return list(db.scalars(query).all())

    def close(self) -> None:
        self.engine.dispose()


def build_store() -> ChunkStore:
    backend = settings.store_backend.lower()
    if backend == "memory":
        return MemoryChunkStore()
    if backend == "sql":
        store = SqlChunkStore(engine)
        if settings.database_url.startswith("sqlite"):
            store.create_schema()
        return store
    if backend == "mongo":
        from gridstream.mongo_store import MongoChunkStore

        return MongoChunkStore.from_url(settings.mongo_url, settings.mongo_database)
    raise ValueError(f"unsupported store backend: {settings.store_backend}")

