"""ChunkStore backed by MongoDB collection pairs ``<root>.files`` / ``<root>.chunks``.

Documents use the GridFS field names (``files_id``, ``n``, ``chunkSize``,
``uploadDate``, ...) so files written here can be inspected with standard
GridFS tooling. Each chunk also carries ``writtenAt`` so abandoned writes can
be garbage collected. A rewritten file records the key of its new chunk set
in ``chunksId``; ``files_id`` on its chunks holds that key.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from threading import Lock

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

from gridstream.errors import StoreError
from gridstream.models import utc_now
from gridstream.schemas import FileMetadata
from gridstream.store import ChunkStore, FileCriteria, newest_first


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except PyMongoError as exc:
        raise StoreError(f"{action}: {exc}") from exc


def _to_document(record: FileMetadata) -> dict:
    document = {
        "_id": record.id,
        "filename": record.filename,
        "length": record.length,
        "chunkSize": record.chunk_size,
        "checksum": record.checksum,
        "uploadDate": record.upload_date,
        "contentType": record.content_type,
        "aliases": list(record.aliases),
        "metadata": dict(record.metadata),
    }
    if record.chunks_id:
        document["chunksId"] = record.chunks_id
    return document


def _to_metadata(root: str, document: dict) -> FileMetadata:
    return FileMetadata(
        id=str(document["_id"]),
        root=root,
        filename=document.get("filename"),
        length=document["length"],
        chunk_size=document["chunkSize"],
        checksum=document["checksum"],
        upload_date=document["uploadDate"],
        content_type=document.get("contentType"),
        aliases=document.get("aliases") or [],
        metadata=document.get("metadata") or {},
        chunks_id=document.get("chunksId"),
    )


class MongoChunkStore(ChunkStore):
    def __init__(self, database, client: MongoClient | None = None) -> None:
        self.database = database
        self.client = client
        self._indexed_roots: set[str] = set()
        self._lock = Lock()

    @classmethod
    def from_url(cls, url: str, database: str) -> "MongoChunkStore":
        client = MongoClient(url, tz_aware=True)
        return cls(client[database], client=client)

    def _files(self, root: str):
        return self.database[f"{root}.files"]

    def _chunks(self, root: str):
        self._ensure_indexes(root)
        return self.database[f"{root}.chunks"]

    def _ensure_indexes(self, root: str) -> None:
        with self._lock:
            if root in self._indexed_roots:
                return
            with _store_errors(f"failed to create indexes for {root}"):
                self.database[f"{root}.files"].create_index([("filename", ASCENDING), ("uploadDate", DESCENDING)])
                self.database[f"{root}.chunks"].create_index([("files_id", ASCENDING), ("n", ASCENDING)], unique=True)
            self._indexed_roots.add(root)

    def put_chunk(self, root: str, file_id: str, seq: int, data: bytes) -> None:
        with _store_errors(f"failed to write chunk {seq} of {file_id}"):
            self._chunks(root).update_one(
                {"files_id": file_id, "n": seq},
                {"$set": {"data": bytes(data), "writtenAt": utc_now()}},
                upsert=True,
            )

    def get_chunk(self, root: str, file_id: str, seq: int) -> bytes | None:
        with _store_errors(f"failed to read chunk {seq} of {file_id}"):
            document = self._chunks(root).find_one({"files_id": file_id, "n": seq})
        return bytes(document["data"]) if document else None

    def put_metadata(self, record: FileMetadata) -> None:
        with _store_errors(f"failed to write metadata for {record.id}"):
            self._files(record.root).replace_one({"_id": record.id}, _to_document(record), upsert=True)

    def find_metadata(self, criteria: FileCriteria) -> list[FileMetadata]:
        query: dict = {}
        if criteria.file_id is not None:
            query["_id"] = criteria.file_id
        if criteria.filename is not None:
            query["filename"] = criteria.filename
        with _store_errors("failed to query file metadata"):
            documents = list(self._files(criteria.root).find(query))
        return newest_first([_to_metadata(criteria.root, document) for document in documents])

    def delete_chunks(self, root: str, file_id: str) -> int:
        with _store_errors(f"failed to delete chunks of {file_id}"):
            return self._chunks(root).delete_many({"files_id": file_id}).deleted_count

    def delete_metadata(self, root: str, file_id: str) -> int:
        with _store_errors(f"failed to delete metadata of {file_id}"):
            return self._files(root).delete_one({"_id": file_id}).deleted_count

    def orphaned_file_ids(self, root: str, older_than: datetime) -> list[str]:
        chunks = self._chunks(root)
        with _store_errors("failed to list orphaned chunks"):
            stale = set(chunks.distinct("files_id", {"writtenAt": {"$lt": older_than}}))
            if not stale:
                return []
            recent = set(chunks.distinct("files_id", {"writtenAt": {"$gte": older_than}}))
            files = self._files(root)
            candidates = sorted(stale)
            known = set(files.distinct("_id", {"_id": {"$in": candidates}, "chunksId": {"$exists": False}}))
            known |= set(files.distinct("chunksId", {"chunksId": {"$in": candidates}}))
        return sorted(stale - recent - known)

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
