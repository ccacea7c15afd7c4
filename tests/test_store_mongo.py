import types
from datetime import datetime, timedelta, timezone

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from gridstream.errors import StoreError
from gridstream.mongo_store import MongoChunkStore
from gridstream.reader import ReadSession
from gridstream.store import FileCriteria
from gridstream.writer import WriteSession


def _matches(document: dict, query: dict) -> bool:
    for field, condition in query.items():
        value = document.get(field)
        if isinstance(condition, dict):
            if "$lt" in condition and not (value is not None and value < condition["$lt"]):
                return False
            if "$gte" in condition and not (value is not None and value >= condition["$gte"]):
                return False
            if "$in" in condition and value not in condition["$in"]:
                return False
            if "$exists" in condition and (field in document) != condition["$exists"]:
                return False
        elif value != condition:
            return False
    return True


class _FakeCollection:
    def __init__(self) -> None:
        self.documents: list[dict] = []
        self.indexes: list[tuple[list, dict]] = []
        self.fail_with: Exception | None = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return "_".join(name for name, _ in keys)

    def update_one(self, query, update, upsert=False):
        self._check()
        for document in self.documents:
            if _matches(document, query):
                document.update(update["$set"])
                return types.SimpleNamespace(matched_count=1)
        if upsert:
            self.documents.append({**query, **update["$set"]})
        return types.SimpleNamespace(matched_count=0)

    def replace_one(self, query, replacement, upsert=False):
        self._check()
        for index, document in enumerate(self.documents):
            if _matches(document, query):
                self.documents[index] = dict(replacement)
                return types.SimpleNamespace(matched_count=1)
        if upsert:
            self.documents.append(dict(replacement))
        return types.SimpleNamespace(matched_count=0)

    def find_one(self, query):
        self._check()
        return next((dict(d) for d in self.documents if _matches(d, query)), None)

    def find(self, query):
        self._check()
        return [dict(d) for d in self.documents if _matches(d, query)]

    def distinct(self, field, query):
        self._check()
        return list({d[field] for d in self.documents if _matches(d, query)})

    def delete_many(self, query):
        self._check()
        kept = [d for d in self.documents if not _matches(d, query)]
        deleted = len(self.documents) - len(kept)
        self.documents = kept
        return types.SimpleNamespace(deleted_count=deleted)

    def delete_one(self, query):
        self._check()
        for index, document in enumerate(self.documents):
            if _matches(document, query):
                del self.documents[index]
                return types.SimpleNamespace(deleted_count=1)
        return types.SimpleNamespace(deleted_count=0)


class _FakeDatabase:
    def __init__(self) -> None:
        self.collections: dict[str, _FakeCollection] = {}

    def __getitem__(self, name: str) -> _FakeCollection:
        return self.collections.setdefault(name, _FakeCollection())


def test_files_are_stored_with_gridfs_field_names() -> None:
    database = _FakeDatabase()
    store = MongoChunkStore(database)

    session = WriteSession(store, {"_id": "report", "filename": "report.csv", "chunk_size": 4, "contentType": "text/csv"})
    session.write(b"a,b\n1,2\n")
    session.end()

    chunks = sorted(database["fs.chunks"].documents, key=lambda d: d["n"])
    assert [(c["files_id"], c["n"], c["data"]) for c in chunks] == [("report", 0, b"a,b\n"), ("report", 1, b"1,2\n")]
    [document] = database["fs.files"].documents
    assert document["_id"] == "report"
    assert document["chunkSize"] == 4
    assert document["length"] == 8
    assert document["contentType"] == "text/csv"
    assert document["uploadDate"].tzinfo is not None


def test_indexes_are_created_once_per_root() -> None:
    database = _FakeDatabase()
    store = MongoChunkStore(database)
    store.put_chunk("fs", "a", 0, b"x")
    store.put_chunk("fs", "a", 1, b"y")
    store.put_chunk("photos", "b", 0, b"z")

    assert len(database["fs.chunks"].indexes) == 1
    assert database["fs.chunks"].indexes[0][1] == {"unique": True}
    assert len(database["photos.files"].indexes) == 1


def test_read_session_streams_from_mongo() -> None:
    store = MongoChunkStore(_FakeDatabase())
    session = WriteSession(store, {"filename": "hello.txt", "chunk_size": 4})
    session.write(b"hello world")
    session.end()

    reader = ReadSession.open(store, {"filename": "hello.txt", "range_start": 2, "range_end": 9})
    assert list(reader) == [b"ll", b"o wo", b"r"]


def test_put_chunk_overwrites_same_sequence() -> None:
    database = _FakeDatabase()
    store = MongoChunkStore(database)
    store.put_chunk("fs", "a", 0, b"old")
    store.put_chunk("fs", "a", 0, b"new")

    assert store.get_chunk("fs", "a", 0) == b"new"
    assert len(database["fs.chunks"].documents) == 1


def test_delete_and_orphan_listing() -> None:
    database = _FakeDatabase()
    store = MongoChunkStore(database)
    session = WriteSession(store, {"_id": "kept", "chunk_size": 2})
    session.write(b"abcd")
    session.end()
    store.put_chunk("fs", "orphan", 0, b"zz")

    future = datetime.now(timezone.utc) + timedelta(minutes=1)
    assert store.orphaned_file_ids("fs", future) == ["orphan"]
    assert store.orphaned_file_ids("fs", future - timedelta(minutes=5)) == []

    assert store.delete_chunks("fs", "orphan") == 1
    assert store.delete_metadata("fs", "kept") == 1
    assert store.delete_metadata("fs", "kept") == 0
    assert store.find_metadata(FileCriteria(root="fs", file_id="kept")) == []


def test_driver_errors_become_store_errors() -> None:
    database = _FakeDatabase()
    store = MongoChunkStore(database)
    store.put_chunk("fs", "a", 0, b"x")
    database["fs.chunks"].fail_with = ServerSelectionTimeoutError("no servers available")

    with pytest.raises(StoreError):
        store.get_chunk("fs", "a", 0)
    with pytest.raises(StoreError):
        store.put_chunk("fs", "a", 1, b"y")


def test_rewrite_records_chunk_key_and_orphans_follow_it() -> None:
    database = _FakeDatabase()
    store = MongoChunkStore(database)
    first = WriteSession(store, {"_id": "logo", "chunk_size": 4})
    first.write(b"old-logo")
    first.end()
    second = WriteSession(store, {"_id": "logo", "chunk_size": 4})
    second.write(b"new!")
    record = second.end()

    [document] = database["fs.files"].documents
    assert document["chunksId"] == record.chunk_key
    assert {c["files_id"] for c in database["fs.chunks"].documents} == {record.chunk_key}
    assert ReadSession.open(store, {"_id": "logo"}).read() == b"new!"

    store.put_chunk("fs", "logo", 0, b"left")
    future = datetime.now(timezone.utc) + timedelta(minutes=1)
    assert store.orphaned_file_ids("fs", future) == ["logo"]
