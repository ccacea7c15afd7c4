import hashlib

import pytest

from gridstream.config import GridConfig
from gridstream.errors import InvalidArgument, StoreError, WriteAfterClose
from gridstream.store import FileCriteria, MemoryChunkStore
from gridstream.writer import ChunkBuffer, WriteSession, WriteStatus, drain, feed


class _FlakyStore(MemoryChunkStore):
    def __init__(self, fail_put_at: int | None = None, fail_metadata: bool = False, fail_delete: bool = False) -> None:
        super().__init__()
        self.fail_put_at = fail_put_at
        self.fail_metadata = fail_metadata
        self.fail_delete = fail_delete
        self.put_calls: list[int] = []

    def put_chunk(self, root: str, file_id: str, seq: int, data: bytes) -> None:
        self.put_calls.append(seq)
        if self.fail_put_at is not None and seq == self.fail_put_at:
            raise StoreError(f"connection reset while writing chunk {seq}")
        super().put_chunk(root, file_id, seq, data)

    def put_metadata(self, record) -> None:
        if self.fail_metadata:
            raise StoreError("metadata write timed out")
        super().put_metadata(record)

    def delete_chunks(self, root: str, file_id: str) -> int:
        if self.fail_delete:
            raise StoreError("delete refused")
        return super().delete_chunks(root, file_id)


def test_feed_cuts_complete_chunks_and_keeps_remainder() -> None:
    state, emitted = feed(ChunkBuffer(chunk_size=4), b"hello world")

    assert list(emitted) == [(0, b"hell"), (1, b"o wo")]
    assert state.pending == b"rld"
    assert state.next_seq == 2
    assert state.total_length == 11


def test_feed_does_not_mutate_input_state() -> None:
    initial = ChunkBuffer(chunk_size=3, pending=b"ab", next_seq=5, total_length=17)
    feed(initial, b"cdef")
    assert initial == ChunkBuffer(chunk_size=3, pending=b"ab", next_seq=5, total_length=17)


def test_feed_small_pieces_accumulate_until_chunk_is_full() -> None:
    state = ChunkBuffer(chunk_size=4)
    seen = []
    for piece in (b"h", b"el", b"lo", b" ", b"w"):
        state, emitted = feed(state, piece)
        seen.extend(emitted)
        assert len(state.pending) < 4
    assert seen == [(0, b"hell")]
    assert state.pending == b"o w"


def test_feed_completes_pending_bytes_before_slicing_new_data() -> None:
    state, emitted = feed(ChunkBuffer(chunk_size=3, pending=b"ab", next_seq=4, total_length=2), b"cdefgh")

    assert list(emitted) == [(4, b"abc"), (5, b"def")]
    assert state.pending == b"gh"
    assert state.next_seq == 6
    assert state.total_length == 8


def test_feed_slices_large_writes_one_chunk_at_a_time() -> None:
    state, emitted = feed(ChunkBuffer(chunk_size=4), b"abcd" * 1000 + b"xy")

    assert not isinstance(emitted, list)
    assert next(emitted) == (0, b"abcd")
    assert next(emitted) == (1, b"abcd")
    assert sum(1 for _ in emitted) == 998
    assert state.pending == b"xy"
    assert state.next_seq == 1000


def test_drain_emits_short_final_chunk_only_when_pending() -> None:
    state, emitted = drain(ChunkBuffer(chunk_size=4, pending=b"rld", next_seq=2, total_length=11))
    assert emitted == [(2, b"rld")]
    assert state.pending == b""
    assert state.next_seq == 3

    empty = ChunkBuffer(chunk_size=4, next_seq=2, total_length=8)
    assert drain(empty) == (empty, [])


def test_write_session_persists_chunks_and_metadata() -> None:
    store = MemoryChunkStore()
    session = WriteSession(store, {"filename": "greeting.txt", "chunk_size": 4, "content_type": "text/plain"})
    session.write(b"hello ")
    session.write(b"world")
    record = session.end()

    assert session.status == WriteStatus.closed
    assert session.total_length == 11
    assert session.chunks_written == 3
    assert [store.get_chunk("fs", record.id, seq) for seq in range(3)] == [b"hell", b"o wo", b"rld"]
    assert store.get_chunk("fs", record.id, 3) is None
    assert record.length == 11
    assert record.chunk_size == 4
    assert record.checksum == hashlib.md5(b"hello world").hexdigest()
    assert record.filename == "greeting.txt"
    assert record.content_type == "text/plain"
    assert record.upload_date.tzinfo is not None
    assert store.find_metadata(FileCriteria(root="fs", file_id=record.id)) == [record]


def test_metadata_is_written_only_at_end() -> None:
    store = MemoryChunkStore()
    session = WriteSession(store, {"chunk_size": 2})
    session.write(b"abcdef")

    assert store.chunk_count("fs", session.key) == 3
    assert store.find_metadata(FileCriteria(root="fs", file_id=session.key)) == []


def test_exact_multiple_produces_no_trailing_chunk() -> None:
    store = MemoryChunkStore()
    session = WriteSession(store, {"chunk_size": 4})
    session.write(b"abcdefgh")
    record = session.end()

    assert store.chunk_count("fs", record.id) == 2
    assert record.chunk_count == 2


def test_zero_byte_file_has_metadata_and_no_chunks() -> None:
    store = MemoryChunkStore()
    record = WriteSession(store, {"filename": "empty"}).end()

    assert record.length == 0
    assert record.checksum == hashlib.md5(b"").hexdigest()
    assert store.chunk_count("fs", record.id) == 0


def test_chunk_size_larger_than_content_gives_one_short_chunk() -> None:
    store = MemoryChunkStore()
    session = WriteSession(store, {"chunk_size": 1024})
    session.write(b"tiny")
    record = session.end()

    assert store.chunk_count("fs", record.id) == 1
    assert store.get_chunk("fs", record.id, 0) == b"tiny"


def test_defaults_come_from_config() -> None:
    config = GridConfig(root="media", chunk_size=8, content_type="image/png", checksum_algorithm="sha256")
    store = MemoryChunkStore()
    session = WriteSession(store, None, config)
    session.write(b"0123456789")
    record = session.end()

    assert record.root == "media"
    assert record.chunk_size == 8
    assert record.content_type == "image/png"
    assert record.checksum == hashlib.sha256(b"0123456789").hexdigest()


def test_camel_case_option_names_are_accepted() -> None:
    session = WriteSession(MemoryChunkStore(), {"_id": "report-7", "chunkSize": 16, "contentType": "text/csv"})
    assert session.key == "report-7"
    assert session.chunk_size == 16
    assert session.content_type == "text/csv"


@pytest.mark.parametrize("chunk_size", [0, -4, 2.5, "4", True])
def test_invalid_chunk_size_is_rejected(chunk_size) -> None:
    with pytest.raises(InvalidArgument):
        WriteSession(MemoryChunkStore(), {"chunk_size": chunk_size})


def test_unknown_option_is_rejected() -> None:
    with pytest.raises(InvalidArgument):
        WriteSession(MemoryChunkStore(), {"chunk_sise": 4})


def test_write_rejects_text() -> None:
    session = WriteSession(MemoryChunkStore())
    with pytest.raises(InvalidArgument):
        session.write("not bytes")


def test_write_and_end_after_close_fail() -> None:
    session = WriteSession(MemoryChunkStore(), {"chunk_size": 4})
    session.write(b"abc")
    session.end()

    with pytest.raises(WriteAfterClose):
        session.write(b"more")
    with pytest.raises(WriteAfterClose):
        session.end()
    with pytest.raises(WriteAfterClose):
        session.abort()


def test_abort_deletes_written_chunks() -> None:
    store = MemoryChunkStore()
    session = WriteSession(store, {"chunk_size": 2})
    session.write(b"abcde")
    assert store.chunk_count("fs", session.key) == 2

    assert session.abort() is None
    assert session.status == WriteStatus.failed
    assert store.chunk_count("fs", session.key) == 0
    assert store.find_metadata(FileCriteria(root="fs", file_id=session.key)) == []
    with pytest.raises(WriteAfterClose):
        session.write(b"f")


def test_abort_reports_cleanup_failure_without_raising() -> None:
    store = _FlakyStore(fail_delete=True)
    session = WriteSession(store, {"chunk_size": 2})
    session.write(b"abcd")

    error = session.abort()

    assert isinstance(error, StoreError)
    assert session.status == WriteStatus.failed


def test_store_failure_during_write_marks_session_failed() -> None:
    store = _FlakyStore(fail_put_at=1)
    session = WriteSession(store, {"chunk_size": 2})

    with pytest.raises(StoreError):
        session.write(b"abcdef")

    assert session.status == WriteStatus.failed
    assert store.put_calls == [0, 1]
    with pytest.raises(WriteAfterClose):
        session.write(b"g")
    assert session.abort() is None
    assert store.chunk_count("fs", session.key) == 0


def test_metadata_failure_leaves_chunks_but_no_readable_record() -> None:
    store = _FlakyStore(fail_metadata=True)
    session = WriteSession(store, {"chunk_size": 4})
    session.write(b"hello world")

    with pytest.raises(StoreError):
        session.end()

    assert session.status == WriteStatus.failed
    assert store.chunk_count("fs", session.key) == 3
    assert store.find_metadata(FileCriteria(root="fs", file_id=session.key)) == []


def test_context_manager_ends_on_success_and_aborts_on_error() -> None:
    store = MemoryChunkStore()
    with WriteSession(store, {"chunk_size": 3}) as session:
        session.write(b"abcdefg")
    assert session.status == WriteStatus.closed
    assert session.result is not None

    with pytest.raises(RuntimeError):
        with WriteSession(store, {"chunk_size": 3}) as failed:
            failed.write(b"abcdefg")
            raise RuntimeError("producer went away")
    assert failed.status == WriteStatus.failed
    assert store.chunk_count("fs", failed.key) == 0


def test_generated_ids_are_unique_and_supplied_uuid_is_normalized() -> None:
    store = MemoryChunkStore()
    first = WriteSession(store)
    second = WriteSession(store)
    assert first.key != second.key

    upper = WriteSession(store, {"id": "6F1C2A8E-1D4B-4F0B-9E55-3C3A2B1D0E9F"})
    assert upper.key == "6f1c2a8e-1d4b-4f0b-9e55-3c3a2b1d0e9f"


def test_unexpected_store_exception_still_fails_the_session() -> None:
    class _BuggyStore(MemoryChunkStore):
        def put_metadata(self, record) -> None:
            raise RuntimeError("driver bug")

    store = _BuggyStore()
    session = WriteSession(store, {"chunk_size": 4})
    session.write(b"hello")

    with pytest.raises(RuntimeError):
        session.end()

    assert session.status == WriteStatus.failed
    assert session.abort() is None
    assert store.chunk_count("fs", session.key) == 0


def test_unexpected_exception_during_write_fails_the_session() -> None:
    class _BuggyStore(MemoryChunkStore):
        def put_chunk(self, root: str, file_id: str, seq: int, data: bytes) -> None:
            raise TypeError("unexpected payload")

    session = WriteSession(_BuggyStore(), {"chunk_size": 2})
    with pytest.raises(TypeError):
        session.write(b"abcd")
    assert session.status == WriteStatus.failed
