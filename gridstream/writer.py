"""Write side: turns an incoming byte stream into fixed-size chunk records.

The buffering rules live in two pure transitions, ``feed`` and ``drain``,
which take a ``ChunkBuffer`` and return the next one together with the
chunks that became complete. ``WriteSession`` threads the buffer through
those transitions, keeps the running digest and persists what they emit.
"""

import enum
import logging
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from gridstream.config import GridConfig
from gridstream.errors import InvalidArgument, StoreError, WriteAfterClose
from gridstream.events import log_event, session_logger
from gridstream.ids import FileId, new_file_id, parse_file_id
from gridstream.metrics import (
    bytes_written_total,
    chunks_written_total,
    files_completed_total,
    store_put_latency_seconds,
    write_aborts_total,
    write_failures_total,
)
from gridstream.schemas import FileMetadata, WriteOptions
from gridstream.store import ChunkStore, FileCriteria
from gridstream.tracing import session_span


class WriteStatus(str, enum.Enum):
    open = "OPEN"
    flushing = "FLUSHING"
    closed = "CLOSED"
    failed = "FAILED"


@dataclass(frozen=True)
class ChunkBuffer:
    chunk_size: int
    pending: bytes = b""
    next_seq: int = 0
    total_length: int = 0


def _cut(state: ChunkBuffer, data: bytes, count: int) -> Iterator[tuple[int, bytes]]:
    size = state.chunk_size
    view = memoryview(data)
    offset = 0
    for index in range(count):
        if index == 0 and state.pending:
            offset = size - len(state.pending)
            piece = state.pending + bytes(view[:offset])
        else:
            piece = bytes(view[offset : offset + size])
            offset += size
        yield state.next_seq + index, piece


def feed(state: ChunkBuffer, data: bytes) -> tuple[ChunkBuffer, Iterator[tuple[int, bytes]]]:
    """Append ``data`` and cut every complete chunk out of the buffer.

    The returned buffer always holds fewer than ``chunk_size`` pending bytes.
    Chunks are sliced lazily as the returned iterator is consumed, so only
    one chunk copy exists at a time however large ``data`` is.
    """
    data = bytes(data)
    size = state.chunk_size
    count = (len(state.pending) + len(data)) // size
    if count:
        pending = data[count * size - len(state.pending) :]
    else:
        pending = state.pending + data
    next_state = replace(
        state,
        pending=pending,
        next_seq=state.next_seq + count,
        total_length=state.total_length + len(data),
    )
    return next_state, _cut(state, data, count)


def drain(state: ChunkBuffer) -> tuple[ChunkBuffer, list[tuple[int, bytes]]]:
    """Emit the remainder as the final, possibly short, chunk."""
    if not state.pending:
        return state, []
    return replace(state, pending=b"", next_seq=state.next_seq + 1), [(state.next_seq, state.pending)]


def _options(options: WriteOptions | Mapping[str, Any] | None) -> WriteOptions:
    if isinstance(options, WriteOptions):
        return options
    try:
        return WriteOptions.model_validate(dict(options or {}))
    except ValidationError as exc:
        raise InvalidArgument(f"invalid write options: {exc}") from exc


class WriteSession:
    """One upload, from open to close or abort.

    No chunk is written until the first full chunk is buffered. The
    metadata record is written last, so a file only becomes readable once
    ``end()`` succeeds. If ``end()`` fails the chunks already written stay
    behind without metadata; call ``abort()`` to remove them or let
    ``gridstream.maintenance.collect_orphans`` reclaim them later.

    Rewriting an id that already has a record writes the new chunks under a
    fresh ``chunk_key``. The old record keeps serving its own chunks until the
    new metadata replaces it, and ``abort()`` only ever deletes this
    session's chunk set.

    Usable as a context manager: a clean exit calls ``end()``, an exception
    calls ``abort()``.
    """

    def __init__(
        self,
        store: ChunkStore,
        options: WriteOptions | Mapping[str, Any] | None = None,
        config: GridConfig | None = None,
    ) -> None:
        config = config or GridConfig()
        opts = _options(options)
        self.store = store
        self.file_id: FileId = new_file_id() if opts.id is None else parse_file_id(opts.id)
        self.root = opts.root or config.root
        self.filename = opts.filename
        self.content_type = opts.content_type or config.content_type
        self.aliases = list(opts.aliases)
        self.metadata = dict(opts.metadata)
        self.chunk_size = opts.chunk_size if opts.chunk_size is not None else config.chunk_size
        self.result: FileMetadata | None = None
        self.previous = self._existing_record() if opts.id is not None else None
        self.chunk_key = self.key if self.previous is None else f"{self.key}.{uuid.uuid4().hex}"
        self._buffer = ChunkBuffer(chunk_size=self.chunk_size)
        self._digest = config.new_digest()
        self.status = WriteStatus.open

    def _existing_record(self) -> FileMetadata | None:
        matches = self.store.find_metadata(FileCriteria(root=self.root, file_id=self.key))
        return matches[0] if matches else None

    @property
    def key(self) -> str:
        return self.file_id.key

    @property
    def total_length(self) -> int:
        return self._buffer.total_length

    @property
    def chunks_written(self) -> int:
        return self._buffer.next_seq

    def write(self, data: bytes) -> None:
        if self.status != WriteStatus.open:
            raise WriteAfterClose(f"cannot write to {self.status.value} session for {self.key}")
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise InvalidArgument(f"write expects bytes, got {type(data).__name__}")
        data = bytes(data)
        if not data:
            return
        next_state, emitted = feed(self._buffer, data)
        self._digest.update(data)
        bytes_written_total.inc(len(data))
        try:
            self._persist(emitted)
        except Exception as exc:
            self._fail("write", exc)
            raise
        self._buffer = next_state

    def end(self) -> FileMetadata:
        if self.status != WriteStatus.open:
            raise WriteAfterClose(f"cannot end {self.status.value} session for {self.key}")
        self.status = WriteStatus.flushing
        with session_span("write.end", file_id=self.key, root=self.root):
            next_state, emitted = drain(self._buffer)
            try:
                self._persist(emitted)
                self._buffer = next_state
                record = FileMetadata(
                    id=self.key,
                    root=self.root,
                    filename=self.filename,
                    length=self._buffer.total_length,
                    chunk_size=self.chunk_size,
                    checksum=self._digest.hexdigest(),
                    upload_date=datetime.now(timezone.utc),
                    content_type=self.content_type,
                    aliases=self.aliases,
                    metadata=self.metadata,
                    chunks_id=None if self.chunk_key == self.key else self.chunk_key,
                )
                self.store.put_metadata(record)
            except Exception as exc:
                self._fail("end", exc)
                raise
        self.status = WriteStatus.closed
        self.result = record
        files_completed_total.inc()
        self._release_previous_chunks()
        return record

    def abort(self) -> StoreError | None:
        """Mark the session failed and delete every chunk it wrote.

        Cleanup is best effort: a store failure is logged and returned, never
        raised.
        """
        if self.status == WriteStatus.closed:
            raise WriteAfterClose(f"cannot abort completed file {self.key}")
        self.status = WriteStatus.failed
        write_aborts_total.inc()
        try:
            deleted = self.store.delete_chunks(self.root, self.chunk_key)
        except StoreError as exc:
            log_event(
                {
                    "event": "write_session_abort_cleanup_failed",
                    "file_id": self.key,
                    "root": self.root,
                    "detail": str(exc),
                },
                logger=session_logger,
                level=logging.WARNING,
            )
            return exc
        log_event(
            {"event": "write_session_aborted", "file_id": self.key, "root": self.root, "chunks_deleted": deleted},
            logger=session_logger,
        )
        return None

    def _release_previous_chunks(self) -> None:
        # the new record is live; the replaced chunk set is now unreferenced
        if self.previous is None or self.previous.chunk_key == self.chunk_key:
            return
        try:
            self.store.delete_chunks(self.root, self.previous.chunk_key)
        except StoreError as exc:
            log_event(
                {
                    "event": "replaced_chunks_cleanup_failed",
                    "file_id": self.key,
                    "root": self.root,
                    "chunk_key": self.previous.chunk_key,
                    "detail": str(exc),
                },
                logger=session_logger,
                level=logging.WARNING,
            )

    def _persist(self, emitted: Iterable[tuple[int, bytes]]) -> None:
        for seq, payload in emitted:
            start = time.perf_counter()
            self.store.put_chunk(self.root, self.chunk_key, seq, payload)
            store_put_latency_seconds.observe(time.perf_counter() - start)
            chunks_written_total.inc()

    def _fail(self, stage: str, exc: Exception) -> None:
        self.status = WriteStatus.failed
        write_failures_total.inc()
        log_event(
            {
                "event": "write_session_failed",
                "stage": stage,
                "file_id": self.key,
                "root": self.root,
                "chunks_written": self._buffer.next_seq,
                "orphaned_chunks_possible": True,
                "detail": str(exc),
                "error_class": type(exc).__name__,
            },
            logger=session_logger,
            level=logging.WARNING,
        )

    def __enter__(self) -> "WriteSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.end()
        elif self.status != WriteStatus.closed:
            self.abort()
