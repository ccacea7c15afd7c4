"""Read side: streams a byte range of a stored file, one chunk per pull."""

import enum
import time
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from gridstream.config import GridConfig
from gridstream.errors import GridError, InvalidArgument, InvalidRange, MissingChunk, NotFound, SessionFailed
from gridstream.ids import parse_file_id
from gridstream.metrics import bytes_read_total, chunks_read_total, missing_chunks_total, store_get_latency_seconds
from gridstream.schemas import FileMetadata, ReadOptions
from gridstream.store import ChunkStore, FileCriteria, newest_first
from gridstream.tracing import session_span


class ReadStatus(str, enum.Enum):
    resolving = "RESOLVING"
    streaming = "STREAMING"
    done = "DONE"
    failed = "FAILED"


def chunk_span(range_start: int, range_end: int, chunk_size: int) -> tuple[int, int]:
    """First and last chunk seq covering ``[range_start, range_end)``.

    An empty range yields ``last < first`` so nothing is fetched.
    """
    first = range_start // chunk_size
    if range_end <= range_start:
        return first, first - 1
    return first, -(-range_end // chunk_size) - 1


def resolve_metadata(store: ChunkStore, criteria: FileCriteria) -> FileMetadata:
    """Pick the record a read should stream.

    Filenames are not unique; when several records match, the most recent
    ``upload_date`` wins (ties broken by id).
    """
    matches = store.find_metadata(criteria)
    if not matches:
        target = criteria.file_id if criteria.file_id is not None else criteria.filename
        raise NotFound(f"file {target!r} not found in {criteria.root!r}")
    return newest_first(matches)[0]


def selection_criteria(opts: ReadOptions, config: GridConfig) -> FileCriteria:
    if opts.id is None and not opts.filename:
        raise InvalidArgument("an id or a filename is required to select a file")
    return FileCriteria(
        root=opts.root or config.root,
        file_id=parse_file_id(opts.id).key if opts.id is not None else None,
        filename=opts.filename,
    )


def _options(options: ReadOptions | Mapping[str, Any] | None) -> ReadOptions:
    if isinstance(options, ReadOptions):
        return options
    try:
        return ReadOptions.model_validate(dict(options or {}))
    except ValidationError as exc:
        raise InvalidArgument(f"invalid read options: {exc}") from exc


class ReadSession:
    """Lazy, single-pass sequence of byte slices for one range of one file.

    Each ``next_chunk()`` fetches exactly one chunk, in seq order, and trims
    it to the range; the concatenation of the slices is exactly
    ``file[range_start:range_end]``. Iterating the session drives
    ``next_chunk()`` until end of stream.
    """

    def __init__(
        self,
        store: ChunkStore,
        metadata: FileMetadata,
        range_start: int | None = None,
        range_end: int | None = None,
    ) -> None:
        self.status = ReadStatus.resolving
        self.store = store
        self.metadata = metadata
        self.range_start = 0 if range_start is None else range_start
        self.range_end = metadata.length if range_end is None else range_end
        if self.range_start < 0 or self.range_end > metadata.length or self.range_start > self.range_end:
            self.status = ReadStatus.failed
            raise InvalidRange(
                f"range [{self.range_start}, {self.range_end}) is outside file of length {metadata.length}"
            )
        self.start_seq, self.end_seq = chunk_span(self.range_start, self.range_end, metadata.chunk_size)
        self.next_seq = self.start_seq
        self.status = ReadStatus.streaming

    @classmethod
    def open(
        cls,
        store: ChunkStore,
        options: ReadOptions | Mapping[str, Any] | None = None,
        config: GridConfig | None = None,
    ) -> "ReadSession":
        opts = _options(options)
        criteria = selection_criteria(opts, config or GridConfig())
        with session_span("read.open", root=criteria.root, file_id=criteria.file_id, filename=criteria.filename):
            metadata = resolve_metadata(store, criteria)
        return cls(store, metadata, opts.range_start, opts.range_end)

    @property
    def file_id(self) -> str:
        return self.metadata.id

    @property
    def length(self) -> int:
        return self.range_end - self.range_start

    def next_chunk(self) -> bytes | None:
        """Return the next trimmed slice, or ``None`` once the range is exhausted."""
        if self.status == ReadStatus.done:
            return None
        if self.status != ReadStatus.streaming:
            raise SessionFailed(f"read session for {self.file_id} is {self.status.value}")
        if self.next_seq > self.end_seq:
            self.status = ReadStatus.done
            return None

        seq = self.next_seq
        chunk_size = self.metadata.chunk_size
        start = time.perf_counter()
        try:
            payload = self.store.get_chunk(self.metadata.root, self.metadata.chunk_key, seq)
        except GridError:
            self.status = ReadStatus.failed
            raise
        store_get_latency_seconds.observe(time.perf_counter() - start)

        offset = seq * chunk_size
        expected = min(chunk_size, self.metadata.length - offset)
        if payload is None or len(payload) != expected:
            self.status = ReadStatus.failed
            missing_chunks_total.inc()
            if payload is None:
                raise MissingChunk(self.file_id, seq)
            raise MissingChunk(self.file_id, seq, f"chunk has {len(payload)} bytes, expected {expected}")

        piece = payload[max(self.range_start - offset, 0) : min(self.range_end - offset, expected)]
        self.next_seq = seq + 1
        chunks_read_total.inc()
        bytes_read_total.inc(len(piece))
        return piece

    def read(self) -> bytes:
        return b"".join(self)

    def close(self) -> None:
        if self.status == ReadStatus.streaming:
            self.status = ReadStatus.done

    def __iter__(self) -> "ReadSession":
        return self

    def __next__(self) -> bytes:
        piece = self.next_chunk()
        if piece is None:
            raise StopIteration
        return piece
