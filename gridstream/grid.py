from collections.abc import Mapping
from dataclasses import replace
from typing import Any

from gridstream.caching import CacheDisposition, cache_disposition
from gridstream.config import GridConfig
from gridstream.errors import InvalidArgument
from gridstream.events import audit_event
from gridstream.ids import FileId, parse_file_id
from gridstream.reader import ReadSession, resolve_metadata, selection_criteria
from gridstream.schemas import FileMetadata, ReadOptions
from gridstream.store import ChunkStore, FileCriteria
from gridstream.writer import WriteSession


class Grid:
    """Entry point bundling a chunk store with the defaults for one namespace.

    A ``Grid`` is immutable: ``with_root`` returns a new instance instead of
    switching the collection of a shared handle.
    """

    def __init__(self, store: ChunkStore, config: GridConfig | None = None) -> None:
        self.store = store
        self.config = config or GridConfig()

    @property
    def root(self) -> str:
        return self.config.root

    def with_root(self, root: str) -> "Grid":
        return Grid(self.store, replace(self.config, root=root))

    def create_write_stream(self, **options: Any) -> WriteSession:
        return WriteSession(self.store, options, self.config)

    def create_read_stream(self, **options: Any) -> ReadSession:
        return ReadSession.open(self.store, options, self.config)

    def put(self, data: bytes, **options: Any) -> FileMetadata:
        with self.create_write_stream(**options) as session:
            session.write(data)
        return session.result

    def get(self, **options: Any) -> bytes:
        return self.create_read_stream(**options).read()

    def _selection(self, options: Mapping[str, Any]) -> ReadOptions:
        try:
            return ReadOptions.model_validate(dict(options))
        except ValueError as exc:
            raise InvalidArgument(f"invalid selection: {exc}") from exc

    def _criteria(self, options: Mapping[str, Any]) -> FileCriteria:
        return selection_criteria(self._selection(options), self.config)

    def find(self, **criteria: Any) -> list[FileMetadata]:
        """All records in the namespace matching ``filename``/``id`` (or ``_id``), newest first."""
        opts = self._selection(criteria)
        if opts.range_start is not None or opts.range_end is not None:
            raise InvalidArgument("find does not take a byte range")
        return self.store.find_metadata(
            FileCriteria(
                root=opts.root or self.root,
                file_id=parse_file_id(opts.id).key if opts.id is not None else None,
                filename=opts.filename,
            )
        )

    def find_one(self, **criteria: Any) -> FileMetadata | None:
        matches = self.find(**criteria)
        return matches[0] if matches else None

    def resolve(self, **criteria: Any) -> FileMetadata:
        return resolve_metadata(self.store, self._criteria(criteria))

    def exist(self, **criteria: Any) -> bool:
        return bool(self.store.find_metadata(self._criteria(criteria)))

    def remove(self, **criteria: Any) -> int:
        """Delete every matching file; metadata goes first so no reader sees a partial chunk set."""
        removed = 0
        for record in self.store.find_metadata(self._criteria(criteria)):
            self.store.delete_metadata(record.root, record.id)
            self.store.delete_chunks(record.root, record.chunk_key)
            removed += 1
            audit_event({"event": "audit", "action": "remove", "file_id": record.id, "root": record.root})
        return removed

    @staticmethod
    def try_parse_id(value: object) -> FileId | None:
        try:
            return parse_file_id(value)
        except InvalidArgument:
            return None

    @staticmethod
    def cache_control(metadata: FileMetadata, request_headers: Mapping[str, str]) -> CacheDisposition:
        return cache_disposition(metadata, request_headers)
