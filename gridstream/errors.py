"""Error taxonomy shared by the sessions, the stores and the HTTP layer."""


class GridError(Exception):
    """Base class for every error raised by gridstream."""

    status_code = 500
    error_code = "internal_error"


class InvalidArgument(GridError):
    """Missing selection fields, bad chunk size or malformed options."""

    status_code = 400
    error_code = "invalid_argument"


class NotFound(GridError):
    """No metadata record matched the selection."""

    status_code = 404
    error_code = "not_found"


class InvalidRange(GridError):
    """Requested byte range is inverted or outside ``[0, length]``."""

    status_code = 416
    error_code = "range_not_satisfiable"


class MissingChunk(GridError):
    """An expected chunk is absent or truncated; the stored file is corrupt."""

    status_code = 500
    error_code = "missing_chunk"

    def __init__(self, file_id: str, seq: int, detail: str = "chunk is missing") -> None:
        super().__init__(f"{detail}: file {file_id} chunk {seq}")
        self.file_id = file_id
        self.seq = seq


class StoreError(GridError):
    """Opaque failure reported by the chunk store driver."""

    status_code = 503
    error_code = "store_unavailable"


class SessionStateError(GridError):
    status_code = 409
    error_code = "session_state"


class WriteAfterClose(SessionStateError):
    """write/end/abort called on a write session that no longer accepts it."""


class SessionFailed(SessionStateError):
    """A read session is used after it has already failed."""
