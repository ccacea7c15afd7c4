import uuid
from dataclasses import dataclass

from gridstream.errors import InvalidArgument


@dataclass(frozen=True)
class RawId:
    """Caller-chosen identifier kept verbatim, e.g. ``"avatar-42"``."""

    value: str

    @property
    def key(self) -> str:
        return self.value


@dataclass(frozen=True)
class TypedId:
    """Native identifier; stored in canonical UUID text form."""

    value: uuid.UUID

    @property
    def key(self) -> str:
        return str(self.value)


FileId = RawId | TypedId


def new_file_id() -> TypedId:
    return TypedId(uuid.uuid4())


def parse_file_id(value: object) -> FileId:
    """Convert a caller-supplied identifier into a ``FileId``.

    Strings that parse as UUIDs become ``TypedId`` so ``"6F1C..."`` and
    ``"6f1c..."`` address the same file; anything else stays a ``RawId``.
    """
    if isinstance(value, (RawId, TypedId)):
        return value
    if isinstance(value, uuid.UUID):
        return TypedId(value)
    if not isinstance(value, str):
        raise InvalidArgument(f"file id must be a string or UUID, got {type(value).__name__}")
    if not value:
        raise InvalidArgument("file id must not be empty")
    try:
        return TypedId(uuid.UUID(value))
    except ValueError:
        return RawId(value)
