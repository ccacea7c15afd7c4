from collections.abc import Mapping
from dataclasses import dataclass, field
from email.utils import format_datetime

from gridstream.errors import InvalidArgument
from gridstream.schemas import FileMetadata


@dataclass(frozen=True)
class CacheDisposition:
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def not_modified(self) -> bool:
        return self.status_code == 304


def _lower_keys(headers: Mapping[str, str]) -> dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


def should_serve(request_headers: Mapping[str, str], checksum: str) -> bool:
    headers = _lower_keys(request_headers)
    cache_control = headers.get("cache-control")
    if_none_match = headers.get("if-none-match")
    if cache_control is None and if_none_match is None:
        return True
    directives = {token.strip().lower() for token in (cache_control or "").split(",")}
    if "no-cache" in directives or "private" in directives:
        return True
    return if_none_match is not None and if_none_match != checksum


def cache_disposition(metadata: FileMetadata, request_headers: Mapping[str, str]) -> CacheDisposition:
    """Decide between 200 and 304 for a download and build the cache headers.

    A matching ``If-None-Match`` yields 304 unless ``Cache-Control`` asks for
    ``no-cache`` or ``private``. A request with neither header is served.
    """
    if not metadata.checksum or not metadata.upload_date or not metadata.content_type:
        raise InvalidArgument("metadata needs checksum, upload_date and content_type for cache headers")
    headers = {
        "Pragma": "public",
        "Accept-Ranges": "bytes",
        "Cache-Control": "public, max-age=0",
        "ETag": metadata.checksum,
        "Last-Modified": format_datetime(metadata.upload_date, usegmt=True),
    }
    if should_serve(request_headers, metadata.checksum):
        headers["Content-Type"] = metadata.content_type
        return CacheDisposition(status_code=200, headers=headers)
    return CacheDisposition(status_code=304, headers=headers)
