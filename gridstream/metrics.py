from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

chunks_written_total = Counter("grid_chunks_written_total", "Total chunks persisted by write sessions")
bytes_written_total = Counter("grid_bytes_written_total", "Total bytes accepted by write sessions")
files_completed_total = Counter("grid_files_completed_total", "Write sessions that stored their metadata")
write_failures_total = Counter("grid_write_failures_total", "Write sessions that failed")
write_aborts_total = Counter("grid_write_aborts_total", "Write sessions aborted by the caller")
chunks_read_total = Counter("grid_chunks_read_total", "Total chunks fetched by read sessions")
bytes_read_total = Counter("grid_bytes_read_total", "Total bytes emitted by read sessions")
missing_chunks_total = Counter("grid_missing_chunks_total", "Expected chunks that were absent or truncated")

store_put_latency_seconds = Histogram("grid_store_put_latency_seconds", "Chunk store write latency in seconds")
store_get_latency_seconds = Histogram("grid_store_get_latency_seconds", "Chunk store read latency in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
