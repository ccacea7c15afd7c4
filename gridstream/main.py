import asyncio
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from gridstream.config import GridConfig, settings
from gridstream.errors import GridError, InvalidRange, NotFound
from gridstream.events import audit_event, log_event
from gridstream.events import trace_id as _trace_id
from gridstream.grid import Grid
from gridstream.maintenance import collect_orphans
from gridstream.metrics import http_request_duration_seconds, metrics_response
from gridstream.reader import ReadSession
from gridstream.schemas import CollectResponse, ErrorResponse, FileMetadata, RemoveResponse
from gridstream.store import build_store
from gridstream.streams import iter_chunks, write_from
from gridstream.tracing import setup_tracing
from gridstream.writer import WriteStatus

grid = Grid(build_store(), GridConfig.from_settings())


def get_grid() -> Grid:
    return grid


@asynccontextmanager
async def lifespan(_: FastAPI):
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    async def _periodic_gc_loop() -> None:
        while not stop_event.is_set():
            try:
                stats = await asyncio.to_thread(collect_orphans, grid.store, grid.root)
                log_event({"event": "orphan_gc_completed", "root": grid.root, **stats})
            except Exception as exc:
                log_event({"event": "orphan_gc_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.gc_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.gc_enabled:
        tasks.append(asyncio.create_task(_periodic_gc_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task


app = FastAPI(title=settings.app_name, lifespan=lifespan)
setup_tracing(app)

COMMON_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid argument"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
    503: {"model": ErrorResponse, "description": "Chunk store unavailable"},
}


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _file_id(request: Request) -> str | None:
    return request.path_params.get("file_id")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        404: "not_found",
        409: "conflict",
        416: "range_not_satisfiable",
        500: "internal_error",
        503: "store_unavailable",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _error_response(request: Request, status_code: int, detail: str, error_code: str, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": detail,
            "error_code": error_code,
            "request_id": _request_id(request),
            "file_id": _file_id(request),
            "trace_id": _trace_id(),
        },
        headers=headers or {},
    )


def _log_request_error(request: Request, status_code: int, error_class: str, detail: str) -> None:
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "file_id": _file_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "error_class": error_class,
            "detail": detail,
        }
    )


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Gridstream-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "file_id": _file_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(GridError)
async def grid_error_handler(request: Request, exc: GridError):
    error_class = "client_error" if exc.status_code < 500 else "server_error"
    _log_request_error(request, exc.status_code, error_class, str(exc))
    return _error_response(request, exc.status_code, str(exc), exc.error_code)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    error_class = "client_error" if 400 <= exc.status_code < 500 else "server_error"
    _log_request_error(request, exc.status_code, error_class, str(exc.detail))
    return _error_response(
        request, exc.status_code, str(exc.detail), _error_code_for_status(exc.status_code), headers=exc.headers
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _log_request_error(request, 500, "unhandled_exception", str(exc))
    return _error_response(request, 500, "internal server error", "internal_error")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "store_backend": settings.store_backend,
        "default_root": grid.root,
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.post(
    "/v1/files",
    response_model=FileMetadata,
    status_code=201,
    responses={**COMMON_ERROR_RESPONSES},
)
async def upload_file(
    request: Request,
    filename: str | None = Query(default=None),
    content_type: str | None = Query(default=None),
    chunk_size: int | None = Query(default=None),
    root: str | None = Query(default=None),
    file_id: str | None = Query(default=None, alias="id"),
    alias: list[str] | None = Query(default=None),
    grid: Grid = Depends(get_grid),
) -> FileMetadata:
    options = {
        "id": file_id,
        "filename": filename,
        "root": root,
        "chunk_size": chunk_size,
        "content_type": content_type or request.headers.get("content-type"),
        "aliases": alias or [],
    }
    session = grid.create_write_stream(**{key: value for key, value in options.items() if value is not None})
    try:
        record = await write_from(session, request.stream())
    except Exception:
        if session.status != WriteStatus.closed:
            await asyncio.to_thread(session.abort)
        raise

    audit_event(
        {
            "event": "audit",
            "action": "upload",
            "request_id": _request_id(request),
            "file_id": record.id,
            "root": record.root,
            "length": record.length,
            "chunk_size": record.chunk_size,
            "chunks": record.chunk_count,
        }
    )
    return record


@app.get("/v1/files", response_model=list[FileMetadata], responses={**COMMON_ERROR_RESPONSES})
def find_files(
    filename: str | None = Query(default=None),
    root: str | None = Query(default=None),
    grid: Grid = Depends(get_grid),
) -> list[FileMetadata]:
    return grid.find(filename=filename, root=root)


def _parse_range(range_header: str, length: int) -> tuple[int, int]:
    """Translate ``bytes=a-b`` (inclusive) into a half-open ``[start, end)``."""
    if not range_header.startswith("bytes="):
        raise InvalidRange("invalid range header")
    parts = range_header.removeprefix("bytes=").split("-", 1)
    if len(parts) != 2 or not (parts[0] or parts[1]):
        raise InvalidRange("invalid range format")
    try:
        if not parts[0]:
            suffix = int(parts[1])
            if suffix <= 0 or length == 0:
                raise InvalidRange("range out of bounds")
            return max(0, length - suffix), length
        start = int(parts[0])
        end = int(parts[1]) + 1 if parts[1] else length
    except ValueError as exc:
        raise InvalidRange("invalid range format") from exc
    if start >= length or end <= start:
        raise InvalidRange("range out of bounds")
    return start, min(end, length)


def _serve(request: Request, grid: Grid, metadata: FileMetadata, range_header: str | None) -> Response:
    disposition = grid.cache_control(metadata, request.headers)
    audit_event(
        {
            "event": "audit",
            "action": "download",
            "request_id": _request_id(request),
            "file_id": metadata.id,
            "root": metadata.root,
            "status_code": disposition.status_code,
            "range_requested": bool(range_header),
        }
    )
    if disposition.not_modified:
        return Response(status_code=304, headers=disposition.headers)

    headers = dict(disposition.headers)
    media_type = headers.pop("Content-Type")
    status_code = 200
    if range_header:
        start, end = _parse_range(range_header, metadata.length)
        session = ReadSession(grid.store, metadata, start, end)
        headers["Content-Range"] = f"bytes {start}-{end - 1}/{metadata.length}"
        status_code = 206
    else:
        session = ReadSession(grid.store, metadata)
    headers["Content-Length"] = str(session.length)
    return StreamingResponse(iter_chunks(session), status_code=status_code, media_type=media_type, headers=headers)


@app.get(
    "/v1/files/by-name/{filename}",
    responses={
        **COMMON_ERROR_RESPONSES,
        404: {"model": ErrorResponse, "description": "File not found"},
        416: {"model": ErrorResponse, "description": "Invalid range request"},
    },
)
async def download_by_name(
    request: Request,
    filename: str,
    root: str | None = Query(default=None),
    range: str | None = Header(default=None),
    grid: Grid = Depends(get_grid),
) -> Response:
    metadata = await asyncio.to_thread(grid.resolve, filename=filename, root=root)
    return _serve(request, grid, metadata, range)


@app.get(
    "/v1/files/{file_id}/info",
    response_model=FileMetadata,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "File not found"}},
)
def file_info(file_id: str, root: str | None = Query(default=None), grid: Grid = Depends(get_grid)) -> FileMetadata:
    return grid.resolve(id=file_id, root=root)


@app.get(
    "/v1/files/{file_id}",
    responses={
        **COMMON_ERROR_RESPONSES,
        404: {"model": ErrorResponse, "description": "File not found"},
        416: {"model": ErrorResponse, "description": "Invalid range request"},
    },
)
async def download(
    request: Request,
    file_id: str,
    root: str | None = Query(default=None),
    range: str | None = Header(default=None),
    grid: Grid = Depends(get_grid),
) -> Response:
    metadata = await asyncio.to_thread(grid.resolve, id=file_id, root=root)
    return _serve(request, grid, metadata, range)


@app.delete(
    "/v1/files/{file_id}",
    response_model=RemoveResponse,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "File not found"}},
)
def remove_file(file_id: str, root: str | None = Query(default=None), grid: Grid = Depends(get_grid)) -> RemoveResponse:
    target_root = root or grid.root
    removed = grid.remove(id=file_id, root=target_root)
    if not removed:
        raise NotFound(f"file {file_id!r} not found in {target_root!r}")
    return RemoveResponse(file_id=file_id, root=target_root, removed=removed)


@app.post("/v1/admin/gc", response_model=CollectResponse, responses={**COMMON_ERROR_RESPONSES})
def run_gc(
    request: Request,
    root: str | None = Query(default=None),
    grace_seconds: int | None = Query(default=None, ge=0),
    grid: Grid = Depends(get_grid),
) -> CollectResponse:
    target_root = root or grid.root
    stats = collect_orphans(grid.store, target_root, grace_seconds)
    audit_event({"event": "audit", "action": "gc", "request_id": _request_id(request), "root": target_root, **stats})
    return CollectResponse(root=target_root, **stats)
