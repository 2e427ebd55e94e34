"""Entry point for the FastAPI-powered BackLogus backend."""

from __future__ import annotations

import logging
import tempfile
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime
from typing import IO, Iterator

import httpx
from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse

from .config import Settings, settings
from .database import Database
from .errors import (
    ArchiveValidationError,
    CorruptArchive,
    ImportFailed,
    InvalidFormat,
    NotFound,
)
from .services.backup import BackupService
from .services.image_cache import ImageCacheService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024
# Room for multipart boundaries and part headers around the file itself.
MULTIPART_OVERHEAD_BYTES = 64 * 1024
IMPORT_PATH = "/api/backup/import"
ALLOWED_ARCHIVE_SUFFIXES = (".zip",)

app: FastAPI


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    image_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(20.0, connect=10.0))
    )
    database = Database(settings.database_url)
    await database.create_all()

    image_cache = ImageCacheService(settings, image_http_client)
    image_cache.ensure_cache_dir()
    backup_service = BackupService(settings, database.session_factory, image_cache)

    fastapi_app.state.database = database
    fastapi_app.state.image_cache = image_cache
    fastapi_app.state.backup_service = backup_service

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await database.dispose()
        await exit_stack.aclose()


def create_app(app_settings: Settings | None = None) -> FastAPI:
    active_settings = app_settings or settings
    fastapi_app = FastAPI(
        title=active_settings.app_name,
        description="Personal media library tracking with portable backups",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app, active_settings)
    return fastapi_app


def get_backup_service(fastapi_app: FastAPI) -> BackupService:
    service = getattr(fastapi_app.state, "backup_service", None)
    if not isinstance(service, BackupService):
        raise RuntimeError("Backup service not initialised")
    return service


def get_image_cache(fastapi_app: FastAPI) -> ImageCacheService:
    cache = getattr(fastapi_app.state, "image_cache", None)
    if not isinstance(cache, ImageCacheService):
        raise RuntimeError("Image cache not initialised")
    return cache


def current_user_id(request: Request) -> int:
    """Return the authenticated user's ID.

    The auth middleware stores the verified ID on ``request.state``; the
    ``X-User-Id`` header is accepted for trusted internal callers.
    """

    raw = getattr(request.state, "user_id", None) or request.headers.get("x-user-id")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=401, detail="Authentication required") from exc


def _message(status_code: int, message: str, error: str | None = None) -> JSONResponse:
    payload = {"message": message}
    if error is not None:
        payload["error"] = error
    return JSONResponse(payload, status_code=status_code)


def _iter_file(handle: IO[bytes]) -> Iterator[bytes]:
    try:
        while chunk := handle.read(STREAM_CHUNK_SIZE):
            yield chunk
    finally:
        handle.close()


class UploadTooLarge(Exception):
    pass


async def _spool_upload(upload: UploadFile, *, limit: int, spool_max: int) -> IO[bytes]:
    spool = tempfile.SpooledTemporaryFile(max_size=spool_max)
    received = 0
    try:
        while chunk := await upload.read(STREAM_CHUNK_SIZE):
            received += len(chunk)
            if received > limit:
                raise UploadTooLarge(f"Backup exceeds {limit} bytes")
            spool.write(chunk)
    except BaseException:
        spool.close()
        raise
    spool.seek(0)
    return spool


def register_routes(fastapi_app: FastAPI, app_settings: Settings | None = None) -> None:
    active_settings = app_settings or settings

    @fastapi_app.middleware("http")
    async def reject_oversized_imports(request: Request, call_next):
        """Refuse uploads whose declared size is over the ceiling before parsing."""

        if request.method == "POST" and request.url.path == IMPORT_PATH:
            limit = active_settings.backup_max_upload_bytes
            declared = request.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > limit + MULTIPART_OVERHEAD_BYTES:
                return _message(
                    413,
                    "Backup file is too large",
                    f"Content-Length {declared} exceeds {limit} bytes",
                )
        return await call_next(request)

    @fastapi_app.get("/api/health")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok", "timestamp": datetime.utcnow().isoformat()}

    @fastapi_app.get("/api/backup")
    async def create_backup(request: Request):
        user_id = current_user_id(request)
        service = get_backup_service(fastapi_app)
        spool = tempfile.SpooledTemporaryFile(
            max_size=active_settings.backup_spool_max_bytes
        )
        try:
            await service.create_backup(user_id, spool)
        except NotFound as exc:
            spool.close()
            return _message(404, str(exc))
        except Exception:
            spool.close()
            logger.exception("Backup creation failed for user %s", user_id)
            return _message(500, "Failed to create backup")

        spool.seek(0)
        filename = service.backup_filename()
        return StreamingResponse(
            _iter_file(spool),
            media_type="application/zip",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @fastapi_app.post(IMPORT_PATH)
    async def import_backup(request: Request, file: UploadFile | None = File(default=None)):
        user_id = current_user_id(request)
        if file is None:
            return _message(400, "No backup file provided")
        filename = (file.filename or "").lower()
        if not filename.endswith(ALLOWED_ARCHIVE_SUFFIXES):
            return _message(400, "Backup must be a .zip archive")

        service = get_backup_service(fastapi_app)
        try:
            archive = await _spool_upload(
                file,
                limit=active_settings.backup_max_upload_bytes,
                spool_max=active_settings.backup_spool_max_bytes,
            )
        except UploadTooLarge as exc:
            return _message(413, "Backup file is too large", str(exc))

        try:
            result = await service.import_backup(user_id, archive)
        except NotFound as exc:
            return _message(404, str(exc))
        except (InvalidFormat, CorruptArchive, ArchiveValidationError) as exc:
            return _message(400, "Invalid backup file", str(exc))
        except ImportFailed as exc:
            logger.error("Backup import failed for user %s: %s", user_id, exc)
            return _message(500, "Failed to import backup", str(exc))
        except Exception as exc:
            logger.exception("Backup import failed for user %s", user_id)
            return _message(500, "Failed to import backup", str(exc))
        finally:
            archive.close()
        return JSONResponse(result.to_payload())

    @fastapi_app.get("/api/cache/stats")
    async def cache_stats(request: Request) -> JSONResponse:
        current_user_id(request)
        try:
            stats = await get_image_cache(fastapi_app).stats()
        except OSError:
            logger.exception("Failed to read image cache statistics")
            return _message(500, "Failed to get cache statistics")
        return JSONResponse(stats.to_payload())

    @fastapi_app.get("/images/{filename}")
    async def cached_image(filename: str):
        cache = get_image_cache(fastapi_app)
        path = cache.local_path(filename)
        if path is None or not path.is_file():
            return _message(404, "Image not found")
        return FileResponse(path, media_type=cache.mime_type(filename))


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
