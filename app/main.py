"""
Storage backend: per-user Drive folders, resumable uploads, quota ledger,
folder sharing.

Load .env in development only (production uses env vars directly). The
application owns one Drive client and one upload-session registry (built in
create_app and injected into handlers). Add CORS, structured error handlers,
optional DB init.
"""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env only in development, before config validates required vars;
# production should set env vars directly
if os.getenv("ENV", "development").lower() == "development":
    load_dotenv(Path(__file__).resolve().parent.parent / ".env")

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from billing import router as billing_router
from config import (
    DRIVE_CLIENT_ID,
    DRIVE_CLIENT_SECRET,
    DRIVE_REFRESH_TOKEN,
    FRONTEND_URL,
    LOG_LEVEL,
    SKIP_DB_INIT,
)
from database import Base, engine
from drive import router as drive_router
from errors import RollbackError, StorageError
from folder_share import router as folder_share_router
from services.drive_client import DriveClient
from services.upload_sessions import UploadSessionRegistry

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logging.getLogger("urllib3").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def _error_body(status: int, message: str) -> dict:
    return {"status": status, "message": message}


async def storage_error_handler(request: Request, exc: StorageError):
    if isinstance(exc, RollbackError):
        logger.error("Rollback failure on %s: orphaned %s", request.url.path, exc.orphaned_ids)
    elif exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.status_code, exc.message))


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are 400s, like every other validation failure."""
    errors = exc.errors()
    message = errors[0].get("msg", "Bad Request") if errors else "Bad Request"
    return JSONResponse(status_code=400, content=_error_body(400, f"Bad Request! {message}"))


async def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.status_code, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def global_exception_handler(request: Request, exc: Exception):
    """Catch unhandled exceptions; log and return generic 500. Never leak stack traces."""
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(status_code=500, content=_error_body(500, "Internal server error"))


def create_app(
    drive: DriveClient | None = None,
    upload_registry: UploadSessionRegistry | None = None,
) -> FastAPI:
    app = FastAPI(
        title="Drive Storage Backend",
        description="Per-user Drive folders, resumable uploads with quota enforcement, folder sharing.",
    )
    if drive is None:
        drive = DriveClient(DRIVE_CLIENT_ID, DRIVE_CLIENT_SECRET, DRIVE_REFRESH_TOKEN)
    app.state.drive = drive
    app.state.upload_registry = upload_registry if upload_registry is not None else UploadSessionRegistry()

    # CORS: explicit origin, allow credentials (cookies). Never use "*" with cookies.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[FRONTEND_URL] if FRONTEND_URL else [],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(drive_router)
    app.include_router(folder_share_router)
    app.include_router(billing_router)
    return app


# Create DB tables if not skipping (production uses Alembic migrations)
if not SKIP_DB_INIT:
    Base.metadata.create_all(bind=engine)

app = create_app()
