"""
Drive router: HTTP endpoints for listing, folders, uploads, rename, delete
and download.

Delegates business logic to services (access, uploads, drive_service). Every
response body carries a numeric `status` and a `message`; errors are raised as
StorageError subclasses and converted in main.py. A resumable chunk that the
provider wants continued is answered with 308 and the provider's Range.
"""
from typing import Any

from fastapi import APIRouter, Depends, File, Header, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session
from starlette.background import BackgroundTask

from auth import UserSession, get_current_session
from database import get_db
from errors import ValidationError, plan_blocked
from services import account_service, drive_service
from services.access import (
    AccessContext,
    build_access_context,
    require_access_root,
    storage_owner_username,
)
from services.drive_client import FOLDER_MIME, DriveClient
from services.upload_sessions import UploadSessionRegistry
from services.uploads import IncomingFile, UploadOrchestrator

router = APIRouter(prefix="/drive")

EXPORT_MIME = "application/pdf"


# --- Dependencies ---


def get_drive(request: Request) -> DriveClient:
    """The process-wide Drive client built by main.create_app."""
    return request.app.state.drive


def get_upload_registry(request: Request) -> UploadSessionRegistry:
    return request.app.state.upload_registry


def get_access_context(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
    drive: DriveClient = Depends(get_drive),
) -> AccessContext:
    return build_access_context(db, drive, session)


def get_orchestrator(
    db: Session = Depends(get_db),
    drive: DriveClient = Depends(get_drive),
    registry: UploadSessionRegistry = Depends(get_upload_registry),
) -> UploadOrchestrator:
    return UploadOrchestrator(db, drive, registry)


# --- Request models ---


class FolderBody(BaseModel):
    folderName: str = ""


class UrlBody(BaseModel):
    url: str = ""
    fileName: str | None = None


class StartUploadBody(BaseModel):
    """Start of a resumable upload; size is validated by the orchestrator."""
    name: str = ""
    mimeType: str | None = None
    size: Any = None


class RenameBody(BaseModel):
    newName: str = ""


def _ok(message: str = "success", **payload) -> dict:
    return {"status": 200, "message": message, **payload}


def _upload_size(upload: UploadFile) -> int:
    if upload.size is not None:
        return upload.size
    upload.file.seek(0, 2)
    size = upload.file.tell()
    upload.file.seek(0)
    return size


# --- Endpoints ---


@router.get("/storage")
def storage(
    context: AccessContext = Depends(get_access_context),
    db: Session = Depends(get_db),
):
    """Quota status of the caller's own account."""
    status = account_service.get_status(db, context.username)
    return _ok(
        usedBytes=status.used_bytes,
        limitBytes=status.limit_bytes,
        blocked=status.blocked,
        planId=context.account.plan_id,
    )


@router.get("/download/{file_id}")
def download(
    file_id: str,
    context: AccessContext = Depends(get_access_context),
    db: Session = Depends(get_db),
    drive: DriveClient = Depends(get_drive),
):
    """
    Stream a file from Drive. Google Docs types are exported as PDF. Blocked
    for non-admins when the charged account's plan is blocked.
    """
    root_id = require_access_root(drive, file_id, context)
    if not context.is_admin:
        owner = storage_owner_username(drive, file_id, context, root_id)
        if account_service.resolve_billing_status(db, owner).blocked:
            raise plan_blocked()

    metadata = drive.get_file(file_id)
    mime_type = metadata.get("mimeType") or "application/octet-stream"
    if mime_type == FOLDER_MIME:
        raise ValidationError("Folder cannot be downloaded")

    name = drive_service.safe_filename(metadata.get("name") or "download")
    if mime_type.startswith(drive_service.GOOGLE_APPS_PREFIX):
        upstream = drive.open_media(file_id, export_mime=EXPORT_MIME)
        mime_type = EXPORT_MIME
        if not name.lower().endswith(".pdf"):
            name = f"{name}.pdf"
    else:
        upstream = drive.open_media(file_id)

    return StreamingResponse(
        upstream.iter_content(chunk_size=64 * 1024),
        media_type=mime_type,
        headers={"Content-Disposition": f'attachment; filename="{name}"'},
        background=BackgroundTask(upstream.close),
    )


@router.get("")
@router.get("/{folder_id}")
def list_files(
    folder_id: str | None = None,
    parents: str | None = None,
    clear: str | None = None,
    context: AccessContext = Depends(get_access_context),
    drive: DriveClient = Depends(get_drive),
):
    """
    List a folder (default: caller's root). With ?parents=true return the
    breadcrumb chain from the access root instead; ?clear=true drops the
    cached listing first.
    """
    requested_id = folder_id if folder_id and folder_id != "undefined" else None
    target_id = requested_id or context.root_folder_id

    if clear and clear.lower() in ("1", "true", "yes"):
        drive.clear_cache(target_id)

    if parents == "true":
        if not requested_id:
            return _ok(parents=[])
        root_id = require_access_root(drive, requested_id, context)
        chain = drive_service.parents_folder(drive, requested_id, root_id)
        if root_id != context.root_folder_id:
            chain.insert(0, {"id": root_id, "name": drive_service.folder_name(drive, root_id)})
        return _ok(parents=chain)

    require_access_root(drive, target_id, context)
    return _ok(files=drive_service.list_folder(drive, target_id))


@router.post("/folder", status_code=201)
@router.post("/folder/{folder_id}", status_code=201)
def create_folder(
    body: FolderBody,
    folder_id: str | None = None,
    context: AccessContext = Depends(get_access_context),
    drive: DriveClient = Depends(get_drive),
):
    target_id = folder_id or context.root_folder_id
    require_access_root(drive, target_id, context)
    name = body.folderName.strip()
    if not name:
        raise ValidationError("Folder Name is required")
    folder = drive_service.add_folder(drive, name, target_id)
    return {"status": 201, "message": "Success Create New Folder!", "id": folder["id"]}


@router.post("/file")
@router.post("/file/{folder_id}")
def upload_files(
    folder_id: str | None = None,
    files: list[UploadFile] = File(default=[]),
    context: AccessContext = Depends(get_access_context),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Multipart upload of one or more files; the whole batch succeeds or none of it."""
    target_id = folder_id or context.root_folder_id
    incoming = [
        IncomingFile(
            name=f.filename or "untitled",
            mime_type=f.content_type or "application/octet-stream",
            content=f.file,
            size=_upload_size(f),
        )
        for f in files
    ]
    uploaded = orchestrator.upload_files(context, target_id, incoming)
    return _ok("success upload all files", files=uploaded)


@router.post("/url")
@router.post("/url/{folder_id}")
def upload_from_url(
    body: UrlBody,
    folder_id: str | None = None,
    context: AccessContext = Depends(get_access_context),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    target_id = folder_id or context.root_folder_id
    uploaded = orchestrator.upload_from_url(context, target_id, body.url.strip(), body.fileName)
    return _ok("success upload file from url", file=uploaded)


@router.post("/resumable")
@router.post("/resumable/{folder_id}")
def start_resumable(
    body: StartUploadBody,
    folder_id: str | None = None,
    context: AccessContext = Depends(get_access_context),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Open a resumable upload session; chunks then go to /drive/chunk/{uploadId}."""
    target_id = folder_id or context.root_folder_id
    upload_id = orchestrator.start(context, target_id, body.name, body.mimeType, body.size)
    return _ok("upload session created", uploadId=upload_id)


@router.post("/chunk/{upload_id}")
async def upload_chunk(
    upload_id: str,
    request: Request,
    x_upload_start: str | None = Header(default=None),
    x_upload_end: str | None = Header(default=None),
    x_upload_total: str | None = Header(default=None),
    x_upload_size: str | None = Header(default=None),
    session: UserSession = Depends(get_current_session),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """
    Forward one chunk (at most one chunk is held in memory). 308 with the
    provider's committed range while incomplete; 200 with the file id when done.
    """
    data = await request.body()
    result = await run_in_threadpool(
        orchestrator.chunk,
        upload_id,
        session.username,
        data,
        x_upload_start,
        x_upload_end,
        x_upload_total,
        x_upload_size,
    )
    if not result.complete:
        return JSONResponse(
            status_code=308,
            content={"status": 308, "message": "Resume incomplete", "range": result.range},
        )
    return _ok("success upload file", id=result.file.get("id"))


@router.put("/{item_id}")
def rename(
    item_id: str,
    body: RenameBody,
    context: AccessContext = Depends(get_access_context),
    drive: DriveClient = Depends(get_drive),
):
    require_access_root(drive, item_id, context)
    new_name = body.newName.strip()
    if not new_name:
        raise ValidationError("New Name is required")
    file = drive_service.rename_file(drive, item_id, new_name)
    return _ok("success rename file", id=file.get("id"))


@router.delete("/{item_id}")
def delete(
    item_id: str,
    context: AccessContext = Depends(get_access_context),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    freed = orchestrator.delete_object(context, item_id)
    return _ok("success delete", freedBytes=freed)
