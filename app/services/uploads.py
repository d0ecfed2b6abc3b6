"""
Upload orchestration: resumable sessions, multipart batches, URL ingestion
and deletes, with quota admission before transfer and post-hoc enforcement
after it.

Admission is optimistic: nothing is reserved when a transfer starts. Once the
provider reports an object as finalized, the charged account's status is read
again; if it is blocked or the object no longer fits, every object created by
the request is deleted (compensating delete) and the error is returned. A
failed compensating delete is logged with the orphaned ids and surfaced as
RollbackError, never swallowed.

Resumable state machine per upload id:
    NONE -> SESSION_OPEN -> (CHUNK_ACCEPTED)* -> COMPLETED
with ABORTED reachable from any state (quota rollback, TTL sweep).
"""
import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Iterable, Iterator
from urllib.parse import unquote, urlparse

import requests
from sqlalchemy.orm import Session

from config import MAX_BATCH_FILES, URL_FETCH_TIMEOUT
from errors import (
    NotFoundError,
    RollbackError,
    UpstreamError,
    ValidationError,
    forbidden,
    plan_blocked,
    storage_limit_exceeded,
)
from services import account_service, drive_service
from services.access import AccessContext, require_access_root, storage_owner_username
from services.account_service import QuotaStatus
from services.drive_client import ChunkResult, DriveClient
from services.upload_sessions import UploadSession, UploadSessionRegistry

logger = logging.getLogger(__name__)

DEFAULT_MIME = "application/octet-stream"
UNKNOWN_FILE_ID = "<unknown>"


@dataclass
class IncomingFile:
    """One part of a multipart batch upload."""
    name: str
    mime_type: str
    content: BinaryIO
    size: int


@dataclass
class ByteRange:
    start: int
    end: int
    total: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


def _parse_int(label: str, raw: Any) -> int:
    text = "" if raw is None else str(raw).strip()
    if not text:
        raise ValidationError(f"Missing {label}")
    # ASCII digits only: no sign, underscores or non-ASCII digits
    if not (text.isascii() and text.isdigit()):
        raise ValidationError(f"Invalid {label}")
    return int(text)


def parse_byte_range(start: Any, end: Any, total: Any, size: Any = None) -> ByteRange:
    """
    Validate the x-upload-start/end/total(/size) header values:
    all numeric, 0 <= start <= end < total, and size == end - start + 1 when given.
    """
    byte_range = ByteRange(
        start=_parse_int("x-upload-start", start),
        end=_parse_int("x-upload-end", end),
        total=_parse_int("x-upload-total", total),
    )
    if byte_range.start < 0 or byte_range.end < byte_range.start:
        raise ValidationError("Invalid byte range")
    if byte_range.end >= byte_range.total:
        raise ValidationError("Byte range exceeds total size")
    if size is not None and not (isinstance(size, str) and not size.strip()):
        if _parse_int("x-upload-size", size) != byte_range.length:
            raise ValidationError("Chunk size does not match byte range")
    return byte_range


def parse_declared_size(raw: Any) -> int:
    """Declared upload size: a positive, finite, whole number of bytes."""
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        raise ValidationError("Size must be a positive number")
    try:
        value = float(raw)
    except ValueError:
        raise ValidationError("Size must be a positive number")
    except OverflowError:
        raise ValidationError("Size is too large")
    if not math.isfinite(value) or value <= 0:
        raise ValidationError("Size must be a positive number")
    if isinstance(raw, int):
        return raw
    if value != int(value):
        raise ValidationError("Size must be a whole number of bytes")
    return int(value)


def filename_from_content_disposition(value: str | None) -> str:
    if not value:
        return ""
    star = re.search(r"filename\*=UTF-8''([^;]+)", value, re.IGNORECASE)
    if star:
        return unquote(star.group(1))
    plain = re.search(r'filename="?([^";]+)"?', value, re.IGNORECASE)
    return plain.group(1) if plain else ""


def filename_from_url(url: str) -> str:
    name = urlparse(url).path.rsplit("/", 1)[-1]
    return unquote(name) if name else ""


class CountingStream:
    """Iterator over a byte stream that counts what passes through."""

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = iter(chunks)
        self.bytes_read = 0

    def __iter__(self) -> Iterator[bytes]:
        return self

    def __next__(self) -> bytes:
        chunk = next(self._chunks)
        self.bytes_read += len(chunk)
        return chunk


class UploadOrchestrator:
    """Per-request coordinator; db is the request's session, drive and registry are shared."""

    def __init__(
        self,
        db: Session,
        drive: DriveClient,
        registry: UploadSessionRegistry,
        *,
        http: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.drive = drive
        self.registry = registry
        self.http = http or requests
        self.clock = clock

    # --- Shared checks ---

    def _admit(self, context: AccessContext, folder_id: str, incoming_bytes: int | None) -> QuotaStatus:
        """Access + quota admission before any bytes move (403/402/413)."""
        root_id = require_access_root(self.drive, folder_id, context)
        owner = storage_owner_username(self.drive, folder_id, context, root_id)
        status = account_service.get_status(self.db, owner)
        if status.blocked:
            raise plan_blocked()
        if incoming_bytes is not None and status.would_exceed(incoming_bytes):
            raise storage_limit_exceeded()
        return status

    def _rollback(self, file_ids: list[str | None], folder_id: str | None = None) -> None:
        """
        Compensating delete of every id; raise RollbackError if any delete fails.
        A None id is an object the provider finalized without reporting its id;
        it cannot be deleted and counts as orphaned.
        """
        orphaned = []
        for file_id in file_ids:
            if not file_id:
                logger.error("Uploaded object has no id in the provider response; cannot delete it")
                orphaned.append(UNKNOWN_FILE_ID)
                continue
            try:
                self.drive.delete_file(file_id, [folder_id] if folder_id else [])
            except UpstreamError:
                logger.exception("Compensating delete failed for %s", file_id)
                orphaned.append(file_id)
        if orphaned:
            logger.error("Rollback incomplete; orphaned objects: %s", ", ".join(orphaned))
            raise RollbackError("Rollback failed; uploaded objects could not be removed", orphaned)
        if file_ids:
            logger.info("Rolled back %d uploaded object(s)", len(file_ids))

    def _commit_or_rollback(self, owner: str, file_ids: list[str | None], uploaded_bytes: int,
                            folder_id: str | None = None) -> int:
        """Post-hoc quota check after transfer; charge the ledger or undo the upload."""
        status = account_service.get_status(self.db, owner)
        if status.blocked or status.would_exceed(uploaded_bytes):
            logger.warning(
                "Quota violated after upload for %s (%d bytes); rolling back %s",
                owner, uploaded_bytes, file_ids,
            )
            self._rollback(file_ids, folder_id)
            raise plan_blocked() if status.blocked else storage_limit_exceeded()
        if uploaded_bytes > 0:
            return account_service.increment_storage_usage(self.db, owner, uploaded_bytes)
        return status.used_bytes

    # --- Resumable ---

    def start(self, context: AccessContext, folder_id: str, name: str, mime_type: str | None,
              size: Any) -> str:
        """Admit and open a resumable session; returns the opaque upload id."""
        self.registry.sweep_expired(self.clock())
        name = (name or "").strip()
        if not name:
            raise ValidationError("Name is required")
        declared = parse_declared_size(size)
        mime_type = mime_type or DEFAULT_MIME

        status = self._admit(context, folder_id, declared)

        upload_url = self.drive.create_resumable_session(name, mime_type, declared, folder_id)
        return self.registry.create(UploadSession(
            upload_url=upload_url,
            folder_id=folder_id,
            uploader=context.username,
            owner_username=status.owner_username,
            mime_type=mime_type,
            name=name,
            total_bytes=declared,
            created_at=self.clock(),
        ))

    def chunk(self, upload_id: str, username: str, data: bytes, start: Any, end: Any,
              total: Any, declared_size: Any = None) -> ChunkResult:
        """
        Forward one chunk. Returns ChunkResult(complete=False, range=...) while the
        provider wants more, ChunkResult(complete=True, file=...) once finalized
        and charged.
        """
        self.registry.sweep_expired(self.clock())
        session = self.registry.get(upload_id)
        if session is None:
            raise NotFoundError("Upload session not found")
        if session.uploader != username:
            raise forbidden()

        byte_range = parse_byte_range(start, end, total, declared_size)
        if byte_range.total != session.total_bytes:
            raise ValidationError("Total size does not match upload session")
        if len(data) != byte_range.length:
            raise ValidationError("Chunk body does not match byte range")

        result = self.drive.put_chunk(
            session.upload_url, data, byte_range.start, byte_range.end, byte_range.total
        )
        if not result.complete:
            return result

        file_id = result.file.get("id")
        uploaded = drive_service.file_size(result.file) or session.total_bytes
        try:
            self._commit_or_rollback(
                session.owner_username, [file_id], uploaded, session.folder_id
            )
        finally:
            self.registry.delete(upload_id)
        return result

    # --- Single-shot ---

    def upload_files(self, context: AccessContext, folder_id: str,
                     files: list[IncomingFile]) -> list[dict]:
        """All-or-nothing multipart batch: any violation removes every file of the batch."""
        if not files:
            raise ValidationError("Your files not found")
        if len(files) > MAX_BATCH_FILES:
            raise ValidationError(f"At most {MAX_BATCH_FILES} files per request")

        declared_total = sum(max(0, f.size or 0) for f in files)
        status = self._admit(context, folder_id, declared_total)

        uploaded: list[dict] = []
        try:
            for f in files:
                meta = drive_service.add_file(
                    self.drive, f.name, f.mime_type or DEFAULT_MIME, f.content, folder_id,
                    size=f.size,
                )
                uploaded.append({
                    "id": meta.get("id"),
                    "name": f.name,
                    "size": drive_service.file_size(meta) or max(0, f.size or 0),
                })
        except UpstreamError:
            logger.warning("Batch upload failed after %d file(s); rolling back", len(uploaded))
            self._rollback([u["id"] for u in uploaded], folder_id)
            raise

        total = sum(u["size"] for u in uploaded)
        self._commit_or_rollback(
            status.owner_username, [u["id"] for u in uploaded], total, folder_id
        )
        return uploaded

    def upload_from_url(self, context: AccessContext, folder_id: str, url: str,
                        file_name: str | None = None) -> dict:
        """Stream a remote http(s) resource into folder_id."""
        if not url:
            raise ValidationError("Url is required")
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError("Url is invalid")

        status = self._admit(context, folder_id, None)

        try:
            resp = self.http.get(url, stream=True, timeout=URL_FETCH_TIMEOUT)
        except requests.RequestException as e:
            raise ValidationError(f"Failed to download file: {e}")
        with resp:
            if not resp.ok:
                raise ValidationError(f"Failed to download file: {resp.reason}")

            content_length = resp.headers.get("Content-Length")
            declared = int(content_length) if content_length and content_length.isdigit() else None
            if declared is not None and status.would_exceed(declared):
                raise storage_limit_exceeded()

            mime_type = resp.headers.get("Content-Type") or DEFAULT_MIME
            name = (
                file_name
                or filename_from_content_disposition(resp.headers.get("Content-Disposition"))
                or filename_from_url(url)
                or "download"
            )
            stream = CountingStream(resp.iter_content(chunk_size=256 * 1024))
            meta = drive_service.add_file(self.drive, name, mime_type, stream, folder_id, size=declared)

        size = stream.bytes_read or drive_service.file_size(meta)
        file_id = meta.get("id")
        self._commit_or_rollback(
            status.owner_username, [file_id], size, folder_id
        )
        return {"id": file_id, "name": name, "size": size}

    # --- Delete ---

    def delete_object(self, context: AccessContext, item_id: str) -> int:
        """
        Delete item_id and credit its size back to the charged account. The
        owner is resolved before deleting, while the parent chain still exists.
        """
        root_id = require_access_root(self.drive, item_id, context)
        owner = storage_owner_username(self.drive, item_id, context, root_id)
        metadata = drive_service.delete_file(self.drive, item_id)
        size = drive_service.file_size(metadata)
        if owner and size > 0:
            account_service.increment_storage_usage(self.db, owner, -size)
        return size
