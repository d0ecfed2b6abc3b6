"""
Drive gateway: thin client over the Google Drive v3 REST API.

One DriveClient is constructed by the application (main.create_app) and
injected into handlers; it owns the OAuth refresh token and the cached access
token, refreshing it when expired or expiring within 5 minutes. A provider 401
forces one refresh and a single retry (not for streamed bodies, which cannot
be replayed).

Metadata lookups (listings, parent links, folder names) are cached in process
for DRIVE_CACHE_TTL_SECONDS and invalidated on every mutation that touches the
affected folder. Any non-2xx provider response raises UpstreamError with the
provider's status and message.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from typing import Any, Callable, Iterable

import requests

from config import (
    DRIVE_CACHE_TTL_SECONDS,
    DRIVE_DOWNLOAD_TIMEOUT,
    DRIVE_REQUEST_TIMEOUT,
    DRIVE_UPLOAD_TIMEOUT,
)
from errors import UpstreamError

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
FILES_URL = "https://www.googleapis.com/drive/v3/files"
UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"

FOLDER_MIME = "application/vnd.google-apps.folder"
FILE_FIELDS = "id, name, mimeType, size, parents"


@dataclass
class ChunkResult:
    """
    Outcome of forwarding one chunk to a resumable session.

    complete=False: provider answered 308; `range` is its Range header
    (e.g. "bytes=0-524287") or None when nothing was committed yet.
    complete=True: object finalized; `file` holds its metadata.
    """
    complete: bool
    range: str | None = None
    file: dict = field(default_factory=dict)


def _upstream_error(resp: requests.Response) -> UpstreamError:
    """Build an UpstreamError from a failed Drive response."""
    message = resp.reason or f"HTTP {resp.status_code}"
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            message = err["message"]
        elif isinstance(err, str):
            message = data.get("error_description") or err
    status = resp.status_code if resp.status_code >= 400 else 502
    return UpstreamError(f"Drive API error: {message}", status_code=status)


class DriveClient:
    """Drive API client with its own access-token lifecycle and metadata cache."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        *,
        cache_ttl: int = DRIVE_CACHE_TTL_SECONDS,
        session: requests.Session | None = None,
    ):
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._cache_ttl = cache_ttl
        self._http = session or requests.Session()

        self._access_token: str | None = None
        self._expires_at: datetime | None = None
        self._token_lock = threading.Lock()

        self._cache: dict[str, tuple[float, Any]] = {}
        self._cache_lock = threading.Lock()

    # --- Auth ---

    def access_token(self, *, force_refresh: bool = False) -> str:
        """
        Return a valid access token, refreshing if expired or expiring within
        5 minutes (or always when force_refresh=True, for retry after 401).
        """
        with self._token_lock:
            now = datetime.now(UTC)
            if (
                force_refresh
                or not self._access_token
                or not self._expires_at
                or now >= self._expires_at - timedelta(minutes=5)
            ):
                self._refresh(now)
            return self._access_token

    def _refresh(self, now: datetime) -> None:
        try:
            resp = self._http.post(
                TOKEN_URL,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": self._refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=(5, 30),
            )
        except requests.RequestException as e:
            raise UpstreamError(f"Drive token refresh failed: {e}") from e
        if not resp.ok:
            raise _upstream_error(resp)
        data = resp.json()
        if "error" in data or "access_token" not in data:
            raise UpstreamError("Drive token refresh failed", status_code=502)
        self._access_token = data["access_token"]
        self._expires_at = now + timedelta(seconds=data.get("expires_in", 3600))
        if data.get("refresh_token"):
            self._refresh_token = data["refresh_token"]

    # --- Transport ---

    def _request(
        self,
        method: str,
        url: str,
        *,
        allow_status: Iterable[int] = (),
        retry_auth: bool = True,
        **kwargs: Any,
    ) -> requests.Response:
        """Call Drive API with timeout and bearer token; raises UpstreamError on failure."""
        extra_headers = kwargs.pop("headers", {})
        kwargs.setdefault("timeout", DRIVE_REQUEST_TIMEOUT)
        attempts = 2 if retry_auth else 1
        for attempt in range(attempts):
            headers = {"Authorization": f"Bearer {self.access_token(force_refresh=attempt > 0)}"}
            headers.update(extra_headers)
            try:
                resp = self._http.request(method, url, headers=headers, **kwargs)
            except requests.RequestException as e:
                raise UpstreamError(f"Drive API unreachable: {e}") from e
            if resp.status_code == 401 and attempt + 1 < attempts:
                logger.info("Drive returned 401, refreshing access token")
                continue
            break
        if resp.status_code in allow_status or resp.ok:
            return resp
        raise _upstream_error(resp)

    # --- Cache ---

    def _cached(self, key: str, loader: Callable[[], Any]) -> Any:
        now = time.monotonic()
        with self._cache_lock:
            hit = self._cache.get(key)
            if hit and now - hit[0] < self._cache_ttl:
                return hit[1]
        value = loader()
        if self._cache_ttl > 0:
            with self._cache_lock:
                self._cache[key] = (now, value)
        return value

    def _invalidate(self, *keys: str) -> None:
        with self._cache_lock:
            for key in keys:
                self._cache.pop(key, None)

    def _invalidate_folders(self, folder_ids: Iterable[str]) -> None:
        self._invalidate(*(f"folder:{fid}" for fid in folder_ids if fid))

    def _invalidate_item(self, item_id: str) -> None:
        self._invalidate(f"file:{item_id}", f"parent:{item_id}", f"name:{item_id}", f"folder:{item_id}")

    def clear_cache(self, folder_id: str) -> None:
        """Drop the cached listing of folder_id (the list endpoint's ?clear=true)."""
        self._invalidate_folders([folder_id])

    # --- Reads ---

    def list_files(self, folder_id: str) -> list[dict]:
        """List non-trashed children of folder_id (all pages)."""

        def load() -> list[dict]:
            files: list[dict] = []
            page_token = None
            while True:
                params = {
                    "q": f"'{folder_id}' in parents and trashed = false",
                    "fields": f"nextPageToken, files({FILE_FIELDS})",
                }
                if page_token:
                    params["pageToken"] = page_token
                data = self._request("GET", FILES_URL, params=params).json()
                files.extend(data.get("files", []))
                page_token = data.get("nextPageToken")
                if not page_token:
                    return files

        return self._cached(f"folder:{folder_id}", load)

    def get_file(self, file_id: str) -> dict:
        return self._cached(
            f"file:{file_id}",
            lambda: self._request(
                "GET", f"{FILES_URL}/{file_id}", params={"fields": FILE_FIELDS}
            ).json(),
        )

    def get_parent(self, item_id: str) -> dict | None:
        """
        One hop up the tree: {"current_id", "current_name", "id"} where id is
        the first parent, or None when the item has no parent.
        """

        def load() -> dict | None:
            data = self._request(
                "GET",
                f"{FILES_URL}/{item_id}",
                params={"fields": "id, name, mimeType, parents"},
            ).json()
            parents = data.get("parents") or []
            if not parents:
                return None
            return {
                "current_id": data.get("id"),
                "current_name": data.get("name"),
                "id": parents[0],
            }

        return self._cached(f"parent:{item_id}", load)

    def get_folder_name(self, folder_id: str) -> str:
        return self._cached(
            f"name:{folder_id}",
            lambda: self._request(
                "GET", f"{FILES_URL}/{folder_id}", params={"fields": "name"}
            ).json().get("name", ""),
        )

    def open_media(self, file_id: str, export_mime: str | None = None) -> requests.Response:
        """Open a streamed download (or export for Google Docs types); caller closes it."""
        if export_mime:
            url = f"{FILES_URL}/{file_id}/export"
            params = {"mimeType": export_mime}
        else:
            url = f"{FILES_URL}/{file_id}"
            params = {"alt": "media"}
        return self._request(
            "GET", url, params=params, stream=True, timeout=DRIVE_DOWNLOAD_TIMEOUT
        )

    # --- Writes ---

    def create_folder(self, name: str, parent_id: str) -> str:
        data = self._request(
            "POST",
            FILES_URL,
            params={"fields": "id"},
            json={"name": name, "mimeType": FOLDER_MIME, "parents": [parent_id]},
        ).json()
        self._invalidate_folders([parent_id])
        return data["id"]

    def rename_file(self, file_id: str, new_name: str, parent_ids: Iterable[str] = ()) -> dict:
        data = self._request(
            "PATCH",
            f"{FILES_URL}/{file_id}",
            params={"fields": FILE_FIELDS},
            json={"name": new_name},
        ).json()
        self._invalidate_item(file_id)
        self._invalidate_folders(list(parent_ids) + list(data.get("parents") or []))
        return data

    def delete_file(self, file_id: str, parent_ids: Iterable[str] = ()) -> None:
        self._request("DELETE", f"{FILES_URL}/{file_id}")
        self._invalidate_item(file_id)
        self._invalidate_folders(parent_ids)

    def create_resumable_session(
        self,
        name: str,
        mime_type: str,
        size: int | None,
        parent_id: str,
    ) -> str:
        """Open a resumable upload session; returns the provider's session URL."""
        headers = {"X-Upload-Content-Type": mime_type or "application/octet-stream"}
        if size is not None:
            headers["X-Upload-Content-Length"] = str(size)
        resp = self._request(
            "POST",
            UPLOAD_URL,
            params={"uploadType": "resumable", "fields": FILE_FIELDS},
            json={"name": name, "parents": [parent_id]},
            headers=headers,
        )
        location = resp.headers.get("Location")
        if not location:
            raise UpstreamError("Drive did not return a resumable upload URL")
        return location

    def put_chunk(
        self,
        upload_url: str,
        data: Any,
        start: int,
        end: int,
        total: int,
    ) -> ChunkResult:
        """
        Forward bytes start..end (inclusive) of a total-byte object to the
        session URL. 308 means the provider wants more; 200/201 means done.
        """
        resp = self._request(
            "PUT",
            upload_url,
            data=data,
            headers={"Content-Range": f"bytes {start}-{end}/{total}"},
            allow_status=(308,),
            retry_auth=False,
            timeout=DRIVE_UPLOAD_TIMEOUT,
        )
        if resp.status_code == 308:
            return ChunkResult(complete=False, range=resp.headers.get("Range"))
        file = resp.json() if resp.content else {}
        self._invalidate_folders(file.get("parents") or [])
        return ChunkResult(complete=True, file=file)

    def upload_file(
        self,
        name: str,
        mime_type: str,
        content: Any,
        parent_id: str,
        size: int | None = None,
    ) -> dict:
        """Upload a whole stream in one request (resumable session, single PUT)."""
        upload_url = self.create_resumable_session(name, mime_type, size, parent_id)
        resp = self._request(
            "PUT",
            upload_url,
            data=content,
            headers={"Content-Type": mime_type or "application/octet-stream"},
            retry_auth=False,
            timeout=DRIVE_UPLOAD_TIMEOUT,
        )
        self._invalidate_folders([parent_id])
        return resp.json() if resp.content else {}
