"""
Drive service: folder/file operations on top of the Drive gateway.

Business logic separated from HTTP layer. The Drive provider is the source of
truth for the tree; nothing here caches more than the gateway does, and
ancestor chains are walked one hop at a time on demand.
"""
import re

from services.drive_client import FOLDER_MIME, DriveClient

# Display type by exact mime type; prefixes handled in resolve_file_type
FILE_TYPES = {
    FOLDER_MIME: "folder",
    "application/pdf": "pdf",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "doc",
    "application/vnd.google-apps.document": "doc",
    "application/vnd.ms-excel": "sheet",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "sheet",
    "application/vnd.google-apps.spreadsheet": "sheet",
    "application/vnd.ms-powerpoint": "slide",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": "slide",
    "application/vnd.google-apps.presentation": "slide",
    "application/zip": "archive",
    "application/x-zip-compressed": "archive",
    "application/x-7z-compressed": "archive",
    "application/x-rar-compressed": "archive",
    "application/x-tar": "archive",
    "application/gzip": "archive",
    "image/jpeg": "image",
    "image/gif": "image",
    "image/png": "image",
}

_PREFIX_TYPES = (
    ("image/", "image"),
    ("video/", "video"),
    ("audio/", "audio"),
    ("text/", "text"),
)

GOOGLE_APPS_PREFIX = "application/vnd.google-apps."


def resolve_file_type(mime_type: str | None) -> str:
    if not mime_type:
        return "file"
    if mime_type in FILE_TYPES:
        return FILE_TYPES[mime_type]
    for prefix, kind in _PREFIX_TYPES:
        if mime_type.startswith(prefix):
            return kind
    return "file"


def _parse_size(raw) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except (ValueError, TypeError):
        return None


def list_folder(drive: DriveClient, folder_id: str) -> list[dict]:
    """List children of folder_id as {id, name, fileType, mimeType, size}."""
    result = []
    for f in drive.list_files(folder_id):
        mime = f.get("mimeType") or ""
        result.append({
            "id": f.get("id"),
            "name": f.get("name", "unknown"),
            "fileType": resolve_file_type(mime),
            "mimeType": mime,
            "size": _parse_size(f.get("size")),
        })
    return result


def is_descendant_of(drive: DriveClient, item_id: str, root_id: str) -> bool:
    """
    True if item_id is root_id or lies beneath it. Walks one parent hop at a
    time; stops unsuccessfully at a node without parent. Gateway errors
    (stale or deleted ids) propagate to the caller.
    """
    current = item_id
    seen = set()
    while current not in seen:
        if current == root_id:
            return True
        seen.add(current)
        parent = drive.get_parent(current)
        if not parent or not parent.get("id"):
            return False
        current = parent["id"]
    return False


def parents_folder(drive: DriveClient, folder_id: str, stop_at_id: str | None = None) -> list[dict]:
    """
    Breadcrumb chain [{id, name}] from the top-most ancestor (exclusive of
    stop_at_id) down to folder_id.
    """
    chain = []
    current = folder_id
    while current and current != stop_at_id:
        parent = drive.get_parent(current)
        if parent is None:
            chain.append({"id": current, "name": drive.get_folder_name(current)})
            break
        chain.append({"id": current, "name": parent.get("current_name")})
        current = parent.get("id")
        if any(item["id"] == current for item in chain):
            break
    chain.reverse()
    return chain


def folder_name(drive: DriveClient, folder_id: str) -> str:
    return drive.get_folder_name(folder_id)


def add_folder(drive: DriveClient, name: str, parent_id: str) -> dict:
    folder_id = drive.create_folder(name, parent_id)
    return {"id": folder_id, "name": name}


def add_file(drive: DriveClient, name: str, mime_type: str, content, parent_id: str,
             size: int | None = None) -> dict:
    return drive.upload_file(name, mime_type, content, parent_id, size=size)


def delete_file(drive: DriveClient, file_id: str) -> dict:
    """Delete file_id and return the metadata it had (size used for quota credit)."""
    metadata = drive.get_file(file_id)
    drive.delete_file(file_id, metadata.get("parents") or [])
    return metadata


def rename_file(drive: DriveClient, file_id: str, new_name: str) -> dict:
    metadata = drive.get_file(file_id)
    return drive.rename_file(file_id, new_name, metadata.get("parents") or [])


def file_size(metadata: dict) -> int:
    """Reported size in bytes, 0 when absent (folders, Google Docs types)."""
    return _parse_size(metadata.get("size")) or 0


def safe_filename(name: str) -> str:
    """Replace non-printable ASCII, quotes and path separators for Content-Disposition."""
    safe = re.sub(r"[^\x20-\x7E]+", "_", name or "")
    safe = re.sub(r'["\\/]', "_", safe).strip()
    if len(safe) > 200:
        safe = safe[:200]
    return safe or "download"
