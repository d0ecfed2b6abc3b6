"""
In-process registry of resumable upload sessions.

Each entry binds an opaque upload id to exactly one provider session URL.
Sessions live in this process only: chunk requests must reach the instance
that created the session. Abandoned sessions are swept lazily (no timer) once
older than the TTL, whenever a session is created or a chunk arrives.
"""
import secrets
import threading
import time
from dataclasses import dataclass, field

from config import UPLOAD_SESSION_TTL_SECONDS


@dataclass
class UploadSession:
    upload_url: str
    folder_id: str
    uploader: str
    owner_username: str
    mime_type: str
    name: str
    total_bytes: int
    created_at: float = field(default_factory=time.time)
    id: str = ""


class UploadSessionRegistry:
    """Thread-safe table of in-flight sessions (FastAPI runs sync handlers in a pool)."""

    def __init__(self, ttl_seconds: int = UPLOAD_SESSION_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._sessions: dict[str, UploadSession] = {}
        self._lock = threading.Lock()

    def create(self, session: UploadSession) -> str:
        upload_id = secrets.token_urlsafe(24)
        session.id = upload_id
        with self._lock:
            self._sessions[upload_id] = session
        return upload_id

    def get(self, upload_id: str) -> UploadSession | None:
        with self._lock:
            return self._sessions.get(upload_id)

    def delete(self, upload_id: str) -> None:
        with self._lock:
            self._sessions.pop(upload_id, None)

    def sweep_expired(self, now: float | None = None) -> int:
        """Evict sessions older than the TTL; returns how many were removed."""
        now = time.time() if now is None else now
        with self._lock:
            expired = [
                sid for sid, s in self._sessions.items()
                if now - s.created_at > self.ttl_seconds
            ]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
