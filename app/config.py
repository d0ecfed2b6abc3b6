"""
Application configuration from environment variables.

Load with python-dotenv in main so env vars are available before imports.
Validates critical secrets at module load; missing values raise RuntimeError.
"""
import os

# --- Required (raise if missing) ---
DRIVE_CLIENT_ID = os.getenv("DRIVE_CLIENT_ID")
DRIVE_CLIENT_SECRET = os.getenv("DRIVE_CLIENT_SECRET")
DRIVE_REFRESH_TOKEN = os.getenv("DRIVE_REFRESH_TOKEN")
# Parent folder under which every user-<username> root folder is created
DRIVE_SHARED_FOLDER_ID = os.getenv("DRIVE_SHARED_FOLDER_ID")
JWT_SECRET = os.getenv("JWT_SECRET")

for name, val in [
    ("DRIVE_CLIENT_ID", DRIVE_CLIENT_ID),
    ("DRIVE_CLIENT_SECRET", DRIVE_CLIENT_SECRET),
    ("DRIVE_REFRESH_TOKEN", DRIVE_REFRESH_TOKEN),
    ("DRIVE_SHARED_FOLDER_ID", DRIVE_SHARED_FOLDER_ID),
    ("JWT_SECRET", JWT_SECRET),
]:
    if not val or not str(val).strip():
        raise RuntimeError(f"Required env var {name} is missing or empty")

JWT_ALGORITHM = "HS256"


def _int_env(key: str, default: int, minimum: int = 1) -> int:
    try:
        return max(minimum, int(os.getenv(key, str(default))))
    except ValueError:
        return default


# --- Optional with defaults ---
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")

# Session cookie carrying the JWT issued by the auth service
JWT_COOKIE_NAME = os.getenv("JWT_COOKIE_NAME", "session")

# Resumable upload sessions older than this are swept (abandoned uploads)
UPLOAD_SESSION_TTL_SECONDS = _int_env("UPLOAD_SESSION_TTL_SECONDS", 6 * 60 * 60)

# Drive metadata cache (parents, folder names, listings)
DRIVE_CACHE_TTL_SECONDS = _int_env("DRIVE_CACHE_TTL_SECONDS", 300, minimum=0)

# Multipart upload: max files per request
MAX_BATCH_FILES = _int_env("MAX_BATCH_FILES", 20)

# Request timeouts (connect, read) in seconds
DRIVE_REQUEST_TIMEOUT = (5, 60)
DRIVE_UPLOAD_TIMEOUT = (5, 300)  # chunk and streamed uploads
DRIVE_DOWNLOAD_TIMEOUT = (5, 120)
URL_FETCH_TIMEOUT = (5, 120)

# Database URL (SQLite default; use Postgres URL in production)
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./app.db")

# Skip create_all at startup (set in production when using Alembic migrations)
SKIP_DB_INIT = os.getenv("SKIP_DB_INIT", "false").lower() in ("1", "true", "yes")

# Environment: development | production (affects .env loading, error details)
ENV = os.getenv("ENV", "development").lower()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
