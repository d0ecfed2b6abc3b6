"""
Error taxonomy for the storage core.

Every error carries the HTTP status it maps to; main.py converts them to the
structured {status, message} JSON body. A resumable 308 "send more" is not an
error and is returned as a normal ChunkResult instead.
"""


class StorageError(Exception):
    """Base error: message plus the HTTP status it is surfaced with."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(StorageError):
    """Malformed or missing input."""

    status_code = 400


class AuthError(StorageError):
    """No valid session."""

    status_code = 401


class QuotaBlockedError(StorageError):
    """Paid plan expired while usage exceeds the free tier."""

    status_code = 402


class AccessError(StorageError):
    """Target is outside every access root of the requesting account."""

    status_code = 403


class NotFoundError(StorageError):
    """Upload session, account or Drive object does not exist."""

    status_code = 404


class QuotaExceededError(StorageError):
    """Upload would push usage past the plan's storage limit."""

    status_code = 413


class RollbackError(StorageError):
    """A compensating delete failed; objects may be orphaned upstream."""

    status_code = 500

    def __init__(self, message: str, orphaned_ids: list[str]):
        super().__init__(message)
        self.orphaned_ids = orphaned_ids


class UpstreamError(StorageError):
    """Drive API call failed; status is the provider's (502 when unknown)."""

    status_code = 502


def plan_blocked() -> QuotaBlockedError:
    return QuotaBlockedError("Plan expired. Storage exceeds free limit.")


def storage_limit_exceeded() -> QuotaExceededError:
    return QuotaExceededError("Storage limit exceeded")


def forbidden() -> AccessError:
    return AccessError("Forbidden")
