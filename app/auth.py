"""
Session retrieval for the storage API.

Login itself is handled by the separate auth service, which issues a JWT
(claims: sub = username, role) in the session cookie. This module only reads
it back:

- get_current_session dependency reads the JWT from the session cookie (or an
  Authorization: Bearer header for API clients) and returns a UserSession.
- Missing, invalid or expired tokens raise AuthError (401).
"""
from dataclasses import dataclass

from fastapi import Request
from jose import JWTError

from config import JWT_COOKIE_NAME
from errors import AuthError
from security import decode_jwt


@dataclass(frozen=True)
class UserSession:
    username: str
    role: str = "user"


def _token_from_request(request: Request) -> str | None:
    token = request.cookies.get(JWT_COOKIE_NAME)
    if token:
        return token
    header = request.headers.get("Authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


def get_current_session(request: Request) -> UserSession:
    """
    FastAPI dependency: read JWT from session cookie or bearer header, decode it,
    return the session. Raises 401 if token missing or JWT invalid/expired.
    """
    token = _token_from_request(request)
    if not token:
        raise AuthError("Unauthorized")
    try:
        payload = decode_jwt(token)
    except JWTError:
        raise AuthError("Invalid or expired session")
    username = payload.get("sub")
    if not username:
        raise AuthError("Invalid session")
    return UserSession(username=username, role=payload.get("role") or "user")
