"""
JWT creation and verification for session management.

Sessions are identified by a JWT issued by the auth service and carried in an
HttpOnly cookie or an Authorization: Bearer header. Algorithm: HS256; secret
must be set in config. Claims: sub (username), role, exp.
"""
from datetime import datetime, timedelta, UTC

from jose import jwt

from config import JWT_SECRET, JWT_ALGORITHM


def create_jwt(username: str, role: str = "user", max_age: int = 3600) -> str:
    """Build a JWT for the given username and role; exp = now + max_age seconds."""
    payload = {
        "sub": username,
        "role": role,
        "exp": datetime.now(UTC) + timedelta(seconds=max_age),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_jwt(token: str) -> dict:
    """Decode and verify JWT; raises JWTError if invalid or expired."""
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
