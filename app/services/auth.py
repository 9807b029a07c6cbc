import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import jwt

from app.config import ACCESS_TOKEN_EXPIRE_MINUTES, JWT_ALGORITHM, JWT_SECRET

logger = logging.getLogger(__name__)

ROLES = ("patient", "ambulance", "hospital", "admin")


@dataclass(frozen=True)
class Identity:
    user_id: int
    role: str


def create_access_token(user_id: int, role: str, expires_minutes: int | None = None) -> str:
    """Issue a signed access token carrying the caller's identity and role."""
    now = datetime.now(UTC)
    expire = now + timedelta(minutes=expires_minutes or ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {
        "sub": str(user_id),
        "role": role,
        "iat": now,
        "exp": expire,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str | None) -> Identity | None:
    """Verify a token; returns None for missing, expired, or malformed credentials."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError as e:
        logger.debug("Rejected access token: %s", e)
        return None

    role = payload.get("role")
    if role not in ROLES:
        return None
    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        return None
    return Identity(user_id=user_id, role=role)
