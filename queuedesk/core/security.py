from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import jwt, JWTError

ALGORITHM = "HS256"


def create_access_token(
    *, subject: str, role: str, secret: str, expires_minutes: int = 60, algorithm: str = ALGORITHM
) -> str:
    """Used by tests and by operators to mint service tokens for internal callers."""
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=expires_minutes)
    payload = {
        "sub": subject,
        "role": role,
        "type": "access",
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_token(token: str, secret: str, algorithm: str = ALGORITHM) -> Dict[str, Any]:
    try:
        data = jwt.decode(token, secret, algorithms=[algorithm])
        if data.get("type") != "access" or "sub" not in data:
            raise ValueError("invalid_token_payload")
        return data
    except JWTError as e:
        raise ValueError("invalid_token") from e
