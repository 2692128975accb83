# backend/core/security.py
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError

from core.config import settings


JWT_SECRET = settings.secret_key
JWT_ALGORITHM = settings.jwt_algorithm
ACCESS_EXPIRE_MINUTES = int(settings.access_token_expire_minutes)


def create_access_token(
    subject: str,
    expires_minutes: Optional[int] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT for `subject`. Tokens are normally issued by the auth
    service; this exists for local tooling and tests.
    """
    if expires_delta is not None:
        exp = datetime.now(timezone.utc) + expires_delta
    else:
        exp = datetime.now(timezone.utc) + timedelta(
            minutes=expires_minutes or ACCESS_EXPIRE_MINUTES
        )

    to_encode = {"sub": str(subject), "exp": exp}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """
    Decode and validate a JWT. Raises JWTError on invalid/expired tokens.
    """
    try:
        payload = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            options={"verify_aud": False},  # we don't use 'aud'
        )
        return payload
    except JWTError as e:
        # Let the dependency convert this into a 401
        raise e
