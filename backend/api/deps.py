# api/deps.py
from typing import Callable, Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from sqlalchemy.orm import Session

from core import security
from core.errors import Forbidden, NotFound, Unauthorized
from db import models as db_models
from db.session import SessionLocal

# tokens are issued by the auth service; we only decode them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> Callable[[], Session]:
    """Factory for code that outlives the request-scoped session (streamed bodies)."""
    return SessionLocal


def get_current_user(token: Optional[str] = Depends(oauth2_scheme), db: Session = Depends(get_db)):
    if not token:
        raise Unauthorized("missing bearer token")
    try:
        payload = security.decode_token(token)
    except JWTError:
        raise Unauthorized("could not validate credentials")

    sub = payload.get("sub")
    if sub is None:
        raise Unauthorized("could not validate credentials")

    # numeric id first, fall back to email
    try:
        user = db.get(db_models.User, int(sub))
    except (TypeError, ValueError):
        user = db.query(db_models.User).filter(db_models.User.email == sub).first()

    if not user:
        raise Unauthorized("could not validate credentials")
    if not user.is_active:
        raise Forbidden("account is disabled")
    return user


def require_admin(user=Depends(get_current_user)):
    if not getattr(user, "is_admin", False):
        raise Forbidden("admin access required")
    return user


def load_owned_interview(db: Session, interview_id: str, user, write: bool = False) -> db_models.Interview:
    """
    Interviews are visible to their owner only; admins may read any of them.
    Someone else's interview looks exactly like a missing one.
    """
    interview = db.get(db_models.Interview, interview_id)
    if interview is None:
        raise NotFound(f"interview {interview_id} not found")
    if interview.user_id != user.id:
        if not getattr(user, "is_admin", False) or write:
            raise NotFound(f"interview {interview_id} not found")
    return interview


