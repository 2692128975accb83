# backend/api/admin.py
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlalchemy.orm import Session

from api.deps import get_db, load_owned_interview, require_admin
from api.interviews import interview_summary
from core.errors import ValidationError
from db.models import AudioRecording, Interview, InterviewStatus, User
from services import conversation_store as store
from services import token_accounting
from services.blob_store import get_blob_store

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/interviews")
def all_interviews(
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    admin=Depends(require_admin),
):
    q = db.query(Interview, User.email).join(User, User.id == Interview.user_id)
    if status:
        try:
            q = q.filter(Interview.status == InterviewStatus(status.upper()))
        except ValueError:
            raise ValidationError(f"unknown status {status!r}")
    total = q.count()
    rows = q.order_by(Interview.created_at.desc()).offset(offset).limit(limit).all()
    items = []
    for iv, email in rows:
        item = interview_summary(iv)
        item["userEmail"] = email
        items.append(item)
    return {"items": items, "total": total}


@router.get("/interviews/{interview_id}/recordings")
def interview_recordings(interview_id: str, db: Session = Depends(get_db), admin=Depends(require_admin)):
    load_owned_interview(db, interview_id, admin)
    blob = get_blob_store()
    return [store.recording_dict(r, blob.sign(r.blob_key)) for r in store.list_recordings(db, interview_id)]


@router.get("/stats")
def stats(db: Session = Depends(get_db), admin=Depends(require_admin)):
    by_status = dict(
        db.query(Interview.status, func.count(Interview.id)).group_by(Interview.status).all()
    )
    return {
        "users": db.query(func.count(User.id)).scalar() or 0,
        "interviews": {InterviewStatus(k).value: int(v) for k, v in by_status.items()},
        "recordings": db.query(func.count(AudioRecording.id)).scalar() or 0,
        "tokens": token_accounting.totals(db),
    }
