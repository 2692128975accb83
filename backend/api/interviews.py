# backend/api/interviews.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from api.deps import get_current_user, get_db, get_session_factory, load_owned_interview
from core.config import settings
from core.errors import Conflict, ValidationError
from db.models import Interview, InterviewStatus, TurnKind, TurnRole
from schemas.interview import InterviewCreate, InterviewDetail, InterviewSummary, InterviewUpdate
from services import conversation_store as store
from services import feedback as feedback_service
from services import prompts, token_accounting
from services.blob_store import get_blob_store

router = APIRouter(prefix="/interviews", tags=["interviews"])
logger = logging.getLogger("interviews")


def _summary_fields(iv: Interview) -> dict:
    return dict(
        id=iv.id,
        role=iv.role,
        focus_area=iv.focus_area,
        level=iv.level,
        language=iv.language,
        status=InterviewStatus(iv.status).value,
        total_questions=iv.total_questions,
        question_count=min(iv.question_count or 0, iv.total_questions),
        duration_seconds=iv.duration_seconds or 0,
        total_tokens=iv.total_tokens or 0,
        estimated_cost=iv.estimated_cost or 0.0,
        created_at=iv.created_at,
        updated_at=iv.updated_at,
    )


def interview_summary(iv: Interview) -> dict:
    return InterviewSummary(**_summary_fields(iv)).model_dump(by_alias=True, mode="json")


def interview_detail(db: Session, iv: Interview) -> dict:
    blob = get_blob_store()
    recordings = [store.recording_dict(r, blob.sign(r.blob_key)) for r in store.list_recordings(db, iv.id)]
    return InterviewDetail(
        **_summary_fields(iv),
        jd=iv.jd,
        has_resume=bool(iv.has_resume),
        feedback=iv.feedback,
        total_input_tokens=iv.total_input_tokens or 0,
        total_output_tokens=iv.total_output_tokens or 0,
        history=store.hydrate(db, iv.id, signer=blob.sign),
        recordings=recordings,
        token_usage=token_accounting.usage_breakdown(db, iv.id),
    ).model_dump(by_alias=True, mode="json")


def _existing_for_interaction(db: Session, user_id: int, interaction_id: Optional[str]) -> Optional[Interview]:
    if not interaction_id:
        return None
    return (
        db.query(Interview)
        .filter(Interview.user_id == user_id, Interview.interaction_id == interaction_id)
        .first()
    )


# ---------------------------
# Create / list / read
# ---------------------------

@router.post("", status_code=201)
def create_interview(payload: InterviewCreate, db: Session = Depends(get_db), user=Depends(get_current_user)):
    existing = _existing_for_interaction(db, user.id, payload.interaction_id)
    if existing is not None:
        return interview_detail(db, existing)

    resume_text = (payload.resume_text or "").strip()
    iv = Interview(
        user_id=user.id,
        role=payload.role.strip(),
        focus_area=payload.focus_area,
        level=payload.level,
        language=payload.language or "English",
        jd=payload.jd,
        has_resume=bool(resume_text),
        total_questions=payload.total_questions or settings.default_total_questions,
        interaction_id=payload.interaction_id,
        status=InterviewStatus.in_progress,
    )
    db.add(iv)
    try:
        db.commit()
    except IntegrityError:
        # same interactionId raced us
        db.rollback()
        existing = _existing_for_interaction(db, user.id, payload.interaction_id)
        if existing is None:
            raise
        return interview_detail(db, existing)

    if resume_text:
        store.append_turn(db, iv.id, store.NewTurn(
            role=TurnRole.user,
            kind=TurnKind.bootstrap,
            content=f"{prompts.RESUME_BOOTSTRAP_USER}\n\n{resume_text}",
        ))
        store.append_turn(db, iv.id, store.NewTurn(
            role=TurnRole.model,
            kind=TurnKind.bootstrap,
            content=prompts.RESUME_BOOTSTRAP_MODEL,
        ))
        db.refresh(iv)

    logger.info("interview created", extra={"interview_id": iv.id, "user_id": user.id})
    return interview_detail(db, iv)


@router.get("")
def list_interviews(db: Session = Depends(get_db), user=Depends(get_current_user)):
    rows = (
        db.query(Interview)
        .filter(Interview.user_id == user.id, Interview.status != InterviewStatus.archived)
        .order_by(Interview.updated_at.desc())
        .all()
    )
    return [interview_summary(iv) for iv in rows]


@router.get("/{interview_id}")
def get_interview(interview_id: str, db: Session = Depends(get_db), user=Depends(get_current_user)):
    iv = load_owned_interview(db, interview_id, user)
    return interview_detail(db, iv)


# ---------------------------
# Update / archive
# ---------------------------

@router.put("/{interview_id}")
async def update_interview(
    interview_id: str,
    payload: InterviewUpdate,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
    session_factory=Depends(get_session_factory),
):
    iv = load_owned_interview(db, interview_id, user, write=True)
    current = InterviewStatus(iv.status)

    target = None
    if payload.status is not None:
        try:
            target = InterviewStatus(payload.status.upper())
        except ValueError:
            raise ValidationError(f"unknown status {payload.status!r}")
        if current != InterviewStatus.in_progress and target == InterviewStatus.in_progress:
            raise Conflict(f"a {current.value} interview cannot be reopened")

    if payload.duration_seconds is not None:
        # elapsed time only ever grows
        iv.duration_seconds = max(iv.duration_seconds or 0, float(payload.duration_seconds))
        db.commit()

    if payload.feedback is not None:
        try:
            fb = feedback_service.FeedbackSchema.model_validate(payload.feedback).model_dump()
        except PydanticValidationError as exc:
            raise ValidationError(f"feedback: {exc.errors()[0].get('msg')}")
        feedback_service.store_feedback(db, interview_id, fb, strict=True)
    elif target == InterviewStatus.completed and not iv.feedback:
        await feedback_service.finalize_interview(interview_id, session_factory, user_id=user.id)

    if target == InterviewStatus.archived and current != InterviewStatus.archived:
        iv.status = InterviewStatus.archived
        db.commit()

    db.refresh(iv)
    return interview_detail(db, iv)


@router.delete("/{interview_id}")
def archive_interview(interview_id: str, db: Session = Depends(get_db), user=Depends(get_current_user)):
    iv = load_owned_interview(db, interview_id, user, write=True)
    if InterviewStatus(iv.status) != InterviewStatus.archived:
        iv.status = InterviewStatus.archived
        db.commit()
    logger.info("interview archived", extra={"interview_id": iv.id})
    return {"ok": True, "id": iv.id, "status": InterviewStatus.archived.value}
