# backend/services/feedback.py
"""
Scored report for a finished interview.

One structured call to the feedbackJudge persona. If the model cannot produce
a valid report after its retry, a zeroed report with a diagnostic suggestion
is stored instead, so finishing an interview never fails on the judge.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy.orm import Session

from core.config import settings
from core.errors import Conflict, EngineError, NotFound
from db.models import Interview, InterviewStatus
from services import conversation_store as store
from services import model_provider, prompts, token_accounting, transcription

log = logging.getLogger(__name__)

SCORE_FIELDS = (
    "overallScore",
    "communicationScore",
    "technicalScore",
    "problemSolvingScore",
    "domainKnowledgeScore",
)


class FeedbackSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    overallScore: int
    communicationScore: int
    technicalScore: int
    problemSolvingScore: Optional[int] = None
    domainKnowledgeScore: Optional[int] = None
    strengths: List[str] = []
    weaknesses: List[str] = []
    suggestion: str = ""

    @field_validator(*SCORE_FIELDS, mode="before")
    @classmethod
    def _clamp_score(cls, v):
        if v is None:
            return v
        try:
            n = int(round(float(v)))
        except (TypeError, ValueError):
            raise ValueError("score must be a number")
        return max(0, min(100, n))

    @field_validator("strengths", "weaknesses", mode="before")
    @classmethod
    def _listify(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v] if v.strip() else []
        return [str(x) for x in v if str(x).strip()]

    @field_validator("suggestion", mode="before")
    @classmethod
    def _text(cls, v):
        return "" if v is None else str(v)


def degraded_feedback(reason: str) -> Dict:
    return {
        "overallScore": 0,
        "communicationScore": 0,
        "technicalScore": 0,
        "problemSolvingScore": 0,
        "domainKnowledgeScore": 0,
        "strengths": [],
        "weaknesses": [],
        "suggestion": f"Automatic feedback could not be generated ({reason}). Please review the transcript manually.",
        "degraded": True,
    }


def build_transcript(messages: List[Dict]) -> str:
    """Hydrated display messages -> INTERVIEWER:/CANDIDATE: lines."""
    lines = []
    for m in messages:
        text = (m.get("text") or "").strip()
        if m.get("role") == "user":
            if text == store.AUDIO_PENDING:
                text = store.NO_TRANSCRIPT
            lines.append(f"CANDIDATE: {text}")
        else:
            lines.append(f"INTERVIEWER: {text}")
    return "\n".join(lines)


async def generate_feedback(
    transcript: str,
    language: Optional[str] = None,
    db: Optional[Session] = None,
    interview_id: Optional[str] = None,
    user_id: Optional[int] = None,
) -> Tuple[Dict, bool]:
    """Returns (feedback, degraded)."""
    provider = model_provider.get_provider()
    opts = model_provider.ChatOptions(
        max_output_tokens=settings.default_max_output_tokens,
        temperature=0.2,
        instruction_type="feedbackJudge",
        model=provider.model_for(None),
    )
    try:
        obj, usage = await provider.chat_one_shot_json(
            prompts.feedback_judge(language or "English"),
            [],
            transcript or "(the candidate did not answer any question)",
            FeedbackSchema,
            opts,
        )
    except EngineError as exc:
        log.warning("feedback generation degraded", extra={"interview_id": interview_id, "error": exc.kind})
        return degraded_feedback(exc.kind), True

    if db is not None:
        token_accounting.record_usage(
            db, "feedback", usage, model=opts.model, interview_id=interview_id, user_id=user_id,
        )
    return obj, False


def store_feedback(db: Session, interview_id: str, feedback: Dict, strict: bool = False) -> Dict:
    """
    Write feedback once and mark the interview COMPLETED. A second write
    returns the stored report, or raises Conflict when `strict` and it differs.
    """
    with store.interview_lock(interview_id):
        try:
            interview = store._lock_row(db, interview_id)
            if interview.feedback:
                if strict and interview.feedback != feedback:
                    raise Conflict("feedback is already recorded for this interview")
                if interview.status != InterviewStatus.completed:
                    interview.status = InterviewStatus.completed
                    db.commit()
                return interview.feedback
            interview.feedback = feedback
            interview.status = InterviewStatus.completed
            db.commit()
        except Exception:
            db.rollback()
            raise
    log.info("interview completed", extra={"interview_id": interview_id})
    return feedback


async def finalize_interview(
    interview_id: str,
    session_factory: Callable[[], Session],
    user_id: Optional[int] = None,
    transcript: Optional[str] = None,
) -> Dict:
    """Transcribe what is still pending, judge the interview, store the report."""
    with session_factory() as db:
        interview = db.get(Interview, interview_id)
        if interview is None:
            raise NotFound(f"interview {interview_id} not found")
        if interview.feedback:
            return store_feedback(db, interview_id, interview.feedback)
        language = interview.language

    loop = asyncio.get_running_loop()
    deadline = loop.time() + settings.feedback_transcript_wait_seconds
    try:
        await asyncio.wait_for(
            transcription.transcribe_pending(interview_id, session_factory, language=language, user_id=user_id),
            timeout=settings.feedback_transcript_wait_seconds,
        )
    except asyncio.TimeoutError:
        log.info("pending transcription hit the wait limit", extra={"interview_id": interview_id})
    # a worker may still hold turns this process did not pick up
    ready = await transcription.wait_for_transcripts(
        interview_id, session_factory, timeout=max(0.0, deadline - loop.time()),
    )
    if not ready:
        log.warning("transcripts not ready, judging what we have", extra={"interview_id": interview_id})

    with session_factory() as db:
        if not transcript:
            transcript = build_transcript(store.hydrate(db, interview_id))
        feedback, _ = await generate_feedback(transcript, language, db, interview_id, user_id)
        return store_feedback(db, interview_id, feedback)
