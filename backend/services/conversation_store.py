# backend/services/conversation_store.py
"""
Append-only turn storage for an interview.

Writes for one interview are serialized by an in-process lock plus a row lock
on the interview (SELECT ... FOR UPDATE where the database supports it). The
only mutation allowed on an existing turn is replacing a sentinel content with
a transcript, and attaching the candidate's recording.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.errors import AlreadyAttached, Conflict, NotFound, TurnKindMismatch
from db.models import (
    AudioRecording,
    Interview,
    PendingAudioBinding,
    Turn,
    TurnKind,
    TurnRole,
)
from services.envelope import stored_display

log = logging.getLogger(__name__)

AUDIO_PENDING = "🎤 Audio Answer Submitted"
SILENT = "[Silent]"
TRANSCRIPTION_FAILED = "[Transcription Failed]"
NO_TRANSCRIPT = "[No transcript available]"
SENTINELS = {AUDIO_PENDING, SILENT, TRANSCRIPTION_FAILED, NO_TRANSCRIPT}


def is_sentinel(content: Optional[str]) -> bool:
    if not content:
        return True
    # older records carry the vendor error after the marker
    return content in SENTINELS or content.startswith("[Transcription Failed")


@dataclass
class NewTurn:
    role: TurnRole
    content: str = ""
    kind: TurnKind = TurnKind.message
    audio_key: Optional[str] = None
    audio_mime: Optional[str] = None
    audio_duration_seconds: Optional[float] = None
    interaction_id: Optional[str] = None


@dataclass
class TurnSnapshot:
    id: str
    seq: int
    role: str
    kind: str
    content: str
    audio_key: Optional[str] = None
    audio_mime: Optional[str] = None
    tts_audio_key: Optional[str] = None
    question_index: Optional[int] = None
    interaction_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, t: Turn) -> "TurnSnapshot":
        return cls(
            id=t.id,
            seq=t.seq,
            role=TurnRole(t.role).value,
            kind=TurnKind(t.kind).value,
            content=t.content or "",
            audio_key=t.audio_key,
            audio_mime=t.audio_mime,
            tts_audio_key=t.tts_audio_key,
            question_index=t.question_index,
            interaction_id=t.interaction_id,
            created_at=t.created_at,
        )

    def as_provider_message(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class DisplayMessage:
    id: str
    role: str
    text: str
    timestamp: Optional[str]
    isAudio: bool = False
    questionIndex: Optional[int] = None
    audioUrl: Optional[str] = None
    ttsAudioUrl: Optional[str] = None

    def to_dict(self) -> dict:
        return dict(self.__dict__)


# ---------------------------
# Per-interview locks
# ---------------------------

_locks: Dict[str, threading.RLock] = {}
_locks_guard = threading.Lock()


def interview_lock(interview_id: str) -> threading.RLock:
    with _locks_guard:
        lock = _locks.get(interview_id)
        if lock is None:
            lock = _locks[interview_id] = threading.RLock()
        return lock


def _lock_row(db: Session, interview_id: str) -> Interview:
    interview = db.execute(
        select(Interview).where(Interview.id == interview_id).with_for_update()
    ).scalar_one_or_none()
    if interview is None:
        raise NotFound(f"interview {interview_id} not found")
    return interview


def model_turn_count(db: Session, interview_id: str) -> int:
    """Model turns stored so far, the resume acknowledgement included."""
    return db.scalar(
        select(func.count(Turn.id)).where(Turn.interview_id == interview_id, Turn.role == TurnRole.model)
    ) or 0


def _turn(db: Session, interview_id: str, turn_id: str) -> Turn:
    t = db.get(Turn, turn_id)
    if t is None or t.interview_id != interview_id:
        raise NotFound(f"turn {turn_id} not found")
    return t


# ---------------------------
# Writes
# ---------------------------

def append_turn(db: Session, interview_id: str, turn: NewTurn) -> str:
    """
    Append one turn and return its id. Counted model turns advance
    question_count; user turns are stamped with the number of model turns
    (of any kind) before them and pick up any recording parked for that index.
    """
    with interview_lock(interview_id):
        try:
            interview = _lock_row(db, interview_id)
            models_before = model_turn_count(db, interview_id) if turn.role == TurnRole.user else 0
            interview.turn_counter = (interview.turn_counter or 0) + 1
            row = Turn(
                interview_id=interview_id,
                seq=interview.turn_counter,
                role=turn.role,
                kind=turn.kind,
                content=turn.content or "",
                audio_key=turn.audio_key,
                audio_mime=turn.audio_mime,
                audio_duration_seconds=turn.audio_duration_seconds,
                interaction_id=turn.interaction_id,
            )
            if turn.role == TurnRole.user:
                row.question_index = models_before
            elif turn.kind != TurnKind.bootstrap:
                interview.question_count = (interview.question_count or 0) + 1
            db.add(row)
            db.flush()

            if turn.role == TurnRole.user and turn.kind == TurnKind.message and not row.audio_key:
                _resolve_pending(db, interview_id, row)

            db.commit()
        except Exception:
            db.rollback()
            raise
        log.debug("turn appended", extra={"interview_id": interview_id, "seq": row.seq, "role": row.role})
        return row.id


def _resolve_pending(db: Session, interview_id: str, row: Turn) -> None:
    pending = db.execute(
        select(PendingAudioBinding).where(
            PendingAudioBinding.interview_id == interview_id,
            PendingAudioBinding.question_index == row.question_index,
        )
    ).scalar_one_or_none()
    if pending is None:
        return
    rec = db.get(AudioRecording, pending.recording_id)
    if rec is not None:
        _bind(row, rec)
        if not row.content:
            row.content = AUDIO_PENDING
    db.delete(pending)


def _bind(row: Turn, rec: AudioRecording) -> None:
    row.audio_key = rec.blob_key
    row.audio_mime = rec.mime_type
    row.audio_duration_seconds = rec.duration_seconds


def create_recording(
    db: Session,
    interview_id: str,
    question_index: int,
    blob_key: str,
    mime_type: str,
    duration_seconds: float = 0,
    interaction_id: Optional[str] = None,
) -> AudioRecording:
    """
    One recording per (interview, question index). Re-sending the same
    interactionId returns the existing row; anything else is AlreadyAttached.
    """
    existing = find_recording_by_index(db, interview_id, question_index)
    if existing is not None:
        if interaction_id and existing.interaction_id == interaction_id:
            return existing
        raise AlreadyAttached(f"question {question_index} already has a recording")

    rec = AudioRecording(
        interview_id=interview_id,
        question_index=question_index,
        blob_key=blob_key,
        mime_type=mime_type or "audio/webm",
        duration_seconds=float(duration_seconds or 0),
        interaction_id=interaction_id,
    )
    db.add(rec)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = find_recording_by_index(db, interview_id, question_index)
        if existing is not None and interaction_id and existing.interaction_id == interaction_id:
            return existing
        raise AlreadyAttached(f"question {question_index} already has a recording")
    return rec


def attach_audio(db: Session, interview_id: str, turn_id: str, recording: AudioRecording) -> None:
    with interview_lock(interview_id):
        try:
            _lock_row(db, interview_id)
            row = _turn(db, interview_id, turn_id)
            _attach(row, recording)
            db.commit()
        except Exception:
            db.rollback()
            raise


def _attach(row: Turn, recording: AudioRecording) -> None:
    if TurnRole(row.role) != TurnRole.user or TurnKind(row.kind) != TurnKind.message:
        raise TurnKindMismatch(f"turn {row.id} is not a candidate turn")
    if row.audio_key:
        if row.audio_key == recording.blob_key:
            return
        raise AlreadyAttached(f"turn {row.id} already has audio")
    if row.question_index is not None and row.question_index != recording.question_index:
        raise Conflict(
            f"recording is for question {recording.question_index}, turn answers question {row.question_index}"
        )
    _bind(row, recording)
    if not row.content:
        row.content = AUDIO_PENDING


def attach_audio_by_question_index(db: Session, interview_id: str, question_index: int, recording: AudioRecording) -> str:
    """
    Bind to the candidate turn that answers question `question_index`, or park
    the recording until that turn is appended. Returns "linked" or "parked".
    """
    with interview_lock(interview_id):
        try:
            _lock_row(db, interview_id)
            row = db.execute(
                select(Turn)
                .where(
                    Turn.interview_id == interview_id,
                    Turn.role == TurnRole.user,
                    Turn.kind == TurnKind.message,
                    Turn.question_index == question_index,
                )
                .order_by(Turn.seq)
            ).scalars().first()
            if row is not None:
                _attach(row, recording)
                db.commit()
                return "linked"

            pending = db.execute(
                select(PendingAudioBinding).where(
                    PendingAudioBinding.interview_id == interview_id,
                    PendingAudioBinding.question_index == question_index,
                )
            ).scalar_one_or_none()
            if pending is not None:
                if pending.recording_id == recording.id:
                    return "parked"
                raise AlreadyAttached(f"question {question_index} already has a parked recording")
            db.add(PendingAudioBinding(
                interview_id=interview_id,
                question_index=question_index,
                recording_id=recording.id,
            ))
            db.commit()
            return "parked"
        except Exception:
            db.rollback()
            raise


def set_turn_content(db: Session, interview_id: str, turn_id: str, text: str) -> None:
    """Backfill a transcript. Only sentinel or empty content may be replaced."""
    with interview_lock(interview_id):
        try:
            row = _turn(db, interview_id, turn_id)
            if row.content == text:
                return
            if not is_sentinel(row.content):
                raise Conflict(f"turn {turn_id} already has content")
            row.content = text
            db.commit()
        except Exception:
            db.rollback()
            raise


def set_turn_tts_audio(db: Session, interview_id: str, turn_id: str, tts_key: str) -> None:
    with interview_lock(interview_id):
        try:
            row = _turn(db, interview_id, turn_id)
            if TurnRole(row.role) != TurnRole.model:
                raise TurnKindMismatch(f"turn {turn_id} is not a model turn")
            row.tts_audio_key = tts_key
            db.commit()
        except Exception:
            db.rollback()
            raise


# ---------------------------
# Reads
# ---------------------------

def history(db: Session, interview_id: str) -> List[TurnSnapshot]:
    rows = db.execute(
        select(Turn)
        .where(Turn.interview_id == interview_id)
        .order_by(Turn.created_at, Turn.seq)
    ).scalars().all()
    return [TurnSnapshot.from_row(t) for t in rows]


def dangling_user_turn(turns: List[TurnSnapshot]) -> Optional[TurnSnapshot]:
    """Last turn when it is a candidate message nobody answered (cancelled request)."""
    if turns and turns[-1].role == TurnRole.user.value and turns[-1].kind == TurnKind.message.value:
        return turns[-1]
    return None


def last_counted_model_turn(turns: List[TurnSnapshot]) -> Optional[TurnSnapshot]:
    for t in reversed(turns):
        if t.role == TurnRole.model.value and t.kind != TurnKind.bootstrap.value:
            return t
    return None


def _display_user_text(t: TurnSnapshot) -> tuple:
    text = t.content or ""
    if t.audio_key and is_sentinel(text):
        return AUDIO_PENDING, True
    if not t.audio_key and text == AUDIO_PENDING:
        # two-request path before the upload landed
        return AUDIO_PENDING, True
    return text, False


def hydrate(
    db: Session,
    interview_id: str,
    signer: Optional[Callable[[str], str]] = None,
) -> List[dict]:
    """Display view: seed and bootstrap-user turns dropped, envelopes flattened."""
    out: List[dict] = []
    for t in history(db, interview_id):
        if t.kind == TurnKind.seed.value:
            continue
        if t.kind == TurnKind.bootstrap.value and t.role == TurnRole.user.value:
            continue
        is_audio = False
        if t.role == TurnRole.user.value:
            text, is_audio = _display_user_text(t)
        else:
            text = stored_display(t.content)
        if not text:
            continue
        msg = DisplayMessage(
            id=t.id,
            role=t.role,
            text=text,
            timestamp=t.created_at.isoformat() if t.created_at else None,
            isAudio=is_audio,
            questionIndex=t.question_index,
        )
        if signer is not None:
            if t.audio_key:
                msg.audioUrl = signer(t.audio_key)
            if t.tts_audio_key:
                msg.ttsAudioUrl = signer(t.tts_audio_key)
        out.append(msg.to_dict())
    return out


def find_recording(db: Session, interview_id: str, recording_id: str) -> AudioRecording:
    rec = db.get(AudioRecording, recording_id)
    if rec is None or rec.interview_id != interview_id:
        raise NotFound(f"recording {recording_id} not found")
    return rec


def find_recording_by_index(db: Session, interview_id: str, question_index: int) -> Optional[AudioRecording]:
    return db.execute(
        select(AudioRecording).where(
            AudioRecording.interview_id == interview_id,
            AudioRecording.question_index == question_index,
        )
    ).scalar_one_or_none()


def list_recordings(db: Session, interview_id: str) -> List[AudioRecording]:
    return list(db.execute(
        select(AudioRecording)
        .where(AudioRecording.interview_id == interview_id)
        .order_by(AudioRecording.question_index)
    ).scalars().all())


def delete_recording(db: Session, interview_id: str, recording_id: str) -> AudioRecording:
    """Admin removal. Clears the forward link on the turn; the transcript stays."""
    with interview_lock(interview_id):
        try:
            rec = find_recording(db, interview_id, recording_id)
            for row in db.execute(
                select(Turn).where(Turn.interview_id == interview_id, Turn.audio_key == rec.blob_key)
            ).scalars():
                row.audio_key = None
                row.audio_mime = None
                row.audio_duration_seconds = None
            db.execute(
                PendingAudioBinding.__table__.delete().where(PendingAudioBinding.recording_id == rec.id)
            )
            db.delete(rec)
            db.commit()
            return rec
        except Exception:
            db.rollback()
            raise


def pending_audio_turns(db: Session, interview_id: str) -> List[TurnSnapshot]:
    """Candidate audio turns still waiting for a transcript."""
    return [
        t for t in history(db, interview_id)
        if t.role == TurnRole.user.value and t.audio_key and t.content in ("", AUDIO_PENDING)
    ]


def recording_dict(rec: AudioRecording, url: Optional[str] = None) -> dict:
    d = {
        "id": rec.id,
        "interviewId": rec.interview_id,
        "questionIndex": rec.question_index,
        "blobKey": rec.blob_key,
        "mimeType": rec.mime_type,
        "durationSeconds": rec.duration_seconds,
        "interactionId": rec.interaction_id,
        "createdAt": rec.created_at.isoformat() if rec.created_at else None,
    }
    if url is not None:
        d["url"] = url
    return d
