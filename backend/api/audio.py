# backend/api/audio.py
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.orm import Session

from api.deps import get_current_user, get_db, load_owned_interview, require_admin
from core.config import settings
from core.errors import AlreadyAttached, NotFound, ValidationError
from schemas.audio import RefreshUrlIn, UploadOut
from services import conversation_store as store
from services.blob_store import KEY_PREFIX, get_blob_store, key_from_signed_url, recording_key

router = APIRouter(prefix="/audio", tags=["audio"])
logger = logging.getLogger("audio")

ALLOWED_AUDIO_TYPES = {
    "audio/webm",
    "audio/ogg",
    "audio/mpeg",
    "audio/mp3",
    "audio/mp4",
    "audio/wav",
    "audio/x-wav",
    "video/webm",
    "application/octet-stream",
}


def _base_ct(ct: Optional[str]) -> Optional[str]:
    return ct.split(";", 1)[0].strip().lower() if ct else None


@router.post("/upload")
async def upload_audio(
    audio: UploadFile = File(...),
    interview_id: str = Form(..., alias="interviewId"),
    question_index: int = Form(..., alias="questionIndex", ge=0),
    duration_seconds: float = Form(0, alias="durationSeconds", ge=0),
    interaction_id: Optional[str] = Form(None, alias="interactionId"),
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    load_owned_interview(db, interview_id, user, write=True)

    mime = _base_ct(audio.content_type) or "audio/webm"
    if mime not in ALLOWED_AUDIO_TYPES:
        raise ValidationError(f"unsupported content-type {audio.content_type!r}")
    data = await audio.read()
    await audio.close()
    if not data:
        raise ValidationError("audio is empty")
    if len(data) > settings.max_audio_bytes:
        raise ValidationError(f"audio too large ({len(data)} bytes), max is {settings.max_audio_bytes}")

    existing = store.find_recording_by_index(db, interview_id, question_index)
    if existing is not None:
        if not (interaction_id and existing.interaction_id == interaction_id):
            raise AlreadyAttached(f"question {question_index} already has a recording")
        rec = existing
    else:
        key = recording_key(interview_id, question_index, mime)
        await asyncio.to_thread(get_blob_store().put, key, data, mime)
        rec = store.create_recording(
            db, interview_id, question_index, key, mime,
            duration_seconds=duration_seconds, interaction_id=interaction_id,
        )

    status = store.attach_audio_by_question_index(db, interview_id, question_index, rec)
    logger.info(
        "audio uploaded",
        extra={"interview_id": interview_id, "question_index": question_index, "status": status},
    )
    return UploadOut(
        recording_id=rec.id,
        blob_key=rec.blob_key,
        status=status,
        question_index=question_index,
    ).model_dump(by_alias=True)


@router.get("/{interview_id}/{recording_id}")
def get_recording(interview_id: str, recording_id: str, db: Session = Depends(get_db), user=Depends(get_current_user)):
    load_owned_interview(db, interview_id, user)
    rec = store.find_recording(db, interview_id, recording_id)
    url = get_blob_store().sign(rec.blob_key)
    return {"url": url, "recording": store.recording_dict(rec)}


@router.post("/refresh-url")
def refresh_url(payload: RefreshUrlIn, db: Session = Depends(get_db), user=Depends(get_current_user)):
    key = payload.blob_key or (key_from_signed_url(payload.url) if payload.url else None)
    if not key or not key.startswith(KEY_PREFIX):
        raise ValidationError("url or blobKey is required")

    # interview audio is private to the interview; synthesized speech is shared
    parts = key[len(KEY_PREFIX):].split("/")
    if parts[0] == "interviews":
        if len(parts) < 3:
            raise NotFound("blob not found")
        load_owned_interview(db, parts[1], user)
    elif parts[0] != "tts":
        raise NotFound("blob not found")

    return {"url": get_blob_store().sign(key), "blobKey": key}


@router.delete("/{interview_id}/{recording_id}")
def delete_recording(interview_id: str, recording_id: str, db: Session = Depends(get_db), admin=Depends(require_admin)):
    rec = store.delete_recording(db, interview_id, recording_id)
    get_blob_store().delete(rec.blob_key)
    logger.info("recording deleted", extra={"interview_id": interview_id, "recording_id": recording_id})
    return {"ok": True, "id": recording_id}
