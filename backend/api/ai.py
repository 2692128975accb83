# backend/api/ai.py
import base64
import binascii
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from api.deps import get_current_user, get_db, get_session_factory, load_owned_interview
from core.config import settings
from core.errors import EngineError, ValidationError
from schemas.ai import ChatIn, FeedbackIn, ResumeAnalysis, ResumeIn, TTSIn, TranscribeIn
from services import conversation_store as store
from services import feedback as feedback_service
from services import model_provider, prompts, token_accounting, transcription
from services.session_engine import ChatTurnRequest, SessionEngine
from services.streaming import CHAT_MEDIA_TYPE, TTS_MEDIA_TYPE, prefetched_response
from services.tts_service import get_tts
from tasks.transcribe import transcribe_interview

router = APIRouter(prefix="/ai", tags=["ai"])
logger = logging.getLogger("ai")


def _decode_audio(payload) -> model_provider.AudioInput:
    try:
        data = base64.b64decode(payload.data, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("audio.data is not valid base64")
    if not data:
        raise ValidationError("audio is empty")
    if len(data) > settings.max_audio_bytes:
        raise ValidationError(f"audio is larger than {settings.max_audio_bytes} bytes")
    return model_provider.AudioInput(data=data, mime=payload.mime_type or "audio/webm")


# ---------------------------
# Chat (streamed)
# ---------------------------

@router.post("/chat")
async def chat(
    payload: ChatIn,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
    session_factory=Depends(get_session_factory),
):
    if payload.interview_id:
        load_owned_interview(db, payload.interview_id, user, write=True)

    req = ChatTurnRequest(
        instruction_type=payload.instruction_type,
        interview_id=payload.interview_id,
        message=payload.message,
        history=[h.model_dump() for h in payload.history],
        interview_context=payload.interview_context or {},
        language=payload.language,
        model_name=payload.model_name,
        max_output_tokens=payload.max_output_tokens,
        use_structured_output=payload.use_structured_output,
        flatten=payload.flatten,
        start=payload.start,
        audio=_decode_audio(payload.audio) if payload.audio else None,
        audio_duration_seconds=payload.audio.duration_seconds if payload.audio else None,
        question_index=payload.question_index,
        interaction_id=payload.interaction_id,
    )
    engine = SessionEngine(session_factory)
    return await prefetched_response(engine.run_turn(req, user_id=user.id), CHAT_MEDIA_TYPE)


# ---------------------------
# One-shot structured calls
# ---------------------------

@router.post("/feedback")
async def feedback(
    payload: FeedbackIn,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
    session_factory=Depends(get_session_factory),
):
    if payload.interview_id:
        load_owned_interview(db, payload.interview_id, user, write=True)
        return await feedback_service.finalize_interview(
            payload.interview_id, session_factory, user_id=user.id, transcript=payload.transcript,
        )
    if not (payload.transcript or "").strip():
        raise ValidationError("transcript is required without an interviewId")
    fb, _ = await feedback_service.generate_feedback(payload.transcript, payload.language, db, user_id=user.id)
    return fb


@router.post("/analyze-resume")
async def analyze_resume(payload: ResumeIn, db: Session = Depends(get_db), user=Depends(get_current_user)):
    provider = model_provider.get_provider()
    opts = model_provider.ChatOptions(
        temperature=0.3,
        instruction_type="resumeAnalyzer",
        model=provider.model_for(None),
    )
    analysis, usage = await provider.chat_one_shot_json(
        prompts.resume_analyzer(payload.language), [], payload.resume_text, ResumeAnalysis, opts,
    )
    token_accounting.record_usage(db, "resume_analysis", usage, model=opts.model, user_id=user.id)
    return analysis


# ---------------------------
# Speech
# ---------------------------

def _tts_turn_binder(payload: TTSIn, db: Session, user, session_factory):
    """Callback that records the cached audio on the model turn, when one is named."""
    if not (payload.interview_id and payload.turn_id):
        return None
    load_owned_interview(db, payload.interview_id, user, write=True)

    def bind(blob_key: str) -> None:
        with session_factory() as s:
            try:
                store.set_turn_tts_audio(s, payload.interview_id, payload.turn_id, blob_key)
            except EngineError as exc:
                logger.warning("could not link tts audio to turn %s: %s", payload.turn_id, exc.message)

    return bind


def _record_tts_usage(db: Session, payload: TTSIn, vendor: str, user) -> None:
    usage = model_provider.Usage(input_tokens=model_provider.estimate_tokens(payload.text))
    token_accounting.record_usage(
        db, "tts", usage, model=vendor, interview_id=payload.interview_id, user_id=user.id,
    )


@router.post("/tts-stream")
async def tts_stream(
    payload: TTSIn,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
    session_factory=Depends(get_session_factory),
):
    bind = _tts_turn_binder(payload, db, user, session_factory)
    tts = get_tts()
    result = await tts.synthesize_stream(payload.text, payload.language, payload.voice, on_cached=bind)
    if result.cached:
        if bind is not None:
            bind(result.blob_key)
        return JSONResponse({"audioUrl": result.audio_url, "cached": True})
    if result.vendor:
        _record_tts_usage(db, payload, result.vendor, user)
    return await prefetched_response(result.frames, TTS_MEDIA_TYPE, result.headers)


@router.post("/tts")
async def tts_legacy(
    payload: TTSIn,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
    session_factory=Depends(get_session_factory),
):
    bind = _tts_turn_binder(payload, db, user, session_factory)
    tts = get_tts()
    audio, result = await tts.synthesize_full(payload.text, payload.language, payload.voice)
    if result.cached:
        if bind is not None:
            bind(result.blob_key)
        return {"audioUrl": result.audio_url, "cached": True}

    _record_tts_usage(db, payload, result.vendor, user)
    url = await tts.lookup(result.blob_key)
    if url and bind is not None:
        bind(result.blob_key)
    return {
        "audio": base64.b64encode(audio).decode("ascii"),
        "audioUrl": url,
        "mimeType": "audio/mpeg",
        "cached": False,
    }


@router.post("/transcribe")
async def transcribe(
    payload: TranscribeIn,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
    session_factory=Depends(get_session_factory),
):
    iv = load_owned_interview(db, payload.interview_id, user, write=True)
    language = payload.language or iv.language
    refs = [
        transcription.TurnRef(key=h.history_id, turn_id=h.history_id, interaction_id=h.interaction_id)
        for h in payload.history_ids
    ]
    if not refs:
        refs = [
            transcription.TurnRef(key=t.id, turn_id=t.id)
            for t in store.pending_audio_turns(db, payload.interview_id)
        ]

    if payload.background:
        task = transcribe_interview.delay(payload.interview_id, [r.turn_id for r in refs], language)
        return {"queued": True, "taskId": task.id}

    results = await transcription.transcribe_turns(
        payload.interview_id, refs, session_factory, language=language, user_id=user.id,
    )
    return {"transcriptions": results}
