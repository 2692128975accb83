# backend/services/transcription.py
"""
Audio -> text for candidate turns, cache-through by blob key.

Large recordings are cut into time slices with pydub before they go to the
vendor. Each turn in a batch succeeds or fails on its own: a turn whose
transcription fails gets the "[Transcription Failed]" sentinel.
"""
import asyncio
import io
import logging
import math
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from pydub import AudioSegment
from sqlalchemy import select
from sqlalchemy.orm import Session

from core.config import settings
from core.errors import Conflict, EngineError, TranscriptionFailed
from db.models import TranscriptCache, Turn, TurnRole
from services import conversation_store as store
from services import model_provider, token_accounting
from services.blob_store import BlobStore, audio_extension

log = logging.getLogger(__name__)

_MARKERS_RE = re.compile(r"[\[(]\s*(?:silent|silence|inaudible)\s*[\])]", re.I)
_SILENCE_HINTS = ("no speech", "no audio", "silence", "no discernible", "empty audio")


@dataclass
class TurnRef:
    key: str
    turn_id: Optional[str] = None
    interaction_id: Optional[str] = None


def clean_transcript(text: Optional[str]) -> str:
    """
    Strip [SILENT]/[inaudible] markers and catch vendors describing silence
    instead of transcribing it. Returns the "[Silent]" sentinel for no speech.
    """
    if not text or not text.strip():
        return store.SILENT
    stripped = re.sub(r"\s{2,}", " ", _MARKERS_RE.sub(" ", text)).strip()
    if not stripped:
        return store.SILENT
    low = stripped.lower().strip(" .!")
    if low in ("silent", "silence", "[silent]"):
        return store.SILENT
    if len(low) < 60 and any(h in low for h in _SILENCE_HINTS):
        return store.SILENT
    return stripped


def split_audio(data: bytes, mime: Optional[str], chunk_bytes: int) -> List[bytes]:
    """Blocking: decode with pydub (ffmpeg) and re-encode equal time slices as MP3."""
    segment = AudioSegment.from_file(io.BytesIO(data), format=audio_extension(mime))
    pieces = max(1, math.ceil(len(data) / max(1, chunk_bytes)))
    step = max(1000, math.ceil(len(segment) / pieces))
    out: List[bytes] = []
    for start in range(0, len(segment), step):
        buf = io.BytesIO()
        segment[start:start + step].export(buf, format="mp3")
        out.append(buf.getvalue())
    return out


def cached_transcript(db: Session, blob_key: str) -> Optional[str]:
    row = db.get(TranscriptCache, blob_key)
    return row.text if row else None


def _cache_put(db: Session, blob_key: str, text: str) -> None:
    try:
        db.merge(TranscriptCache(blob_key=blob_key, text=text))
        db.commit()
    except Exception:
        db.rollback()
        raise


async def transcribe_bytes(
    data: bytes,
    mime: Optional[str],
    language: Optional[str] = None,
    blob_key: Optional[str] = None,
    db: Optional[Session] = None,
    interview_id: Optional[str] = None,
    user_id: Optional[int] = None,
) -> str:
    """Transcribe one recording. Raises TranscriptionFailed once retries are spent."""
    if db is not None and blob_key:
        hit = cached_transcript(db, blob_key)
        if hit is not None:
            return hit

    provider = model_provider.get_provider()
    if len(data) > settings.transcription_chunk_bytes:
        try:
            pieces = await asyncio.to_thread(split_audio, data, mime, settings.transcription_chunk_bytes)
        except Exception as exc:
            raise TranscriptionFailed(f"could not split audio: {exc}") from exc
        piece_mime = "audio/mpeg"
    else:
        pieces, piece_mime = [data], mime

    texts: List[str] = []
    usage = model_provider.Usage()
    for piece in pieces:
        try:
            result = await model_provider.with_retries(
                lambda p=piece: provider.transcribe(p, piece_mime, language)
            )
        except TranscriptionFailed:
            raise
        except EngineError as exc:
            raise TranscriptionFailed(f"transcription failed: {exc.message}") from exc
        usage.add(result.usage)
        if result.text:
            texts.append(result.text.strip())

    text = clean_transcript(" ".join(texts))
    if db is not None:
        token_accounting.record_usage(
            db, "transcription", usage,
            model=settings.transcription_model if provider.name == "openai" else provider.name,
            interview_id=interview_id, user_id=user_id,
        )
        if blob_key:
            _cache_put(db, blob_key, text)
    return text


def _resolve_turn(db: Session, interview_id: str, ref: TurnRef) -> Optional[Turn]:
    if ref.turn_id:
        row = db.get(Turn, ref.turn_id)
        if row is not None and row.interview_id == interview_id:
            return row
    if ref.interaction_id:
        return db.execute(
            select(Turn)
            .where(
                Turn.interview_id == interview_id,
                Turn.role == TurnRole.user,
                Turn.interaction_id == ref.interaction_id,
            )
            .order_by(Turn.seq.desc())
        ).scalars().first()
    return None


async def _transcribe_one(
    interview_id: str,
    ref: TurnRef,
    session_factory: Callable[[], Session],
    blob: BlobStore,
    language: Optional[str],
    user_id: Optional[int],
) -> Tuple[str, str]:
    with session_factory() as db:
        turn = _resolve_turn(db, interview_id, ref)
        if turn is None:
            return ref.key, store.NO_TRANSCRIPT
        if not store.is_sentinel(turn.content):
            return ref.key, turn.content
        if not turn.audio_key:
            return ref.key, turn.content or store.NO_TRANSCRIPT

        try:
            data = await asyncio.to_thread(blob.get, turn.audio_key)
            text = await transcribe_bytes(
                data, turn.audio_mime, language,
                blob_key=turn.audio_key, db=db, interview_id=interview_id, user_id=user_id,
            )
        except EngineError as exc:
            log.warning(
                "transcription failed",
                extra={"interview_id": interview_id, "turn_id": turn.id, "error": exc.message},
            )
            text = store.TRANSCRIPTION_FAILED

        try:
            store.set_turn_content(db, interview_id, turn.id, text)
        except Conflict:
            # someone else filled it in first
            db.refresh(turn)
            text = turn.content
        return ref.key, text


async def transcribe_turns(
    interview_id: str,
    refs: List[TurnRef],
    session_factory: Callable[[], Session],
    blob: Optional[BlobStore] = None,
    language: Optional[str] = None,
    user_id: Optional[int] = None,
) -> Dict[str, str]:
    """Transcribe many turns with at most TRANSCRIPTION_CONCURRENCY vendor calls in flight."""
    blob = blob or BlobStore()
    sem = asyncio.Semaphore(max(1, int(settings.transcription_concurrency)))

    async def bounded(ref: TurnRef):
        async with sem:
            return await _transcribe_one(interview_id, ref, session_factory, blob, language, user_id)

    results = await asyncio.gather(*(bounded(r) for r in refs))
    return dict(results)


async def transcribe_pending(
    interview_id: str,
    session_factory: Callable[[], Session],
    language: Optional[str] = None,
    user_id: Optional[int] = None,
) -> Dict[str, str]:
    with session_factory() as db:
        refs = [TurnRef(key=t.id, turn_id=t.id) for t in store.pending_audio_turns(db, interview_id)]
    if not refs:
        return {}
    return await transcribe_turns(interview_id, refs, session_factory, language=language, user_id=user_id)


async def wait_for_transcripts(
    interview_id: str,
    session_factory: Callable[[], Session],
    timeout: Optional[float] = None,
    poll_seconds: float = 0.5,
) -> bool:
    """Poll until no candidate audio turn is still pending. False on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + (timeout if timeout is not None else settings.feedback_transcript_wait_seconds)
    while True:
        with session_factory() as db:
            if not store.pending_audio_turns(db, interview_id):
                return True
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(poll_seconds)
