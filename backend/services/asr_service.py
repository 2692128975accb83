import os
import tempfile
import logging
from functools import lru_cache
from typing import Optional

from faster_whisper import WhisperModel

from core.config import settings

logger = logging.getLogger(__name__)

# language names the UI offers -> whisper language codes
LANGUAGE_CODES = {
    "english": "en",
    "spanish": "es",
    "french": "fr",
    "german": "de",
    "hindi": "hi",
    "mandarin": "zh",
    "chinese": "zh",
    "japanese": "ja",
    "portuguese": "pt",
}


def language_code(language: Optional[str]) -> Optional[str]:
    if not language:
        return None
    return LANGUAGE_CODES.get(language.strip().lower())


@lru_cache()
def get_whisper_model() -> WhisperModel:
    """Loaded on first use; the model download is too slow for import time."""
    logger.info("loading whisper model", extra={"whisper_model": settings.whisper_model})
    return WhisperModel(settings.whisper_model, device="cpu", compute_type="int8")


def _suffix_for(mime: Optional[str]) -> str:
    m = (mime or "").lower()
    for ext in ("wav", "mp3", "mpeg", "ogg", "mp4", "m4a"):
        if ext in m:
            return ".mp3" if ext == "mpeg" else f".{ext}"
    return ".webm"


def transcribe_audio_bytes(audio_bytes: bytes, mime: Optional[str] = None, language: Optional[str] = None) -> str:
    """
    Blocking local transcription. Call from async code with asyncio.to_thread.
    Returns "" when the audio holds no speech.
    """
    if not audio_bytes:
        return ""

    fd, path = tempfile.mkstemp(suffix=_suffix_for(mime))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(audio_bytes)

        segments, _ = get_whisper_model().transcribe(
            path,
            language=language_code(language),
            beam_size=5,
            vad_filter=True,
            condition_on_previous_text=False,
            temperature=0.0,
        )
        return " ".join(seg.text.strip() for seg in segments if seg.text).strip()
    finally:
        try:
            os.remove(path)
        except OSError:
            logger.warning("failed to remove temp file %s", path)
