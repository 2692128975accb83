# backend/services/tts_service.py
"""
Speech synthesis with a vendor fallback chain and a content-addressed cache.

Chain order comes from TTS_PROVIDER_CHAIN:
  - "model"          the configured model provider's TTS
  - "streamelements" StreamElements HTTP speech, one request per sentence chunk
  - "local"          pyttsx3 -> WAV -> MP3 (pydub), runs on this machine

A vendor that fails before its first frame is skipped without the client
noticing. When every vendor fails the body is just the terminator plus a
{"fallback": "client-local"} trailer. Cached audio lives at
tts/<sha256(text|language|voice|promptsVersion)>.mp3 and is only written
after a clean finish.
"""
import asyncio
import logging
import os
import re
import tempfile
import threading
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

import httpx
import pyttsx3
from pydub import AudioSegment

from core.config import settings
from core.errors import EngineError, UpstreamUnavailable
from services import model_provider, prompts
from services.blob_store import BlobStore, content_key, tts_key
from services.streaming import FRAME_TERMINATOR, decode_frames, encode_frame, encode_trailer

logger = logging.getLogger(__name__)

FALLBACK_HEADER = "X-TTS-Fallback"
STREAMELEMENTS_MAX_CHARS = 280

# default voice per interview language (StreamElements / Polly names)
VOICE_MAP = {
    "English": "Joanna",
    "Spanish": "Lucia",
    "French": "Lea",
    "German": "Vicki",
    "Hindi": "Aditi",
    "Mandarin": "Zhiyu",
    "Japanese": "Mizuki",
    "Portuguese": "Camila",
}
DEFAULT_VOICE = "Joanna"


def resolve_voice(language: Optional[str], voice: Optional[str] = None) -> str:
    if voice:
        return voice
    return VOICE_MAP.get((language or "English").strip().title(), DEFAULT_VOICE)


def cache_key(text: str, language: Optional[str], voice: str) -> str:
    return content_key(text, language or "English", voice, prompts.prompts_version())


def split_sentences(text: str, limit: int = STREAMELEMENTS_MAX_CHARS) -> List[str]:
    """
    Sentence-ish chunks no longer than `limit`. Tiny fragments are folded into
    the previous chunk; anything longer than `limit` is cut on whitespace.
    """
    parts = [p.strip() for p in re.split(r"(?<=[.!?;])\s+|\n+", text or "") if p and p.strip()]
    merged: List[str] = []
    for p in parts:
        if merged and len(p) < 10 and len(merged[-1]) + 1 + len(p) <= limit:
            merged[-1] = f"{merged[-1]} {p}"
        else:
            merged.append(p)
    out: List[str] = []
    for p in merged:
        while len(p) > limit:
            cut = p.rfind(" ", 0, limit)
            if cut <= 0:
                cut = limit
            out.append(p[:cut].strip())
            p = p[cut:].strip()
        if p:
            out.append(p)
    return out


# ---------------------------
# Local engine (pyttsx3 + pydub)
# ---------------------------

def _init_engine() -> pyttsx3.Engine:
    """
    A new pyttsx3 engine per call; sharing one engine across threads hangs on
    some platforms.
    """
    engine = pyttsx3.init()
    engine.setProperty("rate", 150)
    engine.setProperty("volume", 1.0)
    return engine


def synthesize_speech(text: str) -> bytes:
    """
    Blocking: pyttsx3 writes a WAV, pydub converts it to MP3 (needs ffmpeg).
    Call with asyncio.to_thread.
    """
    if not text or not text.strip():
        raise ValueError("nothing to synthesize")

    wav_fd, wav_path = tempfile.mkstemp(prefix="tts_", suffix=".wav")
    os.close(wav_fd)
    mp3_fd, mp3_path = tempfile.mkstemp(prefix="tts_", suffix=".mp3")
    os.close(mp3_fd)
    try:
        engine = _init_engine()
        engine.save_to_file(text, wav_path)
        engine.runAndWait()

        audio = AudioSegment.from_wav(wav_path)
        audio.export(mp3_path, format="mp3")
        with open(mp3_path, "rb") as f:
            return f.read()
    finally:
        for path in (wav_path, mp3_path):
            try:
                os.remove(path)
            except OSError:
                logger.warning("failed to remove temp file %s", path)


# ---------------------------
# Vendors: each is an async generator of MP3 chunks
# ---------------------------

async def _model_vendor(text: str, voice: str, language: str) -> AsyncIterator[bytes]:
    provider = model_provider.get_provider()
    if not provider.supports_tts:
        raise UpstreamUnavailable(f"{provider.name} provider has no speech synthesis")
    async for chunk in provider.tts(text, voice, language):
        yield chunk


async def _streamelements_vendor(text: str, voice: str, language: str) -> AsyncIterator[bytes]:
    timeout = httpx.Timeout(connect=5.0, read=float(settings.tts_first_frame_timeout_seconds), write=10.0, pool=5.0)
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            for sentence in split_sentences(text):
                resp = await client.get(settings.streamelements_url, params={"voice": voice, "text": sentence})
                if resp.status_code >= 400:
                    raise model_provider.error_for_status(resp.status_code, resp.text, resp.headers.get("Retry-After"))
                if not resp.content:
                    raise UpstreamUnavailable("streamelements returned no audio")
                yield resp.content
    except httpx.TimeoutException as exc:
        raise UpstreamUnavailable(f"streamelements timed out: {exc}") from exc
    except httpx.TransportError as exc:
        raise UpstreamUnavailable(f"streamelements unreachable: {exc}") from exc


async def _local_vendor(text: str, voice: str, language: str) -> AsyncIterator[bytes]:
    for sentence in split_sentences(text, limit=1000):
        try:
            data = await asyncio.to_thread(synthesize_speech, sentence)
        except Exception as exc:
            raise UpstreamUnavailable(f"local synthesis failed: {exc}") from exc
        yield data


VENDORS: Dict[str, Callable[[str, str, str], AsyncIterator[bytes]]] = {
    "model": _model_vendor,
    "streamelements": _streamelements_vendor,
    "local": _local_vendor,
}


# ---------------------------
# Orchestrator
# ---------------------------

@dataclass
class TTSResult:
    """Outcome of a synthesis request: either a cache hit or a framed stream."""
    key: str
    blob_key: str
    audio_url: Optional[str] = None
    frames: Optional[AsyncIterator[bytes]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    vendor: Optional[str] = None

    @property
    def cached(self) -> bool:
        return self.audio_url is not None


class TTSOrchestrator:
    def __init__(self, blob: Optional[BlobStore] = None, chain: Optional[List[str]] = None):
        self.blob = blob or BlobStore()
        self.chain = chain if chain is not None else settings.tts_provider_chain
        # signed URL per blob key, refreshed before the signature expires
        self._signed: Dict[str, Tuple[str, float]] = {}
        self._signed_lock = threading.Lock()

    # --- cache ----------------------------------------------------------

    def signed_url(self, blob_key: str) -> str:
        ttl = int(settings.blob_sign_ttl_seconds)
        now = time.monotonic()
        with self._signed_lock:
            hit = self._signed.get(blob_key)
            if hit and hit[1] > now:
                return hit[0]
        url = self.blob.sign(blob_key, ttl)
        with self._signed_lock:
            self._signed[blob_key] = (url, now + ttl * 0.8)
        return url

    async def lookup(self, blob_key: str) -> Optional[str]:
        try:
            head = await asyncio.to_thread(self.blob.head, blob_key)
        except EngineError as exc:
            logger.warning("tts cache lookup failed for %s: %s", blob_key, exc.message)
            return None
        if not head.exists:
            return None
        return self.signed_url(blob_key)

    async def _store(self, blob_key: str, audio: bytes) -> bool:
        try:
            await asyncio.to_thread(self.blob.put, blob_key, audio, "audio/mpeg")
            return True
        except EngineError as exc:
            logger.warning("tts cache write failed for %s: %s", blob_key, exc.message)
            return False

    # --- vendor chain ---------------------------------------------------

    async def _open_vendor(
        self, name: str, text: str, voice: str, language: str, attempts: int = 1,
    ) -> Tuple[bytes, AsyncIterator[bytes]]:
        """Start a vendor and wait for its first chunk, making up to `attempts` tries."""
        vendor = VENDORS.get(name)
        if vendor is None:
            raise UpstreamUnavailable(f"unknown tts vendor {name!r}")

        async def first_chunk():
            gen = vendor(text, voice, language)
            try:
                chunk = await asyncio.wait_for(gen.__anext__(), timeout=settings.tts_first_frame_timeout_seconds)
            except StopAsyncIteration:
                raise UpstreamUnavailable(f"{name} produced no audio")
            except asyncio.TimeoutError:
                await gen.aclose()
                raise UpstreamUnavailable(f"{name} gave no audio within {settings.tts_first_frame_timeout_seconds}s")
            except BaseException:
                await gen.aclose()
                raise
            return chunk, gen

        return await model_provider.with_retries(first_chunk, attempts=attempts)

    async def _first_working_vendor(self, text: str, voice: str, language: str):
        for i, name in enumerate(self.chain):
            # only the last vendor is retried in place
            attempts = 3 if i == len(self.chain) - 1 else 1
            try:
                first, gen = await self._open_vendor(name, text, voice, language, attempts=attempts)
                return name, first, gen
            except EngineError as exc:
                logger.warning("tts vendor %s failed before first frame: %s", name, exc.message)
        return None, None, None

    async def synthesize_stream(
        self,
        text: str,
        language: Optional[str] = None,
        voice: Optional[str] = None,
        on_cached: Optional[Callable[[str], None]] = None,
    ) -> TTSResult:
        language = language or "English"
        voice = resolve_voice(language, voice)
        key = cache_key(text, language, voice)
        blob_key = tts_key(key)

        url = await self.lookup(blob_key)
        if url:
            logger.info("tts cache hit", extra={"tts_key": key})
            return TTSResult(key=key, blob_key=blob_key, audio_url=url)

        name, first, gen = await self._first_working_vendor(text, voice, language)
        if gen is None:
            logger.warning("all tts vendors failed; client should speak locally")

            async def empty():
                yield FRAME_TERMINATOR
                yield encode_trailer({"fallback": "client-local"})

            return TTSResult(key=key, blob_key=blob_key, frames=empty(), headers={FALLBACK_HEADER: "client-local"})

        async def frames():
            collected = [first]
            try:
                yield encode_frame(first)
                async for chunk in gen:
                    if not chunk:
                        continue
                    collected.append(chunk)
                    yield encode_frame(chunk)
            except EngineError as exc:
                # mid-stream failure: end without the terminator and cache nothing
                logger.warning("tts vendor %s failed mid-stream: %s", name, exc.message)
                return
            finally:
                await gen.aclose()
            if await self._store(blob_key, b"".join(collected)) and on_cached is not None:
                on_cached(blob_key)
            yield FRAME_TERMINATOR

        return TTSResult(key=key, blob_key=blob_key, frames=frames(), headers={"X-TTS-Vendor": name}, vendor=name)

    async def synthesize_full(
        self,
        text: str,
        language: Optional[str] = None,
        voice: Optional[str] = None,
    ) -> Tuple[Optional[bytes], TTSResult]:
        """Whole-file synthesis for the legacy endpoint. Returns (audio, result); audio is None on a cache hit."""
        result = await self.synthesize_stream(text, language, voice)
        if result.cached:
            return None, result
        chunks: List[bytes] = []
        complete = False
        async for frame in result.frames:
            if frame == FRAME_TERMINATOR:
                complete = True
                break
            chunks.extend(decode_frames(frame))
        if not complete or not chunks:
            raise UpstreamUnavailable("speech synthesis unavailable")
        return b"".join(chunks), result


_orchestrator: Optional[TTSOrchestrator] = None


def get_tts() -> TTSOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = TTSOrchestrator()
    return _orchestrator
