# backend/services/model_provider.py
"""
Uniform call surface over the LLM / speech vendor.

AI_PROVIDER picks the backend:
  - "stub"   deterministic canned persona, no network (default, used by tests)
  - "openai" any OpenAI-compatible HTTP API at MODEL_PROVIDER_URL (SSE streaming)
  - "ollama" local Ollama (NDJSON streaming); transcription via faster-whisper

Vendor HTTP failures are mapped onto core.errors so callers can decide on
retries without knowing which vendor is configured.
"""
from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import random
import re
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, Type

import httpx
from pydantic import BaseModel, ValidationError as PydanticValidationError

from core.config import settings
from core.errors import (
    ConfigError,
    EngineError,
    InvalidInput,
    RateLimited,
    RETRYABLE,
    SchemaMismatch,
    TranscriptionFailed,
    UpstreamUnavailable,
)
from services import asr_service
from services.envelope import outermost_object

log = logging.getLogger(__name__)

# client-facing model aliases; anything else falls back to the configured model
MODEL_ALIASES = {"mockmate-coordinator", "mockmate-interviewer", "mockmate-tts"}


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: "Usage") -> "Usage":
        self.input_tokens += int(other.input_tokens or 0)
        self.output_tokens += int(other.output_tokens or 0)
        return self

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> Dict[str, int]:
        return {"inputTokens": self.input_tokens, "outputTokens": self.output_tokens}


@dataclass
class AudioInput:
    data: bytes
    mime: str = "audio/webm"


@dataclass
class ChatOptions:
    max_output_tokens: int = 1024
    temperature: float = 0.7
    response_mime_type: str = "text/plain"  # or "application/json"
    audio_input: Optional[AudioInput] = None
    model: Optional[str] = None
    instruction_type: Optional[str] = None


@dataclass
class TranscriptionResult:
    text: str
    usage: Usage = field(default_factory=Usage)


def estimate_tokens(text: Optional[str]) -> int:
    return (len(text) + 3) // 4 if text else 0


class ChatStream:
    """
    Async iterator of text fragments. `usage` holds the final token counts once
    the iterator is exhausted. `aclose()` tears down the upstream request.
    """

    def __init__(self, factory: Callable[["ChatStream"], AsyncIterator[str]]):
        self.usage = Usage()
        self._gen = factory(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        return await self._gen.__anext__()

    async def aclose(self) -> None:
        await self._gen.aclose()


# ---------------------------
# Errors & retries
# ---------------------------

def _int_or_none(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


def error_for_status(status: int, detail: str = "", retry_after: Optional[str] = None) -> EngineError:
    detail = (detail or "").strip()[:300]
    if status == 429:
        return RateLimited(f"provider rate limited: {detail}", retry_after=_int_or_none(retry_after))
    if status in (400, 404, 413, 415, 422):
        return InvalidInput(f"provider rejected request ({status}): {detail}")
    return UpstreamUnavailable(f"provider returned {status}: {detail}")


async def _raise_for_status(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    body = await resp.aread()
    raise error_for_status(resp.status_code, body.decode("utf-8", errors="ignore"), resp.headers.get("Retry-After"))


async def with_retries(call: Callable[[], Awaitable[Any]], attempts: int = 3, base_delay: float = 0.5) -> Any:
    """Run `call`, retrying RateLimited / UpstreamUnavailable with jittered backoff."""
    for attempt in range(attempts):
        try:
            return await call()
        except RETRYABLE as exc:
            if attempt == attempts - 1:
                raise
            delay = exc.retry_after if exc.retry_after is not None else base_delay * (2 ** attempt)
            delay += random.uniform(0, base_delay)
            log.warning("retrying after %s (attempt %d): %s", exc.kind, attempt + 1, exc.message)
            await asyncio.sleep(delay)


def _loads_object(text: str) -> Dict[str, Any]:
    try:
        obj = json.loads(text)
    except ValueError:
        blob = outermost_object(text or "")
        if blob is None:
            raise ValueError("no JSON object in reply")
        obj = json.loads(blob)
    if not isinstance(obj, dict):
        raise ValueError("reply is not a JSON object")
    return obj


# ---------------------------
# Base provider
# ---------------------------

class ModelProvider:
    name = "base"
    supports_tts = False

    def model_for(self, alias: Optional[str]) -> str:
        return settings.model_name

    def accepts_audio(self, mime: Optional[str]) -> bool:
        return False

    def chat_stream(
        self,
        system_instruction: str,
        history: List[Dict[str, str]],
        user_message: str,
        opts: ChatOptions,
    ) -> ChatStream:
        raise NotImplementedError

    async def _collect(self, system_instruction, history, user_message, opts) -> Tuple[str, Usage]:
        stream = self.chat_stream(system_instruction, history, user_message, opts)
        parts: List[str] = []
        try:
            async for delta in stream:
                parts.append(delta)
        finally:
            await stream.aclose()
        return "".join(parts), stream.usage

    async def chat_one_shot_json(
        self,
        system_instruction: str,
        history: List[Dict[str, str]],
        user_message: str,
        schema: Type[BaseModel],
        opts: Optional[ChatOptions] = None,
    ) -> Tuple[Dict[str, Any], Usage]:
        """Full JSON reply validated against `schema`; one retry, then SchemaMismatch."""
        opts = replace(opts or ChatOptions(), response_mime_type="application/json")
        total = Usage()
        last_error = ""
        for attempt in range(2):
            text, usage = await with_retries(
                lambda: self._collect(system_instruction, history, user_message, opts)
            )
            total.add(usage)
            try:
                obj = _loads_object(text)
                return schema.model_validate(obj).model_dump(), total
            except (ValueError, PydanticValidationError) as exc:
                last_error = str(exc)[:200]
                log.warning("structured reply failed validation (attempt %d): %s", attempt + 1, last_error)
        raise SchemaMismatch(f"{schema.__name__} validation failed: {last_error}")

    async def transcribe(self, audio: bytes, mime: Optional[str], language_hint: Optional[str] = None) -> TranscriptionResult:
        """Local faster-whisper; vendors with an ASR endpoint override this."""
        try:
            text = await asyncio.to_thread(asr_service.transcribe_audio_bytes, audio, mime, language_hint)
        except Exception as exc:
            raise TranscriptionFailed(f"local transcription failed: {exc}") from exc
        return TranscriptionResult(text=text, usage=Usage(output_tokens=estimate_tokens(text)))

    def tts(self, text: str, voice: Optional[str], language: Optional[str]) -> AsyncIterator[bytes]:
        raise UpstreamUnavailable(f"{self.name} provider has no speech synthesis")


# ---------------------------
# Stub (deterministic)
# ---------------------------

STUB_QUESTIONS = [
    "Can you walk me through a project you are proud of and the part you personally owned?",
    "How do you approach debugging a problem you have never seen before?",
    "Tell me about a time you disagreed with a teammate on a technical decision.",
    "How would you design a service that needs to handle a sudden spike in traffic?",
    "What does good code review look like to you?",
    "How do you decide what to test and what not to test?",
    "Where do you want to grow technically over the next year?",
]

_TOTAL_RE = re.compile(r"exactly (\d+) questions")
_SETUP_RES = {
    "role": re.compile(r"\brole\s*[:=]\s*([^,;\n]+)", re.I),
    "focusArea": re.compile(r"\bfocus(?:\s*area|area)?\s*[:=]\s*([^,;\n]+)", re.I),
    "level": re.compile(r"\blevel\s*[:=]\s*([^,;\n]+)", re.I),
}


class StubProvider(ModelProvider):
    """Canned personas. Counts its calls so tests can assert on vendor traffic."""

    name = "stub"
    supports_tts = True

    def __init__(self, chunk_size: int = 16):
        self.chunk_size = chunk_size
        self.calls: Dict[str, int] = {"chat": 0, "transcribe": 0, "tts": 0}

    def model_for(self, alias: Optional[str]) -> str:
        return "stub-model"

    def accepts_audio(self, mime: Optional[str]) -> bool:
        return True

    # --- persona replies -------------------------------------------------

    def interviewer_reply(self, system_instruction: str, history: List[Dict[str, str]], user_message: str) -> Dict[str, Any]:
        m = _TOTAL_RE.search(system_instruction or "")
        total = int(m.group(1)) if m else settings.default_total_questions
        asked = sum(
            1 for h in history
            if h.get("role") == "model" and '"questionNumber"' in (h.get("content") or "")
        )
        if asked == 0:
            text = "Hi, I'm Alex and I'll be your interviewer today. To start, tell me about yourself."
        elif asked >= total:
            text = "Thank you for your answers. That concludes our interview, and your feedback is on its way."
        else:
            text = f"Thanks for sharing that. {STUB_QUESTIONS[(asked - 1) % len(STUB_QUESTIONS)]}"
        return {
            "response": text,
            "questionNumber": min(asked + 1, total),
            "isInterviewComplete": asked >= total,
        }

    def setup_reply(self, texts: List[str]) -> Dict[str, Any]:
        found: Dict[str, Optional[str]] = {"role": None, "focusArea": None, "level": None}
        for t in texts:
            for key, rx in _SETUP_RES.items():
                m = rx.search(t or "")
                if m:
                    found[key] = m.group(1).strip()
        ready = all(found.values())
        if ready:
            message = f"Great, a {found['level']} {found['role']} interview focused on {found['focusArea']}."
        else:
            missing = [k for k, v in found.items() if not v]
            message = "Could you tell me your " + " and ".join(missing) + "?"
        return dict(found, message=message, READY=ready)

    def feedback_reply(self, transcript: str) -> Dict[str, Any]:
        answers = transcript.count("CANDIDATE:")
        base = 60 + min(answers, 5) * 4
        return {
            "overallScore": base,
            "communicationScore": base + 5,
            "technicalScore": base - 4,
            "problemSolvingScore": base - 2,
            "domainKnowledgeScore": base - 6,
            "strengths": ["Clear structure in answers", "Good use of concrete examples"],
            "weaknesses": ["Could go deeper on trade-offs"],
            "suggestion": "Practise explaining design trade-offs out loud with numbers.",
        }

    def resume_reply(self, resume_text: str) -> Dict[str, Any]:
        first_line = (resume_text or "").strip().splitlines()[0:1]
        name = first_line[0][:60] if first_line else "there"
        return {
            "candidateName": name,
            "currentRole": "Software Engineer",
            "experienceLevel": "mid-level",
            "coreStrengths": ["Backend development", "APIs"],
            "greeting": f"Hi {name}, thanks for sharing your resume.",
            "strengthsSummary": "You have solid backend experience building and shipping APIs.",
            "suggestedRoles": [
                {"role": "Backend Engineer", "reason": "Most of your recent work is server-side.", "focusArea": "APIs and databases"},
                {"role": "Platform Engineer", "reason": "You have worked on deployment tooling.", "focusArea": "Infrastructure"},
            ],
            "suggestion": "Pick one of these roles to start your practice interview.",
        }

    def reply_for(self, system_instruction, history, user_message, opts: ChatOptions) -> str:
        kind = opts.instruction_type or "interviewer"
        if kind == "interviewer":
            obj = self.interviewer_reply(system_instruction, history, user_message)
        elif kind in ("coordinator", "resumeCoordinator", "setupVerifier"):
            texts = [h.get("content") or "" for h in history if h.get("role") == "user"] + [user_message]
            obj = self.setup_reply(texts if kind != "setupVerifier" else [user_message])
        elif kind == "feedbackJudge":
            obj = self.feedback_reply(user_message)
        elif kind == "resumeAnalyzer":
            obj = self.resume_reply(user_message)
        else:
            obj = {"response": "OK"}
        return json.dumps(obj, ensure_ascii=False)

    def chat_stream(self, system_instruction, history, user_message, opts) -> ChatStream:
        self.calls["chat"] += 1
        reply = self.reply_for(system_instruction, history, user_message, opts)
        prompt_text = (system_instruction or "") + "".join(h.get("content") or "" for h in history) + (user_message or "")
        audio_tokens = len(opts.audio_input.data) // 1000 if opts.audio_input else 0

        async def gen(stream: ChatStream):
            for i in range(0, len(reply), self.chunk_size):
                await asyncio.sleep(0)
                yield reply[i:i + self.chunk_size]
            stream.usage = Usage(estimate_tokens(prompt_text) + audio_tokens, estimate_tokens(reply))

        return ChatStream(gen)

    async def transcribe(self, audio, mime, language_hint=None) -> TranscriptionResult:
        self.calls["transcribe"] += 1
        if audio.startswith(b"TEXT:"):
            text = audio[5:].decode("utf-8", errors="ignore").strip()
        elif not audio.strip(b"\x00"):
            text = ""
        else:
            text = f"(spoken answer, {len(audio)} bytes)"
        return TranscriptionResult(text=text, usage=Usage(len(audio) // 1000, estimate_tokens(text)))

    async def tts(self, text, voice, language) -> AsyncIterator[bytes]:
        self.calls["tts"] += 1
        digest = hashlib.sha256(f"{text}|{voice}|{language}".encode("utf-8")).digest()
        yield b"ID3\x04\x00" + digest
        await asyncio.sleep(0)
        yield b"\xff\xfb" + (text or "").encode("utf-8")[:64]


# ---------------------------
# OpenAI-compatible HTTP API
# ---------------------------

_OPENAI_AUDIO_FORMATS = {
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
}
OPENAI_VOICES = {"alloy", "ash", "coral", "echo", "fable", "nova", "onyx", "sage", "shimmer"}


def _bare_mime(mime: Optional[str]) -> str:
    return (mime or "").split(";")[0].strip().lower()


def _timeout(read: Optional[float] = None) -> httpx.Timeout:
    return httpx.Timeout(connect=10.0, read=read or settings.model_chunk_timeout_seconds, write=30.0, pool=10.0)


class OpenAIProvider(ModelProvider):
    name = "openai"
    supports_tts = True

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        self.base_url = (base_url or settings.model_provider_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.model_provider_key

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    def model_for(self, alias: Optional[str]) -> str:
        return settings.model_name

    def accepts_audio(self, mime: Optional[str]) -> bool:
        return _bare_mime(mime) in _OPENAI_AUDIO_FORMATS

    def _messages(self, system_instruction, history, user_message, opts: ChatOptions) -> List[Dict[str, Any]]:
        msgs: List[Dict[str, Any]] = []
        if system_instruction:
            msgs.append({"role": "system", "content": system_instruction})
        for h in history:
            role = "assistant" if h.get("role") == "model" else "user"
            msgs.append({"role": role, "content": h.get("content") or ""})
        if opts.audio_input is not None:
            parts: List[Dict[str, Any]] = []
            if user_message:
                parts.append({"type": "text", "text": user_message})
            parts.append({
                "type": "input_audio",
                "input_audio": {
                    "data": base64.b64encode(opts.audio_input.data).decode("ascii"),
                    "format": _OPENAI_AUDIO_FORMATS.get(_bare_mime(opts.audio_input.mime), "wav"),
                },
            })
            msgs.append({"role": "user", "content": parts})
        else:
            msgs.append({"role": "user", "content": user_message or ""})
        return msgs

    def chat_stream(self, system_instruction, history, user_message, opts) -> ChatStream:
        payload: Dict[str, Any] = {
            "model": opts.model or self.model_for(None),
            "messages": self._messages(system_instruction, history, user_message, opts),
            "stream": True,
            "stream_options": {"include_usage": True},
            "max_tokens": opts.max_output_tokens,
            "temperature": opts.temperature,
        }
        if opts.response_mime_type == "application/json":
            payload["response_format"] = {"type": "json_object"}
        url = f"{self.base_url}/chat/completions"
        headers = self._headers()

        async def gen(stream: ChatStream):
            try:
                async with httpx.AsyncClient(timeout=_timeout()) as client:
                    async with client.stream("POST", url, headers=headers, json=payload) as resp:
                        await _raise_for_status(resp)
                        async for line in resp.aiter_lines():
                            line = line.strip()
                            if not line.startswith("data:"):
                                continue
                            data = line[5:].strip()
                            if data == "[DONE]":
                                break
                            try:
                                event = json.loads(data)
                            except ValueError:
                                log.debug("skipping unparseable SSE line: %s", data[:120])
                                continue
                            usage = event.get("usage")
                            if usage:
                                stream.usage = Usage(
                                    int(usage.get("prompt_tokens") or 0),
                                    int(usage.get("completion_tokens") or 0),
                                )
                            for choice in event.get("choices") or []:
                                delta = (choice.get("delta") or {}).get("content")
                                if delta:
                                    yield delta
            except httpx.TimeoutException as exc:
                raise UpstreamUnavailable(f"model stream timed out: {exc}") from exc
            except httpx.TransportError as exc:
                raise UpstreamUnavailable(f"model provider unreachable: {exc}") from exc

        return ChatStream(gen)

    async def transcribe(self, audio, mime, language_hint=None) -> TranscriptionResult:
        data = {"model": settings.transcription_model}
        code = asr_service.language_code(language_hint)
        if code:
            data["language"] = code
        files = {"file": (f"answer{asr_service._suffix_for(mime)}", audio, _bare_mime(mime) or "audio/webm")}
        try:
            async with httpx.AsyncClient(timeout=_timeout(read=120.0)) as client:
                resp = await client.post(f"{self.base_url}/audio/transcriptions", headers=self._headers(), data=data, files=files)
        except httpx.TimeoutException as exc:
            raise UpstreamUnavailable(f"transcription timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise UpstreamUnavailable(f"transcription provider unreachable: {exc}") from exc
        await _raise_for_status(resp)
        body = resp.json()
        text = (body.get("text") or "").strip()
        usage = body.get("usage") or {}
        return TranscriptionResult(
            text=text,
            usage=Usage(
                int(usage.get("input_tokens") or 0) or len(audio) // 1000,
                int(usage.get("output_tokens") or 0) or estimate_tokens(text),
            ),
        )

    async def tts(self, text, voice, language) -> AsyncIterator[bytes]:
        payload = {
            "model": settings.tts_model,
            "input": text,
            "voice": voice if voice in OPENAI_VOICES else "nova",
            "response_format": "mp3",
        }
        try:
            async with httpx.AsyncClient(timeout=_timeout(read=float(settings.tts_first_frame_timeout_seconds))) as client:
                async with client.stream("POST", f"{self.base_url}/audio/speech", headers=self._headers(), json=payload) as resp:
                    await _raise_for_status(resp)
                    async for chunk in resp.aiter_bytes(8192):
                        if chunk:
                            yield chunk
        except httpx.TimeoutException as exc:
            raise UpstreamUnavailable(f"speech synthesis timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise UpstreamUnavailable(f"speech provider unreachable: {exc}") from exc


# ---------------------------
# Ollama (local)
# ---------------------------

class OllamaProvider(ModelProvider):
    name = "ollama"

    def __init__(self, base_url: Optional[str] = None):
        self.base_url = (base_url or settings.ollama_url).rstrip("/")

    def model_for(self, alias: Optional[str]) -> str:
        return settings.ollama_model

    def chat_stream(self, system_instruction, history, user_message, opts) -> ChatStream:
        if opts.audio_input is not None:
            raise InvalidInput("ollama provider does not accept audio input")
        messages = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        for h in history:
            messages.append({
                "role": "assistant" if h.get("role") == "model" else "user",
                "content": h.get("content") or "",
            })
        messages.append({"role": "user", "content": user_message or ""})
        payload: Dict[str, Any] = {
            "model": opts.model or self.model_for(None),
            "messages": messages,
            "stream": True,
            "options": {"temperature": opts.temperature, "num_predict": opts.max_output_tokens},
        }
        if opts.response_mime_type == "application/json":
            payload["format"] = "json"
        url = f"{self.base_url}/api/chat"

        async def gen(stream: ChatStream):
            try:
                async with httpx.AsyncClient(timeout=_timeout()) as client:
                    async with client.stream("POST", url, json=payload) as resp:
                        await _raise_for_status(resp)
                        async for line in resp.aiter_lines():
                            line = line.strip()
                            if not line:
                                continue
                            try:
                                event = json.loads(line)
                            except ValueError:
                                log.debug("skipping unparseable NDJSON line: %s", line[:120])
                                continue
                            if event.get("error"):
                                raise UpstreamUnavailable(f"ollama error: {event['error']}")
                            content = (event.get("message") or {}).get("content")
                            if content:
                                yield content
                            if event.get("done"):
                                stream.usage = Usage(
                                    int(event.get("prompt_eval_count") or 0),
                                    int(event.get("eval_count") or 0),
                                )
                                break
            except httpx.TimeoutException as exc:
                raise UpstreamUnavailable(f"ollama stream timed out: {exc}") from exc
            except httpx.TransportError as exc:
                raise UpstreamUnavailable(f"ollama unreachable: {exc}") from exc

        return ChatStream(gen)


# ---------------------------
# Selection
# ---------------------------

_provider: Optional[ModelProvider] = None


def build_provider(name: Optional[str] = None) -> ModelProvider:
    """Provider named by AI_PROVIDER. The canned stub runs only when asked for by name."""
    name = (name or settings.ai_provider or "").strip().lower()
    if name == "openai":
        if not settings.model_provider_key:
            raise ConfigError("AI_PROVIDER=openai needs MODEL_PROVIDER_KEY")
        return OpenAIProvider()
    if name == "ollama":
        return OllamaProvider()
    if name == "stub":
        log.warning("AI_PROVIDER=stub: interviews use canned questions and scores")
        return StubProvider()
    raise ConfigError(f"unknown AI_PROVIDER {name!r} (expected openai, ollama or stub)")


def get_provider() -> ModelProvider:
    global _provider
    if _provider is None:
        _provider = build_provider()
        log.info("model provider ready", extra={"provider": _provider.name})
    return _provider


def set_provider(provider: Optional[ModelProvider]) -> None:
    """Swap the process-wide provider (tests, CLI tools). None resets to config."""
    global _provider
    _provider = provider
