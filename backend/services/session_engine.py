# backend/services/session_engine.py
"""
One streamed chat turn per request.

For a persisted interview the server owns the history: the candidate's turn
is appended first, the interviewer sees everything stored so far, and the
model turn is written only once its envelope has fully arrived. Closing the
response early therefore never leaves half a reply in the history.

The body is produced by `run_turn` as an async generator of bytes (display
chunks, then the trailer) and handed to `streaming.prefetched_response`.
"""
import asyncio
import json
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from core.config import settings
from core.errors import AlreadyAttached, Conflict, EngineError, NotFound, UpstreamUnavailable, ValidationError
from db.models import Interview, InterviewStatus, TurnKind, TurnRole
from services import conversation_store as store
from services import feedback, model_provider, prompts, token_accounting, transcription
from services.blob_store import BlobStore, recording_key
from services.envelope import IncrementalSplitter, decode_envelope, display_text, primary_field, stored_display
from services.streaming import encode_trailer, iter_with_timeouts

log = logging.getLogger(__name__)

CHAT_PERSONAS = ("interviewer", "coordinator", "resumeCoordinator", "setupVerifier")


@dataclass
class ChatTurnRequest:
    instruction_type: str = "interviewer"
    interview_id: Optional[str] = None
    message: Optional[str] = None
    history: List[Dict[str, str]] = field(default_factory=list)
    interview_context: Dict[str, Any] = field(default_factory=dict)
    language: Optional[str] = None
    model_name: Optional[str] = None
    max_output_tokens: Optional[int] = None
    use_structured_output: bool = True
    flatten: bool = True
    start: bool = False
    audio: Optional[model_provider.AudioInput] = None
    audio_duration_seconds: Optional[float] = None
    question_index: Optional[int] = None  # client's counter, advisory only
    interaction_id: Optional[str] = None


@dataclass
class ChatSession:
    model_name: str
    instruction_type: str
    interview_context: Dict[str, Any]
    language: str
    max_output_tokens: int
    system_instruction: str
    history: List[Dict[str, str]] = field(default_factory=list)

    def options(self, structured: bool, audio: Optional[model_provider.AudioInput] = None) -> model_provider.ChatOptions:
        return model_provider.ChatOptions(
            max_output_tokens=self.max_output_tokens,
            response_mime_type="application/json" if structured else "text/plain",
            audio_input=audio,
            model=self.model_name,
            instruction_type=self.instruction_type,
        )


def interview_context(interview: Interview) -> Dict[str, Any]:
    return {
        "role": interview.role,
        "jd": interview.jd,
        "focusArea": interview.focus_area,
        "level": interview.level,
        "hasResume": bool(interview.has_resume),
        "totalQuestions": interview.total_questions,
    }


def _status(interview: Interview) -> str:
    return InterviewStatus(interview.status).value


def _history_messages(turns: List[store.TurnSnapshot]) -> List[Dict[str, str]]:
    return [t.as_provider_message() for t in turns]


def _client_history(items: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    out = []
    for item in items or []:
        role = "model" if item.get("role") in ("model", "assistant") else "user"
        content = item.get("content")
        if content is None:
            content = item.get("text") or ""
        out.append({"role": role, "content": str(content)})
    return out


class SessionEngine:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        provider: Optional[model_provider.ModelProvider] = None,
        blob: Optional[BlobStore] = None,
    ):
        self.session_factory = session_factory
        self.provider = provider or model_provider.get_provider()
        self.blob = blob or BlobStore()

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------

    def run_turn(self, req: ChatTurnRequest, user_id: Optional[int] = None) -> AsyncIterator[bytes]:
        if req.instruction_type not in CHAT_PERSONAS:
            if prompts.is_known(req.instruction_type):
                raise ValidationError(f"{req.instruction_type} is not a chat persona")
            raise ValidationError(f"unknown instructionType: {req.instruction_type!r}")
        if req.instruction_type == "interviewer" and req.interview_id:
            return self._interview_turn(req, user_id)
        return self._ephemeral_turn(req, user_id)

    def _session(self, req: ChatTurnRequest, context: Dict[str, Any], language: str) -> ChatSession:
        return ChatSession(
            model_name=self.provider.model_for(req.model_name),
            instruction_type=req.instruction_type,
            interview_context=context,
            language=language,
            max_output_tokens=int(req.max_output_tokens or settings.default_max_output_tokens),
            system_instruction=prompts.build(req.instruction_type, context, language),
        )

    # ------------------------------------------------------------------
    # model call shared by both paths
    # ------------------------------------------------------------------

    async def _stream_reply(self, session: ChatSession, user_message: str, opts, flatten: bool, state: Dict):
        """
        Yield display chunks. On exit `state` holds the raw reply, the usage and
        whether anything was sent. The upstream stream is closed on every exit.
        """
        loop = asyncio.get_running_loop()
        deadline = state["started"] + settings.max_request_seconds
        field_name = primary_field(session.instruction_type)
        splitter = IncrementalSplitter(field_name) if flatten else None
        stream = self.provider.chat_stream(session.system_instruction, session.history, user_message, opts)
        parts: List[str] = []
        try:
            async for delta in iter_with_timeouts(stream, deadline=deadline):
                parts.append(delta)
                out = splitter.feed(delta) if splitter else delta
                if out:
                    state["sent"] = True
                    yield out.encode("utf-8")
        finally:
            await stream.aclose()
        state["raw"] = "".join(parts)
        state["usage"] = stream.usage
        state["splitter"] = splitter
        state["elapsed"] = loop.time() - state["started"]

    # ------------------------------------------------------------------
    # ephemeral personas (no interview row)
    # ------------------------------------------------------------------

    async def _ephemeral_turn(self, req: ChatTurnRequest, user_id: Optional[int]) -> AsyncIterator[bytes]:
        language = req.language or "English"
        session = self._session(req, req.interview_context or {}, language)
        session.history = _client_history(req.history)
        user_message = (req.message or "").strip()
        if not user_message:
            if req.instruction_type == "interviewer":
                user_message = prompts.KICKOFF_MESSAGE
            elif req.instruction_type in ("coordinator", "resumeCoordinator"):
                user_message = prompts.COORDINATOR_OPENER
            else:
                raise ValidationError("message is required")

        audio = req.audio if req.audio and self.provider.accepts_audio(req.audio.mime) else None
        if req.audio and audio is None:
            user_message = await transcription.transcribe_bytes(req.audio.data, req.audio.mime, language)

        state: Dict[str, Any] = {"started": asyncio.get_running_loop().time(), "sent": False}
        opts = session.options(req.use_structured_output, audio)
        try:
            async with aclosing(self._stream_reply(session, user_message, opts, req.flatten, state)) as chunks:
                async for chunk in chunks:
                    yield chunk
            envelope = self._decode(session.instruction_type, state["raw"])
        except EngineError as exc:
            if not state["sent"]:
                raise
            yield encode_trailer({"error": exc.to_dict(), "newTurnIds": []})
            return

        tail = self._tail(session, envelope, state, req.flatten)
        if tail:
            yield tail

        with self.session_factory() as db:
            token_accounting.record_usage(db, "chat", state["usage"], model=session.model_name, user_id=user_id)

        body = envelope.model_dump()
        yield encode_trailer({
            "usage": state["usage"].to_dict(),
            "newTurnIds": [],
            "isInterviewComplete": bool(body.get("isInterviewComplete", False)),
            "questionNumber": body.get("questionNumber"),
            "envelope": body,
        })

    @staticmethod
    def _decode(instruction_type: str, raw: str):
        if not raw.strip():
            raise UpstreamUnavailable("model returned an empty reply")
        return decode_envelope(instruction_type, raw)

    @staticmethod
    def _tail(session: ChatSession, envelope, state: Dict, flatten: bool) -> bytes:
        if not flatten:
            return b""
        final = getattr(envelope, primary_field(session.instruction_type), "") or ""
        return state["splitter"].finish(final).encode("utf-8")

    # ------------------------------------------------------------------
    # persisted interview
    # ------------------------------------------------------------------

    async def _interview_turn(self, req: ChatTurnRequest, user_id: Optional[int]) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        started = loop.time()
        iid = req.interview_id
        with self.session_factory() as db:
            interview = db.get(Interview, iid)
            if interview is None:
                raise NotFound(f"interview {iid} not found")
            if InterviewStatus(interview.status) == InterviewStatus.archived:
                raise Conflict("interview is archived")

            turns = store.history(db, iid)
            counted = store.last_counted_model_turn(turns)
            is_start = req.start or (not (req.message or "").strip() and req.audio is None)

            if is_start and counted is not None:
                async for chunk in self._replay(db, interview, counted, req.flatten):
                    yield chunk
                return

            if InterviewStatus(interview.status) != InterviewStatus.in_progress:
                raise Conflict(f"interview is {_status(interview)}")
            if not is_start and counted is None:
                raise Conflict("interview has not started yet")

            language = interview.language or "English"
            session = self._session(req, interview_context(interview), language)
            new_turn_ids: List[str] = []
            audio_input = None
            answered_question: Optional[int] = None

            if is_start:
                prior, user_turn = self._seed_turn(db, iid, turns)
                user_message = user_turn.content
            else:
                prior, user_turn, user_message, audio_input = await self._candidate_turn(
                    db, interview, turns, req, language, user_id,
                )
                # the question being answered; the resume acknowledgement is not one
                answered_question = interview.question_count or 0
            if user_turn.id not in {t.id for t in turns}:
                new_turn_ids.append(user_turn.id)
            session.history = _history_messages(prior)

            state: Dict[str, Any] = {"started": started, "sent": False}
            opts = session.options(req.use_structured_output, audio_input)
            try:
                async with aclosing(self._stream_reply(session, user_message, opts, req.flatten, state)) as chunks:
                    async for chunk in chunks:
                        yield chunk
                envelope = self._decode("interviewer", state["raw"])
            except EngineError as exc:
                if not state["sent"]:
                    raise
                log.warning("chat turn failed after first chunk", extra={"interview_id": iid, "error": exc.kind})
                db.refresh(interview)
                yield encode_trailer({
                    "error": exc.to_dict(),
                    "newTurnIds": new_turn_ids,
                    "questionCount": min(interview.question_count, interview.total_questions),
                    "status": _status(interview),
                })
                return

            tail = self._tail(session, envelope, state, req.flatten)
            if tail:
                yield tail

            # the reply is complete: persist it
            canonical = json.dumps(envelope.model_dump(), ensure_ascii=False)
            model_turn_id = store.append_turn(db, iid, store.NewTurn(
                role=TurnRole.model,
                content=canonical,
                interaction_id=req.interaction_id,
            ))
            new_turn_ids.append(model_turn_id)
            token_accounting.record_usage(
                db, "chat", state["usage"], model=session.model_name, interview_id=iid, user_id=user_id,
            )
            self._add_duration(db, iid, state["elapsed"])

            db.refresh(interview)
            complete = bool(envelope.isInterviewComplete) or (
                answered_question is not None and answered_question >= interview.total_questions
            )
            if complete:
                await feedback.finalize_interview(iid, self.session_factory, user_id=user_id)
                db.refresh(interview)

            log.info(
                "chat turn done",
                extra={"interview_id": iid, "question_count": interview.question_count, "complete": complete},
            )
            yield encode_trailer({
                "usage": state["usage"].to_dict(),
                "newTurnIds": new_turn_ids,
                "isInterviewComplete": complete,
                "questionNumber": envelope.questionNumber,
                "questionCount": min(interview.question_count, interview.total_questions),
                "envelope": envelope.model_dump(),
                "status": _status(interview),
            })

    async def _replay(self, db: Session, interview: Interview, turn: store.TurnSnapshot, flatten: bool):
        """Duplicate start: resend the last question without calling the model."""
        try:
            body = json.loads(turn.content)
        except ValueError:
            body = {"response": display_text(turn.content, "response") or turn.content}
        if not isinstance(body, dict):
            body = {"response": turn.content}
        yield (stored_display(turn.content) if flatten else turn.content).encode("utf-8")
        yield encode_trailer({
            "usage": model_provider.Usage().to_dict(),
            "newTurnIds": [],
            "isInterviewComplete": InterviewStatus(interview.status) == InterviewStatus.completed,
            "questionNumber": body.get("questionNumber"),
            "questionCount": min(interview.question_count, interview.total_questions),
            "envelope": body,
            "status": _status(interview),
            "replayed": True,
        })

    def _seed_turn(self, db: Session, iid: str, turns: List[store.TurnSnapshot]):
        if turns and turns[-1].kind == TurnKind.seed.value:
            # a start that was cancelled before the opener arrived
            return turns[:-1], turns[-1]
        seed_id = store.append_turn(db, iid, store.NewTurn(
            role=TurnRole.user, content=prompts.KICKOFF_MESSAGE, kind=TurnKind.seed,
        ))
        seed = next(t for t in store.history(db, iid) if t.id == seed_id)
        return turns, seed

    async def _candidate_turn(
        self,
        db: Session,
        interview: Interview,
        turns: List[store.TurnSnapshot],
        req: ChatTurnRequest,
        language: str,
        user_id: Optional[int],
    ):
        """Append (or reuse) the candidate's turn. Returns (prior, turn, message, audio_input)."""
        iid = interview.id
        text = (req.message or "").strip()
        dangling = store.dangling_user_turn(turns)
        reuse = None
        if dangling is not None:
            same_interaction = req.interaction_id and dangling.interaction_id == req.interaction_id
            same_content = text and dangling.content == text
            same_audio = req.audio is not None and dangling.audio_key and store.is_sentinel(dangling.content)
            if same_interaction or same_content or same_audio:
                reuse = dangling

        audio_input = None
        if reuse is not None:
            prior = turns[:-1]
            if req.audio is not None and not reuse.audio_key:
                rec = await self._store_recording(db, iid, reuse.question_index, req)
                store.attach_audio(db, iid, reuse.id, rec)
                reuse.audio_key = rec.blob_key
                if not reuse.content:
                    reuse.content = store.AUDIO_PENDING
            if req.audio is not None and self.provider.accepts_audio(req.audio.mime):
                audio_input = req.audio
            message = reuse.content
            if req.audio is not None and audio_input is None and store.is_sentinel(reuse.content):
                message = await transcription.transcribe_bytes(
                    req.audio.data, req.audio.mime, language,
                    blob_key=reuse.audio_key, db=db, interview_id=iid, user_id=user_id,
                )
                store.set_turn_content(db, iid, reuse.id, message)
            return prior, reuse, message, audio_input

        new = store.NewTurn(role=TurnRole.user, content=text, interaction_id=req.interaction_id)
        if req.audio is not None:
            if len(req.audio.data) > settings.max_audio_bytes:
                raise ValidationError("audio is too large")
            qi = store.model_turn_count(db, iid)
            rec = await self._store_recording(db, iid, qi, req)
            new.audio_key = rec.blob_key
            new.audio_mime = rec.mime_type
            new.audio_duration_seconds = rec.duration_seconds
            if self.provider.accepts_audio(req.audio.mime):
                audio_input = req.audio
                new.content = text or store.AUDIO_PENDING
            else:
                new.content = await transcription.transcribe_bytes(
                    req.audio.data, req.audio.mime, language,
                    blob_key=rec.blob_key, db=db, interview_id=iid, user_id=user_id,
                )
        elif not text:
            raise ValidationError("message is empty")

        turn_id = store.append_turn(db, iid, new)
        turn = next(t for t in store.history(db, iid) if t.id == turn_id)
        return turns, turn, turn.content, audio_input

    async def _store_recording(self, db: Session, iid: str, qi: int, req: ChatTurnRequest):
        existing = store.find_recording_by_index(db, iid, qi)
        if existing is not None:
            if req.interaction_id and existing.interaction_id == req.interaction_id:
                return existing
            raise AlreadyAttached(f"question {qi} already has a recording")
        key = recording_key(iid, qi, req.audio.mime)
        await asyncio.to_thread(self.blob.put, key, req.audio.data, req.audio.mime)
        return store.create_recording(
            db, iid, qi, key, req.audio.mime,
            duration_seconds=req.audio_duration_seconds or 0,
            interaction_id=req.interaction_id,
        )

    @staticmethod
    def _add_duration(db: Session, iid: str, seconds: float) -> None:
        try:
            db.execute(
                update(Interview)
                .where(Interview.id == iid)
                .values(duration_seconds=Interview.duration_seconds + max(0.0, float(seconds)))
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
