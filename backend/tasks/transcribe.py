from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from celery_app import app
from db.session import SessionLocal
from services import transcription

logger = logging.getLogger(__name__)


@app.task(name="tasks.transcribe_interview")
def transcribe_interview(interview_id: str, turn_ids: Optional[List[str]] = None, language: Optional[str] = None) -> dict:
    """
    Worker-side batch transcription. Without turn ids, every candidate audio
    turn that is still waiting for its transcript is processed.
    """
    if turn_ids:
        refs = [transcription.TurnRef(key=t, turn_id=t) for t in turn_ids if t]
        coro = transcription.transcribe_turns(interview_id, refs, SessionLocal, language=language)
    else:
        coro = transcription.transcribe_pending(interview_id, SessionLocal, language=language)
    results = asyncio.run(coro)
    logger.info("transcribed %d turns", len(results), extra={"interview_id": interview_id})
    return {"ok": True, "interview_id": interview_id, "transcriptions": results}
