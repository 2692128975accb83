# backend/tests/test_streaming_and_transcripts.py
import asyncio

import pytest

from core.errors import UpstreamUnavailable
from services import feedback, streaming
from services.conversation_store import AUDIO_PENDING, NO_TRANSCRIPT, SILENT
from services.transcription import clean_transcript


def test_trailer_round_trip():
    body = "Hello there".encode("utf-8") + streaming.encode_trailer({"questionNumber": 2, "newTurnIds": ["a"]})
    text, trailer = streaming.split_trailer(body)
    assert text == "Hello there"
    assert trailer == {"questionNumber": 2, "newTurnIds": ["a"]}


def test_body_without_trailer():
    text, trailer = streaming.split_trailer("cut off mid-sen".encode("utf-8"))
    assert text == "cut off mid-sen"
    assert trailer == {}


def test_truncated_frame_is_dropped():
    body = streaming.encode_frame(b"abc") + streaming.encode_frame(b"defgh")[:-2]
    assert streaming.decode_frames(body) == [b"abc"]
    full = streaming.encode_frame(b"abc") + streaming.FRAME_TERMINATOR + streaming.encode_frame(b"late")
    assert streaming.decode_frames(full) == [b"abc"]


def test_stalled_upstream_times_out():
    async def slow():
        yield "first"
        await asyncio.sleep(5)
        yield "never"

    async def run():
        out = []
        async for item in streaming.iter_with_timeouts(slow(), chunk_timeout=0.05):
            out.append(item)
        return out

    with pytest.raises(UpstreamUnavailable):
        asyncio.run(run())


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("", SILENT),
        ("   ", SILENT),
        ("[SILENT]", SILENT),
        ("(inaudible)", SILENT),
        ("No speech detected.", SILENT),
        ("Hello [inaudible] world", "Hello world"),
        ("I think the silence in that meeting told us the plan needed more buy-in from the team.",
         "I think the silence in that meeting told us the plan needed more buy-in from the team."),
    ],
)
def test_clean_transcript(raw, expected):
    assert clean_transcript(raw) == expected


def test_transcript_lines_for_judge():
    lines = feedback.build_transcript([
        {"role": "model", "text": "Tell me about yourself."},
        {"role": "user", "text": AUDIO_PENDING},
        {"role": "model", "text": "Thanks."},
        {"role": "user", "text": "I build APIs."},
    ])
    assert lines.splitlines() == [
        "INTERVIEWER: Tell me about yourself.",
        f"CANDIDATE: {NO_TRANSCRIPT}",
        "INTERVIEWER: Thanks.",
        "CANDIDATE: I build APIs.",
    ]


def test_feedback_schema_normalizes():
    fb = feedback.FeedbackSchema.model_validate({
        "overallScore": "87.6",
        "communicationScore": 101,
        "technicalScore": 50,
        "strengths": None,
        "weaknesses": "Rushed answers",
        "suggestion": None,
    }).model_dump()
    assert fb["overallScore"] == 88
    assert fb["communicationScore"] == 100
    assert fb["strengths"] == []
    assert fb["weaknesses"] == ["Rushed answers"]
    assert fb["suggestion"] == ""


def test_degraded_feedback_shape():
    fb = feedback.degraded_feedback("UpstreamUnavailable")
    assert fb["degraded"] is True
    assert all(fb[k] == 0 for k in feedback.SCORE_FIELDS)
    assert "UpstreamUnavailable" in fb["suggestion"]
