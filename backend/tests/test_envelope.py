# backend/tests/test_envelope.py
import json

import pytest

from core.errors import SchemaMismatch
from services import envelope
from services.envelope import IncrementalSplitter, PartialEnvelope


def test_parse_whole_object():
    obj = envelope.parse_tolerant('{"response": "Hi", "questionNumber": 2, "isInterviewComplete": false}')
    assert obj == {"response": "Hi", "questionNumber": 2, "isInterviewComplete": False}


def test_parse_fenced_object_with_prose():
    text = 'Sure!\n```json\n{"response": "Tell me {more}", "questionNumber": 3}\n```'
    obj = envelope.parse_tolerant(text)
    assert obj["response"] == "Tell me {more}"
    assert obj["questionNumber"] == 3


def test_parse_salvages_truncated_reply():
    obj = envelope.parse_tolerant('{"questionNumber": "4", "isInterviewComplete": true, "response": "Thanks, bye')
    assert obj == {"response": "Thanks, bye", "questionNumber": 4, "isInterviewComplete": True}


def test_parse_without_primary_field_is_partial():
    with pytest.raises(PartialEnvelope):
        envelope.parse_tolerant('{"questionNumber": 1, ')


def test_partial_string_holds_back_cut_escapes():
    assert envelope.partial_string_field('{"response": "a\\', "response") == "a"
    assert envelope.partial_string_field('{"response": "a\\u00', "response") == "a"
    assert envelope.partial_string_field('{"response": "a\\u00e9b"', "response") == "aéb"
    assert envelope.partial_string_field('{"response": "line\\nnext"', "response") == "line\nnext"
    # surrogate pair
    assert envelope.partial_string_field('{"response": "\\ud83c\\udfa4"', "response") == "🎤"
    assert envelope.partial_string_field('{"other": 1}', "response") is None


def test_splitter_output_only_grows():
    full = json.dumps({"response": "Café \"quotes\" and\nnew lines", "questionNumber": 1})
    escaped = full.replace("é", "\\u00e9")
    splitter = IncrementalSplitter("response")
    out = []
    for ch in escaped:
        out.append(splitter.feed(ch))
    final = envelope.decode_envelope("interviewer", escaped)
    out.append(splitter.finish(final.response))
    assert "".join(out) == 'Café "quotes" and\nnew lines'


def test_splitter_switches_from_prose_to_envelope():
    splitter = IncrementalSplitter("message")
    text = "".join(splitter.feed(p) for p in ["Great choice", "! ", '{"message": "x", "READY": true}'])
    assert text == "Great choice! x"
    assert splitter.finish("x") == ""


def test_question_after_prose_reaches_the_candidate():
    raw = 'Sure. {"response": "Tell me about a hard bug.", "questionNumber": 2, "isInterviewComplete": false}'
    splitter = IncrementalSplitter("response")
    shown = [splitter.feed(raw[i:i + 8]) for i in range(0, len(raw), 8)]
    env = envelope.decode_envelope("interviewer", raw)
    shown.append(splitter.finish(env.response))
    assert env.response == "Tell me about a hard bug."
    assert "".join(shown) == "Sure. Tell me about a hard bug."


def test_finish_appends_final_text_that_was_never_streamed():
    splitter = IncrementalSplitter("response")
    splitter.feed("Let me think")
    assert splitter.finish("What is a deadlock?") == "\n\nWhat is a deadlock?"
    assert splitter.finish("What is a deadlock?") == ""


@pytest.mark.parametrize(
    "raw",
    [
        json.dumps({"response": "Café \"quotes\" \U0001f3a4 and\nlines", "questionNumber": 1}),
        json.dumps({"response": "Café \U0001f3a4", "questionNumber": 1}, ensure_ascii=True),
        '```json\n{"response": "Fenced {braces}", "questionNumber": 2}\n```',
        'Sure.{"response": "No gap before the object", "isInterviewComplete": true}',
        'Here you go:\n```json\n{"questionNumber": 3, "response": "Field comes second"}\n```',
        "Just prose, with a `tick` and no object at all.",
    ],
)
def test_display_never_shrinks_over_prefixes(raw):
    shown = ""
    for i in range(1, len(raw) + 1):
        delta = envelope.split_incremental(raw[:i - 1], raw[i - 1], "response")
        current = envelope.display_text(raw[:i], "response")
        assert current.startswith(shown), (raw[:i], shown, current)
        shown += delta
        assert shown == current


def test_display_text_waits_for_fence():
    assert envelope.display_text("``", "response") == ""
    assert envelope.display_text('```json\n{"response": "Hel', "response") == "Hel"


def test_decode_plain_prose_reply():
    env = envelope.decode_envelope("interviewer", "Tell me about yourself.")
    assert env.response == "Tell me about yourself."
    assert env.questionNumber == 0
    assert env.isInterviewComplete is False


def test_decode_coordinator_prose_then_object():
    env = envelope.decode_envelope("coordinator", 'Perfect, all set. {"READY": true, "role": "SRE"}')
    assert env.message == "Perfect, all set."
    assert env.READY is True
    assert env.role == "SRE"


def test_decode_rejects_wrong_types():
    with pytest.raises(SchemaMismatch):
        envelope.decode_envelope("interviewer", '{"response": "Hi", "questionNumber": "three"}')


def test_stored_display():
    assert envelope.stored_display('{"response": "Hello", "questionNumber": 1}') == "Hello"
    assert envelope.stored_display('{"message": "Ready?"}') == "Ready?"
    assert envelope.stored_display("legacy prose") == "legacy prose"
    assert envelope.stored_display("") == ""
