# backend/tests/test_conversation_store.py
import json

import pytest

from core.errors import AlreadyAttached, Conflict, TurnKindMismatch
from db.models import Interview, TurnKind, TurnRole
from services import conversation_store as store
from services.conversation_store import NewTurn


@pytest.fixture
def interview(db, user):
    iv = Interview(user_id=user.id, role="Backend Engineer", total_questions=3)
    db.add(iv)
    db.commit()
    return iv


def _model(text, n):
    return NewTurn(role=TurnRole.model, content=json.dumps({"response": text, "questionNumber": n}))


def test_question_count_and_index(db, interview):
    iid = interview.id
    store.append_turn(db, iid, NewTurn(role=TurnRole.user, content="kickoff", kind=TurnKind.seed))
    store.append_turn(db, iid, _model("Q1", 1))
    answer = store.append_turn(db, iid, NewTurn(role=TurnRole.user, content="A1"))
    store.append_turn(db, iid, _model("Q2", 2))

    db.refresh(interview)
    assert interview.question_count == 2
    assert interview.turn_counter == 4

    turns = store.history(db, iid)
    assert [t.seq for t in turns] == [1, 2, 3, 4]
    assert next(t for t in turns if t.id == answer).question_index == 1


def test_bootstrap_pair_is_not_counted_or_shown(db, interview):
    iid = interview.id
    store.append_turn(db, iid, NewTurn(role=TurnRole.user, content="my resume", kind=TurnKind.bootstrap))
    store.append_turn(db, iid, NewTurn(role=TurnRole.model, content="Thanks for the resume.", kind=TurnKind.bootstrap))
    db.refresh(interview)
    assert interview.question_count == 0
    assert [m["text"] for m in store.hydrate(db, iid)] == ["Thanks for the resume."]


def test_hydrate_flattens_envelopes_and_hides_kickoff(db, interview):
    iid = interview.id
    store.append_turn(db, iid, NewTurn(role=TurnRole.user, content="kickoff", kind=TurnKind.seed))
    store.append_turn(db, iid, _model("Tell me about yourself.", 1))
    msgs = store.hydrate(db, iid)
    assert len(msgs) == 1
    assert msgs[0]["role"] == "model"
    assert msgs[0]["text"] == "Tell me about yourself."
    assert msgs[0]["isAudio"] is False


def test_transcript_replaces_only_sentinels(db, interview):
    iid = interview.id
    audio_turn = store.append_turn(db, iid, NewTurn(
        role=TurnRole.user, content=store.AUDIO_PENDING, audio_key="mockmate/interviews/x/a.webm",
    ))
    typed_turn = store.append_turn(db, iid, NewTurn(role=TurnRole.user, content="typed answer"))

    store.set_turn_content(db, iid, audio_turn, "spoken answer")
    assert next(t for t in store.history(db, iid) if t.id == audio_turn).content == "spoken answer"

    with pytest.raises(Conflict):
        store.set_turn_content(db, iid, typed_turn, "overwritten")
    # writing the same text again is a no-op
    store.set_turn_content(db, iid, audio_turn, "spoken answer")


def test_recording_parks_until_turn_arrives(db, interview):
    iid = interview.id
    rec = store.create_recording(db, iid, 0, "mockmate/interviews/x/q0.webm", "audio/webm", 3.0)
    assert store.attach_audio_by_question_index(db, iid, 0, rec) == "parked"

    turn_id = store.append_turn(db, iid, NewTurn(role=TurnRole.user, content=""))
    turn = next(t for t in store.history(db, iid) if t.id == turn_id)
    assert turn.audio_key == rec.blob_key
    assert turn.content == store.AUDIO_PENDING
    assert [t.id for t in store.pending_audio_turns(db, iid)] == [turn_id]


def test_one_recording_per_question(db, interview):
    iid = interview.id
    first = store.create_recording(db, iid, 1, "k1", "audio/webm", interaction_id="i-1")
    assert store.create_recording(db, iid, 1, "k1-retry", "audio/webm", interaction_id="i-1").id == first.id
    with pytest.raises(AlreadyAttached):
        store.create_recording(db, iid, 1, "k2", "audio/webm", interaction_id="i-2")


def test_audio_only_attaches_to_candidate_turns(db, interview):
    iid = interview.id
    model_turn = store.append_turn(db, iid, _model("Q1", 1))
    rec = store.create_recording(db, iid, 1, "k1", "audio/webm")
    with pytest.raises(TurnKindMismatch):
        store.attach_audio(db, iid, model_turn, rec)


def test_dangling_user_turn(db, interview):
    iid = interview.id
    store.append_turn(db, iid, _model("Q1", 1))
    assert store.dangling_user_turn(store.history(db, iid)) is None
    store.append_turn(db, iid, NewTurn(role=TurnRole.user, content="answer"))
    assert store.dangling_user_turn(store.history(db, iid)).content == "answer"


def test_delete_recording_clears_turn_link(db, interview):
    iid = interview.id
    rec = store.create_recording(db, iid, 0, "k0", "audio/webm")
    turn_id = store.append_turn(db, iid, NewTurn(role=TurnRole.user, content="", audio_key="k0"))
    store.set_turn_content(db, iid, turn_id, "kept transcript")

    store.delete_recording(db, iid, rec.id)
    turn = next(t for t in store.history(db, iid) if t.id == turn_id)
    assert turn.audio_key is None
    assert turn.content == "kept transcript"
    assert store.list_recordings(db, iid) == []
