# backend/tests/test_audio_answers.py
import asyncio

from conftest import QUEUED, chat, chat_ok, create_interview
from core.config import settings
from db.models import AudioRecording, Turn, TurnRole
from services import conversation_store as store
from services import model_provider, transcription
from services.conversation_store import AUDIO_PENDING, SILENT, TRANSCRIPTION_FAILED, NewTurn
from services.transcription import TurnRef
from services.model_provider import StubProvider


def _user_messages(client, iid):
    return [h for h in client.get(f"/interviews/{iid}").json()["history"] if h["role"] == "user"]


def _upload(client, iid, question_index, data=b"RIFF-fake-webm", interaction_id=None):
    form = {"interviewId": iid, "questionIndex": str(question_index), "durationSeconds": "4.5"}
    if interaction_id:
        form["interactionId"] = interaction_id
    return client.post("/audio/upload", data=form, files={"audio": ("answer.webm", data, "audio/webm")})


def test_audio_answer_in_one_request(client, user, provider, s3):
    iid = create_interview(client)["id"]
    chat_ok(client, iid, start=True)

    _, trailer = chat_ok(client, iid, audio=b"TEXT:I led the payments migration")
    assert trailer["questionNumber"] == 2
    assert len(trailer["newTurnIds"]) == 2

    answer = _user_messages(client, iid)[0]
    assert answer["text"] == AUDIO_PENDING
    assert answer["isAudio"] is True
    assert answer["questionIndex"] == 1
    assert answer["audioUrl"].startswith("http://127.0.0.1:9000/test-bucket/mockmate/interviews/")

    detail = client.get(f"/interviews/{iid}").json()
    assert len(detail["recordings"]) == 1
    assert detail["recordings"][0]["questionIndex"] == 1
    assert any(k.startswith(f"mockmate/interviews/{iid}/audio_q1_") for k in s3.keys())

    r = client.post("/ai/transcribe", json={"interviewId": iid})
    assert r.status_code == 200, r.text
    assert list(r.json()["transcriptions"].values()) == ["I led the payments migration"]

    answer = _user_messages(client, iid)[0]
    assert answer["text"] == "I led the payments migration"
    assert answer["isAudio"] is False
    assert detail["tokenUsage"]["chat"]["calls"] == 2


def test_silent_recording_becomes_silent_marker(client, user):
    iid = create_interview(client)["id"]
    chat_ok(client, iid, start=True)
    chat_ok(client, iid, audio=b"\x00" * 256)

    r = client.post("/ai/transcribe", json={"interviewId": iid})
    assert list(r.json()["transcriptions"].values()) == [SILENT]


class TextOnlyProvider(StubProvider):
    def accepts_audio(self, mime):
        return False


def test_audio_is_transcribed_first_when_model_cannot_listen(client, user):
    text_only = TextOnlyProvider()
    model_provider.set_provider(text_only)
    iid = create_interview(client)["id"]
    chat_ok(client, iid, start=True)

    _, trailer = chat_ok(client, iid, audio=b"TEXT:I prefer Postgres for this")
    assert trailer["questionNumber"] == 2
    assert text_only.calls["transcribe"] == 1

    answer = _user_messages(client, iid)[0]
    assert answer["text"] == "I prefer Postgres for this"
    assert answer["audioUrl"]


def test_upload_before_chat_is_parked_then_bound(client, user):
    iid = create_interview(client)["id"]
    chat_ok(client, iid, start=True)

    r = _upload(client, iid, 1)
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "parked"

    chat_ok(client, iid, message=AUDIO_PENDING)
    answer = _user_messages(client, iid)[0]
    assert answer["isAudio"] is True
    assert answer["audioUrl"]


def test_upload_after_chat_links_to_turn(client, user):
    iid = create_interview(client)["id"]
    chat_ok(client, iid, start=True)
    chat_ok(client, iid, message=AUDIO_PENDING)

    r = _upload(client, iid, 1, interaction_id="rec-1")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "linked"
    assert body["questionIndex"] == 1

    # same interaction is idempotent, anything else is a second recording
    again = _upload(client, iid, 1, interaction_id="rec-1")
    assert again.status_code == 200
    assert again.json()["recordingId"] == body["recordingId"]

    clash = _upload(client, iid, 1, interaction_id="rec-2")
    assert clash.status_code == 409
    assert clash.json()["kind"] == "AlreadyAttached"


def test_upload_rejects_unsupported_type(client, user):
    iid = create_interview(client)["id"]
    r = client.post(
        "/audio/upload",
        data={"interviewId": iid, "questionIndex": "0"},
        files={"audio": ("notes.txt", b"hello", "text/plain")},
    )
    assert r.status_code == 400


def test_failed_transcription_only_marks_its_own_turn(client, user, provider, s3):
    iid = create_interview(client)["id"]
    chat_ok(client, iid, start=True)
    _, first = chat_ok(client, iid, audio=b"TEXT:first answer")
    _, second = chat_ok(client, iid, audio=b"TEXT:second answer")
    first_turn, second_turn = first["newTurnIds"][0], second["newTurnIds"][0]

    # lose the first recording
    lost = next(k for k in s3.keys() if "/audio_q1_" in k)
    s3.delete_object(Bucket="test-bucket", Key=lost)

    r = client.post("/ai/transcribe", json={
        "interviewId": iid,
        "historyIds": [{"historyId": first_turn}, {"historyId": second_turn}],
    })
    assert r.status_code == 200, r.text
    results = r.json()["transcriptions"]
    assert results[first_turn] == TRANSCRIPTION_FAILED
    assert results[second_turn] == "second answer"

    # a finished transcript is not sent to the vendor again
    calls = provider.calls["transcribe"]
    r = client.post("/ai/transcribe", json={"interviewId": iid, "historyIds": [{"historyId": second_turn}]})
    assert r.json()["transcriptions"][second_turn] == "second answer"
    assert provider.calls["transcribe"] == calls


def test_unknown_turn_reports_no_transcript(client, user):
    iid = create_interview(client)["id"]
    r = client.post("/ai/transcribe", json={"interviewId": iid, "historyIds": [{"historyId": "missing"}]})
    assert r.json()["transcriptions"] == {"missing": "[No transcript available]"}


def test_background_transcription_is_queued(client, user):
    iid = create_interview(client)["id"]
    chat_ok(client, iid, start=True)
    chat_ok(client, iid, audio=b"TEXT:queued answer")

    r = client.post("/ai/transcribe", json={"interviewId": iid, "background": True, "language": "English"})
    assert r.status_code == 200, r.text
    assert r.json() == {"queued": True, "taskId": f"fake-{iid}"}
    queued_iid, turn_ids, language = QUEUED[-1]
    assert queued_iid == iid and len(turn_ids) == 1 and language == "English"


def test_invalid_base64_audio_is_rejected(client, user):
    iid = create_interview(client)["id"]
    chat_ok(client, iid, start=True)
    r = client.post("/ai/chat", json={
        "instructionType": "interviewer",
        "interviewId": iid,
        "audio": {"data": "!!not-base64!!", "mimeType": "audio/webm"},
    })
    assert r.status_code == 400


def test_feedback_waits_for_pending_transcripts(client, user):
    iid = create_interview(client, total=1)["id"]
    chat_ok(client, iid, start=True)
    _, trailer = chat_ok(client, iid, audio=b"TEXT:my only answer")
    assert trailer["isInterviewComplete"] is True

    # finishing the interview transcribed the pending answer first
    answer = _user_messages(client, iid)[0]
    assert answer["text"] == "my only answer"


def test_refresh_url_for_own_recording(client, user, other_user, login_as):
    iid = create_interview(client)["id"]
    chat_ok(client, iid, start=True)
    chat_ok(client, iid, audio=b"TEXT:answer")
    url = _user_messages(client, iid)[0]["audioUrl"]

    r = client.post("/audio/refresh-url", json={"url": url})
    assert r.status_code == 200, r.text
    assert r.json()["blobKey"].startswith(f"mockmate/interviews/{iid}/")

    login_as(other_user)
    r = client.post("/audio/refresh-url", json={"url": url})
    assert r.status_code == 404


def test_admin_can_delete_recording(client, user, admin, login_as, s3):
    iid = create_interview(client)["id"]
    chat_ok(client, iid, start=True)
    chat_ok(client, iid, audio=b"TEXT:answer")
    rec = client.get(f"/interviews/{iid}").json()["recordings"][0]

    r = client.delete(f"/audio/{iid}/{rec['id']}")
    assert r.status_code == 403

    login_as(admin)
    r = client.get(f"/audio/{iid}/{rec['id']}")
    assert r.status_code == 200
    r = client.delete(f"/audio/{iid}/{rec['id']}")
    assert r.status_code == 200
    assert rec["blobKey"] not in s3.keys()


def test_recording_index_counts_resume_acknowledgement(client, user, session_factory):
    iid = create_interview(client, resumeText="Jane Doe\nBackend engineer, 5 years of Go.")["id"]
    chat_ok(client, iid, start=True)
    _, trailer = chat_ok(client, iid, audio=b"TEXT:I run the billing service")
    assert trailer["questionNumber"] == 2
    assert trailer["questionCount"] == 2

    with session_factory() as s:
        turns = s.query(Turn).filter(Turn.interview_id == iid).order_by(Turn.seq).all()
        answer = next(t for t in turns if t.audio_key)
        models_before = sum(1 for t in turns if t.seq < answer.seq and TurnRole(t.role) == TurnRole.model)
        rec = s.query(AudioRecording).filter(AudioRecording.interview_id == iid).one()

    assert models_before == 2
    assert answer.question_index == models_before
    assert rec.question_index == models_before
    assert rec.blob_key == answer.audio_key

    # a separate upload for the next answer uses the same numbering
    r = _upload(client, iid, models_before + 1)
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "parked"
    chat_ok(client, iid, message="Next answer, audio on its way.")
    answers = _user_messages(client, iid)
    assert answers[-1]["questionIndex"] == 3
    assert answers[-1]["audioUrl"]


class SlowListener(StubProvider):
    """Tracks how many transcriptions run at the same time."""

    def __init__(self):
        super().__init__()
        self.in_flight = 0
        self.peak = 0

    async def transcribe(self, audio, mime, language_hint=None):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.02)
            return await super().transcribe(audio, mime, language_hint)
        finally:
            self.in_flight -= 1


def test_batch_transcription_respects_concurrency_limit(client, user, db, session_factory, s3, monkeypatch):
    listener = SlowListener()
    model_provider.set_provider(listener)
    monkeypatch.setattr(settings, "transcription_concurrency", 2)
    iid = create_interview(client, total=10)["id"]

    turn_ids = []
    for i in range(6):
        key = f"mockmate/interviews/{iid}/audio_q{i}_batch.webm"
        s3.put_object(Bucket="test-bucket", Key=key, Body=f"TEXT:answer {i}".encode(), ContentType="audio/webm")
        turn_ids.append(store.append_turn(db, iid, NewTurn(
            role=TurnRole.user, content=AUDIO_PENDING, audio_key=key, audio_mime="audio/webm",
        )))

    refs = [TurnRef(key=t, turn_id=t) for t in turn_ids]
    out = asyncio.run(transcription.transcribe_turns(iid, refs, session_factory))

    assert [out[t] for t in turn_ids] == [f"answer {i}" for i in range(6)]
    assert listener.calls["transcribe"] == 6
    assert listener.peak == 2


def test_wait_for_transcripts_polls_until_backfilled(client, user, session_factory):
    iid = create_interview(client)["id"]
    chat_ok(client, iid, start=True)
    chat_ok(client, iid, audio=b"TEXT:My answer")
    with session_factory() as s:
        [pending] = store.pending_audio_turns(s, iid)

    async def run():
        assert await transcription.wait_for_transcripts(iid, session_factory, timeout=0.1, poll_seconds=0.02) is False
        waiter = asyncio.create_task(
            transcription.wait_for_transcripts(iid, session_factory, timeout=5, poll_seconds=0.02)
        )
        await asyncio.sleep(0.05)
        with session_factory() as s:
            store.set_turn_content(s, iid, pending.id, "My answer")
        return await waiter

    assert asyncio.run(run()) is True
