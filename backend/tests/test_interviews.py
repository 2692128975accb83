# backend/tests/test_interviews.py
from conftest import chat_ok, create_interview
from services import model_provider
from services.model_provider import StubProvider

GOOD_FEEDBACK = {
    "overallScore": 80,
    "communicationScore": 85,
    "technicalScore": 75,
    "strengths": "Clear answers",
    "weaknesses": [],
    "suggestion": "Keep practising.",
}


def test_create_list_and_get(client, user):
    iv = create_interview(client, total=5, jd="Build APIs for a payments team.")
    assert iv["totalQuestions"] == 5
    assert iv["jd"].startswith("Build APIs")
    assert iv["history"] == []
    assert iv["feedback"] is None

    listed = client.get("/interviews").json()
    assert [x["id"] for x in listed] == [iv["id"]]

    r = client.get(f"/interviews/{iv['id']}")
    assert r.status_code == 200
    assert r.json()["role"] == "Backend Engineer"


def test_default_question_count(client, user):
    r = client.post("/interviews", json={"role": "Data Engineer"})
    assert r.status_code == 201
    assert r.json()["totalQuestions"] == 7
    assert r.json()["language"] == "English"


def test_create_is_idempotent_per_interaction(client, user):
    a = create_interview(client, interactionId="setup-42")
    b = create_interview(client, interactionId="setup-42")
    assert a["id"] == b["id"]
    assert len(client.get("/interviews").json()) == 1


def test_create_validates_input(client, user):
    r = client.post("/interviews", json={"role": "", "totalQuestions": 3})
    assert r.status_code == 400
    assert r.json()["kind"] == "ValidationError"

    r = client.post("/interviews", json={"role": "SRE", "totalQuestions": 0})
    assert r.status_code == 400


def test_duration_only_grows(client, user):
    iid = create_interview(client)["id"]
    assert client.put(f"/interviews/{iid}", json={"durationSeconds": 120}).json()["durationSeconds"] == 120
    assert client.put(f"/interviews/{iid}", json={"durationSeconds": 60}).json()["durationSeconds"] == 120


def test_feedback_is_written_once(client, user):
    iid = create_interview(client)["id"]
    r = client.put(f"/interviews/{iid}", json={"feedback": GOOD_FEEDBACK})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "COMPLETED"
    assert body["feedback"]["overallScore"] == 80
    assert body["feedback"]["strengths"] == ["Clear answers"]

    # re-sending the same report is fine, a different one is not
    same = client.put(f"/interviews/{iid}", json={"feedback": GOOD_FEEDBACK})
    assert same.status_code == 200
    other = client.put(f"/interviews/{iid}", json={"feedback": dict(GOOD_FEEDBACK, overallScore=10)})
    assert other.status_code == 409


def test_feedback_scores_are_clamped(client, user):
    iid = create_interview(client)["id"]
    fb = dict(GOOD_FEEDBACK, overallScore=140, technicalScore=-5)
    body = client.put(f"/interviews/{iid}", json={"feedback": fb}).json()
    assert body["feedback"]["overallScore"] == 100
    assert body["feedback"]["technicalScore"] == 0


def test_invalid_feedback_is_rejected(client, user):
    iid = create_interview(client)["id"]
    r = client.put(f"/interviews/{iid}", json={"feedback": {"overallScore": "great"}})
    assert r.status_code == 400


def test_completed_interview_cannot_be_reopened(client, user):
    iid = create_interview(client)["id"]
    client.put(f"/interviews/{iid}", json={"feedback": GOOD_FEEDBACK})
    r = client.put(f"/interviews/{iid}", json={"status": "IN_PROGRESS"})
    assert r.status_code == 409


def test_completing_without_feedback_runs_the_judge(client, user):
    iid = create_interview(client)["id"]
    chat_ok(client, iid, start=True)
    chat_ok(client, iid, message="My first answer.")

    body = client.put(f"/interviews/{iid}", json={"status": "COMPLETED"}).json()
    assert body["status"] == "COMPLETED"
    assert body["feedback"]["overallScore"] == 64


def test_archive_hides_from_list(client, user):
    iid = create_interview(client)["id"]
    r = client.delete(f"/interviews/{iid}")
    assert r.json() == {"ok": True, "id": iid, "status": "ARCHIVED"}
    assert client.get("/interviews").json() == []
    assert client.get(f"/interviews/{iid}").json()["status"] == "ARCHIVED"


class BrokenJudge(StubProvider):
    def feedback_reply(self, transcript):
        return {"overallScore": "n/a"}


def test_feedback_degrades_when_judge_output_is_invalid(client, user):
    judge = BrokenJudge()
    model_provider.set_provider(judge)

    r = client.post("/ai/feedback", json={"transcript": "INTERVIEWER: Hi\nCANDIDATE: Hello"})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["degraded"] is True
    assert body["overallScore"] == 0
    assert "SchemaMismatch" in body["suggestion"]
    assert judge.calls["chat"] == 2  # one retry


def test_feedback_for_transcript(client, user):
    r = client.post("/ai/feedback", json={"transcript": "INTERVIEWER: Hi\nCANDIDATE: Hello"})
    assert r.status_code == 200
    assert r.json()["overallScore"] == 64

    r = client.post("/ai/feedback", json={})
    assert r.status_code == 400


def test_feedback_for_interview_is_stored(client, user):
    iid = create_interview(client)["id"]
    chat_ok(client, iid, start=True)
    chat_ok(client, iid, message="Answer one.")
    chat_ok(client, iid, message="Answer two.")

    first = client.post("/ai/feedback", json={"interviewId": iid}).json()
    assert first["overallScore"] == 68
    # second call returns the stored report
    second = client.post("/ai/feedback", json={"interviewId": iid}).json()
    assert second == first
    assert client.get(f"/interviews/{iid}").json()["status"] == "COMPLETED"


def test_analyze_resume(client, user):
    r = client.post("/ai/analyze-resume", json={"resumeText": "Jane Doe\nBackend engineer at Acme."})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["candidateName"] == "Jane Doe"
    assert len(body["suggestedRoles"]) == 2
    assert body["suggestedRoles"][0]["role"] == "Backend Engineer"
