# backend/tests/test_access_and_ops.py
import pytest

from conftest import _make_user, create_interview
from core import security


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "provider": "stub"}
    assert r.headers.get("X-Request-ID")


def test_request_id_is_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "abc-123"})
    assert r.headers["X-Request-ID"] == "abc-123"


def test_ops_queue(client):
    r = client.get("/ops/queue")
    assert r.status_code == 200
    assert r.json()["redis"] in ("online", "offline")


def test_ops_info(client):
    body = client.get("/ops/info").json()
    assert body["provider"] == "stub"
    assert body["ttsChain"] == ["model"]
    assert len(body["promptsVersion"]) == 16


def test_missing_token_is_unauthorized(client):
    r = client.get("/interviews")
    assert r.status_code == 401
    assert r.json()["kind"] == "Unauthorized"


def test_bearer_token_by_id_or_email(client, db):
    u = _make_user(db, "token@example.com")
    for sub in (str(u.id), u.email):
        token = security.create_access_token(sub)
        r = client.get("/interviews", headers={"Authorization": f"Bearer {token}"})
        assert r.status_code == 200, r.text

    r = client.get("/interviews", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


def test_inactive_account_is_forbidden(client, db):
    u = _make_user(db, "gone@example.com")
    u.is_active = False
    db.commit()
    token = security.create_access_token(str(u.id))
    r = client.get("/interviews", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 403


def test_other_users_interview_looks_missing(client, user, other_user, login_as):
    iid = create_interview(client)["id"]

    login_as(other_user)
    assert client.get(f"/interviews/{iid}").status_code == 404
    assert client.put(f"/interviews/{iid}", json={"durationSeconds": 5}).status_code == 404
    r = client.post("/ai/chat", json={"instructionType": "interviewer", "interviewId": iid, "start": True})
    assert r.status_code == 404
    assert client.get("/interviews").json() == []


def test_admin_reads_but_does_not_write(client, user, admin, login_as):
    iid = create_interview(client)["id"]

    login_as(admin)
    assert client.get(f"/interviews/{iid}").status_code == 200
    assert client.delete(f"/interviews/{iid}").status_code == 404

    listing = client.get("/admin/interviews").json()
    assert listing["total"] == 1
    assert listing["items"][0]["userEmail"] == "candidate@example.com"

    assert client.get("/admin/interviews?status=completed").json()["total"] == 0
    assert client.get("/admin/interviews?status=bogus").status_code == 400

    stats = client.get("/admin/stats").json()
    assert stats["users"] == 2
    assert stats["interviews"] == {"IN_PROGRESS": 1}
    assert stats["recordings"] == 0

    assert client.get(f"/admin/interviews/{iid}/recordings").json() == []


def test_admin_routes_need_admin(client, user):
    assert client.get("/admin/stats").status_code == 403
    assert client.get("/admin/interviews").status_code == 403


def test_create_user_script_issues_working_token(client):
    from scripts import create_user

    token = create_user.main(["dev@example.com", "--admin", "--name", "Dev"])
    r = client.get("/admin/stats", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 200, r.text
    assert r.json()["users"] == 1

    # running it again re-uses the account
    again = create_user.main(["dev@example.com"])
    r = client.get("/admin/stats", headers={"Authorization": f"Bearer {again}"})
    assert r.json()["users"] == 1


def test_provider_misconfiguration_fails_loudly(monkeypatch):
    from core.config import Settings, settings
    from core.errors import ConfigError
    from services.model_provider import OpenAIProvider, StubProvider, build_provider

    assert Settings.model_fields["ai_provider"].default == "openai"

    monkeypatch.setattr(settings, "model_provider_key", "")
    with pytest.raises(ConfigError):
        build_provider("openai")
    with pytest.raises(ConfigError):
        build_provider("gpt-magic")

    monkeypatch.setattr(settings, "model_provider_key", "sk-test")
    assert isinstance(build_provider("openai"), OpenAIProvider)
    assert isinstance(build_provider("stub"), StubProvider)
