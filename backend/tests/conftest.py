# backend/tests/conftest.py
import base64
import io
import os
import sys
import types
import pathlib
import tempfile

import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# -------------------------------------------------------------------------------------------------
# Path & environment setup (must happen BEFORE importing the app)
# -------------------------------------------------------------------------------------------------

# Ensure backend/ is importable
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Temp SQLite DB file for tests
TEST_DB_FILE = str(pathlib.Path(tempfile.gettempdir()) / "mockmate_engine_test.sqlite")

os.environ.setdefault("DATABASE_URL", f"sqlite:///{TEST_DB_FILE}")
os.environ["AI_PROVIDER"] = "stub"
os.environ.setdefault("TTS_PROVIDER_CHAIN", "model")
os.environ.setdefault("CORS_ORIGINS", "http://localhost:3000")
os.environ.setdefault("BLOB_BUCKET", "test-bucket")
os.environ.setdefault("BLOB_REGION", "us-east-1")
os.environ.setdefault("BLOB_ENDPOINT", "http://127.0.0.1:9000")
os.environ.setdefault("ACCESS_TOKEN_EXPIRE_MINUTES", "60")
os.environ.setdefault("JWT_ALGORITHM", "HS256")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("FEEDBACK_TRANSCRIPT_WAIT_SECONDS", "5")
# Celery/Redis (won't be used thanks to the stub, but set anyway)
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("CELERY_RESULT_BACKEND", os.environ["REDIS_URL"])


# -------------------------------------------------------------------------------------------------
# Import app & modules AFTER env vars
# -------------------------------------------------------------------------------------------------
from main import app
from api import deps
from db import models as m
from db.session import Base
from services import model_provider, tts_service
from services.model_provider import StubProvider
from services.streaming import split_trailer

# -------------------------------------------------------------------------------------------------
# Test DB engine + session factory
# -------------------------------------------------------------------------------------------------
engine = create_engine(f"sqlite:///{TEST_DB_FILE}", connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Drop + recreate DB before each test function to ensure isolation"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture(scope="function")
def db():
    """Yield a fresh DB session per test function."""
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(scope="function")
def session_factory():
    return TestingSessionLocal


def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
        session.commit()
    finally:
        session.close()


def _override_session_factory():
    return TestingSessionLocal


# Override the app's DB dependencies
app.dependency_overrides[deps.get_db] = _override_get_db
app.dependency_overrides[deps.get_session_factory] = _override_session_factory


# -------------------------------------------------------------------------------------------------
# ---- Fake S3 client (no network) ----
def _missing(op: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "404", "Message": "Not Found"}, "ResponseMetadata": {"HTTPStatusCode": 404}},
        op,
    )


class _FakeS3:
    def __init__(self):
        self._store = {}

    def put_object(self, Bucket, Key, Body, ContentType=None, **kwargs):
        data = Body if isinstance(Body, (bytes, bytearray)) else Body.read()
        self._store[(Bucket, Key)] = (bytes(data), ContentType)

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self._store:
            raise _missing("GetObject")
        data, ctype = self._store[(Bucket, Key)]
        return {"Body": io.BytesIO(data), "ContentType": ctype, "ContentLength": len(data)}

    def head_object(self, Bucket, Key):
        if (Bucket, Key) not in self._store:
            raise _missing("HeadObject")
        data, ctype = self._store[(Bucket, Key)]
        return {"ContentLength": len(data), "ContentType": ctype}

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn=3600):
        return f"http://127.0.0.1:9000/{Params['Bucket']}/{Params['Key']}?X-Amz-Expires={ExpiresIn}"

    def delete_object(self, Bucket, Key):
        self._store.pop((Bucket, Key), None)

    def keys(self):
        return [k for (_, k) in self._store]


@pytest.fixture(scope="function", autouse=True)
def s3(monkeypatch):
    """
    Every BlobStore resolves its client through core.s3_client.get_s3_client,
    so swapping the module attribute is enough.
    """
    import core.s3_client as s3mod

    fake = _FakeS3()
    monkeypatch.setattr(s3mod, "get_s3_client", lambda: fake)
    yield fake


# -------------------------------------------------------------------------------------------------
# Model provider + TTS orchestrator
# -------------------------------------------------------------------------------------------------
@pytest.fixture(scope="function", autouse=True)
def provider():
    """Fresh deterministic provider per test; tests may swap in a subclass."""
    stub = StubProvider()
    model_provider.set_provider(stub)
    tts_service._orchestrator = None
    yield stub
    model_provider.set_provider(None)
    tts_service._orchestrator = None


# -------------------------------------------------------------------------------------------------
# Stub Celery task (no worker needed)
# -------------------------------------------------------------------------------------------------
QUEUED = []


@pytest.fixture(scope="session", autouse=True)
def patch_celery_delay():
    from tasks import transcribe as tmod

    def _fake_delay(interview_id, turn_ids=None, language=None):
        QUEUED.append((interview_id, turn_ids, language))
        return types.SimpleNamespace(id=f"fake-{interview_id}")

    tmod.transcribe_interview.delay = _fake_delay  # type: ignore[attr-defined]
    yield


# -------------------------------------------------------------------------------------------------
# TestClient
# -------------------------------------------------------------------------------------------------
@pytest.fixture(scope="session")
def client():
    return TestClient(app)


# -------------------------------------------------------------------------------------------------
# Users: routes see whichever user `login_as` picked, without a JWT round trip
# -------------------------------------------------------------------------------------------------
def _make_user(db, email, is_admin=False):
    u = m.User(email=email, name=email.split("@")[0], is_active=True, is_admin=is_admin)
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


@pytest.fixture(scope="function")
def login_as():
    def _login(u):
        app.dependency_overrides[deps.get_current_user] = lambda: u
        return u

    yield _login
    app.dependency_overrides.pop(deps.get_current_user, None)


@pytest.fixture(scope="function")
def user(db, login_as):
    return login_as(_make_user(db, "candidate@example.com"))


@pytest.fixture(scope="function")
def other_user(db):
    return _make_user(db, "someone@example.com")


@pytest.fixture(scope="function")
def admin(db):
    return _make_user(db, "admin@example.com", is_admin=True)


# -------------------------------------------------------------------------------------------------
# Helpers shared by the API tests
# -------------------------------------------------------------------------------------------------
def create_interview(client, total=3, **extra):
    body = {"role": "Backend Engineer", "focusArea": "APIs", "level": "Mid", "totalQuestions": total}
    body.update(extra)
    r = client.post("/interviews", json=body)
    assert r.status_code == 201, r.text
    return r.json()


def chat(client, interview_id, message=None, start=False, audio=None, mime="audio/webm", **extra):
    body = {"instructionType": "interviewer", "interviewId": interview_id, "start": start}
    if message is not None:
        body["message"] = message
    if audio is not None:
        body["audio"] = {"data": base64.b64encode(audio).decode("ascii"), "mimeType": mime}
    body.update(extra)
    return client.post("/ai/chat", json=body)


def chat_ok(client, interview_id, **kwargs):
    r = chat(client, interview_id, **kwargs)
    assert r.status_code == 200, r.text
    text, trailer = split_trailer(r.content)
    assert "error" not in trailer, trailer
    return text, trailer
