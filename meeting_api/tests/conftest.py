import os
import shutil
import tempfile
import time

import jwt
import pytest

_TMP = tempfile.mkdtemp(prefix="meeting_api_")
JWT_SECRET = "test-jwt-secret-with-enough-length-for-hs256"

os.environ.update(
    {
        "DATABASE_URL": f"sqlite:///{os.path.join(_TMP, 'test.db')}",
        "SQLITE_DIR": _TMP,
        "LOG_DIR": os.path.join(_TMP, "logs"),
        "SUPABASE_URL": "https://project.supabase.test",
        "SUPABASE_SERVICE_KEY": "service-key",
        "SUPABASE_JWT_SECRET": JWT_SECRET,
        "OPENAI_API_KEY": "",
        "GOOGLE_AI_API_KEY": "",
        "MOCK_TRANSCRIPTION": "1",
        "WORKER_ENABLED": "0",
        "QUEUE_BACKOFF_MS": "2000",
        "QUEUE_ATTEMPTS": "3",
    }
)

from meeting_api.db import engine, init_db  # noqa: E402
from meeting_api.models.job import AudioJob  # noqa: E402
from meeting_api.models.meeting import Meeting, Transcript  # noqa: E402

init_db()


def make_token(user_id: str = "user-1", email: str = "alice@example.com", secret: str = JWT_SECRET, **overrides) -> str:
    claims = {
        "sub": user_id,
        "email": email,
        "aud": "authenticated",
        "exp": int(time.time()) + 3600,
        "user_metadata": {"full_name": "Alice"},
    }
    claims.update(overrides)
    return jwt.encode(claims, secret, algorithm="HS256")


def auth_headers(user_id: str = "user-1") -> dict:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


class FakeStorage:
    """In-memory stand-in for the storage bucket."""

    base_url = "https://project.supabase.test"
    bucket = "meeting-records"

    def __init__(self):
        self.objects = {}
        self.removed = []
        self.fail_remove = False

    def upload(self, path, content, content_type):
        self.objects[path] = (content, content_type)
        return path

    def create_signed_url(self, path, expires_in=3600):
        return f"{self.base_url}/storage/v1/object/sign/{self.bucket}/{path}?token=signed"

    def public_url(self, path):
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path}"

    def path_from_public_url(self, url):
        prefix = f"{self.base_url}/storage/v1/object/public/{self.bucket}/"
        return url[len(prefix):] if url.startswith(prefix) else None

    def remove(self, paths):
        from meeting_api.errors import UpstreamError

        if self.fail_remove:
            raise UpstreamError("Failed to delete audio file")
        self.removed.extend(paths)
        for p in paths:
            self.objects.pop(p, None)


@pytest.fixture(autouse=True)
def clean_tables():
    yield
    with engine.begin() as conn:
        conn.execute(Transcript.__table__.delete())
        conn.execute(Meeting.__table__.delete())
        conn.execute(AudioJob.__table__.delete())


@pytest.fixture()
def storage():
    from meeting_api.main import app
    from meeting_api.services.storage import get_storage

    fake = FakeStorage()
    app.dependency_overrides[get_storage] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_storage, None)


@pytest.fixture()
def client(storage):
    from fastapi.testclient import TestClient

    from meeting_api.main import app

    return TestClient(app)


def pytest_sessionfinish(session, exitstatus):
    engine.dispose()
    shutil.rmtree(_TMP, ignore_errors=True)


@pytest.fixture()
def token():
    return make_token


@pytest.fixture()
def headers():
    return auth_headers
