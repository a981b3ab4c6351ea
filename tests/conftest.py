import pytest
from fastapi.testclient import TestClient

from todoapp.blobs import BlobStore
from todoapp.clock import ms_to_datetime
from todoapp.config import Settings
from todoapp.db import Base, make_engine, make_session_factory
from todoapp.main import create_app
from todoapp.models import User

# 2025-01-01T00:00:00Z
START_MS = 1_735_689_600_000


class FakeClock:
    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0, days: float = 0) -> None:
        self.now += int((seconds + minutes * 60 + days * 86400) * 1000)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    session = make_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def blobs(tmp_path, clock):
    return BlobStore(tmp_path / "blobs", clock=clock)


def _make_user(db, email, clock):
    now = ms_to_datetime(clock())
    user = User(email=email, password_hash="unused", created_at=now, updated_at=now)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def user(db, clock):
    return _make_user(db, "a@x.com", clock)


@pytest.fixture
def other_user(db, clock):
    return _make_user(db, "b@x.com", clock)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL="sqlite://",
        BLOB_DIR=tmp_path / "app-blobs",
        ENVIRONMENT="development",
        LOG_LEVEL="WARNING",
        TODOS_PAGE_SIZE=2,
    )


@pytest.fixture
def app(settings, clock):
    return create_app(settings, clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_client(client):
    resp = client.post("/api/auth/signup", json={"email": "a@x.com", "password": "pw123456"})
    assert resp.status_code == 200, resp.text
    return client
