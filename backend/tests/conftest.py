import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="scriptflow-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/test.db"
for _name in (
    "TRANSCRIPT_ANALYSIS_WEBHOOK_URL",
    "RESEARCH_WEBHOOK_URL",
    "OUTLINE_GENERATION_WEBHOOK_URL",
):
    os.environ.pop(_name, None)

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import scriptflow.models  # noqa: E402,F401
from scriptflow.db import Base, SessionLocal, engine  # noqa: E402
from scriptflow.forwarder import WebhookForwarder  # noqa: E402
from scriptflow.main import app, get_enqueue, get_forwarder, get_poll_registry  # noqa: E402
from scriptflow.models import Project, User  # noqa: E402
from scriptflow.settings import settings  # noqa: E402
from scriptflow.workflow.polling import PollRegistry  # noqa: E402

USER_ID = "u1"
AUTH = {"X-User-Id": USER_ID, "X-User-Email": "writer@example.com"}


class FakeClock:
    """Relógio que avança só quando alguém dorme nele."""

    def __init__(self):
        self.t = 0.0
        self.sleeps = 0
        self.on_sleep = None

    def now(self) -> float:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.t += seconds
        self.sleeps += 1
        if self.on_sleep is not None:
            self.on_sleep(self)


class Upstream:
    """Webhook externo falso; guarda cada requisição recebida."""

    def __init__(self):
        self.calls: list[httpx.Request] = []
        self.status_code = 200
        self.body: object = {"success": True}
        self.raw: bytes | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.raw is not None:
            return httpx.Response(self.status_code, content=self.raw)
        return httpx.Response(self.status_code, json=self.body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakeRedis:
    """O pouco de Redis que o registro de pollings usa: SET NX EX, GET, EXPIRE e o script de liberação."""

    def __init__(self):
        self.data: dict[str, bytes] = {}
        self.ttls: dict[str, int] = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = str(value).encode()
        if ex is not None:
            self.ttls[key] = ex
        return True

    def get(self, key):
        return self.data.get(key)

    def exists(self, key):
        return int(key in self.data)

    def expire(self, key, seconds):
        if key not in self.data:
            return False
        self.ttls[key] = seconds
        return True

    def delete(self, key):
        self.ttls.pop(key, None)
        return int(self.data.pop(key, None) is not None)

    def eval(self, script, numkeys, key, value):
        if self.data.get(key) == str(value).encode():
            return self.delete(key)
        return 0


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def webhook_urls(monkeypatch):
    urls = {
        "transcript_analysis_webhook_url": "https://hooks.example.com/transcript",
        "research_webhook_url": "https://hooks.example.com/research",
        "outline_generation_webhook_url": "https://hooks.example.com/outline",
    }
    for name, value in urls.items():
        monkeypatch.setattr(settings, name, value)
    return urls


@pytest.fixture()
def upstream():
    return Upstream()


@pytest.fixture()
def enqueued():
    return []


@pytest.fixture()
def redis_conn():
    return FakeRedis()


@pytest.fixture()
def registry(redis_conn):
    return PollRegistry(redis_conn, ttl=360)


@pytest.fixture()
def client(upstream, enqueued, registry):
    def fake_enqueue(project_id, step_number, claim_id=None):
        enqueued.append((project_id, step_number, claim_id))
        return f"job-{len(enqueued)}"

    app.dependency_overrides[get_forwarder] = lambda: WebhookForwarder(settings, transport=upstream.transport)
    app.dependency_overrides[get_enqueue] = lambda: fake_enqueue
    app.dependency_overrides[get_poll_registry] = lambda: registry
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def project(db):
    db.add(User(id=USER_ID, email="writer@example.com", name="writer"))
    project = Project(
        title="Demo",
        youtube_url="https://youtu.be/abc",
        context="demo",
        client_info="Acme",
        created_by=USER_ID,
    )
    db.add(project)
    db.commit()
    db.refresh(project)
    return project
