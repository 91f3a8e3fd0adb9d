import os

# Must be set before anything under rendezvous is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTH_MODE"] = "header"
os.environ["LOG_FILE"] = ""
os.environ.setdefault("LOG_LEVEL", "INFO")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from rendezvous.core.db import Base, get_db
from rendezvous.core.init_db import init_db
from rendezvous.main import app
from rendezvous.models.service import Service
from rendezvous.models.user import User
from rendezvous.modules.notifications.service import NotificationEmitter
from rendezvous.modules.realtime.gateway import RealtimeGateway, get_gateway
from rendezvous.modules.realtime.registry import InMemorySessionRegistry
from rendezvous.services.directory import SqlServiceCatalog, SqlUserDirectory

# ============================================================================
# Test database: one in-memory sqlite shared by every session (StaticPool),
# tables rebuilt per test so uniqueness tests start clean.
# ============================================================================
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(
    bind=test_engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


ALICE = "alice"
BOB = "bob"
CAROL = "carol"
SERVICE_ID = "svc-plumbing"


@pytest.fixture(name="session")
def session_fixture():
    init_db(bind=test_engine)

    with TestingSessionLocal() as session:
        yield session

    Base.metadata.drop_all(test_engine)


@pytest.fixture
def users(session: Session):
    """alice, bob and carol plus a service owned by bob."""
    session.add_all([
        User(id=ALICE, username="Alice", verification_tier=2, avatar_url="/a.png"),
        User(id=BOB, username="Bob", verification_tier=1),
        User(id=CAROL, username="Carol", verification_tier=0),
        Service(id=SERVICE_ID, title="Emergency Plumbing", owner_id=BOB),
    ])
    session.commit()
    return {"alice": ALICE, "bob": BOB, "carol": CAROL, "service": SERVICE_ID}


@pytest.fixture
def directory():
    return SqlUserDirectory()


@pytest.fixture
def catalog():
    return SqlServiceCatalog()


@pytest.fixture
def emitter():
    return NotificationEmitter(max_attempts=1)


@pytest.fixture
def gateway():
    return RealtimeGateway(
        InMemorySessionRegistry(),
        session_factory=TestingSessionLocal,
        ring_timeout=30,
    )


@pytest.fixture(name="client")
def client_fixture(session: Session, gateway: RealtimeGateway):
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


def as_user(user_id: str) -> dict:
    return {"X-User-Id": user_id}


class FakeChannel:
    """Collects frames the gateway pushes to one live client."""

    def __init__(self, name: str = "channel"):
        self.name = name
        self.frames = []

    async def send_json(self, data):
        self.frames.append(data)

    def events(self):
        return [f["event"] for f in self.frames]

    def last(self, event: str):
        for frame in reversed(self.frames):
            if frame["event"] == event:
                return frame["data"]
        raise AssertionError(f"{self.name} never received {event}: {self.events()}")


class BrokenChannel(FakeChannel):
    async def send_json(self, data):
        raise RuntimeError("socket closed")
