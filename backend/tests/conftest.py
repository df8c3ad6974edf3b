"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from app.chat.connection import RecordingConnection
from app.chat.service import build_chat_service
from app.config import (
    AppConfig,
    LinkPreviewSettings,
    LoggingSettings,
    RoomsSettings,
    StoreSettings,
)
from app.main import create_app


class FakeClock:
    """Manually advanced time source (seconds since epoch)."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def test_config():
    """In-memory stores, no link preview fetching, one global admin."""
    return AppConfig(
        store=StoreSettings(db_path=":memory:"),
        logging=LoggingSettings(audit_enabled=True, audit_path=":memory:"),
        rooms=RoomsSettings(admins=["root_admin"], max_pins=3, max_announcements=2),
        link_preview=LinkPreviewSettings(enabled=False),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def chat(test_config, clock):
    """A fully wired ChatService on in-memory DuckDB with a fake clock."""
    service = build_chat_service(test_config, clock=clock)
    yield service
    service.close()


@pytest.fixture
def connect(chat):
    """Connect a recording client: ``await connect("alice", room=None)``."""

    async def _connect(identity: str, room=None) -> RecordingConnection:
        conn = RecordingConnection(identity)
        await chat.sessions.connect(conn, room)
        return conn

    return _connect


@pytest.fixture
def api_client(test_config):
    """Provide a TestClient for a freshly built app (lifespan included)."""
    with TestClient(create_app(test_config)) as client:
        yield client
