import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from questionflow.db import database
from questionflow.services.broadcaster import RoomBroadcaster
from questionflow.services.code_resolver import CodeIndex, CodeResolver
from questionflow.services.confusion import ConfusionAggregator
from questionflow.services.doubt_ledger import DoubtLedger
from questionflow.services.session_facade import SessionFacade


class RecordingSubscriber:
    """Subscriber that keeps every delivered event in memory."""

    def __init__(self, accept: bool = True):
        self.events = []
        self.accept = accept

    def deliver(self, event, payload):
        if not self.accept:
            return False
        self.events.append((event, payload))
        return True

    def names(self):
        return [event for event, _ in self.events]


@pytest.fixture
def recorder():
    return RecordingSubscriber()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    factory = database.init_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await database.init_db()
    yield factory
    await database.close_db()


@pytest.fixture
def broadcaster():
    return RoomBroadcaster()


@pytest.fixture
def facade(session_factory, broadcaster):
    return SessionFacade(session_factory, CodeResolver(CodeIndex()), broadcaster)


@pytest.fixture
def ledger(session_factory, broadcaster):
    return DoubtLedger(session_factory, broadcaster)


@pytest.fixture
def aggregator(session_factory, broadcaster):
    return ConfusionAggregator(session_factory, broadcaster, window_seconds=300)


@pytest.fixture
def client(tmp_path, monkeypatch):
    """TestClient running the full lifespan against a throwaway SQLite file."""
    from questionflow.core.config import settings
    monkeypatch.setattr(settings, "DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    monkeypatch.setattr(settings, "REDIS_URL", "")

    from questionflow.main import app
    with TestClient(app) as c:
        yield c
