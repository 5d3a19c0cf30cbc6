"""
Pytest configuration and fixtures

Every test gets its own SQLite file under tmp_path, so nothing persists
between tests. Event subscriptions are cleared after each test.
"""
import pytest
import sys
import os
from concurrent.futures import ThreadPoolExecutor

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from core import events
from core.database import create_db_engine, create_session_factory, init_db
from services.workout_session import (
    SessionEventBus,
    WorkoutSessionService,
    create_document_store,
)
from fixtures.session_fixtures import default_records, seed_records


@pytest.fixture(scope="function")
def db_engine(tmp_path):
    """File-backed SQLite engine; worker threads open their own connections."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'sessions.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def store(db_engine):
    return create_document_store(create_session_factory(db_engine))


@pytest.fixture(autouse=True)
def _clear_event_handlers():
    yield
    events.clear_handlers()


@pytest.fixture
def records():
    """Default record graph; tests may edit it before calling `seed`."""
    return default_records()


@pytest.fixture
def seed(store, records):
    """Write `records` into the store."""
    def _seed():
        seed_records(store, records)
        return records
    return _seed


@pytest.fixture
def event_bus():
    bus = SessionEventBus(ThreadPoolExecutor(max_workers=1))
    yield bus
    bus.shutdown(wait=True)


@pytest.fixture
def published(event_bus):
    """Payloads delivered to session.started subscribers (read after event_bus.shutdown())."""
    received = []
    events.subscribe(events.EVENT_SESSION_STARTED, received.append)
    return received


@pytest.fixture
def service(store, event_bus):
    return WorkoutSessionService(store, event_bus=event_bus, enforce_required_metrics=False)
