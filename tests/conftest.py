"""Shared fixtures for the alert bot test suite."""

from datetime import date

import pytest

from src.detection.deduplicator import OrderDeduplicator
from src.detection.throttle import NotificationThrottle
from src.models import ORDER_EVENT_KIND
from src.pipeline import IngestionPipeline
from src.storage.database import Database


# ---------------------------------------------------------------------------
# Database fixtures: each test gets its own fresh SQLite file
# ---------------------------------------------------------------------------

@pytest.fixture
async def test_db(tmp_path):
    """Provide a fresh, connected database for each test."""
    db = Database(str(tmp_path / "test.db"))
    await db.connect()
    yield db
    await db.close()


# ---------------------------------------------------------------------------
# Dispatch collaborator
# ---------------------------------------------------------------------------

class RecordingDispatcher:
    """Dispatcher double that remembers every directive it received."""

    def __init__(self, fail_for=()):
        self.directives = []
        self.fail_for = set(fail_for)

    async def dispatch(self, directive):
        if directive.user_id in self.fail_for:
            raise RuntimeError(f"chat {directive.user_id} unreachable")
        self.directives.append(directive)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def today():
    return date(2026, 3, 14)


@pytest.fixture
def pipeline(test_db, dispatcher):
    throttle = NotificationThrottle(test_db, daily_cap=10)
    return IngestionPipeline(
        test_db,
        dispatcher,
        OrderDeduplicator(),
        throttle,
        queue_size=5,
        eviction_interval=0,
    )


# ---------------------------------------------------------------------------
# Sample data factories
# ---------------------------------------------------------------------------

def make_event(event_id: str = "evt-1", kind: int = ORDER_EVENT_KIND, **tags) -> dict:
    """Build a raw Nostr event with the given tags, in keyword order."""
    return {
        "id": event_id,
        "pubkey": "f" * 64,
        "created_at": 1760000000,
        "kind": kind,
        "tags": [[name, value] for name, value in tags.items()],
        "content": "",
        "sig": "0" * 128,
    }


@pytest.fixture
def sample_event():
    return make_event(
        d="abc123",
        k="sell",
        f="EUR",
        amt="100000",
        fa="5000",
        pm="SEPA",
        premium="3.5",
        source="https://mostro.network/order/abc123",
    )
