"""
Pytest configuration and fixtures

The remote store runs on an in-memory SQLite database (single shared
connection), Redis is replaced by FakeRedis, pushes run on an inline
executor and every engine call gets a fixed clock. Nothing touches the
network.
"""
import os
import sys
from concurrent.futures import Executor, Future
from datetime import datetime
from unittest.mock import MagicMock

import pytest

# Must be set before core.config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_FORMAT", "text")

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import SessionLocal, init_db  # noqa: E402
from models import DayLogDocument, ProfileDocument  # noqa: E402
from services.habit_state import AppState, IdentityProfile, IdentityStage, IdentityType, date_key  # noqa: E402
from services.habit_templates import habits_from_template  # noqa: E402


# Wednesday
FIXED_NOW = datetime(2026, 10, 14, 9, 0, 0)


class FakeRedis:
    """Dict-backed stand-in for the handful of redis calls the cache uses."""

    def __init__(self):
        self.store = {}
        self.ttls = {}

    def ping(self):
        return True

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return False
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    def exists(self, key):
        return int(key in self.store)

    def incr(self, key):
        value = int(self.store.get(key, 0)) + 1
        self.store[key] = str(value)
        return value


class InlineExecutor(Executor):
    """Runs submitted pushes immediately on the calling thread."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


def _mock_gemini_response(text: str):
    """Create a mock Gemini API response."""
    mock_part = MagicMock()
    mock_part.text = text

    mock_content = MagicMock()
    mock_content.parts = [mock_part]

    mock_candidate = MagicMock()
    mock_candidate.content = mock_content

    mock_usage = MagicMock()
    mock_usage.prompt_token_count = 120
    mock_usage.candidates_token_count = 60

    mock_response = MagicMock()
    mock_response.candidates = [mock_candidate]
    mock_response.usage_metadata = mock_usage

    return mock_response


def mock_gemini_client(text: str):
    client = MagicMock()
    client.models.generate_content.return_value = _mock_gemini_response(text)
    return client


def onboarded_state(identity: str = "a runner", user_id: str = "user-1", now: datetime = FIXED_NOW) -> AppState:
    """Onboarded state with the template habit set, stage INITIATION."""
    match = habits_from_template(identity, IdentityType.SKILL)
    return AppState(
        user_id=user_id,
        identity=identity,
        habit_set=match.habit_set,
        onboarding_complete=True,
        identity_profile=IdentityProfile(
            type=IdentityType.SKILL,
            stage=IdentityStage.INITIATION,
            stage_entered_at=date_key(now),
        ),
        last_rollover_date=date_key(now),
    )


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def state(now):
    return onboarded_state(now=now)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def inline_executor():
    return InlineExecutor()


@pytest.fixture
def remote_db():
    """
    Fresh replica tables per test. SQLite in-memory with a static pool, so
    every SessionLocal() sees the same database.
    """
    init_db()
    yield SessionLocal
    db = SessionLocal()
    try:
        db.query(DayLogDocument).delete()
        db.query(ProfileDocument).delete()
        db.commit()
    finally:
        db.close()
