"""Shared fixtures: module-scoped DB template eliminates per-test init_db overhead."""

import shutil

import pytest

from mermaidsmith.generator import DiagramGenerator
from mermaidsmith.llm.scheduler import RateLimitedScheduler
from mermaidsmith.storage.sqlite_store import Owner, SqliteStore
from tests.helpers import AcceptAll, ManualClock, RoutedProvider


@pytest.fixture(scope="module")
def _module_db_path(tmp_path_factory):
    """Create one fully-initialized DB per test module as a template."""
    db_path = tmp_path_factory.mktemp("db") / "test.db"
    s = SqliteStore(db_path)
    s.init_db()
    s._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
    s.close()
    return db_path


@pytest.fixture
def db_path(tmp_path, _module_db_path):
    """Copy the template DB into a per-test tmp dir (fast file copy, no init_db)."""
    path = tmp_path / "test.db"
    shutil.copy2(_module_db_path, path)
    return path


@pytest.fixture
def store(db_path):
    """Per-test SqliteStore backed by a pre-initialized DB copy."""
    s = SqliteStore(db_path)
    yield s
    s.close()


@pytest.fixture
def user():
    return Owner(user_id="user-1")


@pytest.fixture
def anon():
    return Owner(anonymous_id="anon-1")


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def scheduler():
    """Live scheduler with an effectively unlimited budget and no real sleeping."""
    return RateLimitedScheduler(
        tokens_per_minute=10**9,
        requests_per_minute=10**9,
        min_delay=0,
        pause_buffer=0,
        sleep=lambda _s: None,
    )


@pytest.fixture
def provider():
    return RoutedProvider()


@pytest.fixture
def make_generator(scheduler):
    """Build a DiagramGenerator around a provider; sleeps are recorded, not taken."""
    def factory(provider, validator=None, max_attempts=5):
        sleeps: list[float] = []
        gen = DiagramGenerator(
            provider=provider,
            scheduler=scheduler,
            validator=validator or AcceptAll(),
            max_attempts=max_attempts,
            sleep=sleeps.append,
        )
        gen.sleeps = sleeps
        return gen
    return factory
