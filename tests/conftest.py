"""Shared fixtures. A module-scoped template DB avoids running init_db per test."""

import shutil

import pytest

from gitwhisper.storage.sqlite_store import SqliteStore
from gitwhisper.storage.vector_store import VectorStore

from tests.helpers import DIMS, FakeClock


@pytest.fixture(scope="module")
def _module_db_path(tmp_path_factory):
    """Create one fully-initialized DB per test module as a template."""
    db_path = tmp_path_factory.mktemp("db") / "test.db"
    s = SqliteStore(db_path)
    s.init_db()
    s._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
    s._conn.close()
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
def store_factory(db_path):
    """Opens a fresh connection to the per-test DB, like one job or request would."""
    return lambda: SqliteStore(db_path)


@pytest.fixture
def vector_store(tmp_path):
    vs = VectorStore(tmp_path / "lancedb", dims=DIMS)
    vs.init_table()
    return vs


@pytest.fixture
def clock():
    return FakeClock()
