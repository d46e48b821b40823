from __future__ import annotations

import pytest

from xrecon.store.sqlite_store import SQLiteStore


@pytest.fixture
def store(tmp_path) -> SQLiteStore:
    sqlite_store = SQLiteStore(str(tmp_path / "knowledge.sqlite"))
    sqlite_store.init_db()
    return sqlite_store
