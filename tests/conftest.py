"""Shared test fixtures: in-memory DB, repos, a default whale."""
from __future__ import annotations

import sqlite3

import pytest

from polysignal.db.activity_repo import ActivityRepo
from polysignal.db.connection import SCHEMA_PATH
from polysignal.db.copytrade_repo import CopyTradeRepo
from polysignal.db.frequency_repo import FrequencyRepo
from polysignal.db.whale_repo import WhaleRepo


@pytest.fixture
def mem_conn():
    """In-memory SQLite connection with schema applied."""
    conn = sqlite3.connect(":memory:")
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    with open(SCHEMA_PATH) as f:
        conn.executescript(f.read())
    conn.commit()
    yield conn
    conn.close()


@pytest.fixture
def whale_repo(mem_conn):
    return WhaleRepo(mem_conn)


@pytest.fixture
def activity_repo(mem_conn):
    return ActivityRepo(mem_conn)


@pytest.fixture
def copytrade_repo(mem_conn):
    return CopyTradeRepo(mem_conn)


@pytest.fixture
def frequency_repo(mem_conn):
    return FrequencyRepo(mem_conn)


@pytest.fixture
def whale(whale_repo):
    """A paid regular whale with copy-trading on and a $500 entry filter."""
    return whale_repo.add(
        "0xAbC0000000000000000000000000000000000001",
        label="Big Fish",
        subscription_type="paid",
        min_usd_value=500,
        is_copytrade=True,
        copytrade_investment=500.0,
        partial_close_pct=100.0,
    )
