"""Shared fixtures: a real SQLite journal in tmp_path with no network."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from vibejournal.analysis import AnalysisEngine
from vibejournal.config import KeyStore
from vibejournal.crypto import CipherManager
from vibejournal.db import JournalDB
from vibejournal.logic import JournalService
from vibejournal.models import Entry, Plaintext, new_id


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep config, key store and credentials out of the real home directory."""
    monkeypatch.setenv("VIBEJOURNAL_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.delenv("VIBEJOURNAL_DB", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


@pytest.fixture
def key_store(tmp_path):
    return KeyStore(tmp_path / "keystore.json")


@pytest.fixture
def cipher(key_store):
    return CipherManager(key_store)


@pytest_asyncio.fixture
async def db(tmp_path):
    store = JournalDB(tmp_path / "journal.sqlite3")
    await store.init()
    return store


@pytest.fixture
def engine():
    return AnalysisEngine()


@pytest_asyncio.fixture
async def service(tmp_path, cipher, engine):
    svc = JournalService(JournalDB(tmp_path / "journal.sqlite3"), cipher, engine)
    await svc.initialize()
    return svc


class FakeClock:
    """Monotonic clock advanced by hand (and by fake sleeps)."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


def make_entry(text, *, when=None, entry_id=None, emojis=None, mood=None):
    """A plaintext Entry for analysis tests; no database involved."""
    when = when or datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)
    return Entry(
        id=entry_id or new_id(),
        body=Plaintext(text),
        timestamp=when,
        created_at=when,
        updated_at=when,
        emojis=list(emojis or []),
        mood=mood,
    )


def days_ago(n, base=None):
    base = base or datetime.now(timezone.utc)
    return base - timedelta(days=n)
