"""Tests for entry/session record codecs."""

from datetime import datetime, timezone

import pytest

from vibejournal.models import (
    Ciphertext,
    Entry,
    Plaintext,
    Session,
    extract_emojis,
    is_legacy_session,
    legacy_to_current,
    unique_refs,
)

WHEN = datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)


def _entry(body):
    return Entry(id="e1", body=body, timestamp=WHEN, created_at=WHEN, updated_at=WHEN, emojis=["🙂"])


def test_plaintext_entry_record():
    record = _entry(Plaintext("hello")).to_record()
    assert record["encrypted"] is False
    assert record["nonce"] is None
    assert record["content"] == "hello"

    entry = Entry.from_record(record)
    assert entry.text == "hello"
    assert not entry.encrypted
    assert entry.timestamp == WHEN


def test_ciphertext_entry_record():
    record = _entry(Ciphertext(b"\x00\x01secret", b"n" * 12)).to_record()
    assert record["encrypted"] is True
    assert record["nonce"]

    entry = Entry.from_record(record)
    assert entry.encrypted
    assert entry.text is None
    assert entry.body == Ciphertext(b"\x00\x01secret", b"n" * 12)


def test_encrypted_record_without_nonce_is_malformed():
    record = _entry(Ciphertext(b"x", b"n" * 12)).to_record()
    record["nonce"] = None
    with pytest.raises(ValueError):
        Entry.from_record(record)


def test_missing_field_is_malformed():
    record = _entry(Plaintext("hi")).to_record()
    del record["timestamp"]
    with pytest.raises(ValueError):
        Entry.from_record(record)


def test_with_body_keeps_identity_and_timestamps():
    entry = _entry(Plaintext("a"))
    swapped = entry.with_body(Ciphertext(b"c", b"n" * 12))
    assert swapped.id == entry.id
    assert swapped.updated_at == entry.updated_at
    assert swapped.encrypted


def test_extract_emojis():
    assert extract_emojis("sunny ☀ day 😀 then 🚀!") == ["☀", "😀", "🚀"]
    assert extract_emojis("plain text") == []


def test_unique_refs_preserves_order():
    assert unique_refs(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]


def test_legacy_session_conversion():
    legacy = {
        "id": "s1",
        "startTime": "2024-01-01T10:00:00+00:00",
        "entries": [{"id": "a", "content": "x"}, {"id": "b"}, "c", {"id": "a"}],
    }
    assert is_legacy_session(legacy)

    current = legacy_to_current(legacy, removed_ids={"b"})
    assert current["entry_refs"] == ["a", "c"]
    assert current["start_time"] == "2024-01-01T10:00:00+00:00"
    assert "entries" not in current
    assert not is_legacy_session(current)

    again = legacy_to_current(current)
    assert again == current
    assert again is not current


def test_session_from_legacy_record():
    session = Session.from_record({"id": "s1", "start_time": WHEN.isoformat(), "entries": [{"id": "a"}]})
    assert session.entry_refs == ["a"]
    assert session.start_time == WHEN
