# -*- coding: utf-8 -*-
"""Journal data model and record codecs.

Entries and sessions live in the database as JSON records. This module owns
the conversion between those records and the typed objects the rest of the
package works with. An entry body is an explicit tagged variant: either
``Plaintext`` or ``Ciphertext``, never both, and ``Entry.encrypted`` is
derived from whichever one is present.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union
import base64
import re
import uuid

EMOJI_RE = re.compile(
    "[\U0001F600-\U0001F64F]"
    "|[\U0001F300-\U0001F5FF]"
    "|[\U0001F680-\U0001F6FF]"
    "|[\U0001F1E0-\U0001F1FF]"
    "|[\u2600-\u26FF]"
    "|[\u2700-\u27BF]"
)


# ---------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def to_iso(dt: datetime) -> str:
    """Serialize an aware datetime; naive values are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def from_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_epoch_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


def extract_emojis(text: str) -> List[str]:
    """Return the emoji symbols in *text*, in order of appearance."""
    return EMOJI_RE.findall(text)


# ---------------------------------------------------------------------
# Entry body variants
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Plaintext:
    text: str


@dataclass(frozen=True)
class Ciphertext:
    data: bytes
    nonce: bytes


Body = Union[Plaintext, Ciphertext]


# ---------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------

@dataclass
class Entry:
    """One journal record."""

    id: str
    body: Body
    timestamp: datetime
    created_at: datetime
    updated_at: datetime
    emojis: List[str] = field(default_factory=list)
    tags: Optional[List[str]] = None
    mood: Optional[str] = None

    @property
    def encrypted(self) -> bool:
        return isinstance(self.body, Ciphertext)

    @property
    def text(self) -> Optional[str]:
        """Plaintext content, or None while the body is still ciphertext."""
        if isinstance(self.body, Plaintext):
            return self.body.text
        return None

    def with_body(self, body: Body, updated_at: Optional[datetime] = None) -> "Entry":
        """Copy with a new body; id, timestamps and metadata are preserved."""
        if updated_at is None:
            return replace(self, body=body)
        return replace(self, body=body, updated_at=updated_at)

    def to_record(self) -> Dict[str, Any]:
        if isinstance(self.body, Ciphertext):
            content = b64encode(self.body.data)
            nonce: Optional[str] = b64encode(self.body.nonce)
        else:
            content = self.body.text
            nonce = None
        return {
            "id": self.id,
            "content": content,
            "nonce": nonce,
            "encrypted": self.encrypted,
            "emojis": list(self.emojis),
            "tags": list(self.tags) if self.tags is not None else None,
            "mood": self.mood,
            "timestamp": to_iso(self.timestamp),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Entry":
        """Build an Entry from a stored record; raise ValueError if malformed."""
        try:
            encrypted = bool(record["encrypted"])
            content = record["content"]
            if encrypted:
                if not record.get("nonce"):
                    raise ValueError(f"entry {record['id']}: encrypted without nonce")
                body: Body = Ciphertext(b64decode(content), b64decode(record["nonce"]))
            else:
                if not isinstance(content, str):
                    raise ValueError(f"entry {record['id']}: plaintext content is not text")
                body = Plaintext(content)
            return cls(
                id=str(record["id"]),
                body=body,
                timestamp=from_iso(record["timestamp"]),
                created_at=from_iso(record["created_at"]),
                updated_at=from_iso(record["updated_at"]),
                emojis=list(record.get("emojis") or []),
                tags=record.get("tags"),
                mood=record.get("mood"),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"malformed entry record: {exc}") from exc


# ---------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------

@dataclass
class Session:
    """A chat window's worth of entries, held by reference only."""

    id: str
    start_time: datetime
    entry_refs: List[str] = field(default_factory=list)
    end_time: Optional[datetime] = None
    summary: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entry_refs": list(self.entry_refs),
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time) if self.end_time else None,
            "summary": self.summary,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Session":
        if is_legacy_session(record):
            record = legacy_to_current(record)
        try:
            end = record.get("end_time")
            return cls(
                id=str(record["id"]),
                start_time=from_iso(record["start_time"]),
                entry_refs=list(record.get("entry_refs") or []),
                end_time=from_iso(end) if end else None,
                summary=record.get("summary"),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"malformed session record: {exc}") from exc


def unique_refs(ids: Iterable[str]) -> List[str]:
    """De-duplicate ids keeping first-seen order."""
    seen = set()
    out: List[str] = []
    for i in ids:
        if i not in seen:
            seen.add(i)
            out.append(i)
    return out


def is_legacy_session(record: Dict[str, Any]) -> bool:
    """True for the old shape that embedded full entry records."""
    return "entries" in record and "entry_refs" not in record


def legacy_to_current(
    record: Dict[str, Any],
    removed_ids: Iterable[str] = (),
) -> Dict[str, Any]:
    """Rewrite a legacy embedded-entries session record to reference-only form.

    Refs to ids in *removed_ids* are dropped. Records already in the current
    shape are returned unchanged (as a copy).
    """
    if not is_legacy_session(record):
        return dict(record)
    removed = set(removed_ids)
    refs = []
    for item in record.get("entries") or []:
        ref = item.get("id") if isinstance(item, dict) else item
        if ref and ref not in removed:
            refs.append(str(ref))
    start = record.get("start_time") or record.get("startTime")
    end = record.get("end_time") or record.get("endTime")
    return {
        "id": record["id"],
        "entry_refs": unique_refs(refs),
        "start_time": start if start else to_iso(utcnow()),
        "end_time": end,
        "summary": record.get("summary"),
    }
