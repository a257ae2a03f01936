# -*- coding: utf-8 -*-
"""Application logic that composes the database, crypto and analysis layers.

``JournalService`` is the single entry point for callers. It owns the
plaintext/ciphertext invariant: bodies are encrypted on the way in whenever
the cipher manager holds a key, and decrypted on the way out when it can be.
A ciphertext entry read while no key is loaded is returned as-is (the
"locked" state); callers check ``Entry.encrypted`` and ask for a password.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union
import json
import logging
import shutil

import aiosqlite

from . import db as store
from .analysis import AnalysisEngine, AnalysisKind, AnalysisRequest, AnalysisResult
from .config import KeyStore, load_config
from .crypto import CipherManager
from .db import JournalDB
from .errors import BulkOperationError, DecryptionError, JournalError, NotInitializedError
from .models import (
    Ciphertext,
    Entry,
    Plaintext,
    Session,
    extract_emojis,
    is_legacy_session,
    legacy_to_current,
    new_id,
    to_epoch_ms,
    to_iso,
    unique_refs,
    utcnow,
)
from .remote import RemoteAnalyzer

logger = logging.getLogger(__name__)

ENCRYPTION_SETTING = "encryptionEnabled"
LAST_BACKUP_SETTING = "lastBackup"

DEFAULT_SETTINGS: Dict[str, Any] = {
    ENCRYPTION_SETTING: False,
    "autoSave": True,
    "backupEnabled": False,
    "theme": "auto",
    "notifications": True,
}

EXPORT_VERSION = 1

ENTRY_FIELDS = frozenset(("content", "emojis", "tags", "mood", "timestamp"))
SESSION_FIELDS = frozenset(("entry_refs", "start_time", "end_time", "summary"))

# failures that stop a bulk pass; anything else is a bug and propagates untouched
_BULK_ERRORS = (JournalError, aiosqlite.Error, OSError, ValueError)


@dataclass
class StorageStats:
    entry_count: int
    session_count: int
    approximate_bytes: int
    last_backup: Optional[str] = None


class CleanupReport(NamedTuple):
    removed: int
    migrated_sessions: int


class ImportReport(NamedTuple):
    entries: int
    sessions: int
    settings: int


class JournalService:
    """Entries, sessions and settings with transparent encryption."""

    def __init__(
        self,
        db: JournalDB,
        cipher: CipherManager,
        analysis: Optional[AnalysisEngine] = None,
        *,
        backup_before_bulk: bool = True,
    ) -> None:
        self._db = db
        self._cipher = cipher
        self._analysis = analysis
        self._backup_before_bulk = backup_before_bulk
        self._initialized = False

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def initialize(self, password: Optional[str] = None) -> None:
        """Open the store and, with a password, load the entry key.

        A second call is a no-op.
        """
        if self._initialized:
            logger.debug("Journal service already initialized")
            return
        await self._db.init()
        if password:
            await self._cipher.verify_password(password)
            await self._cipher.initialize_with_password(password)
            if not self._cipher.has_verifier():
                await self._cipher.store_verifier(password)
            await self._put_setting(ENCRYPTION_SETTING, True)
        else:
            await self._put_setting(ENCRYPTION_SETTING, False)
        self._initialized = True

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("Journal service not initialized. Call initialize() first.")

    @property
    def analysis(self) -> Optional[AnalysisEngine]:
        return self._analysis

    def _entries_changed(self) -> None:
        if self._analysis is not None:
            self._analysis.clear_cache()

    def is_encryption_enabled(self) -> bool:
        return self._cipher.is_initialized()

    # -----------------------------------------------------------------
    # Entry helpers
    # -----------------------------------------------------------------

    async def _seal(self, content: str) -> Union[Plaintext, Ciphertext]:
        if self._cipher.is_initialized():
            ct, nonce = await self._cipher.encrypt(content)
            return Ciphertext(ct, nonce)
        return Plaintext(content)

    async def _open(self, entry: Entry) -> Entry:
        """Decrypt *entry* when possible; locked entries come back unchanged."""
        body = entry.body
        if isinstance(body, Ciphertext) and self._cipher.is_initialized():
            text = await self._cipher.decrypt(body.data, body.nonce)
            return entry.with_body(Plaintext(text))
        return entry

    # -----------------------------------------------------------------
    # Entries
    # -----------------------------------------------------------------

    async def save_entry(
        self,
        content: str,
        emojis: Optional[Sequence[str]] = None,
        tags: Optional[List[str]] = None,
        mood: Optional[str] = None,
    ) -> Entry:
        """Persist a new entry and return it as stored.

        *emojis* defaults to the emoji symbols found in *content*.
        """
        self._ensure_initialized()
        now = utcnow()
        entry = Entry(
            id=new_id(),
            body=await self._seal(content),
            timestamp=now,
            created_at=now,
            updated_at=now,
            emojis=list(emojis) if emojis is not None else extract_emojis(content),
            tags=tags,
            mood=mood,
        )
        await self._db.add(store.ENTRIES, entry.to_record())
        self._entries_changed()
        return entry

    async def get_entry(self, entry_id: str) -> Optional[Entry]:
        self._ensure_initialized()
        record = await self._db.get(store.ENTRIES, entry_id)
        if record is None:
            return None
        return await self._open(Entry.from_record(record))

    async def get_all_entries(self) -> List[Entry]:
        """Every entry, newest timestamp first."""
        self._ensure_initialized()
        entries = [await self._open(Entry.from_record(r)) for r in await self._db.get_all(store.ENTRIES)]
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries

    async def get_entries_by_date_range(self, start: datetime, end: datetime) -> List[Entry]:
        """Entries with start <= timestamp <= end, oldest first."""
        self._ensure_initialized()
        records = await self._db.query_by_time_range(start, end)
        return [await self._open(Entry.from_record(r)) for r in records]

    async def update_entry(self, entry_id: str, **changes: Any) -> Optional[Entry]:
        """Apply *changes* (content, emojis, tags, mood, timestamp); None if absent."""
        self._ensure_initialized()
        unknown = set(changes) - ENTRY_FIELDS
        if unknown:
            raise ValueError(f"Unknown entry fields: {', '.join(sorted(unknown))}")

        record = await self._db.get(store.ENTRIES, entry_id)
        if record is None:
            return None
        entry = Entry.from_record(record)

        if "content" in changes:
            if entry.encrypted and not self._cipher.is_initialized():
                raise NotInitializedError("Unlock the journal before editing an encrypted entry")
            entry = entry.with_body(await self._seal(changes.pop("content")))
        if "emojis" in changes:
            changes["emojis"] = list(changes["emojis"] or [])

        updated = replace(entry, **changes)
        updated.updated_at = max(utcnow(), updated.created_at)
        await self._db.update(store.ENTRIES, updated.to_record())
        self._entries_changed()
        return await self._open(updated)

    async def delete_entry(self, entry_id: str) -> bool:
        """Delete an entry; False if there was nothing to delete."""
        self._ensure_initialized()
        if await self._db.get(store.ENTRIES, entry_id) is None:
            return False
        await self._db.delete(store.ENTRIES, entry_id)
        self._entries_changed()
        return True

    # -----------------------------------------------------------------
    # Sessions
    # -----------------------------------------------------------------

    async def save_session(
        self,
        entries: Iterable[Union[Entry, str]],
        session_id: Optional[str] = None,
    ) -> Session:
        """Store a session holding only the ids of *entries*.

        Re-saving an existing *session_id* replaces its refs and end time.
        """
        self._ensure_initialized()
        refs = unique_refs(e.id if isinstance(e, Entry) else str(e) for e in entries)
        now = utcnow()
        existing = await self._db.get(store.SESSIONS, session_id) if session_id else None
        if existing is not None:
            session = Session.from_record(existing)
            session.entry_refs = refs
            session.end_time = now
        else:
            session = Session(id=session_id or new_id(), start_time=now, entry_refs=refs, end_time=now)
        await self._db.update(store.SESSIONS, session.to_record())
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        self._ensure_initialized()
        record = await self._db.get(store.SESSIONS, session_id)
        return Session.from_record(record) if record is not None else None

    async def get_all_sessions(self) -> List[Session]:
        self._ensure_initialized()
        return [Session.from_record(r) for r in await self._db.get_all(store.SESSIONS)]

    async def update_session(self, session_id: str, **changes: Any) -> Optional[Session]:
        """Apply *changes* (entry_refs, start_time, end_time, summary); None if absent."""
        self._ensure_initialized()
        unknown = set(changes) - SESSION_FIELDS
        if unknown:
            raise ValueError(f"Unknown session fields: {', '.join(sorted(unknown))}")
        session = await self.get_session(session_id)
        if session is None:
            return None
        if "entry_refs" in changes:
            changes["entry_refs"] = unique_refs(changes["entry_refs"])
        session = replace(session, **changes)
        await self._db.update(store.SESSIONS, session.to_record())
        return session

    async def delete_session(self, session_id: str) -> bool:
        self._ensure_initialized()
        if await self._db.get(store.SESSIONS, session_id) is None:
            return False
        await self._db.delete(store.SESSIONS, session_id)
        return True

    async def resolve_session(self, session_id: str) -> Optional[Tuple[Session, List[Entry]]]:
        """The session plus its surviving entries; deleted refs are skipped."""
        session = await self.get_session(session_id)
        if session is None:
            return None
        entries = []
        for ref in session.entry_refs:
            entry = await self.get_entry(ref)
            if entry is not None:
                entries.append(entry)
        return session, entries

    # -----------------------------------------------------------------
    # Settings
    # -----------------------------------------------------------------

    async def _put_setting(self, key: str, value: Any) -> None:
        await self._db.update(store.SETTINGS, {"key": key, "value": value})

    async def save_setting(self, key: str, value: Any) -> None:
        self._ensure_initialized()
        await self._put_setting(key, value)

    async def get_setting(self, key: str, default: Any = None) -> Any:
        self._ensure_initialized()
        record = await self._db.get(store.SETTINGS, key)
        if record is None:
            return default if default is not None else DEFAULT_SETTINGS.get(key)
        return record.get("value")

    async def get_all_settings(self) -> Dict[str, Any]:
        """Stored settings merged over DEFAULT_SETTINGS."""
        self._ensure_initialized()
        settings = dict(DEFAULT_SETTINGS)
        for record in await self._db.get_all(store.SETTINGS):
            settings[record["key"]] = record.get("value")
        return settings

    # -----------------------------------------------------------------
    # Encryption toggling
    # -----------------------------------------------------------------

    async def unlock(self, password: str) -> None:
        """Load the entry key for an encrypted journal opened without a password."""
        self._ensure_initialized()
        await self._cipher.verify_password(password)
        await self._cipher.initialize_with_password(password)
        for record in await self._db.get_all(store.ENTRIES):
            entry = Entry.from_record(record)
            if entry.encrypted:
                try:
                    await self._open(entry)
                except DecryptionError:
                    await self._cipher.clear()
                    raise
                break
        await self._put_setting(ENCRYPTION_SETTING, True)
        self._entries_changed()

    async def enable_encryption(self, password: str) -> int:
        """Encrypt every plaintext entry in place; return how many were encrypted.

        Already-encrypted entries are skipped, so an interrupted run can be
        retried.
        """
        self._ensure_initialized()
        await self._cipher.verify_password(password)
        if self._backup_before_bulk:
            await self._backup_database()
        await self._cipher.initialize_with_password(password)
        if not self._cipher.has_verifier():
            await self._cipher.store_verifier(password)

        pending = [
            e for e in (Entry.from_record(r) for r in await self._db.get_all(store.ENTRIES))
            if not e.encrypted
        ]
        done = 0
        for entry in pending:
            try:
                ct, nonce = await self._cipher.encrypt(entry.text or "")
                await self._db.update(store.ENTRIES, entry.with_body(Ciphertext(ct, nonce)).to_record())
            except _BULK_ERRORS as exc:
                raise BulkOperationError("enable_encryption", done, len(pending), entry.id) from exc
            done += 1

        await self._put_setting(ENCRYPTION_SETTING, True)
        self._entries_changed()
        logger.info("Encryption enabled; encrypted %d entries", done)
        return done

    async def disable_encryption(self, password: str) -> int:
        """Decrypt every entry in place and drop the key; return how many were decrypted.

        Every ciphertext is decrypted in memory first, so a wrong key aborts
        before any record is rewritten.
        """
        self._ensure_initialized()
        if not self._cipher.is_initialized():
            raise NotInitializedError("Encryption not enabled")
        await self._cipher.verify_password(password)

        decrypted: List[Entry] = []
        for record in await self._db.get_all(store.ENTRIES):
            entry = Entry.from_record(record)
            if entry.encrypted:
                decrypted.append(await self._open(entry))

        if self._backup_before_bulk:
            await self._backup_database()
        done = 0
        for entry in decrypted:
            try:
                await self._db.update(store.ENTRIES, entry.to_record())
            except _BULK_ERRORS as exc:
                raise BulkOperationError("disable_encryption", done, len(decrypted), entry.id) from exc
            done += 1

        await self._cipher.clear()
        self._cipher.drop_verifier()
        await self._put_setting(ENCRYPTION_SETTING, False)
        self._entries_changed()
        logger.info("Encryption disabled; decrypted %d entries", done)
        return done

    # -----------------------------------------------------------------
    # Maintenance
    # -----------------------------------------------------------------

    async def cleanup_duplicates(self) -> CleanupReport:
        """Remove duplicate plaintext entries and migrate legacy sessions.

        Duplicates share content and timestamp (to the millisecond); the
        earliest-created one survives. Ciphertext entries are never merged.
        """
        self._ensure_initialized()
        groups: Dict[Tuple[str, int], List[Entry]] = {}
        for record in await self._db.get_all(store.ENTRIES):
            entry = Entry.from_record(record)
            if isinstance(entry.body, Plaintext):
                key = (entry.body.text, to_epoch_ms(entry.timestamp))
                groups.setdefault(key, []).append(entry)

        doomed: List[Entry] = []
        for group in groups.values():
            if len(group) > 1:
                group.sort(key=lambda e: e.created_at)
                doomed.extend(group[1:])

        removed = set()
        for entry in doomed:
            try:
                await self._db.delete(store.ENTRIES, entry.id)
            except _BULK_ERRORS as exc:
                raise BulkOperationError("cleanup_duplicates", len(removed), len(doomed), entry.id) from exc
            removed.add(entry.id)

        legacy = [r for r in await self._db.get_all(store.SESSIONS) if is_legacy_session(r)]
        migrated = 0
        for record in legacy:
            try:
                await self._db.update(store.SESSIONS, legacy_to_current(record, removed))
            except _BULK_ERRORS as exc:
                raise BulkOperationError("cleanup_duplicates", migrated, len(legacy), record.get("id")) from exc
            migrated += 1

        if removed:
            self._entries_changed()
        logger.info("Cleanup removed %d duplicate entries, migrated %d sessions", len(removed), migrated)
        return CleanupReport(len(removed), migrated)

    async def stats(self) -> StorageStats:
        """Counts plus a rough serialized size of entries and sessions."""
        self._ensure_initialized()
        entries = await self._db.get_all(store.ENTRIES)
        sessions = await self._db.get_all(store.SESSIONS)
        size = len(json.dumps({"entries": entries, "sessions": sessions}).encode("utf-8"))
        return StorageStats(
            entry_count=len(entries),
            session_count=len(sessions),
            approximate_bytes=size,
            last_backup=await self.get_setting(LAST_BACKUP_SETTING),
        )

    async def clear_all_data(self) -> None:
        """Delete every entry and session and forget the key."""
        self._ensure_initialized()
        await self._db.clear(store.ENTRIES)
        await self._db.clear(store.SESSIONS)
        await self._cipher.clear()
        self._entries_changed()
        logger.info("All journal data cleared")

    async def _backup_database(self) -> Optional[Path]:
        """Copy the SQLite file to a timestamped file under ``backups/``."""
        db_path = Path(self._db.path).expanduser()
        if not db_path.is_absolute():
            db_path = (Path.cwd() / db_path).resolve()
        if not db_path.exists():
            logger.warning("Database file %s not found; skipping backup", db_path)
            return None

        backups_dir = db_path.parent / "backups"
        backups_dir.mkdir(parents=True, exist_ok=True)
        stamp = utcnow()
        backup_path = backups_dir / f"{db_path.name}.bak-{stamp.strftime('%Y%m%d-%H%M%S-%f')}"
        shutil.copy2(db_path, backup_path)
        await self._put_setting(LAST_BACKUP_SETTING, to_iso(stamp))
        logger.info("Backed up database to %s", backup_path)
        return backup_path

    # -----------------------------------------------------------------
    # Export / import
    # -----------------------------------------------------------------

    async def export_all(self) -> Dict[str, Any]:
        """Snapshot of entries (as stored), sessions and settings."""
        self._ensure_initialized()
        settings = {r["key"]: r.get("value") for r in await self._db.get_all(store.SETTINGS)}
        return {
            "version": EXPORT_VERSION,
            "exportedAt": to_iso(utcnow()),
            "entries": await self._db.get_all(store.ENTRIES),
            "sessions": await self._db.get_all(store.SESSIONS),
            "settings": settings,
            "keySalt": self._cipher.salt_b64(),
        }

    async def import_all(self, bundle: Dict[str, Any]) -> ImportReport:
        """Upsert a bundle by id, keeping each entry's encryption state as-is.

        The whole bundle is validated before anything is written.
        """
        self._ensure_initialized()
        entries = [Entry.from_record(r) for r in bundle.get("entries") or []]
        sessions = [Session.from_record(r) for r in bundle.get("sessions") or []]
        settings = {
            k: v for k, v in (bundle.get("settings") or {}).items()
            if k != ENCRYPTION_SETTING
        }

        salt = bundle.get("keySalt")
        if salt and self._cipher.adopt_salt(salt):
            logger.info("Adopted key-derivation salt from import bundle")

        for entry in entries:
            await self._db.update(store.ENTRIES, entry.to_record())
        for session in sessions:
            await self._db.update(store.SESSIONS, session.to_record())
        for key, value in settings.items():
            await self._put_setting(key, value)

        if entries:
            self._entries_changed()
        logger.info("Imported %d entries, %d sessions, %d settings", len(entries), len(sessions), len(settings))
        return ImportReport(len(entries), len(sessions), len(settings))

    async def export_to_file(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        bundle = await self.export_all()
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            json.dump(bundle, f, indent=2, ensure_ascii=False)
        return path

    async def import_from_file(self, path: Union[str, Path]) -> ImportReport:
        with Path(path).open("r", encoding="utf-8") as f:
            bundle = json.load(f)
        return await self.import_all(bundle)

    # -----------------------------------------------------------------
    # Analysis bridge
    # -----------------------------------------------------------------

    async def analyze(
        self,
        kind: Union[AnalysisKind, str],
        time_range: Optional[Tuple[datetime, datetime]] = None,
    ) -> AnalysisResult:
        """Run *kind* over all entries, or those inside *time_range*."""
        if self._analysis is None:
            raise NotInitializedError("No analysis engine configured")
        if time_range is not None:
            entries = await self.get_entries_by_date_range(*time_range)
        else:
            entries = await self.get_all_entries()
        return await self._analysis.analyze(AnalysisRequest(kind, entries, time_range))


# ---------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------

async def open_journal(
    cfg: Optional[Dict[str, object]] = None,
    password: Optional[str] = None,
    *,
    key_store: Optional[KeyStore] = None,
) -> JournalService:
    """Build and initialize a JournalService from configuration."""
    if cfg is None:
        cfg = load_config()
    engine = AnalysisEngine(
        RemoteAnalyzer.from_config(cfg),
        cache_ttl=timedelta(seconds=float(cfg.get("cache_ttl_seconds", 24 * 60 * 60))),
    )
    service = JournalService(
        JournalDB(str(cfg["db_path"])),
        CipherManager(key_store or KeyStore()),
        engine,
        backup_before_bulk=bool(cfg.get("backup_before_bulk", True)),
    )
    await service.initialize(password)
    return service
