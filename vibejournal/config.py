# -*- coding: utf-8 -*-
"""Configuration and the small on-disk key store.

Config is a JSON file in the platform config directory, merged over
DEFAULT_CONFIG. The key store is a separate JSON file next to it holding the
KDF salt and the password verifier; it is deliberately kept out of the
journal database.
"""
from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional
import json
import logging
import os

logger = logging.getLogger(__name__)

APP_NAME = "vibejournal"

DEFAULT_CONFIG: Dict[str, object] = {
    "db_path": "vibejournal.sqlite3",
    "remote_api_url": "https://api.openai.com/v1/chat/completions",
    "remote_model": "gpt-3.5-turbo",
    "remote_timeout": 10.0,
    "remote_max_tokens": 800,
    "remote_temperature": 0.2,
    "cache_ttl_seconds": 24 * 60 * 60,
    "backup_before_bulk": True,
}

REMOTE_API_KEY_ENV = "OPENAI_API_KEY"


# ---------------------------------------------------------------------
# Config management (JSON on disk)
# ---------------------------------------------------------------------

def config_dir() -> Path:
    """Return the config directory path for this platform."""
    override = os.environ.get("VIBEJOURNAL_CONFIG_HOME")
    if override:
        return Path(override)
    if os.name == "nt":
        base = os.environ.get("APPDATA", os.path.expanduser("~\\AppData\\Roaming"))
        return Path(base) / APP_NAME
    base = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(base) / APP_NAME


def _config_path() -> Path:
    return config_dir() / "config.json"


def load_config() -> Dict[str, object]:
    """Load the merged configuration (defaults + file + env overrides)."""
    path = _config_path()
    merged = json.loads(json.dumps(DEFAULT_CONFIG))
    if not path.exists():
        save_config(DEFAULT_CONFIG)
        logger.info("Wrote default config to %s", path)
    else:
        with path.open("r", encoding="utf-8") as f:
            merged.update(json.load(f))
    db_override = os.environ.get("VIBEJOURNAL_DB")
    if db_override:
        merged["db_path"] = db_override
    return merged


def save_config(cfg: Dict[str, object]) -> None:
    """Persist *cfg* to the JSON config file."""
    config_dir().mkdir(parents=True, exist_ok=True)
    with _config_path().open("w", encoding="utf-8") as f:
        json.dump(cfg, f, indent=2)


def remote_api_key() -> Optional[str]:
    """The remote analysis credential; read from the environment only."""
    return os.environ.get(REMOTE_API_KEY_ENV) or None


# ---------------------------------------------------------------------
# Key store
# ---------------------------------------------------------------------

class KeyStore:
    """Tiny JSON key-value file for key material that must outlive a session.

    Holds the base64 KDF salt and the argon2 password verifier. Values are
    strings; the file is written with owner-only permissions.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else config_dir() / "keystore.json"

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)
