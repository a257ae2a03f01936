# -*- coding: utf-8 -*-
"""Crypto helpers and the password-derived key manager.

Module-level functions are *stateless* primitives. ``CipherManager`` owns the
in-memory entry key; the salt and password verifier it needs across restarts
live in the ``KeyStore``, never in the journal database.
"""
from __future__ import annotations

from typing import Optional, Tuple
import asyncio
import base64
import hmac
import logging
import secrets

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import KeyStore
from .errors import DecryptionError, InvalidPasswordError, NotInitializedError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------

PH = PasswordHasher(
    time_cost=2,
    memory_cost=102_400,
    parallelism=8,
    hash_len=32,
    salt_len=16,
)

KDF_ITERATIONS = 100_000
KEY_LEN = 32
SALT_LEN = 16
NONCE_LEN = 12

SALT_KEY = "kdf_salt"
VERIFIER_KEY = "password_verifier"


# ---------------------------------------------------------------------
# KDF / AEAD helpers
# ---------------------------------------------------------------------

def pbkdf2_kdf(password: str, salt: bytes, length: int = KEY_LEN) -> bytes:
    """Derive a key from a password using PBKDF2-HMAC-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))


def aesgcm_encrypt(key: bytes, plaintext: bytes) -> Tuple[bytes, bytes]:
    """Encrypt *plaintext* with AES-GCM under a fresh nonce; return (nonce, ciphertext)."""
    nonce = secrets.token_bytes(NONCE_LEN)
    ct = AESGCM(key).encrypt(nonce, plaintext, None)
    return nonce, ct


def aesgcm_decrypt(key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
    """Decrypt AES-GCM *ciphertext* with *nonce*; return plaintext."""
    return AESGCM(key).decrypt(nonce, ciphertext, None)


# ---------------------------------------------------------------------
# Key manager
# ---------------------------------------------------------------------

class CipherManager:
    """Password-derived AES-256-GCM key, held in memory only.

    State transitions (initialize/import/clear) are serialized by a lock.
    ``encrypt``/``decrypt`` take a reference to the current key when they
    start, so a concurrent replacement never mixes two keys in one call.
    """

    def __init__(self, key_store: KeyStore) -> None:
        self._key_store = key_store
        self._key: Optional[bytes] = None
        self._salt: Optional[bytes] = None
        self._lock = asyncio.Lock()

    # -- lifecycle -----------------------------------------------------

    def is_initialized(self) -> bool:
        return self._key is not None

    async def initialize_with_password(self, password: str) -> None:
        """Derive the entry key from *password* and the persisted salt."""
        if not password:
            raise ValueError("Password required")
        async with self._lock:
            salt = self._get_or_create_salt()
            key = await asyncio.to_thread(pbkdf2_kdf, password, salt)
            self._salt = salt
            self._key = key
        logger.debug("Cipher manager initialized from password")

    async def clear(self) -> None:
        """Forget the key and salt reference."""
        async with self._lock:
            self._key = None
            self._salt = None
        logger.debug("Cipher manager cleared")

    def _get_or_create_salt(self) -> bytes:
        stored = self._key_store.get(SALT_KEY)
        if stored:
            return base64.b64decode(stored)
        salt = secrets.token_bytes(SALT_LEN)
        self._key_store.set(SALT_KEY, base64.b64encode(salt).decode("ascii"))
        logger.info("Generated new key-derivation salt")
        return salt

    # -- backup helpers ------------------------------------------------

    def export_key(self) -> bytes:
        """Raw key bytes, for backup."""
        if self._key is None:
            raise NotInitializedError("No key to export")
        return self._key

    async def import_key(self, raw: bytes) -> None:
        """Install raw key bytes from a backup."""
        if len(raw) != KEY_LEN:
            raise ValueError(f"Key must be {KEY_LEN} bytes")
        async with self._lock:
            self._key = bytes(raw)

    def salt_b64(self) -> Optional[str]:
        return self._key_store.get(SALT_KEY)

    def adopt_salt(self, salt_b64: str) -> bool:
        """Persist *salt_b64* unless a salt already exists; return True if adopted."""
        current = self._key_store.get(SALT_KEY)
        if current:
            if current != salt_b64:
                logger.warning("Bundle salt differs from local salt; keeping local salt")
            return False
        base64.b64decode(salt_b64, validate=True)
        self._key_store.set(SALT_KEY, salt_b64)
        return True

    # -- password verifier ---------------------------------------------

    def has_verifier(self) -> bool:
        return bool(self._key_store.get(VERIFIER_KEY))

    async def store_verifier(self, password: str) -> None:
        """Record an argon2 hash of *password* for fast wrong-password checks."""
        pwd_hash = await asyncio.to_thread(PH.hash, password)
        self._key_store.set(VERIFIER_KEY, pwd_hash)

    async def verify_password(self, password: str) -> None:
        """Raise InvalidPasswordError unless *password* matches the verifier.

        Without a stored verifier, an initialized manager re-derives the key
        from *password* and compares it with the one in memory; otherwise the
        check passes.
        """
        stored = self._key_store.get(VERIFIER_KEY)
        if not stored:
            key, salt = self._key, self._salt
            if key is None or salt is None:
                return
            candidate = await asyncio.to_thread(pbkdf2_kdf, password, salt)
            if not hmac.compare_digest(candidate, key):
                raise InvalidPasswordError("Invalid password")
            return
        try:
            await asyncio.to_thread(PH.verify, stored, password)
        except (VerificationError, InvalidHashError) as exc:
            raise InvalidPasswordError("Invalid password") from exc

    def drop_verifier(self) -> None:
        self._key_store.delete(VERIFIER_KEY)

    # -- AEAD ----------------------------------------------------------

    async def encrypt(self, plaintext: str) -> Tuple[bytes, bytes]:
        """Encrypt *plaintext*; return (ciphertext, nonce)."""
        key = self._key
        if key is None:
            raise NotInitializedError("Encryption not initialized")
        nonce, ct = aesgcm_encrypt(key, plaintext.encode("utf-8"))
        return ct, nonce

    async def decrypt(self, ciphertext: bytes, nonce: bytes) -> str:
        """Decrypt to text; raise DecryptionError on wrong key or corrupted data."""
        key = self._key
        if key is None:
            raise NotInitializedError("Encryption not initialized")
        try:
            return aesgcm_decrypt(key, nonce, ciphertext).decode("utf-8")
        except (InvalidTag, ValueError) as exc:
            raise DecryptionError("Unable to decrypt entry (wrong password or corrupted data)") from exc
