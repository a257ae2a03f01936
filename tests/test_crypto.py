"""Tests for the password-derived key manager."""

import pytest

from vibejournal.crypto import (
    KEY_LEN,
    NONCE_LEN,
    SALT_KEY,
    CipherManager,
    aesgcm_decrypt,
    aesgcm_encrypt,
    pbkdf2_kdf,
)
from vibejournal.errors import DecryptionError, InvalidPasswordError, NotInitializedError


def test_pbkdf2_is_deterministic_per_salt():
    a = pbkdf2_kdf("pw", b"s" * 16)
    assert a == pbkdf2_kdf("pw", b"s" * 16)
    assert a != pbkdf2_kdf("pw", b"t" * 16)
    assert len(a) == KEY_LEN


def test_aesgcm_helpers_round_trip():
    key = b"k" * KEY_LEN
    nonce, ct = aesgcm_encrypt(key, b"hello")
    assert len(nonce) == NONCE_LEN
    assert aesgcm_decrypt(key, nonce, ct) == b"hello"


class TestCipherManager:
    @pytest.mark.asyncio
    async def test_round_trip(self, cipher):
        await cipher.initialize_with_password("hunter2")
        ct, nonce = await cipher.encrypt("Dear diary ✨")
        assert await cipher.decrypt(ct, nonce) == "Dear diary ✨"

    @pytest.mark.asyncio
    async def test_fresh_nonce_per_call(self, cipher):
        await cipher.initialize_with_password("hunter2")
        (ct1, n1), (ct2, n2) = await cipher.encrypt("same"), await cipher.encrypt("same")
        assert n1 != n2
        assert ct1 != ct2

    @pytest.mark.asyncio
    async def test_salt_generated_once_and_reused(self, cipher, key_store):
        await cipher.initialize_with_password("pw")
        salt = key_store.get(SALT_KEY)
        ct, nonce = await cipher.encrypt("persisted")

        other = CipherManager(key_store)
        await other.initialize_with_password("pw")
        assert key_store.get(SALT_KEY) == salt
        assert await other.decrypt(ct, nonce) == "persisted"

    @pytest.mark.asyncio
    async def test_wrong_password_fails_to_decrypt(self, cipher, key_store):
        await cipher.initialize_with_password("right")
        ct, nonce = await cipher.encrypt("secret")

        other = CipherManager(key_store)
        await other.initialize_with_password("wrong")
        with pytest.raises(DecryptionError):
            await other.decrypt(ct, nonce)

    @pytest.mark.asyncio
    async def test_tampered_ciphertext_fails(self, cipher):
        await cipher.initialize_with_password("pw")
        ct, nonce = await cipher.encrypt("secret")
        tampered = bytes([ct[0] ^ 0x01]) + ct[1:]
        with pytest.raises(DecryptionError):
            await cipher.decrypt(tampered, nonce)

    @pytest.mark.asyncio
    async def test_clear_forgets_key(self, cipher):
        await cipher.initialize_with_password("pw")
        assert cipher.is_initialized()
        await cipher.clear()
        assert not cipher.is_initialized()
        with pytest.raises(NotInitializedError):
            await cipher.encrypt("x")
        with pytest.raises(NotInitializedError):
            await cipher.decrypt(b"x", b"n" * NONCE_LEN)

    @pytest.mark.asyncio
    async def test_empty_password_rejected(self, cipher):
        with pytest.raises(ValueError):
            await cipher.initialize_with_password("")

    @pytest.mark.asyncio
    async def test_export_import_key(self, cipher, key_store):
        with pytest.raises(NotInitializedError):
            cipher.export_key()
        await cipher.initialize_with_password("pw")
        raw = cipher.export_key()
        ct, nonce = await cipher.encrypt("backup me")

        restored = CipherManager(key_store)
        await restored.import_key(raw)
        assert await restored.decrypt(ct, nonce) == "backup me"

        with pytest.raises(ValueError):
            await restored.import_key(b"short")

    @pytest.mark.asyncio
    async def test_verifier(self, cipher):
        assert not cipher.has_verifier()
        await cipher.store_verifier("pw")
        assert cipher.has_verifier()
        await cipher.verify_password("pw")
        with pytest.raises(InvalidPasswordError):
            await cipher.verify_password("nope")

        cipher.drop_verifier()
        assert not cipher.has_verifier()
        await cipher.verify_password("anything")

    @pytest.mark.asyncio
    async def test_verify_against_loaded_key_without_verifier(self, cipher):
        await cipher.initialize_with_password("pw")
        await cipher.verify_password("pw")
        with pytest.raises(InvalidPasswordError):
            await cipher.verify_password("other")

    def test_adopt_salt_only_when_absent(self, cipher, key_store):
        assert cipher.adopt_salt("AAAAAAAAAAAAAAAAAAAAAA==")
        assert key_store.get(SALT_KEY) == "AAAAAAAAAAAAAAAAAAAAAA=="
        assert not cipher.adopt_salt("BBBBBBBBBBBBBBBBBBBBBB==")
        assert cipher.salt_b64() == "AAAAAAAAAAAAAAAAAAAAAA=="
