"""Tests for patternbank.crypto -- snapshot encryption, key management, secure files."""
import os
import stat

import pytest

from patternbank.config import encryption_enabled
from patternbank.crypto import (
    ENCRYPTED_PREFIX,
    _get_or_create_key,
    _key_path,
    decrypt,
    encrypt,
    reset_crypto_state,
    secure_connect,
)


@pytest.fixture(autouse=True)
def _reset_crypto():
    """Reset crypto state before and after each test."""
    reset_crypto_state()
    yield
    reset_crypto_state()


# ============================================================================
# encryption_enabled
# ============================================================================


class TestEncryptionEnabled:
    def test_disabled_by_default(self, monkeypatch):
        monkeypatch.delenv("PATTERNBANK_ENCRYPT", raising=False)
        assert encryption_enabled() is False

    @pytest.mark.parametrize("value", ["1", "true", "yes", "TRUE"])
    def test_enabled_values(self, monkeypatch, value):
        monkeypatch.setenv("PATTERNBANK_ENCRYPT", value)
        assert encryption_enabled() is True

    @pytest.mark.parametrize("value", ["0", "false", "no", ""])
    def test_disabled_values(self, monkeypatch, value):
        monkeypatch.setenv("PATTERNBANK_ENCRYPT", value)
        assert encryption_enabled() is False


# ============================================================================
# Plaintext passthrough (encryption disabled)
# ============================================================================


class TestPlaintextPassthrough:
    def test_encrypt_returns_plaintext_when_disabled(self, tmp_home):
        assert encrypt("hello world") == "hello world"

    def test_decrypt_returns_plaintext_without_prefix(self):
        assert decrypt("just plain text") == "just plain text"


# ============================================================================
# Key management
# ============================================================================


class TestKeyManagement:
    def test_key_created_on_first_use(self, tmp_home):
        key_path = tmp_home / ".key"
        assert not key_path.exists()
        key = _get_or_create_key()
        assert key_path.exists()
        assert len(key) > 0
        assert stat.S_IMODE(os.stat(key_path).st_mode) == 0o600

    def test_key_reused_on_second_call(self, tmp_home):
        assert _get_or_create_key() == _get_or_create_key()

    def test_key_path_uses_home(self, tmp_home):
        assert str(tmp_home) in str(_key_path())


# ============================================================================
# Encrypt/decrypt roundtrip
# ============================================================================


class TestEncryptDecryptRoundtrip:
    @pytest.fixture(autouse=True)
    def _enable_encryption(self, tmp_home_encrypted):
        pass

    def test_roundtrip(self):
        original = "sensitive pattern content"
        encrypted = encrypt(original)
        assert encrypted.startswith(ENCRYPTED_PREFIX)
        assert encrypted != original
        assert decrypt(encrypted) == original

    def test_roundtrip_unicode(self):
        original = "Unicode content: café ☃ \U0001f680"
        assert decrypt(encrypt(original)) == original

    def test_tampered_token_raises(self):
        encrypted = encrypt("payload")
        with pytest.raises(ValueError):
            decrypt(encrypted[:-4] + "AAAA")

    def test_reset_reinitializes(self):
        assert encrypt("one").startswith(ENCRYPTED_PREFIX)
        reset_crypto_state()
        assert decrypt(encrypt("two")) == "two"


# ============================================================================
# secure_connect
# ============================================================================


class TestSecureConnect:
    def test_new_file_is_private(self, tmp_path):
        db = tmp_path / "new.db"
        conn = secure_connect(db)
        conn.close()
        assert stat.S_IMODE(os.stat(db).st_mode) == 0o600

    def test_existing_permissive_file_is_fixed(self, tmp_path):
        db = tmp_path / "open.db"
        db.touch()
        os.chmod(db, 0o644)
        conn = secure_connect(db)
        conn.close()
        assert stat.S_IMODE(os.stat(db).st_mode) & (stat.S_IRWXG | stat.S_IRWXO) == 0
