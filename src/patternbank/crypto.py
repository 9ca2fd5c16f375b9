"""
PatternBank Crypto -- optional encryption for exported snapshot files and
secure permissions for the database file.

Snapshot files are encrypted with Fernet (AES-128-CBC + HMAC-SHA256) when
PATTERNBANK_ENCRYPT=1. The key is a machine-specific secret stored at
$PATTERNBANK_HOME/.key, created on first use with 0600 permissions. Losing it
means losing access to encrypted snapshots.
"""

import base64
import logging
import os
import secrets
import sqlite3
import stat
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from patternbank.config import encryption_enabled, patternbank_home

logger = logging.getLogger("patternbank.crypto")

ENCRYPTED_PREFIX = "ENC:"

_fernet_instance = None


def _key_path() -> Path:
    """Resolve key file path lazily."""
    return patternbank_home() / ".key"


def reset_crypto_state() -> None:
    """Reset module state for test isolation."""
    global _fernet_instance
    _fernet_instance = None


def _get_or_create_key() -> bytes:
    """Get the Fernet key, creating one if it doesn't exist."""
    kp = _key_path()
    if kp.exists():
        raw = kp.read_bytes().strip()
        # A 32-byte raw secret is accepted too
        if len(raw) == 32:
            return base64.urlsafe_b64encode(raw)
        return raw

    home = patternbank_home()
    home.mkdir(parents=True, exist_ok=True, mode=0o700)
    encoded_key = base64.urlsafe_b64encode(secrets.token_bytes(32))
    # Atomic creation with restricted permissions (no TOCTOU window)
    fd = os.open(str(kp), os.O_CREAT | os.O_WRONLY | os.O_EXCL, 0o600)
    try:
        os.write(fd, encoded_key)
    finally:
        os.close(fd)
    logger.info("Created encryption key at %s", kp)
    return encoded_key


def _get_fernet() -> Fernet:
    global _fernet_instance
    if _fernet_instance is None:
        _fernet_instance = Fernet(_get_or_create_key())
    return _fernet_instance


def encrypt(plaintext: str) -> str:
    """Encrypt a string when encryption is enabled, else return it unchanged."""
    if not encryption_enabled():
        return plaintext
    token = _get_fernet().encrypt(plaintext.encode("utf-8"))
    return ENCRYPTED_PREFIX + token.decode("ascii")


def decrypt(data: str) -> str:
    """Decrypt a string. Plaintext (no 'ENC:' prefix) is returned as-is.

    Raises ValueError if decryption fails (bad key or corrupted data).
    """
    if not data.startswith(ENCRYPTED_PREFIX):
        return data
    try:
        token = data[len(ENCRYPTED_PREFIX):].encode("ascii")
        return _get_fernet().decrypt(token).decode("utf-8")
    except (InvalidToken, ValueError) as e:
        raise ValueError(f"Decryption failed: {e}") from e


def secure_connect(db_path, **kwargs) -> sqlite3.Connection:
    """Create a SQLite connection with secure file permissions (0o600).

    Pre-creates the DB file with restricted permissions before connecting,
    and fixes existing files that have overly permissive permissions.
    """
    db_path_str = str(db_path)
    path_obj = Path(db_path_str)

    if not path_obj.exists():
        fd = os.open(db_path_str, os.O_CREAT | os.O_WRONLY, 0o600)
        os.close(fd)
    else:
        current_mode = path_obj.stat().st_mode
        if current_mode & (stat.S_IRWXG | stat.S_IRWXO):
            os.chmod(db_path_str, 0o600)

    return sqlite3.connect(db_path_str, **kwargs)
