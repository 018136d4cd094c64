"""
mnemo crypto -- file permissions and encryption at rest for record metadata.

Metadata is encrypted with Fernet (AES-128-CBC + HMAC-SHA256) before it is
written. Memory content stays plaintext because the FTS5 index has to read
it. The key lives at $MNEMO_HOME/.key and is created on first use with
0600 permissions. Losing it means losing access to encrypted metadata.

Enabled by default. Disable: MNEMO_ENCRYPT=0
"""

import base64
import logging
import os
import secrets
import sqlite3
import stat
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from mnemo.config import mnemo_home

logger = logging.getLogger("mnemo.crypto")

ENC_PREFIX = "ENC:"

_fernet_instance: Optional[Fernet] = None


def _key_path() -> Path:
    """Resolve key file path lazily."""
    return mnemo_home() / ".key"


def is_enabled() -> bool:
    """Check if encryption at rest is enabled (on unless MNEMO_ENCRYPT is 0/false/no)."""
    val = os.environ.get("MNEMO_ENCRYPT", "").strip().lower()
    return val not in ("0", "false", "no")


def reset_crypto_state() -> None:
    """Reset module state for test isolation."""
    global _fernet_instance
    _fernet_instance = None


def _get_or_create_key() -> bytes:
    """Get the Fernet key, creating one if it doesn't exist."""
    kp = _key_path()
    if kp.exists():
        raw = kp.read_bytes().strip()
        # A 32-byte raw secret is wrapped into Fernet's base64 form
        if len(raw) == 32:
            return base64.urlsafe_b64encode(raw)
        return raw

    kp.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    encoded_key = base64.urlsafe_b64encode(secrets.token_bytes(32))
    # O_EXCL: fail rather than clobber a key another process just wrote
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
    """Encrypt a string, returning ``ENC:<token>``; passthrough when disabled."""
    if not is_enabled():
        return plaintext
    token = _get_fernet().encrypt(plaintext.encode("utf-8"))
    return ENC_PREFIX + token.decode("ascii")


def decrypt(data: str) -> str:
    """Decrypt a string. Values without the ``ENC:`` prefix are returned as-is.

    Raises ValueError if decryption fails (wrong key or corrupted token).
    """
    if not data.startswith(ENC_PREFIX):
        return data
    try:
        return _get_fernet().decrypt(data[len(ENC_PREFIX):].encode("ascii")).decode("utf-8")
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
