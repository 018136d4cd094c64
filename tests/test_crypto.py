"""Tests for mnemo.crypto -- metadata encryption at rest, key management, file modes."""
import os
import stat

import pytest
from cryptography.fernet import Fernet

from mnemo.crypto import (
    _get_or_create_key,
    _key_path,
    decrypt,
    encrypt,
    is_enabled,
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
# is_enabled
# ============================================================================


class TestIsEnabled:
    def test_enabled_by_default(self, monkeypatch):
        monkeypatch.delenv("MNEMO_ENCRYPT", raising=False)
        assert is_enabled() is True

    @pytest.mark.parametrize("value", ["1", "true", "yes", "", "anything"])
    def test_enabled_values(self, monkeypatch, value):
        monkeypatch.setenv("MNEMO_ENCRYPT", value)
        assert is_enabled() is True

    @pytest.mark.parametrize("value", ["0", "false", "no", "FALSE", " No "])
    def test_disabled_values(self, monkeypatch, value):
        monkeypatch.setenv("MNEMO_ENCRYPT", value)
        assert is_enabled() is False


# ============================================================================
# Plaintext passthrough (encryption disabled)
# ============================================================================


class TestPlaintextPassthrough:
    def test_encrypt_returns_plaintext_when_disabled(self, tmp_mnemo_dir):
        assert encrypt('{"a": 1}') == '{"a": 1}'
        assert not _key_path().exists()

    def test_decrypt_returns_plaintext_without_prefix(self):
        assert decrypt("just plain text") == "just plain text"


# ============================================================================
# Key management
# ============================================================================


class TestKeyManagement:
    def test_key_created_on_first_use(self, tmp_mnemo_dir):
        key_path = tmp_mnemo_dir / ".key"
        assert not key_path.exists()
        key = _get_or_create_key()
        assert key_path.exists()
        assert stat.S_IMODE(os.stat(key_path).st_mode) == 0o600
        Fernet(key)

    def test_key_reused_on_second_call(self, tmp_mnemo_dir):
        assert _get_or_create_key() == _get_or_create_key()

    def test_key_path_uses_mnemo_home(self, tmp_mnemo_dir):
        assert _key_path() == tmp_mnemo_dir / ".key"

    def test_raw_32_byte_key_is_wrapped(self, tmp_mnemo_dir):
        (tmp_mnemo_dir / ".key").write_bytes(b"k" * 32)
        Fernet(_get_or_create_key())


# ============================================================================
# Encrypt/decrypt roundtrip
# ============================================================================


class TestEncryptDecryptRoundtrip:
    @pytest.fixture(autouse=True)
    def _enable_encryption(self, tmp_mnemo_dir_encrypted):
        pass

    def test_roundtrip(self):
        original = '{"source": "chat"}'
        encrypted = encrypt(original)
        assert encrypted.startswith("ENC:")
        assert "chat" not in encrypted
        assert decrypt(encrypted) == original

    def test_roundtrip_unicode(self):
        original = "Unicode content: café ☃ \U0001f680"
        assert decrypt(encrypt(original)) == original

    def test_tokens_differ_per_call(self):
        assert encrypt("same") != encrypt("same")

    def test_wrong_key_raises_value_error(self, tmp_mnemo_dir):
        encrypted = encrypt("secret")
        reset_crypto_state()
        (tmp_mnemo_dir / ".key").write_bytes(Fernet.generate_key())
        with pytest.raises(ValueError, match="Decryption failed"):
            decrypt(encrypted)

    def test_garbage_token_raises_value_error(self):
        with pytest.raises(ValueError):
            decrypt("ENC:not-a-token")

    def test_reset_reinitializes(self):
        assert encrypt("a").startswith("ENC:")
        reset_crypto_state()
        assert decrypt(encrypt("b")) == "b"


# ============================================================================
# secure_connect
# ============================================================================


class TestSecureConnect:
    def test_new_file_is_private(self, tmp_path):
        path = tmp_path / "new.db"
        conn = secure_connect(path)
        conn.execute("CREATE TABLE t (x)")
        conn.close()
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_existing_permissive_file_is_tightened(self, tmp_path):
        path = tmp_path / "open.db"
        path.touch()
        os.chmod(path, 0o644)
        secure_connect(path).close()
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
