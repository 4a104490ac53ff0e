"""Tests for the backup envelope encryption"""

import base64
import json

import pytest

from phantomvault.utils.encryption import (
    SecureBuffer,
    SecureEncryption,
    decrypt_old_backup,
    is_new_encryption_format,
    is_old_encryption_format,
)
from sample_vault import fast_crypto


def _old_envelope(document: dict[str, object], password: str) -> dict[str, object]:
    return {
        "encrypted": True,
        "hash": base64.b64encode(password.encode()).decode()[:8],
        "data": base64.b64encode(json.dumps(document).encode("utf-8")).decode(),
    }


class TestSecureEncryption:
    """Test suite for the envelope encryption"""

    def setup_method(self):
        self.crypto: SecureEncryption = fast_crypto()  # pyright: ignore[reportUninitializedInstanceVariable]

    def test_round_trip(self):
        envelope = self.crypto.encrypt("secret payload ✓", "hunter2")
        assert self.crypto.decrypt(envelope, "hunter2") == "secret payload ✓"

    def test_envelope_shape(self):
        """The envelope is plain JSON carrying its KDF parameters"""
        envelope = json.loads(json.dumps(self.crypto.encrypt("x", "pw")))

        assert envelope["version"] == "2.0"
        assert envelope["encrypted"] is True
        assert envelope["algorithm"] == "XChaCha20-Poly1305"
        assert envelope["kdf"]["name"] == "argon2id"
        assert envelope["kdf"]["time_cost"] == 1
        assert is_new_encryption_format(envelope)
        assert not is_old_encryption_format(envelope)

    def test_wrong_password_returns_none(self):
        envelope = self.crypto.encrypt("payload", "right")
        assert self.crypto.decrypt(envelope, "wrong") is None

    def test_envelope_parameters_win_over_instance_defaults(self):
        envelope = self.crypto.encrypt("payload", "pw")
        other = SecureEncryption(time_cost=3, memory_cost=16 * 1024, parallelism=2)
        assert other.decrypt(envelope, "pw") == "payload"

    def test_malformed_envelope_raises(self):
        envelope = self.crypto.encrypt("payload", "pw")
        envelope["salt"] = "***not base64***"
        with pytest.raises(ValueError):
            _ = self.crypto.decrypt(envelope, "pw")
        with pytest.raises(ValueError):
            _ = self.crypto.decrypt({"encrypted": True}, "pw")

    def test_truncated_fields_are_not_a_wrong_password(self):
        """A damaged envelope is a format error, not a password failure"""
        envelope = self.crypto.encrypt("payload", "pw")
        nonce = base64.b64decode(envelope["iv"])
        damaged = [
            {**envelope, "iv": base64.b64encode(nonce[:12]).decode()},
            {**envelope, "data": base64.b64encode(b"short").decode()},
            {**envelope, "salt": base64.b64encode(b"salt").decode()},
            {**envelope, "kdf": {"time_cost": "many"}},
            {**envelope, "kdf": "argon2id"},
        ]
        for candidate in damaged:
            with pytest.raises(ValueError):
                _ = self.crypto.decrypt(candidate, "pw")

    def test_salts_differ(self):
        first = self.crypto.encrypt("payload", "pw")
        second = self.crypto.encrypt("payload", "pw")
        assert first["salt"] != second["salt"]
        assert first["data"] != second["data"]

    def test_descriptor(self):
        assert self.crypto.descriptor() == {
            "algorithm": "XChaCha20-Poly1305",
            "iterations": 1,
        }


def test_old_backup_decrypts_with_right_password():
    envelope = _old_envelope({"version": "1.0", "exported_at": "2023-05-01"}, "pw1234")
    assert is_old_encryption_format(envelope)
    assert not is_new_encryption_format(envelope)

    plaintext = decrypt_old_backup(envelope, "pw1234")
    assert plaintext is not None
    assert json.loads(plaintext)["version"] == "1.0"


def test_old_backup_wrong_password():
    envelope = _old_envelope({"version": "1.0"}, "pw1234")
    assert decrypt_old_backup(envelope, "other") is None


def test_old_backup_non_ascii_hash():
    envelope = _old_envelope({"version": "1.0"}, "pw1234")
    envelope["hash"] = "pässwörd"
    assert decrypt_old_backup(envelope, "pw1234") is None


def test_old_backup_bad_payload():
    envelope = _old_envelope({}, "pw")
    envelope["data"] = base64.b64encode(b"\xff\xfe").decode()
    with pytest.raises(ValueError):
        _ = decrypt_old_backup(envelope, "pw")


def test_secure_buffer_wipe():
    buffer = SecureBuffer(b"key material")
    assert len(buffer) == 12
    buffer.wipe()
    assert bytes(buffer) == b"\x00" * 12
