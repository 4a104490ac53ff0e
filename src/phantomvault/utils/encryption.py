"""
Encrypt and decrypt backup envelopes with Argon2ID and XChaCha20-Poly1305
"""

import base64
import binascii
import logging
import secrets
from typing import Any, Protocol

import nacl.exceptions
import nacl.secret
from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw

ENVELOPE_VERSION: str = "2.0"


class SecureBuffer:
    """Wrapper for sensitive data that zeros memory on deletion"""

    def __init__(self, data: bytes):
        self._data: bytearray = bytearray(data)

    def __bytes__(self):
        return bytes(self._data)

    def __len__(self):
        return len(self._data)

    def __del__(self):
        # Zero out memory before deletion
        if hasattr(self, "_data"):
            for i, _ in enumerate(self._data):
                self._data[i] = 0

    def wipe(self):
        """Explicitly wipe the data"""
        for i, _ in enumerate(self._data):
            self._data[i] = 0


class CryptoPrimitive(Protocol):
    """Password-based envelope encryption used for backups"""

    def encrypt(self, plaintext: str, password: str) -> dict[str, Any]: ...

    def decrypt(self, envelope: dict[str, Any], password: str) -> str | None: ...

    def descriptor(self) -> dict[str, Any]: ...


class SecureEncryption:
    """
    Envelope encryption using Argon2id for key derivation and
    XChaCha20-Poly1305 for authenticated encryption.

    The envelope is a JSON-serializable dict carrying the KDF parameters,
    so archives stay readable if the defaults change later.
    """

    ALGORITHM: str = "XChaCha20-Poly1305"
    KDF: str = "argon2id"
    SALT_SIZE: int = 32  # 256 bits
    MIN_SALT_SIZE: int = 8  # argon2 minimum
    KEY_SIZE: int = 32  # 256 bits

    # Argon2id parameters (OWASP recommended minimums for 2023+)
    ARGON2_TIME_COST: int = 2  # iterations
    ARGON2_MEMORY_COST: int = 64 * 1024  # 64 MB
    ARGON2_PARALLELISM: int = 4  # threads

    def __init__(
        self,
        time_cost: int = ARGON2_TIME_COST,
        memory_cost: int = ARGON2_MEMORY_COST,
        parallelism: int = ARGON2_PARALLELISM,
    ):
        self.time_cost: int = time_cost
        self.memory_cost: int = memory_cost
        self.parallelism: int = parallelism
        self.logger: logging.Logger = logging.getLogger("Encryption")

    @staticmethod
    def derive_key(
        password: str,
        salt: bytes,
        time_cost: int = ARGON2_TIME_COST,
        memory_cost: int = ARGON2_MEMORY_COST,
        parallelism: int = ARGON2_PARALLELISM,
    ) -> SecureBuffer:
        """
        Derive encryption key from password using Argon2id

        Args:
            password: User password
            salt: Random salt

        Returns:
            SecureBuffer containing derived key
        """
        logging.getLogger("Encryption").debug("Deriving encryption key...")
        password_bytes = password.encode("utf-8")

        try:
            raw_key = hash_secret_raw(
                secret=password_bytes,
                salt=salt,
                time_cost=time_cost,
                memory_cost=memory_cost,
                parallelism=parallelism,
                hash_len=SecureEncryption.KEY_SIZE,
                type=Type.ID,  # Argon2id
            )
            return SecureBuffer(raw_key)
        finally:
            # Zero out password bytes
            password_bytes = bytearray(password_bytes)
            for i, _ in enumerate(password_bytes):
                password_bytes[i] = 0

    @staticmethod
    def generate_salt() -> bytes:
        return secrets.token_bytes(SecureEncryption.SALT_SIZE)

    def descriptor(self) -> dict[str, Any]:
        """Descriptor stored in the manifest metadata"""
        return {"algorithm": self.ALGORITHM, "iterations": self.time_cost}

    def encrypt(self, plaintext: str, password: str) -> dict[str, Any]:
        """
        Encrypt a text payload into a backup envelope

        Args:
            plaintext: Text to encrypt (the base64 of the archive for backups)
            password: Encryption password

        Returns:
            The envelope, ready for json.dumps
        """
        salt = self.generate_salt()
        key_buffer = self.derive_key(
            password, salt, self.time_cost, self.memory_cost, self.parallelism
        )
        try:
            box = nacl.secret.Aead(bytes(key_buffer))
            encrypted = box.encrypt(plaintext.encode("utf-8"))
        finally:
            key_buffer.wipe()

        self.logger.debug("Encrypted %d characters into envelope", len(plaintext))
        return {
            "version": ENVELOPE_VERSION,
            "encrypted": True,
            "algorithm": self.ALGORITHM,
            "kdf": {
                "name": self.KDF,
                "time_cost": self.time_cost,
                "memory_cost": self.memory_cost,
                "parallelism": self.parallelism,
            },
            "salt": _b64encode(salt),
            "iv": _b64encode(encrypted.nonce),
            "data": _b64encode(encrypted.ciphertext),
        }

    def decrypt(self, envelope: dict[str, Any], password: str) -> str | None:
        """
        Decrypt a backup envelope

        Returns:
            The plaintext, or None when the password is wrong

        Raises:
            ValueError: If the envelope is malformed
        """
        if not is_new_encryption_format(envelope):
            raise ValueError("Invalid backup envelope")

        kdf = envelope.get("kdf") or {}
        if not isinstance(kdf, dict):
            raise ValueError("Invalid backup envelope: bad KDF parameters")
        try:
            salt = base64.b64decode(envelope["salt"], validate=True)
            nonce = base64.b64decode(envelope["iv"], validate=True)
            ciphertext = base64.b64decode(envelope["data"], validate=True)
        except (binascii.Error, TypeError) as e:
            raise ValueError("Invalid backup envelope: bad base64 field") from e

        # Shape errors must not be mistaken for a wrong password below
        if len(nonce) != nacl.secret.Aead.NONCE_SIZE:
            raise ValueError("Invalid backup envelope: bad nonce length")
        if len(ciphertext) < nacl.secret.Aead.MACBYTES:
            raise ValueError("Invalid backup envelope: ciphertext too short")
        if len(salt) < self.MIN_SALT_SIZE:
            raise ValueError("Invalid backup envelope: salt too short")
        try:
            time_cost = int(kdf.get("time_cost", self.ARGON2_TIME_COST))
            memory_cost = int(kdf.get("memory_cost", self.ARGON2_MEMORY_COST))
            parallelism = int(kdf.get("parallelism", self.ARGON2_PARALLELISM))
        except (TypeError, ValueError) as e:
            raise ValueError("Invalid backup envelope: bad KDF parameters") from e

        try:
            key_buffer = self.derive_key(
                password, salt, time_cost, memory_cost, parallelism
            )
        except (HashingError, OverflowError) as e:
            raise ValueError(f"Invalid backup envelope: {e}") from e
        try:
            box = nacl.secret.Aead(bytes(key_buffer))
            plaintext = box.decrypt(ciphertext, nonce=nonce)
        except nacl.exceptions.CryptoError as e:
            self.logger.error(
                "Decryption failed: wrong password or corrupted data. %s", e
            )
            return None
        finally:
            key_buffer.wipe()

        self.logger.debug("Decryption completed")
        return plaintext.decode("utf-8")


def is_new_encryption_format(data: Any) -> bool:
    """Check if a parsed document is a current backup envelope"""
    return (
        isinstance(data, dict)
        and data.get("version") == ENVELOPE_VERSION
        and data.get("encrypted") is True
        and isinstance(data.get("salt"), str)
        and isinstance(data.get("iv"), str)
        and isinstance(data.get("data"), str)
    )


def is_old_encryption_format(data: Any) -> bool:
    """Check if a parsed document uses the pre-archive obfuscation envelope"""
    return (
        isinstance(data, dict)
        and data.get("encrypted") is True
        and isinstance(data.get("hash"), str)
        and isinstance(data.get("data"), str)
    )


def decrypt_old_backup(envelope: dict[str, Any], password: str) -> str | None:
    """
    Decode a pre-archive backup.

    These backups were only base64 obfuscated; the password check is the
    first 8 characters of the base64 encoded password.
    """
    password_hash = _b64encode(password.encode("utf-8"))[:8]
    stored_hash = str(envelope["hash"]).encode("utf-8")
    if not secrets.compare_digest(stored_hash, password_hash.encode("ascii")):
        return None
    try:
        return base64.b64decode(envelope["data"]).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        logging.getLogger("Encryption").error("Old backup decoding failed: %s", e)
        raise ValueError("Invalid legacy backup payload") from e


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")
