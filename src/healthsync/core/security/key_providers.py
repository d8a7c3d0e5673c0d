"""Key storage backends for the EncryptionManager.

A provider owns raw key material and performs AES-GCM seal/open on the
caller's behalf, so key bytes never leave it. This mirrors how platform
keystores behave: the caller only ever holds a key identifier.

``hardware_backed`` tells the EncryptionManager whether the provider can
guarantee hardware protection. Both providers shipped here are software;
the manager refuses them unless software keys are explicitly allowed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from healthsync.core.errors import SecurityError

if TYPE_CHECKING:
    from healthsync.core.storage.database import RecordDatabase

logger = logging.getLogger(__name__)

KEY_SIZE_BITS = 256


@runtime_checkable
class HardwareKeyProvider(Protocol):
    """Capability interface for key storage.

    Implementations must raise ``SecurityError`` for a missing key or a
    failed authentication tag.
    """

    @property
    def name(self) -> str:
        """Short label used in logs and health checks."""
        ...

    @property
    def hardware_backed(self) -> bool:
        """Whether keys are protected by secure hardware."""
        ...

    def create_key(self, key_id: str) -> None:
        """Generate a new AES-256 key under ``key_id``."""
        ...

    def has_key(self, key_id: str) -> bool:
        ...

    def seal(self, key_id: str, iv: bytes, plaintext: bytes, aad: bytes | None) -> bytes:
        """AES-GCM encrypt; returns ciphertext with the tag appended."""
        ...

    def open(self, key_id: str, iv: bytes, ciphertext: bytes, aad: bytes | None) -> bytes:
        """AES-GCM decrypt and verify."""
        ...

    def delete_key(self, key_id: str) -> bool:
        """Remove a key. Returns False if it did not exist."""
        ...


class SoftwareFallbackProvider:
    """In-memory AES keys. Development and tests only.

    Keys are lost when the process exits, so anything encrypted under them
    becomes unreadable. Never hardware-backed.
    """

    def __init__(self) -> None:
        self._keys: dict[str, AESGCM] = {}

    @property
    def name(self) -> str:
        return "software_fallback"

    @property
    def hardware_backed(self) -> bool:
        return False

    def create_key(self, key_id: str) -> None:
        self._keys[key_id] = AESGCM(AESGCM.generate_key(bit_length=KEY_SIZE_BITS))
        logger.info("Generated software key %s", key_id)

    def has_key(self, key_id: str) -> bool:
        return key_id in self._keys

    def seal(self, key_id: str, iv: bytes, plaintext: bytes, aad: bytes | None) -> bytes:
        return self._get(key_id).encrypt(iv, plaintext, aad)

    def open(self, key_id: str, iv: bytes, ciphertext: bytes, aad: bytes | None) -> bytes:
        try:
            return self._get(key_id).decrypt(iv, ciphertext, aad)
        except InvalidTag as exc:
            raise SecurityError("Decryption failed: authentication tag mismatch") from exc

    def delete_key(self, key_id: str) -> bool:
        return self._keys.pop(key_id, None) is not None

    def _get(self, key_id: str) -> AESGCM:
        key = self._keys.get(key_id)
        if key is None:
            raise SecurityError(f"Key not found: {key_id}")
        return key


class MasterKeyWrapper:
    """Wraps raw data keys with a Fernet master key.

    Usage::

        wrapper = MasterKeyWrapper(key="...")
        token = wrapper.wrap(raw_key_bytes)
        raw = wrapper.unwrap(token)
    """

    def __init__(self, key: str) -> None:
        """Initialize with a Fernet key.

        Args:
            key: A valid Fernet key string. Generate with
                 :meth:`generate_key`.

        Raises:
            SecurityError: If the key is empty or invalid.
        """
        if not key or not key.strip():
            raise SecurityError("Master key must not be empty")
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as exc:
            raise SecurityError(f"Invalid master key: {exc}") from exc

    def wrap(self, raw: bytes) -> str:
        return self._fernet.encrypt(raw).decode("utf-8")

    def unwrap(self, token: str) -> bytes:
        try:
            return self._fernet.decrypt(token.encode("utf-8"))
        except InvalidToken as exc:
            raise SecurityError("Key unwrap failed: invalid token or wrong master key") from exc

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet master key (URL-safe base64, 32 bytes)."""
        return Fernet.generate_key().decode("utf-8")


class WrappedKeyProvider:
    """Persistent software keystore.

    Data keys are generated locally, wrapped with the master key and stored
    in the ``wrapped_keys`` table. Unwrapped keys are cached in memory for
    the life of the process.
    """

    def __init__(self, database: RecordDatabase, wrapper: MasterKeyWrapper) -> None:
        self._db = database
        self._wrapper = wrapper
        self._cache: dict[str, AESGCM] = {}

    @property
    def name(self) -> str:
        return "wrapped_sqlite"

    @property
    def hardware_backed(self) -> bool:
        return False

    def create_key(self, key_id: str) -> None:
        raw = AESGCM.generate_key(bit_length=KEY_SIZE_BITS)
        conn = self._db.connection
        conn.execute(
            "INSERT OR REPLACE INTO wrapped_keys (key_id, wrapped) VALUES (?, ?)",
            (key_id, self._wrapper.wrap(raw)),
        )
        conn.commit()
        self._cache[key_id] = AESGCM(raw)
        logger.info("Generated wrapped key %s", key_id)

    def has_key(self, key_id: str) -> bool:
        if key_id in self._cache:
            return True
        row = self._db.connection.execute(
            "SELECT 1 FROM wrapped_keys WHERE key_id = ?", (key_id,)
        ).fetchone()
        return row is not None

    def seal(self, key_id: str, iv: bytes, plaintext: bytes, aad: bytes | None) -> bytes:
        return self._get(key_id).encrypt(iv, plaintext, aad)

    def open(self, key_id: str, iv: bytes, ciphertext: bytes, aad: bytes | None) -> bytes:
        try:
            return self._get(key_id).decrypt(iv, ciphertext, aad)
        except InvalidTag as exc:
            raise SecurityError("Decryption failed: authentication tag mismatch") from exc

    def delete_key(self, key_id: str) -> bool:
        self._cache.pop(key_id, None)
        conn = self._db.connection
        cursor = conn.execute("DELETE FROM wrapped_keys WHERE key_id = ?", (key_id,))
        conn.commit()
        return cursor.rowcount > 0

    def _get(self, key_id: str) -> AESGCM:
        key = self._cache.get(key_id)
        if key is not None:
            return key
        row = self._db.connection.execute(
            "SELECT wrapped FROM wrapped_keys WHERE key_id = ?", (key_id,)
        ).fetchone()
        if row is None:
            raise SecurityError(f"Key not found: {key_id}")
        key = AESGCM(self._wrapper.unwrap(row["wrapped"]))
        self._cache[key_id] = key
        return key
