"""Key-versioned AES-256-GCM encryption for health data at rest.

Each logical key alias (e.g. ``health_records``) maps to a monotonically
increasing version. New ciphertext always uses the current version; the
version travels with the ciphertext in :class:`EncryptedData` so old records
stay readable after a rotation until the retired version's grace period
ends.

All operations on one manager are serialized by a single lock: IV issue and
key-registry changes must not interleave.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Iterable

from healthsync.core.errors import SecurityError, ValidationError
from healthsync.core.security.key_providers import HardwareKeyProvider

if TYPE_CHECKING:
    from healthsync.core.storage.database import RecordDatabase

logger = logging.getLogger(__name__)

IV_LENGTH = 12
KEY_VERSION_PREFIX = "key_version_"
DEFAULT_GRACE_PERIOD = timedelta(days=7)
DEFAULT_MAX_KEY_AGE = timedelta(days=90)
DEFAULT_IV_WINDOW = 65536


@dataclass(frozen=True)
class EncryptedData:
    """Ciphertext plus everything needed to decrypt it."""

    ciphertext: bytes
    iv: bytes
    key_alias: str
    key_version: int
    timestamp: int  # epoch millis

    def to_dict(self) -> dict[str, Any]:
        return {
            "ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
            "iv": base64.b64encode(self.iv).decode("ascii"),
            "key_alias": self.key_alias,
            "key_version": self.key_version,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EncryptedData:
        return cls(
            ciphertext=base64.b64decode(data["ciphertext"]),
            iv=base64.b64decode(data["iv"]),
            key_alias=data["key_alias"],
            key_version=int(data["key_version"]),
            timestamp=int(data["timestamp"]),
        )


@dataclass
class KeyVersion:
    """One generation of a key alias."""

    alias: str
    version: int
    created_at: datetime
    retired_at: datetime | None = None
    expires_at: datetime | None = None

    def is_usable(self, now: datetime) -> bool:
        return self.expires_at is None or now < self.expires_at


class IvLedger:
    """Recently issued IVs for one key version.

    Only the last ``window`` IVs are remembered; a fresh random IV that
    matches one of them is redrawn.
    """

    def __init__(self, window: int = DEFAULT_IV_WINDOW) -> None:
        if window < 1:
            raise ValidationError(f"IV window must be positive, got {window}")
        self._window = window
        self._order: deque[bytes] = deque()
        self._seen: set[bytes] = set()

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, iv: object) -> bool:
        return iv in self._seen

    def issue(self, random_bytes: Callable[[int], bytes] = os.urandom) -> bytes:
        iv = random_bytes(IV_LENGTH)
        while iv in self._seen:
            iv = random_bytes(IV_LENGTH)
        self._seen.add(iv)
        self._order.append(iv)
        if len(self._order) > self._window:
            self._seen.discard(self._order.popleft())
        return iv


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class EncryptionManager:
    """Encrypts, decrypts and rotates keys through a :class:`HardwareKeyProvider`.

    Usage::

        manager = EncryptionManager(SoftwareFallbackProvider(), allow_software_keys=True)
        sealed = manager.encrypt(b"...", "health_records")
        plain = manager.decrypt(sealed)
        manager.rotate_key("health_records")
    """

    def __init__(
        self,
        provider: HardwareKeyProvider,
        *,
        database: RecordDatabase | None = None,
        allow_software_keys: bool = False,
        grace_period: timedelta = DEFAULT_GRACE_PERIOD,
        max_key_age: timedelta = DEFAULT_MAX_KEY_AGE,
        clock: Callable[[], datetime] = _utcnow,
        iv_window: int = DEFAULT_IV_WINDOW,
    ) -> None:
        """Initialize the manager.

        Raises:
            SecurityError: If the provider is not hardware-backed and
                software keys are not explicitly allowed.
        """
        if not provider.hardware_backed and not allow_software_keys:
            logger.error(
                "Key provider %s is not hardware-backed; refusing to start", provider.name
            )
            raise SecurityError(
                f"Hardware-backed key storage required but provider "
                f"'{provider.name}' is software-only"
            )
        if not provider.hardware_backed:
            logger.warning("Using software key provider %s (not for production)", provider.name)

        self._provider = provider
        self._db = database
        self._grace_period = grace_period
        self._max_key_age = max_key_age
        self._clock = clock
        self._lock = threading.RLock()
        self._versions: dict[str, list[KeyVersion]] = {}
        self._iv_window = iv_window
        self._issued_ivs: dict[tuple[str, int], IvLedger] = {}

        if self._db is not None:
            self._load_versions()

    @property
    def provider(self) -> HardwareKeyProvider:
        return self._provider

    @staticmethod
    def key_id(alias: str, version: int) -> str:
        return f"{KEY_VERSION_PREFIX}{version}_{alias}"

    # ------------------------------------------------------------------
    # Encrypt / decrypt
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: bytes, key_alias: str) -> EncryptedData:
        """Encrypt with the current version of ``key_alias``.

        Raises:
            ValidationError: If ``plaintext`` is empty.
            SecurityError: If the provider fails.
        """
        if not plaintext:
            raise ValidationError("Data to encrypt cannot be empty")

        with self._lock:
            current = self._current_or_create(key_alias)
            iv = self._issue_iv(key_alias, current.version)
            try:
                ciphertext = self._provider.seal(
                    self.key_id(key_alias, current.version),
                    iv,
                    plaintext,
                    _aad(key_alias, current.version),
                )
            except SecurityError:
                logger.error("Encryption failed for %s v%d", key_alias, current.version)
                raise
            except Exception as exc:
                logger.error("Encryption failed for %s v%d: %s", key_alias, current.version, exc)
                raise SecurityError("Encryption failed") from exc

            logger.debug("Encrypted %d bytes with %s v%d", len(plaintext), key_alias, current.version)
            return EncryptedData(
                ciphertext=ciphertext,
                iv=iv,
                key_alias=key_alias,
                key_version=current.version,
                timestamp=int(time.time() * 1000),
            )

    def decrypt(self, data: EncryptedData) -> bytes:
        """Decrypt using the key version recorded in ``data``.

        Raises:
            SecurityError: If the version is unknown, past its grace period,
                or the ciphertext fails authentication.
        """
        with self._lock:
            version = self._find_version(data.key_alias, data.key_version)
            if version is None:
                raise SecurityError(
                    f"Key not found for {data.key_alias} v{data.key_version}"
                )
            if not version.is_usable(self._clock()):
                raise SecurityError(
                    f"Key {data.key_alias} v{data.key_version} expired; re-encrypt before use"
                )
            try:
                plaintext = self._provider.open(
                    self.key_id(data.key_alias, data.key_version),
                    data.iv,
                    data.ciphertext,
                    _aad(data.key_alias, data.key_version),
                )
            except SecurityError:
                logger.error("Decryption failed for %s v%d", data.key_alias, data.key_version)
                raise
            except Exception as exc:
                logger.error("Decryption failed for %s v%d: %s", data.key_alias, data.key_version, exc)
                raise SecurityError("Decryption failed") from exc
            return plaintext

    def encrypt_json(self, data: Any, key_alias: str) -> EncryptedData:
        """Serialize ``data`` as compact JSON and encrypt it."""
        try:
            plaintext = json.dumps(data, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Content is not JSON-serializable: {exc}") from exc
        return self.encrypt(plaintext, key_alias)

    def decrypt_json(self, data: EncryptedData) -> Any:
        return json.loads(self.decrypt(data))

    def reencrypt(self, data: EncryptedData) -> EncryptedData:
        """Move ciphertext to the current version of its alias.

        Returns ``data`` unchanged when it already uses the current version.

        Raises:
            SecurityError: If the old version can no longer decrypt it.
        """
        with self._lock:
            current = self.current_version(data.key_alias)
            if current is not None and data.key_version == current:
                return data
            return self.encrypt(self.decrypt(data), data.key_alias)

    # ------------------------------------------------------------------
    # Key lifecycle
    # ------------------------------------------------------------------

    def rotate_key(self, alias: str) -> bool:
        """Generate a new version and retire the current one.

        The retired version stays usable for decryption until the grace
        period ends.

        Returns:
            True once the new version is active.
        """
        with self._lock:
            versions = self._versions.get(alias)
            if not versions:
                self._create_version(alias, 1)
                logger.info("Key rotation for %s: no prior version, created v1", alias)
                return True

            current = versions[-1]
            new_version = current.version + 1
            self._create_version(alias, new_version)

            now = self._clock()
            current.retired_at = now
            current.expires_at = now + self._grace_period
            self._persist_version(current)
            logger.info(
                "Key rotated: %s (v%d -> v%d), v%d usable until %s",
                alias,
                current.version,
                new_version,
                current.version,
                current.expires_at.isoformat(),
            )
            return True

    def current_version(self, alias: str) -> int | None:
        with self._lock:
            versions = self._versions.get(alias)
            return versions[-1].version if versions else None

    def versions(self, alias: str) -> list[KeyVersion]:
        with self._lock:
            return list(self._versions.get(alias, []))

    def needs_rotation(self, alias: str) -> bool:
        """Whether the current key for ``alias`` is older than the maximum key age."""
        with self._lock:
            versions = self._versions.get(alias)
            if not versions:
                return False
            return self._clock() - versions[-1].created_at >= self._max_key_age

    def purge_expired_keys(self, in_use: Iterable[tuple[str, int]] = ()) -> int:
        """Delete retired versions whose grace period has ended.

        Args:
            in_use: ``(alias, version)`` pairs still referenced by stored
                ciphertext. Those keys are kept even when expired.

        Returns:
            Number of key versions removed.
        """
        referenced = set(in_use)
        removed = 0
        with self._lock:
            now = self._clock()
            for alias, versions in self._versions.items():
                keep: list[KeyVersion] = []
                for version in versions:
                    if version.is_usable(now):
                        keep.append(version)
                        continue
                    if (alias, version.version) in referenced:
                        logger.warning(
                            "Key %s v%d expired but still referenced; not purged",
                            alias,
                            version.version,
                        )
                        keep.append(version)
                        continue
                    self._provider.delete_key(self.key_id(alias, version.version))
                    self._issued_ivs.pop((alias, version.version), None)
                    if self._db is not None:
                        self._db.connection.execute(
                            "DELETE FROM key_versions WHERE alias = ? AND version = ?",
                            (alias, version.version),
                        )
                    removed += 1
                    logger.info("Purged expired key %s v%d", alias, version.version)
                self._versions[alias] = keep
            if self._db is not None and removed:
                self._db.connection.commit()
        return removed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _current_or_create(self, alias: str) -> KeyVersion:
        versions = self._versions.get(alias)
        if versions:
            current = versions[-1]
            if not self._provider.has_key(self.key_id(alias, current.version)):
                raise SecurityError(f"Key material missing for {alias} v{current.version}")
            return current
        return self._create_version(alias, 1)

    def _create_version(self, alias: str, version: int) -> KeyVersion:
        key_id = self.key_id(alias, version)
        try:
            self._provider.create_key(key_id)
        except SecurityError:
            raise
        except Exception as exc:
            logger.error("Key generation failed for %s: %s", key_id, exc)
            raise SecurityError("Failed to generate key") from exc

        entry = KeyVersion(alias=alias, version=version, created_at=self._clock())
        self._versions.setdefault(alias, []).append(entry)
        self._persist_version(entry)
        logger.info("Generated key %s", key_id)
        return entry

    def _find_version(self, alias: str, version: int) -> KeyVersion | None:
        for entry in self._versions.get(alias, []):
            if entry.version == version:
                return entry
        return None

    def _issue_iv(self, alias: str, version: int) -> bytes:
        ledger = self._issued_ivs.get((alias, version))
        if ledger is None:
            ledger = self._issued_ivs[(alias, version)] = IvLedger(self._iv_window)
        return ledger.issue()

    def _load_versions(self) -> None:
        rows = self._db.connection.execute(
            "SELECT alias, version, created_at, retired_at, expires_at "
            "FROM key_versions ORDER BY alias, version"
        ).fetchall()
        for row in rows:
            self._versions.setdefault(row["alias"], []).append(
                KeyVersion(
                    alias=row["alias"],
                    version=row["version"],
                    created_at=datetime.fromisoformat(row["created_at"]),
                    retired_at=_parse_ts(row["retired_at"]),
                    expires_at=_parse_ts(row["expires_at"]),
                )
            )
        if rows:
            logger.info("Loaded %d key versions", len(rows))

    def _persist_version(self, entry: KeyVersion) -> None:
        if self._db is None:
            return
        conn = self._db.connection
        conn.execute(
            """INSERT INTO key_versions (alias, version, created_at, retired_at, expires_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(alias, version) DO UPDATE SET
                   retired_at = excluded.retired_at,
                   expires_at = excluded.expires_at""",
            (
                entry.alias,
                entry.version,
                entry.created_at.isoformat(),
                entry.retired_at.isoformat() if entry.retired_at else None,
                entry.expires_at.isoformat() if entry.expires_at else None,
            ),
        )
        conn.commit()


def _aad(alias: str, version: int) -> bytes:
    """Bind ciphertext to its alias and version."""
    return f"{alias}:{version}".encode("utf-8")
