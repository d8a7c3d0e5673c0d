"""Tests for key providers and the Fernet master-key wrapper."""

from __future__ import annotations

import os

import pytest

from healthsync.core.errors import SecurityError
from healthsync.core.security.key_providers import (
    HardwareKeyProvider,
    MasterKeyWrapper,
    SoftwareFallbackProvider,
    WrappedKeyProvider,
)

IV = os.urandom(12)


class TestMasterKeyWrapper:
    def test_wrap_unwrap(self):
        wrapper = MasterKeyWrapper(MasterKeyWrapper.generate_key())
        token = wrapper.wrap(b"\x00" * 32)
        assert token != "\x00" * 32
        assert wrapper.unwrap(token) == b"\x00" * 32

    def test_empty_key_rejected(self):
        with pytest.raises(SecurityError, match="empty"):
            MasterKeyWrapper("   ")

    def test_invalid_key_rejected(self):
        with pytest.raises(SecurityError, match="Invalid master key"):
            MasterKeyWrapper("not-a-fernet-key")

    def test_wrong_key_cannot_unwrap(self):
        token = MasterKeyWrapper(MasterKeyWrapper.generate_key()).wrap(b"raw")
        other = MasterKeyWrapper(MasterKeyWrapper.generate_key())
        with pytest.raises(SecurityError, match="unwrap failed"):
            other.unwrap(token)


class TestSoftwareFallbackProvider:
    def test_satisfies_protocol(self):
        assert isinstance(SoftwareFallbackProvider(), HardwareKeyProvider)

    def test_not_hardware_backed(self):
        assert SoftwareFallbackProvider().hardware_backed is False

    def test_seal_open(self):
        provider = SoftwareFallbackProvider()
        provider.create_key("k1")
        sealed = provider.seal("k1", IV, b"data", b"aad")
        assert provider.open("k1", IV, sealed, b"aad") == b"data"

    def test_wrong_aad_fails(self):
        provider = SoftwareFallbackProvider()
        provider.create_key("k1")
        sealed = provider.seal("k1", IV, b"data", b"aad")
        with pytest.raises(SecurityError, match="tag mismatch"):
            provider.open("k1", IV, sealed, b"other")

    def test_missing_key(self):
        with pytest.raises(SecurityError, match="Key not found"):
            SoftwareFallbackProvider().seal("nope", IV, b"data", None)

    def test_delete_key(self):
        provider = SoftwareFallbackProvider()
        provider.create_key("k1")
        assert provider.delete_key("k1") is True
        assert provider.delete_key("k1") is False
        assert provider.has_key("k1") is False


class TestWrappedKeyProvider:
    @pytest.fixture
    def wrapper(self) -> MasterKeyWrapper:
        return MasterKeyWrapper(MasterKeyWrapper.generate_key())

    def test_key_stored_wrapped(self, record_db, wrapper):
        provider = WrappedKeyProvider(record_db, wrapper)
        provider.create_key("k1")
        row = record_db.connection.execute(
            "SELECT wrapped FROM wrapped_keys WHERE key_id = 'k1'"
        ).fetchone()
        assert row is not None
        assert len(wrapper.unwrap(row["wrapped"])) == 32

    def test_key_reloaded_by_new_instance(self, record_db, wrapper):
        first = WrappedKeyProvider(record_db, wrapper)
        first.create_key("k1")
        sealed = first.seal("k1", IV, b"data", None)

        second = WrappedKeyProvider(record_db, wrapper)
        assert second.has_key("k1")
        assert second.open("k1", IV, sealed, None) == b"data"

    def test_wrong_master_key_cannot_load(self, record_db, wrapper):
        WrappedKeyProvider(record_db, wrapper).create_key("k1")
        other = WrappedKeyProvider(record_db, MasterKeyWrapper(MasterKeyWrapper.generate_key()))
        with pytest.raises(SecurityError):
            other.seal("k1", IV, b"data", None)

    def test_delete_key(self, record_db, wrapper):
        provider = WrappedKeyProvider(record_db, wrapper)
        provider.create_key("k1")
        assert provider.delete_key("k1") is True
        assert provider.has_key("k1") is False
        assert provider.delete_key("k1") is False
