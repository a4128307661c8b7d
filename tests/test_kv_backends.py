"""
Tests for the key/value backends under ChatStore.
Each test runs against both the memory and the SQLite backend.
"""

import pytest

from thinkline.storage.backends import (
    MemoryBackend,
    SQLiteBackend,
    StorageQuotaError,
    make_backend,
)


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        return MemoryBackend()
    return SQLiteBackend(str(tmp_path / "kv.db"))


def test_get_missing_key(backend):
    assert backend.get("nope") is None


def test_set_get_replace(backend):
    backend.set("k", "one")
    backend.set("k", "two")
    assert backend.get("k") == "two"
    assert backend.keys() == ["k"]


def test_remove_is_idempotent(backend):
    backend.set("k", "v")
    backend.remove("k")
    backend.remove("k")
    assert backend.get("k") is None
    assert backend.keys() == []


def test_usage_counts_keys_and_values(backend):
    backend.set("ab", "cde")
    backend.set("f", "")
    assert backend.usage() == 2 + 3 + 1
    assert backend.size_of("ab") == 3
    assert backend.size_of("missing") == 0


def test_quota_rejects_write_and_keeps_old_value(tmp_path):
    for b in (MemoryBackend(max_bytes=10), SQLiteBackend(str(tmp_path / "q.db"), max_bytes=10)):
        b.set("k", "12345")
        with pytest.raises(StorageQuotaError):
            b.set("k", "x" * 20)
        assert b.get("k") == "12345"


def test_quota_counts_replaced_value_as_freed():
    b = MemoryBackend(max_bytes=10)
    b.set("k", "123456789")           # 1 + 9 = 10, exactly at quota
    b.set("k", "987654321")
    assert b.get("k") == "987654321"


def test_sqlite_survives_reopen(tmp_path):
    path = str(tmp_path / "nested" / "kv.db")
    SQLiteBackend(path).set("k", "persisted")
    assert SQLiteBackend(path).get("k") == "persisted"


def test_make_backend():
    assert isinstance(make_backend("memory"), MemoryBackend)
    with pytest.raises(ValueError, match="Unknown storage backend"):
        make_backend("redis")
