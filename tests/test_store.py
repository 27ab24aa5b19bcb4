"""
Unit tests for entry key derivation and the entry store backends.
"""
import hashlib
import tempfile
import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pagecache.cache.store import (
    EntryStore,
    FileEntryStore,
    MemoryEntryStore,
    SQLiteEntryStore,
    derive_key,
    shard_key,
)
from pagecache.exceptions import EntryStoreError


FIXED_NOW = datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["file", "memory", "sqlite"])
def store(request, tmp_path):
    """Each backend, freshly created."""
    if request.param == "file":
        return FileEntryStore(tmp_path / "entries")
    if request.param == "memory":
        return MemoryEntryStore(clock=lambda: FIXED_NOW)
    return SQLiteEntryStore(tmp_path / "entries.db", clock=lambda: FIXED_NOW)


# =============================================================================
# Key derivation
# =============================================================================

def test_key_is_sha256_of_host_path_and_query():
    key = derive_key("example.com", "/news", "page=2")
    assert key == hashlib.sha256(b"example.com/news?page=2").hexdigest()
    assert len(key) == 64


def test_key_is_deterministic_and_host_case_insensitive():
    assert derive_key("Example.COM", "/a") == derive_key("example.com", "/a")


def test_key_depends_on_every_identity_part():
    base = derive_key("example.com", "/a", "x=1")
    assert derive_key("other.com", "/a", "x=1") != base
    assert derive_key("example.com", "/b", "x=1") != base
    assert derive_key("example.com", "/a", "x=2") != base
    assert derive_key("example.com", "/a") != base


def test_shard_key_splits_first_byte():
    key = derive_key("example.com", "/")
    prefix, remainder = shard_key(key)
    assert prefix == key[:2]
    assert prefix + remainder == key
    assert len(remainder) == 62


# =============================================================================
# Contract (all backends)
# =============================================================================

def test_get_absent_returns_none(store):
    assert store.get(derive_key("example.com", "/missing")) is None


def test_put_then_get_round_trip(store):
    key = derive_key("example.com", "/page")
    body = b"<html>\x00\xff caf\xc3\xa9</html>"
    written = store.put(key, body)

    entry = store.get(key)
    assert entry is not None
    assert entry.key == key
    assert entry.body == body
    assert written.body == body
    assert entry.stored_at.tzinfo is not None


def test_put_overwrites(store):
    key = derive_key("example.com", "/page")
    store.put(key, b"old")
    store.put(key, b"new")
    assert store.get(key).body == b"new"
    assert store.count() == 1


def test_delete_is_idempotent(store):
    key = derive_key("example.com", "/page")
    store.put(key, b"body")
    store.delete(key)
    assert store.get(key) is None
    store.delete(key)
    store.delete(derive_key("example.com", "/never-written"))
    assert store.get(key) is None


def test_keys_are_independent(store):
    a = derive_key("example.com", "/a")
    b = derive_key("example.com", "/b")
    store.put(a, b"A")
    store.put(b, b"B")
    store.delete(a)
    assert store.get(a) is None
    assert store.get(b).body == b"B"


# =============================================================================
# Filesystem backend
# =============================================================================

def test_file_layout_is_sharded(tmp_path):
    store = FileEntryStore(tmp_path)
    key = derive_key("example.com", "/page")
    store.put(key, b"body")

    prefix, remainder = shard_key(key)
    assert (tmp_path / prefix / remainder).read_bytes() == b"body"
    assert store.path_for(key) == tmp_path / prefix / remainder


def test_file_put_leaves_no_temp_files(tmp_path):
    store = FileEntryStore(tmp_path)
    key = derive_key("example.com", "/page")
    for i in range(3):
        store.put(key, f"version {i}".encode())

    shard = store.path_for(key).parent
    assert [p.name for p in shard.iterdir()] == [store.path_for(key).name]


def test_file_delete_keeps_shard_directory(tmp_path):
    store = FileEntryStore(tmp_path)
    key = derive_key("example.com", "/page")
    store.put(key, b"body")
    store.delete(key)
    assert store.path_for(key).parent.is_dir()
    assert store.count() == 0


def test_file_put_survives_delete_of_sibling_in_same_shard(tmp_path, monkeypatch):
    """A delete emptying the shard mid-put must not pull the directory away."""
    store = FileEntryStore(tmp_path)
    key = derive_key("example.com", "/page")
    prefix, _ = shard_key(key)
    sibling = next(
        candidate
        for candidate in (derive_key("example.com", f"/other/{i}") for i in range(100000))
        if shard_key(candidate)[0] == prefix and candidate != key
    )
    store.put(sibling, b"sibling")

    real_mkstemp = tempfile.mkstemp

    def mkstemp_after_delete(*args, **kwargs):
        store.delete(sibling)
        return real_mkstemp(*args, **kwargs)

    monkeypatch.setattr(tempfile, "mkstemp", mkstemp_after_delete)
    store.put(key, b"body")

    assert store.get(key).body == b"body"
    assert store.get(sibling) is None


def test_file_stored_at_is_mtime(tmp_path):
    store = FileEntryStore(tmp_path)
    key = derive_key("example.com", "/page")
    before = datetime.now(timezone.utc) - timedelta(seconds=2)
    store.put(key, b"body")
    stored_at = store.get(key).stored_at
    assert before <= stored_at <= datetime.now(timezone.utc) + timedelta(seconds=2)


def test_file_put_failure_raises_entry_store_error(tmp_path):
    store = FileEntryStore(tmp_path)
    key = derive_key("example.com", "/page")
    prefix, _ = shard_key(key)
    # A plain file where the shard directory should be
    (tmp_path / prefix).write_bytes(b"in the way")

    with pytest.raises(EntryStoreError) as exc_info:
        store.put(key, b"body")
    assert exc_info.value.operation == "put"
    assert isinstance(exc_info.value, OSError)


def test_file_root_must_be_a_directory(tmp_path):
    not_a_dir = tmp_path / "file"
    not_a_dir.write_text("x")
    with pytest.raises(EntryStoreError):
        FileEntryStore(not_a_dir)


# =============================================================================
# Clocked backends
# =============================================================================

def test_memory_store_stamps_with_clock():
    store = MemoryEntryStore(clock=lambda: FIXED_NOW)
    entry = store.put("k" * 64, b"body")
    assert entry.stored_at == FIXED_NOW
    assert store.get("k" * 64).stored_at == FIXED_NOW


def test_sqlite_store_persists_across_instances(tmp_path):
    db_path = tmp_path / "db" / "entries.db"
    key = derive_key("example.com", "/page")
    SQLiteEntryStore(db_path, clock=lambda: FIXED_NOW).put(key, b"body")

    entry = SQLiteEntryStore(db_path).get(key)
    assert entry.body == b"body"
    assert entry.stored_at == FIXED_NOW


def test_backends_must_implement_count():
    class NoCount(EntryStore):
        def get(self, key):
            return None

        def put(self, key, body):
            raise NotImplementedError

        def delete(self, key):
            pass

    with pytest.raises(TypeError):
        NoCount()
