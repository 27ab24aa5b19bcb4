"""
Entry store: content-addressed persistence of cached response bodies.

Keys are SHA-256 digests of the canonical request identity
(host + path + query). Three backends share one contract:

- FileEntryStore    sharded directory tree, atomic temp-file + rename
- MemoryEntryStore  process-local dict, for tests and single workers
- SQLiteEntryStore  single database file, one row per entry
"""
import hashlib
import logging
import os
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from pagecache.exceptions import EntryStoreError

from .core import CacheEntry

logger = logging.getLogger("cache.store")


def derive_key(host: str, path: str, query: str = "") -> str:
    """
    Hash the canonical request identity into an entry key.

    The scheme is deliberately not part of the identity.
    """
    identity = host.lower() + path
    if query:
        identity += "?" + query
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()


def shard_key(key: str) -> Tuple[str, str]:
    """Split a key into (prefix, remainder); the prefix is the first byte in hex."""
    return key[:2], key[2:]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntryStore(ABC):
    """
    Storage contract for cache entries.

    Implementations must make `put` atomic for readers: a concurrent
    `get` sees either the previous body or the new one, never a mix.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for `key`, or None when absent."""

    @abstractmethod
    def put(self, key: str, body: bytes) -> CacheEntry:
        """Write (or overwrite) the entry for `key`."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the entry for `key`. Absence is not an error."""

    @abstractmethod
    def count(self) -> int:
        """Number of stored entries."""


class FileEntryStore(EntryStore):
    """
    Filesystem store: one file per entry at `<root>/<prefix>/<remainder>`.

    The file's mtime is the entry's `stored_at`. Shard directories are
    created on demand and never removed.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise EntryStoreError("init", str(self.root), e) from e
        if not self.root.is_dir():
            raise EntryStoreError("init", str(self.root), NotADirectoryError(str(self.root)))

    def path_for(self, key: str) -> Path:
        prefix, remainder = shard_key(key)
        return self.root / prefix / remainder

    def get(self, key: str) -> Optional[CacheEntry]:
        path = self.path_for(key)
        try:
            with open(path, "rb") as f:
                body = f.read()
                mtime = os.fstat(f.fileno()).st_mtime
        except FileNotFoundError:
            return None
        except OSError as e:
            raise EntryStoreError("get", key, e) from e

        return CacheEntry(
            key=key,
            body=body,
            stored_at=datetime.fromtimestamp(mtime, tz=timezone.utc),
        )

    def put(self, key: str, body: bytes) -> CacheEntry:
        path = self.path_for(key)
        tmp_path: Optional[str] = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Temp file in the same directory so os.replace is a rename
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name[:8]}.", suffix=".tmp")
            with os.fdopen(fd, "wb") as f:
                f.write(body)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
            tmp_path = None
            stored_at = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        except OSError as e:
            raise EntryStoreError("put", key, e) from e
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.remove(tmp_path)

        logger.debug(f"Stored {len(body)} bytes at {path}")
        return CacheEntry(key=key, body=body, stored_at=stored_at)

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise EntryStoreError("delete", key, e) from e

    def count(self) -> int:
        return sum(
            1
            for shard in self.root.iterdir() if shard.is_dir()
            for entry in shard.iterdir() if not entry.name.startswith(".")
        )


class MemoryEntryStore(EntryStore):
    """In-process store. Entries are immutable, so swapping the dict slot is atomic."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock or _utcnow

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, body: bytes) -> CacheEntry:
        entry = CacheEntry(key=key, body=bytes(body), stored_at=self._clock())
        with self._lock:
            self._entries[key] = entry
        return entry

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def count(self) -> int:
        with self._lock:
            return len(self._entries)


SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    key TEXT PRIMARY KEY,
    body BLOB NOT NULL,
    stored_at TEXT NOT NULL
);
"""


class SQLiteEntryStore(EntryStore):
    """
    SQLite-backed store.

    Each `put` is a single INSERT OR REPLACE inside a transaction, which
    gives readers the same all-or-nothing view as a file rename.
    """

    def __init__(self, db_path: Path, clock: Optional[Callable[[], datetime]] = None):
        self.db_path = Path(db_path)
        self._clock = clock or _utcnow
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._get_connection() as conn:
                conn.executescript(SCHEMA)
                conn.commit()
        except (OSError, sqlite3.Error) as e:
            raise EntryStoreError("init", str(self.db_path), e) from e

    @contextmanager
    def _get_connection(self):
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        try:
            yield conn
        finally:
            conn.close()

    def get(self, key: str) -> Optional[CacheEntry]:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT body, stored_at FROM entries WHERE key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as e:
            raise EntryStoreError("get", key, e) from e

        if row is None:
            return None
        return CacheEntry(key=key, body=bytes(row[0]), stored_at=datetime.fromisoformat(row[1]))

    def put(self, key: str, body: bytes) -> CacheEntry:
        stored_at = self._clock()
        try:
            with self._get_connection() as conn:
                with conn:
                    conn.execute(
                        "INSERT OR REPLACE INTO entries (key, body, stored_at) VALUES (?, ?, ?)",
                        (key, sqlite3.Binary(body), stored_at.isoformat()),
                    )
        except sqlite3.Error as e:
            raise EntryStoreError("put", key, e) from e
        return CacheEntry(key=key, body=bytes(body), stored_at=stored_at)

    def delete(self, key: str) -> None:
        try:
            with self._get_connection() as conn:
                with conn:
                    conn.execute("DELETE FROM entries WHERE key = ?", (key,))
        except sqlite3.Error as e:
            raise EntryStoreError("delete", key, e) from e

    def count(self) -> int:
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0]
