"""
LunaPass - Storage Module

The content-addressed object store and the named-pointer store that the
record layer is built on.

- Objects are immutable; their ID (CID) is a hash of the stored bytes.
- Pointers are mutable names -> CID, last writer wins.

One database file holds two namespaces side by side:
- current: objects / pointers (blake2b CIDs)
- legacy:  legacy_objects / legacy_pointers (sha256 CIDs, read by migration)

The interface is async so callers can fan out (see entries.delete); the
SQLite implementation itself completes each call synchronously.
"""

import hashlib
import os
import sqlite3
from typing import Dict, NamedTuple, Optional

from .errors import StoreUnavailable


class Namespace(NamedTuple):
    objects: str
    pointers: str
    algorithm: str


CURRENT = Namespace("objects", "pointers", "blake2b")
LEGACY = Namespace("legacy_objects", "legacy_pointers", "sha256")


# =============================================================================
# DATABASE SCHEMA
# =============================================================================

SCHEMA = """
CREATE TABLE IF NOT EXISTS objects (
    cid TEXT PRIMARY KEY,
    data BLOB NOT NULL
);

CREATE TABLE IF NOT EXISTS pointers (
    name TEXT PRIMARY KEY,
    cid TEXT NOT NULL
);

-- Written by pre-keyring versions; only read (and backed up) by migration
CREATE TABLE IF NOT EXISTS legacy_objects (
    cid TEXT PRIMARY KEY,
    data BLOB NOT NULL
);

CREATE TABLE IF NOT EXISTS legacy_pointers (
    name TEXT PRIMARY KEY,
    cid TEXT NOT NULL
);
"""

PRAGMAS = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=FULL;
PRAGMA secure_delete=ON;
"""


def content_identifier(data: bytes, algorithm: str = CURRENT.algorithm) -> str:
    """Deterministic CID of stored bytes, e.g. 'blake2b:9f2c...'"""
    return f"{algorithm}:{hashlib.new(algorithm, data).hexdigest()}"


# =============================================================================
# INTERFACE
# =============================================================================

class ObjectStore:
    """Async object + pointer store interface."""

    algorithm: str = CURRENT.algorithm

    async def put(self, data: bytes) -> str:
        raise NotImplementedError

    async def get(self, cid: str) -> Optional[bytes]:
        raise NotImplementedError

    async def delete(self, cid: str) -> None:
        """Delete an object. Deleting an absent object is not an error."""
        raise NotImplementedError

    async def get_pointer(self, name: str) -> Optional[str]:
        raise NotImplementedError

    async def put_pointer(self, name: str, cid: str) -> None:
        raise NotImplementedError

    def backup(self, path: str) -> None:
        raise NotImplementedError(f"{type(self).__name__} cannot be backed up")

    def close(self) -> None:
        pass


# =============================================================================
# SQLITE
# =============================================================================

class SQLiteStore(ObjectStore):
    """
    Object store backed by one SQLite file.

    Usage:
        store = SQLiteStore.open("lunapass.db")
        legacy = store.namespace(LEGACY)     # same file, legacy tables
        cid = await store.put(b"...")
        store.close()
    """

    def __init__(self, conn: sqlite3.Connection, ns: Namespace = CURRENT):
        self.conn = conn
        self.ns = ns
        self.algorithm = ns.algorithm

    @classmethod
    def open(cls, db_path: str, must_exist: bool = False) -> "SQLiteStore":
        """
        Open (or create) a database file and apply schema + PRAGMAs.

        Raises:
            StoreUnavailable: If the file can't be opened, or must_exist is
                set and it doesn't exist
        """
        if must_exist and not os.path.exists(db_path):
            raise StoreUnavailable(f"Database not found: {db_path}")
        try:
            conn = sqlite3.connect(db_path)
            conn.executescript(PRAGMAS)
            conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open database {db_path}: {e}") from e
        return cls(conn)

    def namespace(self, ns: Namespace) -> "SQLiteStore":
        """Another view of the same file (shares the connection)."""
        return SQLiteStore(self.conn, ns)

    async def put(self, data: bytes) -> str:
        cid = content_identifier(data, self.algorithm)
        self._execute(
            f"INSERT OR IGNORE INTO {self.ns.objects} (cid, data) VALUES (?, ?)",
            (cid, data)
        )
        return cid

    async def get(self, cid: str) -> Optional[bytes]:
        row = self._execute(
            f"SELECT data FROM {self.ns.objects} WHERE cid = ?", (cid,)
        ).fetchone()
        return bytes(row[0]) if row else None

    async def delete(self, cid: str) -> None:
        self._execute(f"DELETE FROM {self.ns.objects} WHERE cid = ?", (cid,))

    async def get_pointer(self, name: str) -> Optional[str]:
        row = self._execute(
            f"SELECT cid FROM {self.ns.pointers} WHERE name = ?", (name,)
        ).fetchone()
        return row[0] if row else None

    async def put_pointer(self, name: str, cid: str) -> None:
        # No compare-and-swap: last writer wins
        self._execute(
            f"INSERT OR REPLACE INTO {self.ns.pointers} (name, cid) VALUES (?, ?)",
            (name, cid)
        )

    def backup(self, path: str) -> None:
        """Copy the whole database file (both namespaces) to `path`."""
        try:
            dest = sqlite3.connect(path)
            try:
                self.conn.backup(dest)
            finally:
                dest.close()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Backup to {path} failed: {e}") from e

    def close(self) -> None:
        self.conn.close()

    def _execute(self, sql: str, params: tuple) -> sqlite3.Cursor:
        try:
            cur = self.conn.execute(sql, params)
            self.conn.commit()
            return cur
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e


# =============================================================================
# IN-MEMORY
# =============================================================================

class MemoryStore(ObjectStore):
    """Dict-backed store for tests and throwaway sessions."""

    def __init__(self, algorithm: str = CURRENT.algorithm):
        self.algorithm = algorithm
        self.objects: Dict[str, bytes] = {}
        self.pointers: Dict[str, str] = {}

    async def put(self, data: bytes) -> str:
        cid = content_identifier(data, self.algorithm)
        self.objects[cid] = bytes(data)
        return cid

    async def get(self, cid: str) -> Optional[bytes]:
        return self.objects.get(cid)

    async def delete(self, cid: str) -> None:
        self.objects.pop(cid, None)

    async def get_pointer(self, name: str) -> Optional[str]:
        return self.pointers.get(name)

    async def put_pointer(self, name: str, cid: str) -> None:
        self.pointers[name] = cid
