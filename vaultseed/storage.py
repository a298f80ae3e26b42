# vaultseed/storage.py
#
# Identity + encrypted record persistence.
#
# Two backends with one contract:
#   - InMemoryStore : dicts behind a lock (dev / tests / single process)
#   - SqliteStore   : stdlib sqlite3, WAL, survives restarts
#
# Nonce columns are only ever changed through swap_*_nonce(), which is a
# compare-and-swap: the write happens only if the stored value still equals the
# nonce the caller verified. That makes rotation atomic even across processes
# sharing one SQLite file; per-key locks in nonces.py serialize within a process.
#
# Ciphertext fields are write-once. There is no update path for them.

import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional

from .errors import StorageFailure


@dataclass
class Identity:
    address: str
    nonce: str
    public_key: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0


@dataclass
class EncryptedRecord:
    id: int
    owner: str
    title: str
    ciphertext: str
    wrapped_key: str
    iv: str
    nonce: str
    created_at: int = 0

    def public_view(self):
        # listing never exposes ciphertext or the nonce
        return {"id": self.id, "title": self.title, "created_at": self.created_at}


class Store:
    """Storage contract consumed by NonceStore, Authenticator and ContentAccessController."""

    def get_identity(self, address: str) -> Optional[Identity]:
        raise NotImplementedError

    def create_identity(self, address: str, nonce: str) -> Identity:
        """Insert if absent; return whatever is stored afterwards."""
        raise NotImplementedError

    def swap_identity_nonce(self, address: str, expected: str, new: str) -> bool:
        raise NotImplementedError

    def set_public_key(self, address: str, public_key: str) -> None:
        raise NotImplementedError

    def create_record(
        self, owner: str, title: str, ciphertext: str, wrapped_key: str, iv: str, nonce: str
    ) -> EncryptedRecord:
        raise NotImplementedError

    def get_record(self, record_id: int) -> Optional[EncryptedRecord]:
        raise NotImplementedError

    def list_records(self, owner: str) -> List[EncryptedRecord]:
        raise NotImplementedError

    def swap_record_nonce(self, record_id: int, expected: str, new: str) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        pass


# -----------------------------------------------------------------------------
# In-memory backend
# -----------------------------------------------------------------------------
class InMemoryStore(Store):
    def __init__(self):
        self.identities: Dict[str, Identity] = {}
        self.records: Dict[int, EncryptedRecord] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    # Callers get copies so nobody can mutate a nonce outside swap_*.
    def get_identity(self, address: str) -> Optional[Identity]:
        with self._lock:
            ident = self.identities.get(address)
            return replace(ident) if ident else None

    def create_identity(self, address: str, nonce: str) -> Identity:
        now = int(time.time())
        with self._lock:
            ident = self.identities.get(address)
            if ident is None:
                ident = Identity(address=address, nonce=nonce, created_at=now, updated_at=now)
                self.identities[address] = ident
            return replace(ident)

    def swap_identity_nonce(self, address: str, expected: str, new: str) -> bool:
        with self._lock:
            ident = self.identities.get(address)
            if ident is None or ident.nonce != expected:
                return False
            ident.nonce = new
            ident.updated_at = int(time.time())
            return True

    def set_public_key(self, address: str, public_key: str) -> None:
        with self._lock:
            ident = self.identities.get(address)
            if ident:
                ident.public_key = public_key
                ident.updated_at = int(time.time())

    def create_record(self, owner, title, ciphertext, wrapped_key, iv, nonce) -> EncryptedRecord:
        with self._lock:
            rec = EncryptedRecord(
                id=self._next_id,
                owner=owner,
                title=title,
                ciphertext=ciphertext,
                wrapped_key=wrapped_key,
                iv=iv,
                nonce=nonce,
                created_at=int(time.time()),
            )
            self.records[rec.id] = rec
            self._next_id += 1
            return replace(rec)

    def get_record(self, record_id: int) -> Optional[EncryptedRecord]:
        with self._lock:
            rec = self.records.get(record_id)
            return replace(rec) if rec else None

    def list_records(self, owner: str) -> List[EncryptedRecord]:
        with self._lock:
            out = [replace(r) for r in self.records.values() if r.owner == owner]
        # newest first; id breaks ties within the same second
        out.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return out

    def swap_record_nonce(self, record_id: int, expected: str, new: str) -> bool:
        with self._lock:
            rec = self.records.get(record_id)
            if rec is None or rec.nonce != expected:
                return False
            rec.nonce = new
            return True


# -----------------------------------------------------------------------------
# SQLite backend
# -----------------------------------------------------------------------------
# INTEGER PRIMARY KEY is a signed 64-bit rowid
_MAX_ROWID = 2**63 - 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS identities (
    address     TEXT PRIMARY KEY,
    public_key  TEXT,
    nonce       TEXT NOT NULL,
    created_at  INTEGER NOT NULL,
    updated_at  INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS records (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    owner        TEXT NOT NULL,
    title        TEXT NOT NULL,
    ciphertext   TEXT NOT NULL,
    wrapped_key  TEXT NOT NULL,
    iv           TEXT NOT NULL,
    nonce        TEXT NOT NULL,
    created_at   INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_records_owner ON records(owner);
"""


class SqliteStore(Store):
    """
    SQLite-backed store.

    One connection per thread (sqlite3 connections are not shareable across
    threads by default and FastAPI runs sync endpoints in a threadpool).
    Every sqlite3.Error is surfaced as StorageFailure.
    """

    def __init__(self, path):
        self.path = Path(path)
        self._local = threading.local()
        self._conns: List[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()
        with self._transaction() as conn:
            conn.executescript(_SCHEMA)

    def _connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self.path), check_same_thread=False)
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
            except (sqlite3.Error, OSError) as e:
                raise StorageFailure(f"cannot open store: {e}") from e
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._conns_lock:
                self._conns.append(conn)
        return conn

    @contextmanager
    def _transaction(self):
        conn = self._connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageFailure(str(e)) from e

    @staticmethod
    def _identity(row) -> Identity:
        return Identity(
            address=row["address"],
            nonce=row["nonce"],
            public_key=row["public_key"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _record(row) -> EncryptedRecord:
        return EncryptedRecord(
            id=row["id"],
            owner=row["owner"],
            title=row["title"],
            ciphertext=row["ciphertext"],
            wrapped_key=row["wrapped_key"],
            iv=row["iv"],
            nonce=row["nonce"],
            created_at=row["created_at"],
        )

    def get_identity(self, address: str) -> Optional[Identity]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM identities WHERE address = ?", (address,)).fetchone()
        return self._identity(row) if row else None

    def create_identity(self, address: str, nonce: str) -> Identity:
        now = int(time.time())
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO identities (address, public_key, nonce, created_at, updated_at) "
                "VALUES (?, NULL, ?, ?, ?)",
                (address, nonce, now, now),
            )
            row = conn.execute("SELECT * FROM identities WHERE address = ?", (address,)).fetchone()
        return self._identity(row)

    def swap_identity_nonce(self, address: str, expected: str, new: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE identities SET nonce = ?, updated_at = ? WHERE address = ? AND nonce = ?",
                (new, int(time.time()), address, expected),
            )
            return cur.rowcount == 1

    def set_public_key(self, address: str, public_key: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE identities SET public_key = ?, updated_at = ? WHERE address = ?",
                (public_key, int(time.time()), address),
            )

    def create_record(self, owner, title, ciphertext, wrapped_key, iv, nonce) -> EncryptedRecord:
        now = int(time.time())
        with self._transaction() as conn:
            cur = conn.execute(
                "INSERT INTO records (owner, title, ciphertext, wrapped_key, iv, nonce, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (owner, title, ciphertext, wrapped_key, iv, nonce, now),
            )
            record_id = cur.lastrowid
        return EncryptedRecord(
            id=record_id,
            owner=owner,
            title=title,
            ciphertext=ciphertext,
            wrapped_key=wrapped_key,
            iv=iv,
            nonce=nonce,
            created_at=now,
        )

    def get_record(self, record_id: int) -> Optional[EncryptedRecord]:
        if not 0 < record_id <= _MAX_ROWID:
            return None
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM records WHERE id = ?", (record_id,)).fetchone()
        return self._record(row) if row else None

    def list_records(self, owner: str) -> List[EncryptedRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM records WHERE owner = ? ORDER BY created_at DESC, id DESC",
                (owner,),
            ).fetchall()
        return [self._record(r) for r in rows]

    def swap_record_nonce(self, record_id: int, expected: str, new: str) -> bool:
        if not 0 < record_id <= _MAX_ROWID:
            return False
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE records SET nonce = ? WHERE id = ? AND nonce = ?",
                (new, record_id, expected),
            )
            return cur.rowcount == 1

    def close(self) -> None:
        with self._conns_lock:
            for conn in self._conns:
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
            self._conns.clear()
        self._local = threading.local()


def open_store(settings) -> Store:
    if settings.STORE_BACKEND == "sqlite":
        return SqliteStore(settings.SQLITE_PATH)
    return InMemoryStore()
