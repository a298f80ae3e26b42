"""
vaultseed/nonces.py

Single-slot nonce registers for identities and records.

Exactly one nonce is live per identity (and per record). Issuing a new one
invalidates the previous one; no history is kept, so this is not a replay
window: a signature over anything but the live nonce is simply stale.

check-then-rotate must be one critical section per key. guard() gives a
per-key lock for that; rotation itself is also a compare-and-swap in the
store, so even a caller that forgets the guard cannot double-spend a nonce.
"""

import logging
import secrets
import threading
from contextlib import contextmanager
from typing import Dict, Optional

from .errors import NonceMismatch, UnknownIdentity, UnknownRecord
from .storage import Store

logger = logging.getLogger(__name__)

NONCE_BYTES = 32


def generate_nonce() -> str:
    """256 bits from the OS CSPRNG, hex encoded (64 chars)."""
    return secrets.token_hex(NONCE_BYTES)


class KeyedLocks:
    """
    Lock per key, created on first use and dropped when the last holder
    releases it, so the map only holds keys that are currently in use.
    """

    def __init__(self):
        # key -> [lock, holders]
        self._locks: Dict[str, list] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class NonceStore:
    def __init__(self, store: Store):
        self._store = store
        self._locks = KeyedLocks()

    def guard(self, kind: str, key):
        """Per-key critical section, e.g. guard("identity", addr) or guard("record", 42)."""
        return self._locks.hold(f"{kind}:{key}")

    # -------------------------------------------------------------------------
    # identities
    # -------------------------------------------------------------------------
    def current(self, address: str) -> Optional[str]:
        ident = self._store.get_identity(address)
        return ident.nonce if ident else None

    def issue_or_get(self, address: str) -> str:
        ident = self._store.get_identity(address)
        if ident is not None:
            return ident.nonce
        # insert-or-ignore: a concurrent provisioner wins and we return its nonce
        ident = self._store.create_identity(address, generate_nonce())
        logger.info("provisioned identity %s", address)
        return ident.nonce

    def rotate(self, address: str, expected: str) -> str:
        """Replace `expected` with a fresh nonce. NonceMismatch if it is no longer live."""
        new = generate_nonce()
        if not self._store.swap_identity_nonce(address, expected, new):
            if self._store.get_identity(address) is None:
                raise UnknownIdentity(address)
            raise NonceMismatch(f"identity nonce already rotated: {address}")
        return new

    # -------------------------------------------------------------------------
    # records
    # -------------------------------------------------------------------------
    def current_for_record(self, record_id: int) -> Optional[str]:
        rec = self._store.get_record(record_id)
        return rec.nonce if rec else None

    def rotate_record(self, record_id: int, expected: str) -> str:
        new = generate_nonce()
        if not self._store.swap_record_nonce(record_id, expected, new):
            if self._store.get_record(record_id) is None:
                raise UnknownRecord(str(record_id))
            raise NonceMismatch(f"record nonce already rotated: {record_id}")
        return new
