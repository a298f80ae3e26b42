"""
Tests for the single-slot nonce registers.
"""
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from vaultseed.errors import NonceMismatch, UnknownIdentity, UnknownRecord
from vaultseed.nonces import KeyedLocks, generate_nonce

ADDR = "0x" + "ab" * 20


def test_generate_nonce_shape():
    n = generate_nonce()
    assert len(n) == 64
    int(n, 16)


def test_generate_nonce_unique():
    assert len({generate_nonce() for _ in range(200)}) == 200


class TestIdentityNonces:
    def test_issue_or_get_is_idempotent(self, nonces, store):
        n0 = nonces.issue_or_get(ADDR)
        assert nonces.issue_or_get(ADDR) == n0
        assert nonces.current(ADDR) == n0
        assert store.get_identity(ADDR).nonce == n0

    def test_current_unknown(self, nonces):
        assert nonces.current(ADDR) is None

    def test_rotate_replaces(self, nonces):
        n0 = nonces.issue_or_get(ADDR)
        n1 = nonces.rotate(ADDR, n0)
        assert n1 != n0
        assert nonces.current(ADDR) == n1

    def test_rotate_stale_expected(self, nonces):
        n0 = nonces.issue_or_get(ADDR)
        nonces.rotate(ADDR, n0)
        with pytest.raises(NonceMismatch):
            nonces.rotate(ADDR, n0)

    def test_rotate_unknown(self, nonces):
        with pytest.raises(UnknownIdentity):
            nonces.rotate(ADDR, "00" * 32)

    def test_concurrent_rotation_single_winner(self, nonces):
        n0 = nonces.issue_or_get(ADDR)
        barrier = threading.Barrier(8)

        def attempt(_):
            barrier.wait()
            try:
                nonces.rotate(ADDR, n0)
                return True
            except NonceMismatch:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(8)))

        assert results.count(True) == 1


class TestRecordNonces:
    def test_rotate_record(self, nonces, store):
        rec = store.create_record(ADDR, "t", "c", "k", "iv", "r0")
        assert nonces.current_for_record(rec.id) == "r0"
        r1 = nonces.rotate_record(rec.id, "r0")
        assert r1 != "r0"
        assert nonces.current_for_record(rec.id) == r1
        with pytest.raises(NonceMismatch):
            nonces.rotate_record(rec.id, "r0")

    def test_record_and_identity_nonces_are_independent(self, nonces, store):
        n0 = nonces.issue_or_get(ADDR)
        rec = store.create_record(ADDR, "t", "c", "k", "iv", "r0")
        nonces.rotate_record(rec.id, "r0")
        assert nonces.current(ADDR) == n0

    def test_rotate_unknown_record(self, nonces):
        with pytest.raises(UnknownRecord):
            nonces.rotate_record(99, "r0")


def test_keyed_locks_same_key_excludes():
    locks = KeyedLocks()
    entered = threading.Event()

    def other():
        with locks.hold("a"):
            entered.set()

    with locks.hold("a"):
        t = threading.Thread(target=other)
        t.start()
        assert not entered.wait(timeout=0.2)
        assert len(locks) == 1
    t.join(timeout=5)
    assert entered.is_set()
    assert len(locks) == 0


def test_keyed_locks_released_on_error():
    locks = KeyedLocks()
    with pytest.raises(RuntimeError):
        with locks.hold("a"):
            raise RuntimeError("boom")
    assert len(locks) == 0
    # still usable afterwards
    with locks.hold("a"):
        pass


def test_guard_leaves_nothing_behind(nonces):
    for i in range(1000):
        with nonces.guard("record", i):
            pass
    assert len(nonces._locks) == 0


def test_guard_is_per_key(nonces):
    with nonces.guard("identity", ADDR):
        # a different key must not block
        acquired = threading.Event()

        def other():
            with nonces.guard("record", 1):
                acquired.set()

        t = threading.Thread(target=other)
        t.start()
        t.join(timeout=5)
        assert acquired.is_set()
