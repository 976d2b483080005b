"""
Tests for the replay caches.
"""
import threading

import pytest

from pluginpay_gateway.auth.nonce import InMemoryNonceStore, TTLNonceStore

ADDR = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"


class TestInMemoryNonceStore:

    def test_first_insert_accepted_second_rejected(self):
        store = InMemoryNonceStore()
        assert store.check_and_insert(ADDR, 1700000000000) is True
        assert store.check_and_insert(ADDR, 1700000000000) is False

    def test_address_case_is_ignored(self):
        store = InMemoryNonceStore()
        assert store.check_and_insert(ADDR, 1) is True
        assert store.check_and_insert(ADDR.lower(), 1) is False
        assert (ADDR.upper().replace("0X", "0x"), 1) in store

    def test_distinct_timestamps_are_distinct(self):
        store = InMemoryNonceStore()
        assert store.check_and_insert(ADDR, 1)
        assert store.check_and_insert(ADDR, 2)
        assert len(store) == 2

    def test_evicts_oldest_half_when_over_capacity(self):
        store = InMemoryNonceStore(max_entries=10)
        for ts in range(11):
            assert store.check_and_insert(ADDR, ts)

        # 11 entries > 10, oldest 5 dropped
        assert len(store) == 6
        for ts in range(5):
            assert (ADDR, ts) not in store
        for ts in range(5, 11):
            assert (ADDR, ts) in store

    def test_rejects_tiny_capacity(self):
        with pytest.raises(ValueError):
            InMemoryNonceStore(max_entries=1)

    def test_concurrent_inserts_admit_exactly_one(self):
        store = InMemoryNonceStore()
        results = []
        barrier = threading.Barrier(16)

        def worker():
            barrier.wait()
            results.append(store.check_and_insert(ADDR, 42))

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 15


class TestTTLNonceStore:

    def test_replay_rejected_within_ttl(self):
        store = TTLNonceStore(ttl_seconds=300)
        assert store.check_and_insert(ADDR, 5) is True
        assert store.check_and_insert(ADDR, 5) is False
        assert (ADDR, 5) in store
        assert len(store) == 1

    def test_entries_expire(self):
        store = TTLNonceStore(ttl_seconds=300)
        assert store.check_and_insert(ADDR, 5)

        # Advance the cache's own timer past the retention period
        now = store._cache.timer()
        store._cache.expire(now + 601)

        assert (ADDR, 5) not in store
        assert store.check_and_insert(ADDR, 5) is True
