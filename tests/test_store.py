#!/usr/bin/env python3
"""
Store tests: secret LRU, nonce check-and-set and eviction, swap registry.
"""

import sys
import os
import threading
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from relayer.core import Chain, SwapStatus
from relayer.errors import ValidationError
from relayer.store import SecretCache, SeenSet, InMemoryNonceStore, InMemoryCheckpointStore, SwapRegistry

from fakes import SECRET, SECRET_HASH, make_event


class TestSecretCache(unittest.TestCase):

    def test_evicts_least_recently_used(self):
        cache = SecretCache(max_size=2)
        cache.put("tx1", "s1")
        cache.put("tx2", "s2")
        self.assertEqual(cache.get("tx1"), "s1")   # tx2 is now oldest
        cache.put("tx3", "s3")
        self.assertIsNone(cache.get("tx2"))
        self.assertEqual(cache.get("tx1"), "s1")
        self.assertEqual(len(cache), 2)

    def test_stats_and_clear(self):
        cache = SecretCache(max_size=10)
        cache.put("tx1", "s1")
        cache.get("tx1")
        cache.get("missing")
        stats = cache.stats()
        self.assertEqual((stats["size"], stats["hits"], stats["misses"]), (1, 1, 1))
        cache.clear()
        self.assertEqual(len(cache), 0)


class TestSeenSet(unittest.TestCase):

    def test_bounded(self):
        seen = SeenSet(max_size=2)
        self.assertTrue(seen.add(("a", 0)))
        self.assertFalse(seen.add(("a", 0)))
        seen.add(("b", 0))
        seen.add(("c", 0))
        self.assertNotIn(("a", 0), seen)
        self.assertEqual(len(seen), 2)


class TestNonceStore(unittest.TestCase):

    def test_add_if_absent(self):
        store = InMemoryNonceStore()
        self.assertTrue(store.add_if_absent("n1", now=100))
        self.assertFalse(store.add_if_absent("n1", now=101))
        self.assertTrue(store.contains("n1"))

    def test_concurrent_add_single_winner(self):
        store = InMemoryNonceStore()
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(store.add_if_absent("same"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(results.count(True), 1)

    def test_cleanup_evicts_only_old(self):
        store = InMemoryNonceStore()
        store.add_if_absent("old", now=0)
        store.add_if_absent("recent", now=900)
        evicted = store.cleanup(now=1000, retention=300, max_entries=100)
        self.assertEqual(evicted, 1)
        self.assertFalse(store.contains("old"))
        self.assertTrue(store.contains("recent"))

    def test_cleanup_never_evicts_inside_retention(self):
        """Over the count cap, but everything is fresh: nothing is evicted."""
        store = InMemoryNonceStore()
        for i in range(5):
            store.add_if_absent(f"n{i}", now=990 + i)
        evicted = store.cleanup(now=1000, retention=300, max_entries=2)
        self.assertEqual(evicted, 0)
        self.assertEqual(len(store), 5)


class TestCheckpointStore(unittest.TestCase):

    def test_per_chain(self):
        store = InMemoryCheckpointStore()
        self.assertIsNone(store.get(Chain.ETHEREUM))
        store.set(Chain.ETHEREUM, 10)
        store.set(Chain.NEAR, 20)
        self.assertEqual(store.get(Chain.ETHEREUM), 10)
        self.assertEqual(store.get(Chain.NEAR), 20)


class TestSwapRegistry(unittest.TestCase):

    def test_forward_transitions(self):
        registry = SwapRegistry()
        self.assertTrue(registry.apply(make_event(status=SwapStatus.LOCKED)))
        self.assertTrue(registry.apply(make_event(status=SwapStatus.RELEASED, amount="0", secret=SECRET)))
        swap = registry.get(make_event().id)
        self.assertEqual(swap.status, SwapStatus.RELEASED)
        # Amount from the lock observation is kept
        self.assertEqual(swap.amount, "5000000000000000000")
        self.assertEqual(swap.secret, SECRET)

    def test_terminal_is_immutable(self):
        registry = SwapRegistry()
        registry.apply(make_event(status=SwapStatus.LOCKED))
        registry.apply(make_event(status=SwapStatus.REFUNDED))
        self.assertFalse(registry.apply(make_event(status=SwapStatus.RELEASED)))
        self.assertFalse(registry.apply(make_event(status=SwapStatus.LOCKED)))
        self.assertEqual(registry.get(make_event().id).status, SwapStatus.REFUNDED)

    def test_repeat_is_noop(self):
        registry = SwapRegistry()
        registry.apply(make_event())
        self.assertFalse(registry.apply(make_event()))

    def test_secret_hash_unique_per_chain(self):
        registry = SwapRegistry()
        registry.apply(make_event())
        other = make_event()
        other.id = "ethereum:other"
        with self.assertRaises(ValidationError):
            registry.apply(other)

    def test_same_hash_on_both_legs(self):
        registry = SwapRegistry()
        registry.apply(make_event(chain=Chain.ETHEREUM))
        registry.apply(make_event(chain=Chain.NEAR))
        self.assertIsNotNone(registry.find(Chain.ETHEREUM, SECRET_HASH))
        self.assertIsNotNone(registry.find(Chain.NEAR, SECRET_HASH.upper().replace("0X", "0x")))
        self.assertEqual(len(registry.list(SwapStatus.LOCKED)), 2)

    def test_failed_rollback(self):
        registry = SwapRegistry()
        registry.apply(make_event(status=SwapStatus.PENDING))
        registry.apply(make_event(status=SwapStatus.FAILED))
        self.assertFalse(registry.apply(make_event(status=SwapStatus.PENDING)))
        self.assertTrue(registry.apply(make_event(status=SwapStatus.PENDING), rollback=True))


if __name__ == "__main__":
    unittest.main(verbosity=2)
