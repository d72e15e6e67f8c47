#!/usr/bin/env python3
"""
Chain monitor tests: checkpointing, degraded mode, dedupe, webhook path.
"""

import sys
import os
import time
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from relayer.core import Chain, SwapStatus
from relayer.errors import TransientChainError, ValidationError
from relayer.monitor import ChainMonitor, MonitorConfig, MonitorState
from relayer.store import InMemoryCheckpointStore, SwapRegistry

from fakes import FakeChainClient, FakeSubscription, make_event


class MonitorTestCase(unittest.TestCase):

    def setUp(self):
        self.client = FakeChainClient(Chain.ETHEREUM, head=100)
        self.checkpoints = InMemoryCheckpointStore({Chain.ETHEREUM: 90})
        self.registry = SwapRegistry()
        self.received = []
        self.monitor = ChainMonitor(
            self.client, self.received.append, self.checkpoints, self.registry,
            MonitorConfig(poll_interval=3600, use_subscription=False),
        )


class TestPolling(MonitorTestCase):

    def test_delivers_range_in_block_order(self):
        late = make_event(block=95, log_index=1, secret_hash="0x" + "02" * 32)
        early = make_event(block=92, log_index=0, secret_hash="0x" + "01" * 32)
        self.client.events = [late, early]

        self.assertEqual(self.monitor.poll_once(), 2)
        self.assertEqual([e.block_ref for e in self.received], [92, 95])
        self.assertEqual(self.client.fetches, [(91, 100)])
        self.assertEqual(self.checkpoints.get(Chain.ETHEREUM), 100)
        self.assertEqual(self.monitor.state, MonitorState.POLLING)

    def test_registry_updated_before_consumer(self):
        seen_status = []
        self.monitor.consumer = lambda e: seen_status.append(self.registry.get(e.id).status)
        self.client.events = [make_event(block=95)]
        self.monitor.poll_once()
        self.assertEqual(seen_status, [SwapStatus.LOCKED])

    def test_nothing_new(self):
        self.checkpoints.set(Chain.ETHEREUM, 100)
        self.assertEqual(self.monitor.poll_once(), 0)
        self.assertEqual(self.client.fetches, [])

    def test_confirmation_depth(self):
        self.monitor.config.confirmation_depth = 5
        self.monitor.poll_once()
        self.assertEqual(self.client.fetches, [(91, 95)])
        self.assertEqual(self.checkpoints.get(Chain.ETHEREUM), 95)

    def test_range_is_bounded(self):
        self.monitor.config.max_blocks_per_tick = 4
        self.monitor.poll_once()
        self.assertEqual(self.client.fetches, [(91, 94)])
        self.assertEqual(self.checkpoints.get(Chain.ETHEREUM), 94)

    def test_first_start_begins_behind_head(self):
        checkpoints = InMemoryCheckpointStore()
        monitor = ChainMonitor(self.client, self.received.append, checkpoints, self.registry,
                               MonitorConfig(start_offset_blocks=10, use_subscription=False))
        monitor.poll_once()
        self.assertEqual(self.client.fetches, [(91, 100)])

    def test_consumer_errors_are_isolated(self):
        self.client.events = [
            make_event(block=92, secret_hash="0x" + "01" * 32),
            make_event(block=93, secret_hash="0x" + "02" * 32),
        ]
        consumer = MagicMock(side_effect=[RuntimeError("boom"), None])
        self.monitor.consumer = consumer
        self.assertEqual(self.monitor.poll_once(), 2)
        self.assertEqual(consumer.call_count, 2)
        self.assertEqual(self.checkpoints.get(Chain.ETHEREUM), 100)


class TestDegraded(MonitorTestCase):

    def test_fetch_failure_keeps_checkpoint(self):
        """A failed range is not half-processed: nothing delivered, checkpoint unchanged."""
        self.client.events = [make_event(block=92)]
        self.client.events_error = TransientChainError("rate limited")

        self.assertEqual(self.monitor.poll_once(), 0)
        self.assertEqual(self.monitor.state, MonitorState.DEGRADED)
        self.assertEqual(self.checkpoints.get(Chain.ETHEREUM), 90)
        self.assertEqual(self.received, [])
        self.assertIn("rate limited", self.monitor.get_status()["last_error"])

        # Next tick recovers and covers the same range
        self.client.events_error = None
        self.assertEqual(self.monitor.poll_once(), 1)
        self.assertEqual(self.monitor.state, MonitorState.POLLING)
        self.assertEqual(self.client.fetches, [(91, 100), (91, 100)])

    def test_head_failure(self):
        self.client.head_error = TransientChainError("node down")
        self.monitor.poll_once()
        self.assertEqual(self.monitor.state, MonitorState.DEGRADED)
        self.assertEqual(self.checkpoints.get(Chain.ETHEREUM), 90)

    def test_unexpected_error_degrades(self):
        self.client.events_error = RuntimeError("bad response")
        self.monitor.poll_once()
        self.assertEqual(self.monitor.state, MonitorState.DEGRADED)


class TestDedupe(MonitorTestCase):

    def test_same_event_twice(self):
        event = make_event(block=95, tx_ref="0xabc", log_index=3)
        self.client.events = [event]
        self.monitor.poll_once()

        # Same log pushed again via webhook
        self.assertFalse(self.monitor.ingest(make_event(block=95, tx_ref="0xabc", log_index=3)))
        self.assertEqual(len(self.received), 1)
        self.assertEqual(self.monitor.get_status()["duplicates"], 1)

    def test_reprocessed_range_not_redelivered(self):
        self.client.events = [make_event(block=95)]
        self.monitor.poll_once()
        self.checkpoints.set(Chain.ETHEREUM, 90)
        self.assertEqual(self.monitor.poll_once(), 0)
        self.assertEqual(len(self.received), 1)


class TestWebhook(MonitorTestCase):

    def test_ingest_delivers(self):
        self.assertTrue(self.monitor.ingest(make_event(block=0, tx_ref="")))
        self.assertEqual(len(self.received), 1)
        self.assertIsNotNone(self.registry.get(self.received[0].id))

    def test_wrong_chain_rejected(self):
        with self.assertRaises(ValidationError):
            self.monitor.ingest(make_event(chain=Chain.NEAR))

    def test_conflicting_hash_not_forwarded(self):
        self.monitor.ingest(make_event(tx_ref="0x1"))
        conflict = make_event(tx_ref="0x2")
        conflict.id = "ethereum:someone-else"
        self.assertFalse(self.monitor.ingest(conflict))
        self.assertEqual(len(self.received), 1)


class TestLifecycle(MonitorTestCase):

    def test_start_stop(self):
        self.client.events = [make_event(block=95)]
        self.monitor.start()
        deadline = time.time() + 5
        while not self.received and time.time() < deadline:
            time.sleep(0.01)
        self.monitor.stop()
        self.assertEqual(len(self.received), 1)
        self.assertEqual(self.monitor.state, MonitorState.STOPPED)

    def test_subscription_wakes_poller(self):
        subscription = FakeSubscription()
        self.client.subscription = subscription
        monitor = ChainMonitor(
            self.client, self.received.append, self.checkpoints, self.registry,
            MonitorConfig(poll_interval=3600, subscription_interval=0.01),
        )
        monitor.start()
        deadline = time.time() + 5
        while not self.client.fetches and time.time() < deadline:
            time.sleep(0.01)

        # First tick done; a new log arrives and is picked up without waiting an hour
        self.client.head = 101
        event = make_event(block=101)
        self.client.events = [event]
        subscription.batches.append([event])
        while not self.received and time.time() < deadline:
            time.sleep(0.01)
        monitor.stop()

        self.assertEqual(len(self.received), 1)
        self.assertTrue(subscription.closed)


class BrokenSubscription(FakeSubscription):
    """Fails on the first read, like a filter the node has forgotten."""

    def get_new_events(self):
        raise RuntimeError("filter not found")


class TestSubscriptionRecovery(MonitorTestCase):

    def run_monitor(self, subscriptions, until):
        attempts = []

        def subscribe():
            attempts.append(time.time())
            result = subscriptions[min(len(attempts), len(subscriptions)) - 1]
            if isinstance(result, Exception):
                raise result
            return result

        self.client.subscribe = subscribe
        monitor = ChainMonitor(
            self.client, self.received.append, self.checkpoints, self.registry,
            MonitorConfig(poll_interval=3600, subscription_interval=0.01),
        )
        monitor.start()
        deadline = time.time() + 5
        while not until(attempts) and time.time() < deadline:
            time.sleep(0.01)
        return monitor, attempts

    def test_subscribe_error_is_retried(self):
        subscription = FakeSubscription()
        monitor, attempts = self.run_monitor(
            [RuntimeError("eth_newFilter not supported"), subscription],
            until=lambda attempts: len(attempts) >= 2,
        )
        self.client.head = 101
        event = make_event(block=101)
        self.client.events = [event]
        subscription.batches.append([event])
        deadline = time.time() + 5
        while not self.received and time.time() < deadline:
            time.sleep(0.01)
        monitor.stop()

        self.assertGreaterEqual(len(attempts), 2)
        self.assertEqual(len(self.received), 1)
        self.assertTrue(subscription.closed)

    def test_dropped_subscription_is_reopened(self):
        broken, healthy = BrokenSubscription(), FakeSubscription()
        monitor, attempts = self.run_monitor(
            [broken, healthy],
            until=lambda attempts: len(attempts) >= 2,
        )
        monitor.stop()

        self.assertGreaterEqual(len(attempts), 2)
        self.assertTrue(broken.closed)
        self.assertTrue(healthy.closed)


if __name__ == "__main__":
    unittest.main(verbosity=2)
