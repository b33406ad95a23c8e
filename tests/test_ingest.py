"""
Ingest Engine Tests

Idempotence, failure isolation, evidence storage and range checks of the
bounded-concurrency block fetcher.
"""

import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest import mock

from fakes import FakeChainClient, make_block

from vset_detect.config import ChainConfig, ConfigError
from vset_detect.ingest import SUBMIT_WINDOW, IngestEngine, index_block
from vset_detect.models import Block
from vset_detect.store import BlockCache, block_key, evidence_key


class IngestTestCase(unittest.TestCase):

    def setUp(self):
        self.cache = BlockCache(":memory:")
        self.config = ChainConfig(name="neutron", rpc_addr="http://neutron:26657", min_height=5)
        self.client = FakeChainClient("neutron")
        self.client.add_chain({h: "HA" for h in range(1, 31)}, {"HA": []})

    def tearDown(self):
        self.cache.close()

    def snapshot(self):
        return dict(self.cache.scan_prefix("neutron:"))


class TestIndexBlock(IngestTestCase):

    def test_fetches_and_stores(self):
        self.assertTrue(index_block(self.cache, self.client, "neutron", 7))

        stored = Block.from_json(self.cache.get(block_key("neutron", 7)))
        self.assertEqual(stored, self.client.blocks[7])
        self.assertFalse(self.cache.has(evidence_key("neutron", 7)))

    def test_skips_cached_block(self):
        index_block(self.cache, self.client, "neutron", 7)
        self.assertFalse(index_block(self.cache, self.client, "neutron", 7))
        self.assertEqual(self.client.block_calls, [7])

    def test_force_refetches(self):
        index_block(self.cache, self.client, "neutron", 7)
        self.client.blocks[7] = make_block(7, "HB")

        self.assertTrue(index_block(self.cache, self.client, "neutron", 7, force=True))

        stored = Block.from_json(self.cache.get(block_key("neutron", 7)))
        self.assertEqual(stored.validators_hash, "HB")

    def test_stores_evidence(self):
        self.client.evidence[8] = b'[{"type": "tendermint/DuplicateVoteEvidence"}]'

        index_block(self.cache, self.client, "neutron", 8)

        self.assertEqual(self.cache.get(evidence_key("neutron", 8)), self.client.evidence[8])


class TestIngestEngine(IngestTestCase):

    def test_covers_inclusive_range(self):
        result = IngestEngine(self.config, self.client, self.cache, concurrency=4).ingest(to_height=12)

        self.assertEqual(result.indexed, list(range(5, 13)))
        self.assertEqual(result.total, 8)
        for height in range(5, 13):
            self.assertTrue(self.cache.has(block_key("neutron", height)))
        self.assertFalse(self.cache.has(block_key("neutron", 4)))
        self.assertFalse(self.cache.has(block_key("neutron", 13)))

    def test_defaults_to_latest_height(self):
        result = IngestEngine(self.config, self.client, self.cache).ingest()
        self.assertEqual((result.from_height, result.to_height), (5, 30))

    def test_second_run_is_idempotent(self):
        engine = IngestEngine(self.config, self.client, self.cache, concurrency=8)
        engine.ingest()
        before = self.snapshot()
        calls = len(self.client.block_calls)

        result = engine.ingest()

        self.assertEqual(self.snapshot(), before)
        self.assertEqual(len(self.client.block_calls), calls)
        self.assertEqual(result.indexed, [])
        self.assertEqual(result.skipped, list(range(5, 31)))

    def test_failures_are_isolated(self):
        self.client.failing_heights = {9, 17}

        result = IngestEngine(self.config, self.client, self.cache, concurrency=4).ingest()

        self.assertEqual(sorted(result.failed), [9, 17])
        self.assertFalse(result.ok)
        self.assertFalse(self.cache.has(block_key("neutron", 9)))
        self.assertTrue(self.cache.has(block_key("neutron", 10)))
        self.assertEqual(len(result.indexed), 26 - 2)

    def test_rerun_only_fetches_missing_heights(self):
        self.client.failing_heights = {9, 17}
        engine = IngestEngine(self.config, self.client, self.cache, concurrency=4)
        engine.ingest()

        self.client.failing_heights = set()
        self.client.block_calls.clear()
        result = engine.ingest()

        self.assertEqual(sorted(self.client.block_calls), [9, 17])
        self.assertEqual(result.indexed, [9, 17])
        self.assertTrue(result.ok)

    def test_concurrency_is_bounded(self):
        active = 0
        peak = 0
        lock = threading.Lock()
        get_block = self.client.get_block

        def slow_get_block(height):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.01)
            with lock:
                active -= 1
            return get_block(height)

        self.client.get_block = slow_get_block

        IngestEngine(self.config, self.client, self.cache, concurrency=3).ingest()

        self.assertLessEqual(peak, 3)
        self.assertGreater(peak, 0)

    def test_submitted_futures_are_bounded(self):
        outstanding = set()
        peak = 0
        lock = threading.Lock()
        get_block = self.client.get_block

        def slow_get_block(height):
            time.sleep(0.005)
            return get_block(height)

        class CountingExecutor(ThreadPoolExecutor):
            def submit(self, fn, *args, **kwargs):
                nonlocal peak
                future = super().submit(fn, *args, **kwargs)
                with lock:
                    outstanding.add(future)
                    peak = max(peak, len(outstanding))
                future.add_done_callback(finished)
                return future

        def finished(future):
            with lock:
                outstanding.discard(future)

        self.client.get_block = slow_get_block

        with mock.patch("vset_detect.ingest.ThreadPoolExecutor", CountingExecutor):
            result = IngestEngine(self.config, self.client, self.cache, concurrency=2).ingest()

        self.assertTrue(result.ok)
        self.assertEqual(len(result.indexed), 26)
        self.assertLessEqual(peak, 2 * SUBMIT_WINDOW)

    def test_progress_called_per_height(self):
        seen = []
        IngestEngine(self.config, self.client, self.cache).ingest(to_height=10, progress=seen.append)
        self.assertEqual(sorted(seen), list(range(5, 11)))


class TestIngestRange(IngestTestCase):

    def test_min_height_above_latest(self):
        config = ChainConfig(name="neutron", rpc_addr="http://neutron:26657", min_height=31)
        with self.assertRaises(ConfigError):
            IngestEngine(config, self.client, self.cache).ingest()
        self.assertEqual(self.client.block_calls, [])

    def test_upper_bound_above_latest(self):
        with self.assertRaises(ConfigError):
            IngestEngine(self.config, self.client, self.cache).ingest(to_height=31)

    def test_empty_range(self):
        with self.assertRaises(ConfigError):
            IngestEngine(self.config, self.client, self.cache).ingest(from_height=10, to_height=9)

    def test_invalid_concurrency(self):
        with self.assertRaises(ValueError):
            IngestEngine(self.config, self.client, self.cache, concurrency=0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
