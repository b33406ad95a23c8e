"""
Block Cache Tests
"""

import os
import tempfile
import threading
import unittest

import fakes  # noqa: F401

from vset_detect.store import (
    BlockCache,
    CacheError,
    KeyNotFoundError,
    block_key,
    evidence_key,
    height_from_key,
    prefix,
    validators_key,
)


class TestKeys(unittest.TestCase):

    def test_layout(self):
        self.assertEqual(block_key("provider", 42), "provider:block:42")
        self.assertEqual(evidence_key("neutron", 7), "neutron:evidence:7")
        self.assertEqual(validators_key("stride", 0), "stride:validators:0")
        self.assertEqual(prefix("provider", "evidence"), "provider:evidence:")

    def test_height_from_key(self):
        self.assertEqual(height_from_key("provider:evidence:123"), 123)
        with self.assertRaises(ValueError):
            height_from_key("provider:other:123")
        with self.assertRaises(ValueError):
            height_from_key("garbage")

    def test_unknown_kind(self):
        with self.assertRaises(ValueError):
            prefix("provider", "blocks")


class TestBlockCache(unittest.TestCase):

    def setUp(self):
        self.cache = BlockCache(":memory:")

    def tearDown(self):
        self.cache.close()

    def test_put_get_has(self):
        self.assertFalse(self.cache.has("provider:block:1"))
        self.cache.put("provider:block:1", b"data")
        self.assertTrue(self.cache.has("provider:block:1"))
        self.assertEqual(self.cache.get("provider:block:1"), b"data")

    def test_get_missing_raises(self):
        with self.assertRaises(KeyNotFoundError) as ctx:
            self.cache.get("provider:block:1")
        self.assertIsInstance(ctx.exception, CacheError)
        self.assertIsInstance(ctx.exception, KeyError)
        self.assertEqual(ctx.exception.key, "provider:block:1")

    def test_put_overwrites(self):
        self.cache.put("k", b"one")
        self.cache.put("k", b"two")
        self.assertEqual(self.cache.get("k"), b"two")

    def test_chains_do_not_collide(self):
        self.cache.put(block_key("provider", 5), b"provider")
        self.cache.put(block_key("neutron", 5), b"neutron")
        self.assertEqual(self.cache.get(block_key("provider", 5)), b"provider")
        self.assertEqual(self.cache.get(block_key("neutron", 5)), b"neutron")

    def test_scan_prefix(self):
        self.cache.put("provider:evidence:10", b"a")
        self.cache.put("provider:evidence:9", b"b")
        self.cache.put("provider:block:9", b"c")
        self.cache.put("providerx:evidence:1", b"d")
        self.cache.put("neutron:evidence:3", b"e")

        entries = list(self.cache.scan_prefix("provider:evidence:"))

        self.assertEqual(entries, [("provider:evidence:10", b"a"), ("provider:evidence:9", b"b")])

    def test_prefix_with_wildcard_characters(self):
        self.cache.put("a_b:block:1", b"x")
        self.cache.put("axb:block:1", b"y")
        self.assertEqual([k for k, _ in self.cache.scan_prefix("a_b:")], ["a_b:block:1"])

    def test_concurrent_writes(self):
        def write(start):
            for height in range(start, start + 50):
                self.cache.put(block_key("provider", height), str(height).encode())

        threads = [threading.Thread(target=write, args=(i * 50,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(list(self.cache.scan_prefix("provider:block:"))), 400)


class TestBlockCacheFile(unittest.TestCase):

    def test_persists_across_instances(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "nested", "database.db")

            with BlockCache(path) as cache:
                cache.put("provider:block:1", b"data")

            with BlockCache(path) as cache:
                self.assertEqual(cache.get("provider:block:1"), b"data")


if __name__ == "__main__":
    unittest.main(verbosity=2)
