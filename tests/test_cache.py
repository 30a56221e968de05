"""
Unit tests for the TTL result cache and cache key construction.
"""

import unittest

from pediatric_rag.storage.cache import ResultCache, make_key, normalize_query

from tests.helpers import FakeClock


class TestCacheKeys(unittest.TestCase):

    def test_normalization_ignores_case_and_whitespace(self):
        self.assertEqual(normalize_query("  Asthma   In\tChildren "), "asthma in children")
        self.assertEqual(
            make_key("Asthma in children", {"age": "child"}),
            make_key("  asthma  IN children", {"age": "child"}),
        )

    def test_context_changes_key(self):
        self.assertNotEqual(
            make_key("asthma", {"age": "child"}),
            make_key("asthma", {"age": "infant"}),
        )

    def test_context_key_order_is_irrelevant(self):
        self.assertEqual(
            make_key("asthma", {"a": 1, "b": 2}),
            make_key("asthma", {"b": 2, "a": 1}),
        )


class TestResultCache(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.cache = ResultCache(ttl_seconds=300, clock=self.clock, name="test")

    def test_hit_within_ttl(self):
        self.cache.set("k", "value")
        self.clock.advance(299)
        self.assertEqual(self.cache.get("k"), "value")
        self.assertIn("k", self.cache)
        self.assertEqual(self.cache.hits, 1)

    def test_entry_expires_after_ttl(self):
        self.cache.set("k", "value")
        self.clock.advance(300)
        self.assertNotIn("k", self.cache)
        self.assertIsNone(self.cache.get("k"))
        self.assertEqual(len(self.cache), 0)
        self.assertEqual(self.cache.misses, 1)

    def test_write_overwrites_and_refreshes(self):
        self.cache.set("k", "old")
        self.clock.advance(200)
        self.cache.set("k", "new")
        self.clock.advance(200)
        self.assertEqual(self.cache.get("k"), "new")

    def test_prune_removes_only_stale_entries(self):
        self.cache.set("stale", 1)
        self.clock.advance(250)
        self.cache.set("fresh", 2)
        self.clock.advance(100)
        self.assertEqual(self.cache.prune(), 1)
        self.assertEqual(len(self.cache), 1)
        self.assertEqual(self.cache.get("fresh"), 2)

    def test_clear(self):
        self.cache.set("a", 1)
        self.cache.set("b", 2)
        self.cache.clear()
        self.assertEqual(len(self.cache), 0)

    def test_write_drops_expired_entries(self):
        for i in range(20):
            self.cache.set(f"query-{i}", i)
        self.assertEqual(len(self.cache), 20)
        self.clock.advance(301)
        self.cache.set("latest", "value")
        self.assertEqual(len(self.cache), 1)
        self.assertEqual(self.cache.get("latest"), "value")

    def test_write_keeps_entries_still_within_ttl(self):
        self.cache.set("old", 1)
        self.clock.advance(200)
        self.cache.set("recent", 2)
        self.clock.advance(150)
        self.cache.set("new", 3)
        self.assertNotIn("old", self.cache)
        self.assertEqual(len(self.cache), 2)

    def test_full_cache_evicts_oldest_first(self):
        cache = ResultCache(ttl_seconds=300, clock=self.clock, max_entries=3)
        for key in ("a", "b", "c"):
            cache.set(key, key)
            self.clock.advance(1)
        cache.set("d", "d")
        self.assertEqual(len(cache), 3)
        self.assertNotIn("a", cache)
        self.assertEqual([cache.get(k) for k in ("b", "c", "d")], ["b", "c", "d"])
        self.assertEqual(cache.evictions, 1)

    def test_overwrite_counts_as_newest(self):
        cache = ResultCache(ttl_seconds=300, clock=self.clock, max_entries=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 3)
        cache.set("c", 4)
        self.assertNotIn("b", cache)
        self.assertEqual(cache.get("a"), 3)
        self.assertEqual(len(cache), 2)

    def test_max_entries_must_be_positive(self):
        with self.assertRaises(ValueError):
            ResultCache(max_entries=0)


if __name__ == "__main__":
    unittest.main()
