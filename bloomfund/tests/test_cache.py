import unittest

from bloomfund.cache import (
    CAMPAIGN_LISTS_PREFIX,
    PLATFORM_STATS_KEY,
    TTLCache,
    campaign_key,
    invalidate_campaign,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TTLCacheTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.cache = TTLCache(default_ttl=60, clock=self.clock)

    def test_entries_expire(self):
        self.cache.set("a", 1)
        self.cache.set("b", 2, ttl=10)
        self.clock.now += 30
        self.assertEqual(self.cache.get("a"), 1)
        self.assertIsNone(self.cache.get("b"))
        self.clock.now += 30
        self.assertNotIn("a", self.cache)

    def test_get_or_load_calls_loader_once(self):
        calls = []

        def loader():
            calls.append(1)
            return {"value": len(calls)}

        first = self.cache.get_or_load("k", loader)
        second = self.cache.get_or_load("k", loader)
        self.assertEqual(first, second)
        self.assertEqual(len(calls), 1)

    def test_missing_values_are_not_cached(self):
        calls = []

        def loader():
            calls.append(1)
            return None

        self.cache.get_or_load("k", loader)
        self.cache.get_or_load("k", loader)
        self.assertEqual(len(calls), 2)

    def test_purge_expired(self):
        self.cache.set("short", 1, ttl=5)
        self.cache.set("long", 2, ttl=500)
        self.clock.now += 10
        self.assertEqual(self.cache.purge_expired(), 1)
        self.assertEqual(len(self.cache), 1)

    def test_invalidate_campaign_drops_lists_and_stats(self):
        self.cache.set(campaign_key("c-1"), {"id": "c-1"})
        self.cache.set(campaign_key("c-2"), {"id": "c-2"})
        self.cache.set(CAMPAIGN_LISTS_PREFIX + "list:active", [])
        self.cache.set(CAMPAIGN_LISTS_PREFIX + "search:{}", [])
        self.cache.set(PLATFORM_STATS_KEY, {"total_campaigns": 1})

        invalidate_campaign(self.cache, "c-1")

        self.assertNotIn(campaign_key("c-1"), self.cache)
        self.assertIn(campaign_key("c-2"), self.cache)
        self.assertNotIn(PLATFORM_STATS_KEY, self.cache)
        self.assertEqual(len(self.cache), 1)


if __name__ == "__main__":
    unittest.main()
