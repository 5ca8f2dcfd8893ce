import unittest

from group_service.cache import ACTIVE_GROUPS_PREFIX, ResponseCache, active_groups_key, group_key
from group_service.performance import PerformanceMonitor


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestResponseCache(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.cache = ResponseCache(max_size=3, default_ttl=10, clock=self.clock)

    def test_entries_expire_after_ttl(self):
        self.cache.set("a", 1)
        self.clock.now += 9
        self.assertEqual(self.cache.get("a"), 1)
        self.clock.now += 2
        self.assertIsNone(self.cache.get("a"))

    def test_least_recently_used_is_evicted(self):
        for key in ("a", "b", "c"):
            self.cache.set(key, key)
        self.cache.get("a")
        self.cache.set("d", "d")
        self.assertIsNone(self.cache.get("b"))
        self.assertEqual(self.cache.get("a"), "a")
        self.assertEqual(self.cache.stats()["evictions"], 1)

    def test_invalidate_prefix(self):
        self.cache.set(group_key(1), {})
        self.cache.set(active_groups_key(0, 100), {})
        self.cache.set(active_groups_key(100, 100), {})
        self.assertEqual(self.cache.invalidate_prefix(ACTIVE_GROUPS_PREFIX), 2)
        self.assertEqual(len(self.cache), 1)

    def test_stats(self):
        self.cache.set("a", 1)
        self.cache.get("a")
        self.cache.get("missing")
        stats = self.cache.stats()
        self.assertEqual((stats["hits"], stats["misses"]), (1, 1))
        self.assertEqual(stats["hit_rate"], 50.0)


class TestPerformanceMonitor(unittest.TestCase):
    def test_ring_buffer_keeps_latest(self):
        monitor = PerformanceMonitor(max_metrics=3)
        for i in range(5):
            monitor.record_request(f"GET /{i}", 10)
        self.assertEqual(len(monitor), 3)
        self.assertEqual(monitor.get_stats()["total_requests"], 3)

    def test_stats_windows(self):
        monitor = PerformanceMonitor()
        now = 10_000.0
        monitor.record_request("GET /old", 100, timestamp=now - 400)
        monitor.record_request("GET /a", 100, timestamp=now - 120, cache_hit=True)
        monitor.record_request("GET /a", 300, timestamp=now - 30, error=True)
        monitor.record_request("GET /b", 1500, timestamp=now - 10)

        stats = monitor.get_stats(now)
        self.assertEqual(stats["total_requests"], 4)
        self.assertEqual(stats["requests_last_5_min"], 3)
        self.assertEqual(stats["requests_last_1_min"], 2)
        self.assertEqual(stats["avg_response_time_ms"], round((100 + 300 + 1500) / 3, 2))
        self.assertEqual(stats["cache_hit_rate"], round(100 / 3, 2))
        self.assertEqual(stats["error_rate"], round(100 / 3, 2))
        self.assertEqual(stats["slow_requests"], 1)

    def test_empty_window(self):
        stats = PerformanceMonitor().get_stats()
        self.assertEqual(stats["requests_last_5_min"], 0)
        self.assertEqual(stats["avg_response_time_ms"], 0.0)

    def test_slow_endpoints_sorted_and_limited(self):
        monitor = PerformanceMonitor()
        now = 5_000.0
        for i in range(12):
            monitor.record_request(f"GET /slow/{i}", 600 + i * 10, timestamp=now - 1)
        monitor.record_request("GET /fast", 50, timestamp=now - 1)

        slow = monitor.get_slow_endpoints(now)
        self.assertEqual(len(slow), 10)
        self.assertEqual(slow[0]["endpoint"], "GET /slow/11")
        self.assertNotIn("GET /fast", [e["endpoint"] for e in slow])


if __name__ == "__main__":
    unittest.main()
