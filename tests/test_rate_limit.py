import unittest
from unittest.mock import MagicMock, patch

import redis

from tests.helpers import FakeClock

from hub_auth.core.errors import StorageError
from hub_auth.services import rate_limit
from hub_auth.services.rate_limit import InMemoryRateLimiter, RedisRateLimiter, hash_key_part


class InMemoryRateLimiterTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.limiter = InMemoryRateLimiter(clock=self.clock)

    def test_window_blocks_after_limit(self):
        first = self.limiter.hit("k", limit=2, window_seconds=60)
        second = self.limiter.hit("k", limit=2, window_seconds=60)
        third = self.limiter.hit("k", limit=2, window_seconds=60)
        self.assertTrue(first.allowed)
        self.assertTrue(second.allowed)
        self.assertFalse(third.allowed)
        self.assertEqual(third.current_value, 3)
        self.assertEqual(third.retry_after_seconds, 60)

    def test_window_resets_after_expiry(self):
        self.limiter.hit("k", limit=1, window_seconds=30)
        self.clock.advance(12)
        blocked = self.limiter.hit("k", limit=1, window_seconds=30)
        self.assertFalse(blocked.allowed)
        self.assertEqual(blocked.retry_after_seconds, 18)

        self.clock.advance(18)
        self.assertTrue(self.limiter.hit("k", limit=1, window_seconds=30).allowed)

    def test_keys_are_independent_and_resettable(self):
        self.limiter.hit("a", limit=1, window_seconds=30)
        self.assertTrue(self.limiter.hit("b", limit=1, window_seconds=30).allowed)
        self.assertFalse(self.limiter.hit("a", limit=1, window_seconds=30).allowed)
        self.limiter.reset("a")
        self.assertTrue(self.limiter.hit("a", limit=1, window_seconds=30).allowed)


class RedisRateLimiterTests(unittest.TestCase):
    def test_first_hit_sets_expiry(self):
        client = MagicMock()
        client.incr.return_value = 1
        client.ttl.return_value = 30
        result = RedisRateLimiter(client).hit("otp:cooldown:x", limit=1, window_seconds=30)
        self.assertTrue(result.allowed)
        client.expire.assert_called_once_with("hub:rl:otp:cooldown:x", 30)

    def test_later_hits_reuse_window(self):
        client = MagicMock()
        client.incr.return_value = 2
        client.ttl.return_value = 12
        result = RedisRateLimiter(client).hit("k", limit=1, window_seconds=30)
        self.assertFalse(result.allowed)
        self.assertEqual(result.retry_after_seconds, 12)
        client.expire.assert_not_called()

    def test_redis_failure_is_storage_error(self):
        client = MagicMock()
        client.incr.side_effect = redis.ConnectionError("connection reset")
        client.delete.side_effect = redis.ConnectionError("connection reset")
        limiter = RedisRateLimiter(client)
        with self.assertRaises(StorageError):
            limiter.hit("k", limit=1, window_seconds=30)
        with self.assertRaises(StorageError):
            limiter.reset("k")


class RateLimiterFactoryTests(unittest.TestCase):
    def tearDown(self):
        rate_limit.reset_rate_limiter_for_tests()

    def test_falls_back_to_memory_when_redis_is_down(self):
        rate_limit.reset_rate_limiter_for_tests()
        with patch(
            "hub_auth.services.rate_limit.build_redis_client",
            side_effect=redis.ConnectionError("refused"),
        ):
            with self.assertLogs("hub_auth.rate_limit", level="WARNING"):
                limiter = rate_limit.get_rate_limiter()
        self.assertIsInstance(limiter, InMemoryRateLimiter)
        self.assertIs(rate_limit.get_rate_limiter(), limiter)

    def test_hash_key_part(self):
        self.assertEqual(hash_key_part(""), "-")
        self.assertEqual(len(hash_key_part("966500000000")), 20)
        self.assertEqual(hash_key_part(" 966500000000 "), hash_key_part("966500000000"))
