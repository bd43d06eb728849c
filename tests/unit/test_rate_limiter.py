"""Unit tests for the fixed-window upload rate limiter."""

import threading
from unittest.mock import Mock

import pytest

from product_images.core.exceptions import RateLimitedError
from product_images.core.rate_limiter import (
    InMemoryCounterStore,
    RateLimiter,
    RedisCounterStore,
    UploadRateLimiter,
)
from product_images.testing.fakes import FakeLogger


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryCounterStore(clock=clock)


class TestInMemoryCounterStore:
    """Tests for InMemoryCounterStore."""

    def test_counts_within_window(self, store):
        assert [store.increment("k", 60) for _ in range(3)] == [1, 2, 3]

    def test_expiry_is_not_extended(self, store, clock):
        """Test that later increments keep the first increment's expiry."""
        store.increment("k", 60)
        clock.now += 50
        store.increment("k", 60)

        assert store.remaining_ttl("k") == 10
        clock.now += 10
        assert store.increment("k", 60) == 1

    def test_remaining_ttl_missing_key(self, store):
        assert store.remaining_ttl("missing") == 0

    def test_remaining_ttl_rounds_up(self, store, clock):
        store.increment("k", 60)
        clock.now += 0.5
        assert store.remaining_ttl("k") == 60

    def test_concurrent_increments_are_not_lost(self):
        store = InMemoryCounterStore()

        def hammer():
            for _ in range(200):
                store.increment("k", 3600)

        threads = [threading.Thread(target=hammer) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.increment("k", 3600) == 1601

    def test_expired_windows_are_swept(self, clock):
        store = InMemoryCounterStore(clock=clock, sweep_interval=60)
        for ip in range(100):
            store.increment(f"image_upload_ip:10.0.0.{ip}", 30)
        assert store.key_count == 100

        clock.now += 61
        store.increment("image_upload_ip:10.0.1.1", 30)

        assert store.key_count == 1


class TestRedisCounterStore:
    """Tests for RedisCounterStore with a mocked client."""

    @staticmethod
    def redis_with_count(count):
        redis_client = Mock()
        pipe = redis_client.pipeline.return_value
        pipe.execute.return_value = [count, True]
        return redis_client, pipe

    def test_increment_and_expiry_share_one_transaction(self):
        redis_client, pipe = self.redis_with_count(1)

        assert RedisCounterStore(redis_client).increment("image_upload_ip:1.2.3.4", 3600) == 1

        redis_client.pipeline.assert_called_once_with(transaction=True)
        pipe.incr.assert_called_once_with("image-upload:image_upload_ip:1.2.3.4")
        pipe.expire.assert_called_once_with(
            "image-upload:image_upload_ip:1.2.3.4", 3600, nx=True
        )
        pipe.execute.assert_called_once_with()
        redis_client.incr.assert_not_called()
        redis_client.expire.assert_not_called()

    def test_later_increments_only_set_missing_expiry(self):
        """Test that every increment asks for NX expiry, so a key without TTL is re-armed."""
        redis_client, pipe = self.redis_with_count(7)

        assert RedisCounterStore(redis_client).increment("k", 3600) == 7
        pipe.expire.assert_called_once_with("image-upload:k", 3600, nx=True)

    @pytest.mark.parametrize("ttl, expected", [(120, 120), (-1, 0), (-2, 0)])
    def test_remaining_ttl(self, ttl, expected):
        redis_client = Mock()
        redis_client.ttl.return_value = ttl
        assert RedisCounterStore(redis_client, prefix="p").remaining_ttl("k") == expected
        redis_client.ttl.assert_called_once_with("p:k")


class TestRateLimiter:
    """Tests for RateLimiter."""

    def test_limit_boundary(self, store):
        """Test that the 50th request passes and the 51st is rejected."""
        limiter = RateLimiter(store)
        decisions = [limiter.check_and_increment("user:1", 50, 3600) for _ in range(51)]

        assert decisions[49].allowed
        assert decisions[49].remaining == 0
        assert not decisions[50].allowed
        assert decisions[50].retry_after_seconds > 0
        assert decisions[0].retry_after_seconds == 0

    def test_window_reset(self, store, clock):
        limiter = RateLimiter(store)
        for _ in range(3):
            limiter.check_and_increment("k", 2, 60)
        clock.now += 61
        assert limiter.check_and_increment("k", 2, 60).allowed


class TestUploadRateLimiter:
    """Tests for UploadRateLimiter."""

    def make_limiter(self, store, logger=None, user_limit=2, ip_limit=3):
        return UploadRateLimiter(
            RateLimiter(store), user_limit=user_limit, ip_limit=ip_limit,
            window_seconds=3600, logger=logger,
        )

    def test_keys(self):
        assert UploadRateLimiter.user_key("42") == "image_upload_user:42"
        assert UploadRateLimiter.ip_key("10.0.0.1") == "image_upload_ip:10.0.0.1"

    def test_allowed_headers(self, store):
        status = self.make_limiter(store).check("42", "10.0.0.1")

        assert status.allowed
        assert status.headers() == {
            "X-RateLimit-IP-Limit": "3",
            "X-RateLimit-IP-Remaining": "2",
            "X-RateLimit-User-Limit": "2",
            "X-RateLimit-User-Remaining": "1",
        }

    def test_anonymous_uses_ip_only(self, store):
        status = self.make_limiter(store).check(None, "10.0.0.1")
        assert status.user is None
        assert "X-RateLimit-User-Limit" not in status.headers()

    def test_user_limit_enforced(self, store):
        logger = FakeLogger()
        limiter = self.make_limiter(store, logger)
        limiter.enforce("42", "10.0.0.1")
        limiter.enforce("42", "10.0.0.2")

        with pytest.raises(RateLimitedError) as excinfo:
            limiter.enforce("42", "10.0.0.3")

        error = excinfo.value
        assert error.scope == "user"
        assert error.retry_after_seconds == 3600
        assert error.headers["Retry-After"] == "3600"
        assert error.headers["X-RateLimit-User-Remaining"] == "0"
        warning = logger.get_logs("WARNING")[0]
        assert warning["message"] == "user_rate_limit_exceeded"
        assert warning["key"] == "image_upload_user:42"

    def test_ip_limit_enforced_across_users(self, store):
        limiter = self.make_limiter(store, user_limit=50)
        for user in ("a", "b", "c"):
            limiter.enforce(user, "10.0.0.1")

        with pytest.raises(RateLimitedError) as excinfo:
            limiter.enforce("d", "10.0.0.1")
        assert excinfo.value.scope == "ip"
        assert "this IP" in str(excinfo.value)

    def test_longest_wait_wins(self, store, clock):
        """Test that Retry-After reflects the counter that frees up last."""
        limiter = self.make_limiter(store, user_limit=1, ip_limit=1)
        limiter.check("42", "10.0.0.1")
        clock.now += 100
        limiter.check("43", "10.0.0.9")
        status = limiter.check("42", "10.0.0.9")

        assert not status.user.allowed
        assert not status.ip.allowed
        assert status.user.retry_after_seconds == 3500
        assert status.retry_after_seconds == 3600
        assert status.binding.key == "image_upload_ip:10.0.0.9"
        assert status.headers()["Retry-After"] == "3600"
