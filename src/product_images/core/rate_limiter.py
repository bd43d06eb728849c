"""Fixed-window upload rate limiting backed by an atomic counter store."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from redis import Redis

from .exceptions import RateLimitedError
from .protocols import CounterStoreProtocol, LoggerProtocol


class InMemoryCounterStore:
    """Process-local counter store; increments are serialized by a lock."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = 60.0,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    @property
    def key_count(self) -> int:
        """Number of identities currently tracked."""
        with self._lock:
            return len(self._counters)

    def increment(self, key: str, window_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._sweep(now)
            count, expires_at = self._counters.get(key, (0, 0.0))
            if count == 0 or expires_at <= now:
                count, expires_at = 0, now + window_seconds
            count += 1
            self._counters[key] = (count, expires_at)
            return count

    def remaining_ttl(self, key: str) -> int:
        with self._lock:
            entry = self._counters.get(key)
            if entry is None:
                return 0
            remaining = entry[1] - self._clock()
            if remaining <= 0:
                del self._counters[key]
                return 0
            return math.ceil(remaining)

    def _sweep(self, now: float) -> None:
        """Drop every expired window; the caller holds the lock."""
        self._counters = {
            key: entry for key, entry in self._counters.items() if entry[1] > now
        }
        self._next_sweep = now + self._sweep_interval


class RedisCounterStore:
    """
    Counter store on Redis INCR + EXPIRE, shared by every app instance.

    Both commands run in one MULTI/EXEC transaction, and EXPIRE uses NX so
    only the first increment of a window sets the expiry; a key that lost
    its TTL gets one back on its next increment.
    """

    def __init__(self, redis_client: Redis, prefix: str = "image-upload") -> None:
        self.redis = redis_client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def increment(self, key: str, window_seconds: int) -> int:
        redis_key = self._key(key)
        pipe = self.redis.pipeline(transaction=True)
        pipe.incr(redis_key)
        pipe.expire(redis_key, window_seconds, nx=True)
        count, _ = pipe.execute()
        return int(count)

    def remaining_ttl(self, key: str) -> int:
        ttl = int(self.redis.ttl(self._key(key)))
        # -2: missing key, -1: no expiry set
        return max(0, ttl)

    @classmethod
    def from_url(cls, url: str, prefix: str = "image-upload") -> "RedisCounterStore":
        return cls(Redis.from_url(url, decode_responses=False), prefix=prefix)


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of one counter check."""

    key: str
    allowed: bool
    count: int
    limit: int
    retry_after_seconds: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class RateLimiter:
    """Simple fixed-window rate limiter.

    The window starts on the first increment; later increments never
    extend it, so counts reset in strict buckets.
    """

    def __init__(self, store: CounterStoreProtocol) -> None:
        self.store = store

    def check_and_increment(
        self, identity_key: str, limit: int, window_seconds: int
    ) -> RateLimitDecision:
        """Count one request for identity_key and decide whether it may proceed."""
        count = self.store.increment(identity_key, window_seconds)
        allowed = count <= limit
        retry_after = 0
        if not allowed:
            retry_after = max(1, self.store.remaining_ttl(identity_key))
        return RateLimitDecision(
            key=identity_key,
            allowed=allowed,
            count=count,
            limit=limit,
            retry_after_seconds=retry_after,
        )


@dataclass(frozen=True)
class UploadRateLimitStatus:
    """Combined user and IP decisions for one upload request."""

    user: Optional[RateLimitDecision]
    ip: RateLimitDecision

    @property
    def allowed(self) -> bool:
        return self.ip.allowed and (self.user is None or self.user.allowed)

    @property
    def binding(self) -> Optional[RateLimitDecision]:
        """The rejecting decision with the longest wait, if any."""
        rejected = [d for d in (self.user, self.ip) if d is not None and not d.allowed]
        if not rejected:
            return None
        return max(rejected, key=lambda d: d.retry_after_seconds)

    @property
    def retry_after_seconds(self) -> int:
        binding = self.binding
        return binding.retry_after_seconds if binding else 0

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-IP-Limit": str(self.ip.limit),
            "X-RateLimit-IP-Remaining": str(self.ip.remaining),
        }
        if self.user is not None:
            headers["X-RateLimit-User-Limit"] = str(self.user.limit)
            headers["X-RateLimit-User-Remaining"] = str(self.user.remaining)
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class UploadRateLimiter:
    """Per-user and per-IP hourly upload limits; both must pass."""

    def __init__(
        self,
        limiter: RateLimiter,
        user_limit: int = 50,
        ip_limit: int = 100,
        window_seconds: int = 3600,
        logger: Optional[LoggerProtocol] = None,
    ) -> None:
        self.limiter = limiter
        self.user_limit = user_limit
        self.ip_limit = ip_limit
        self.window_seconds = window_seconds
        self._logger = logger

    @staticmethod
    def user_key(user_id: str) -> str:
        return f"image_upload_user:{user_id}"

    @staticmethod
    def ip_key(ip_address: str) -> str:
        return f"image_upload_ip:{ip_address}"

    def check(self, user_id: Optional[str], ip_address: str) -> UploadRateLimitStatus:
        """Count the request against both counters and return the combined status."""
        user_decision = None
        if user_id:
            user_decision = self.limiter.check_and_increment(
                self.user_key(user_id), self.user_limit, self.window_seconds
            )
        ip_decision = self.limiter.check_and_increment(
            self.ip_key(ip_address or "anonymous"), self.ip_limit, self.window_seconds
        )
        status = UploadRateLimitStatus(user=user_decision, ip=ip_decision)

        binding = status.binding
        if binding is not None and self._logger:
            scope = "user" if binding is user_decision else "ip"
            self._logger.warning(
                f"{scope}_rate_limit_exceeded",
                key=binding.key,
                limit=binding.limit,
                window=self.window_seconds,
                retry_after=binding.retry_after_seconds,
            )
        return status

    def enforce(self, user_id: Optional[str], ip_address: str) -> UploadRateLimitStatus:
        """Like check, but raise RateLimitedError when either counter is exhausted."""
        status = self.check(user_id, ip_address)
        binding = status.binding
        if binding is None:
            return status

        if status.user is not None and binding is status.user:
            scope = "user"
            message = "Upload rate limit exceeded. Please try again later."
        else:
            scope = "ip"
            message = "Too many upload requests from this IP. Please try again later."
        raise RateLimitedError(
            scope, binding.retry_after_seconds, message, headers=status.headers()
        )
