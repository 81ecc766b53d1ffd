"""Fixed-window per-client rate limiting.

Each identifier moves through ``Unseen → Active(count, reset_at) → Expired``;
an expired entry is replaced by a fresh window on its next touch.  Windows are
anchored at the identifier's first request, not at wall-clock minute
boundaries.

Two interchangeable limiters are provided:

* :class:`RateLimiter` keeps counters in process memory.  Counters reset when
  the process restarts and are not shared between instances.
* :class:`RedisRateLimiter` keeps counters in Redis for multi-instance
  deployments.
"""

import math
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

import structlog
from redis.asyncio import Redis

WINDOW_SECONDS = 60.0

_log = structlog.get_logger(__name__)


class Clock(Protocol):
    def now(self) -> float:
        """Return the current time in seconds since the epoch."""
        ...


class SystemClock:
    def now(self) -> float:
        return time.time()


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one :meth:`RateLimiter.check` call.

    Attributes:
        allowed: Whether the request may proceed.
        remaining: Requests left in the current window (``0`` once denied).
        reset_at: Epoch seconds at which the current window ends.
        limit: Requests permitted per window.
    """

    allowed: bool
    remaining: int
    reset_at: float
    limit: int


@dataclass(frozen=True)
class _Entry:
    count: int
    reset_at: float


class RateLimiter:
    """In-memory fixed-window limiter.

    Args:
        requests_per_minute: Requests allowed per identifier per window.
        cleanup_interval: Sweep expired entries every this many checks.
        max_entries: Upper bound on tracked identifiers; the oldest inserted
            entry is evicted first once exceeded.
        clock: Time source, injectable for tests.
    """

    def __init__(
        self,
        requests_per_minute: int,
        *,
        cleanup_interval: int = 100,
        max_entries: int = 10_000,
        clock: Clock | None = None,
    ) -> None:
        self.limit = requests_per_minute
        self._cleanup_interval = cleanup_interval
        self._max_entries = max_entries
        self.clock = clock or SystemClock()
        self._entries: dict[str, _Entry] = {}
        self._checks_since_cleanup = 0
        self._lock = threading.Lock()

    async def check(self, identifier: str) -> RateLimitResult:
        with self._lock:
            now = self.clock.now()

            self._checks_since_cleanup += 1
            if self._checks_since_cleanup >= self._cleanup_interval:
                self._sweep(now)
                self._checks_since_cleanup = 0

            entry = self._entries.get(identifier)
            if entry is None or now > entry.reset_at:
                entry = _Entry(count=1, reset_at=now + WINDOW_SECONDS)
                # Re-insert so a renewed window counts as the newest entry.
                self._entries.pop(identifier, None)
                self._entries[identifier] = entry
                self._enforce_max_entries()
                return RateLimitResult(True, self.limit - 1, entry.reset_at, self.limit)

            if entry.count >= self.limit:
                return RateLimitResult(False, 0, entry.reset_at, self.limit)

            entry = _Entry(count=entry.count + 1, reset_at=entry.reset_at)
            self._entries[identifier] = entry
            return RateLimitResult(True, self.limit - entry.count, entry.reset_at, self.limit)

    async def reset(self, identifier: str) -> None:
        with self._lock:
            self._entries.pop(identifier, None)

    async def get_count(self, identifier: str) -> int:
        with self._lock:
            entry = self._entries.get(identifier)
            if entry is None or self.clock.now() > entry.reset_at:
                return 0
            return entry.count

    def __len__(self) -> int:
        return len(self._entries)

    def _sweep(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if now > entry.reset_at]
        for key in expired:
            del self._entries[key]
        if expired:
            _log.debug("rate_limit_sweep", evicted=len(expired), tracked=len(self._entries))

    def _enforce_max_entries(self) -> None:
        while len(self._entries) > self._max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]


class RedisRateLimiter:
    """Fixed-window limiter backed by a Redis counter per identifier.

    ``INCR``, ``PEXPIRE NX`` and ``PTTL`` run in one ``MULTI`` transaction, so
    the window starts at the identifier's first request and concurrent
    requests from several relay instances never lose an increment.  Unlike
    :class:`RateLimiter` the counter keeps growing past the limit while the
    window is open; the decision and ``remaining`` are the same.
    """

    def __init__(
        self,
        redis: Redis,
        requests_per_minute: int,
        *,
        key_prefix: str = "llmrelay:ratelimit:",
        clock: Clock | None = None,
    ) -> None:
        self.limit = requests_per_minute
        self._redis = redis
        self._key_prefix = key_prefix
        self.clock = clock or SystemClock()

    def _key(self, identifier: str) -> str:
        return f"{self._key_prefix}{identifier}"

    async def check(self, identifier: str) -> RateLimitResult:
        window_ms = int(WINDOW_SECONDS * 1000)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(self._key(identifier))
            pipe.pexpire(self._key(identifier), window_ms, nx=True)
            pipe.pttl(self._key(identifier))
            count, _, ttl_ms = await pipe.execute()

        if ttl_ms is None or ttl_ms < 0:
            ttl_ms = window_ms
        reset_at = self.clock.now() + ttl_ms / 1000
        count = int(count)
        if count > self.limit:
            return RateLimitResult(False, 0, reset_at, self.limit)
        return RateLimitResult(True, self.limit - count, reset_at, self.limit)

    async def reset(self, identifier: str) -> None:
        await self._redis.delete(self._key(identifier))

    async def close(self) -> None:
        await self._redis.aclose()

    async def get_count(self, identifier: str) -> int:
        value = await self._redis.get(self._key(identifier))
        return int(value) if value is not None else 0


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


def client_identifier(headers: Mapping[str, str]) -> str:
    """Derive the rate-limit identifier for a request.

    Order: ``CF-Connecting-IP``; first entry of ``X-Forwarded-For``;
    ``X-Real-IP``; a hash of ``CF-Ray`` and ``User-Agent`` (so clients without
    an address do not all share one bucket); finally ``"unknown"``.

    *headers* must be case-insensitive (e.g. Starlette's ``Headers``).
    """
    cf_ip = headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip

    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        return first or "unknown"

    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip

    fallback = "|".join(v for v in (headers.get("cf-ray"), headers.get("user-agent")) if v)
    if fallback:
        return f"unknown:{_fnv1a_base36(fallback)}"

    return "unknown"


def _fnv1a_base36(value: str) -> str:
    # FNV-1a over UTF-16 code units, 32-bit.
    encoded = value.encode("utf-16-le")
    digest = 2166136261
    for i in range(0, len(encoded), 2):
        digest ^= int.from_bytes(encoded[i : i + 2], "little")
        digest = (digest * 16777619) & 0xFFFFFFFF
    return _base36(digest)


def _base36(number: int) -> str:
    alphabet = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(alphabet[rem])
    return "".join(reversed(digits))


def rate_limit_headers(result: RateLimitResult, now: float) -> dict[str, str]:
    """Build ``X-RateLimit-*`` headers, plus ``Retry-After`` when denied."""
    reset = datetime.fromtimestamp(result.reset_at, UTC)
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": reset.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
    }
    if not result.allowed:
        headers["Retry-After"] = str(max(0, math.ceil(result.reset_at - now)))
    return headers
