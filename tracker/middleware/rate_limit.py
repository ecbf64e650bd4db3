"""
Rate limiter — in-memory sliding window per client identity.

Each identity keeps the timestamps of its accepted requests. A check:
  1. drops timestamps older than the window
  2. rejects if what's left is at or above the limit
  3. otherwise records now and accepts

Steps 1-3 run under the identity's shard lock, so concurrent requests from
one identity can't both squeeze past the limit. Identities are spread over
a fixed number of shards instead of one global lock. prune_idle() clears
identities whose windows have emptied; the app runs it periodically.
"""

import threading
import time
import zlib
from collections import deque

from fastapi import Request

from tracker.config import get_settings
from tracker.core.errors import RateLimited

import structlog

logger = structlog.get_logger()

_PRIVATE_PREFIXES = (
    "10.", "172.16.", "172.17.", "172.18.", "172.19.",
    "172.20.", "172.21.", "172.22.", "172.23.", "172.24.",
    "172.25.", "172.26.", "172.27.", "172.28.", "172.29.",
    "172.30.", "172.31.", "192.168.", "127.", "::1",
)


class SlidingWindowLimiter:
    def __init__(self, limit: int, window_seconds: float, shards: int = 16):
        self.limit = limit
        self.window_seconds = window_seconds
        self._locks = [threading.Lock() for _ in range(shards)]
        self._windows: list[dict[str, deque[float]]] = [{} for _ in range(shards)]

    def _shard(self, key: str) -> int:
        return zlib.crc32(key.encode()) % len(self._locks)

    def check(self, key: str, now: float | None = None) -> int:
        """Record one request for `key`. Returns remaining quota or raises RateLimited."""
        now = time.time() if now is None else now
        cutoff = now - self.window_seconds
        shard = self._shard(key)

        with self._locks[shard]:
            window = self._windows[shard].setdefault(key, deque())
            while window and window[0] <= cutoff:
                window.popleft()

            if len(window) >= self.limit:
                oldest = window[0] if window else now
                retry_after = max(1, int(oldest + self.window_seconds - now + 0.999))
                raise RateLimited(key, self.limit, retry_after)

            window.append(now)
            return self.limit - len(window)

    def prune_idle(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        cutoff = now - self.window_seconds
        removed = 0
        for lock, windows in zip(self._locks, self._windows):
            with lock:
                stale = [k for k, w in windows.items() if not w or w[-1] <= cutoff]
                for k in stale:
                    del windows[k]
                removed += len(stale)
        return removed

    def reset(self) -> None:
        for lock, windows in zip(self._locks, self._windows):
            with lock:
                windows.clear()


_limiter: SlidingWindowLimiter | None = None


def get_limiter() -> SlidingWindowLimiter:
    global _limiter
    if _limiter is None:
        settings = get_settings()
        _limiter = SlidingWindowLimiter(
            settings.rate_limit_requests,
            settings.rate_limit_window_seconds,
        )
    return _limiter


def get_client_ip(request: Request) -> str:
    """Caller address. X-Forwarded-For is honoured only behind a trusted proxy."""
    if get_settings().trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            ips = [ip.strip() for ip in forwarded.split(",")]
            for ip in ips:
                if not ip.startswith(_PRIVATE_PREFIXES):
                    return ip
            return ips[0]
    return request.client.host if request.client else "unknown"


def rate_limit_ip(request: Request) -> int:
    ip = get_client_ip(request)
    try:
        return get_limiter().check(f"ip:{ip}")
    except RateLimited:
        logger.warning("rate_limited", ip=ip)
        raise
