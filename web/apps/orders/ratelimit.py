"""Fixed-window rate limiter on Django's cache framework.

Counters live in the configured cache (a shared backend such as Redis or
Memcached in production), so every worker process sees the same limits.
"""

import time

from django.core.cache import cache as default_cache


class CacheRateLimiter:
    """Allow at most ``limit`` calls per ``key`` in each ``window_secs`` window.

    Args:
        limit: Calls allowed per window.
        window_secs: Window length in seconds.
        cache: Cache to store counters in; Django's default cache when omitted.
        clock: Returns the current UNIX time.
    """

    def __init__(self, limit: int = 10, window_secs: int = 60, cache=None, clock=time.time):
        self.limit = limit
        self.window_secs = window_secs
        self.cache = cache or default_cache
        self.clock = clock

    def allow(self, key: str) -> bool:
        window = int(self.clock() // self.window_secs)
        bucket = f"ratelimit:{key}:{window}"
        if self.cache.add(bucket, 1, timeout=self.window_secs + 1):
            return self.limit >= 1
        try:
            count = self.cache.incr(bucket)
        except ValueError:
            # expired between add() and incr()
            self.cache.add(bucket, 1, timeout=self.window_secs + 1)
            count = 1
        return count <= self.limit
