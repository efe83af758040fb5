# app/x402/ratelimit.py
"""
Rate limiting for the content gateway.

Fixed window per key (client IP or API key): the first request opens a
window of window_seconds, every request inside it increments the count,
and once the count reaches the ceiling further requests are rejected
until the window resets. Callers get the remaining quota and the reset
time (retry_after is rounded up to the second).

Configuration:
- RATE_LIMIT_PER_MINUTE: General API ceiling per minute (default: 100)
- SPONSOR_RATE_LIMIT / SPONSOR_RATE_LIMIT_WINDOW_SECONDS: Sponsorship
  endpoints (default: 5 per hour)

State is in-process only and is rebuilt on restart. A multi-instance
deployment needs a shared atomic increment-with-expiry counter instead
to keep the ceiling global.
"""
import logging
import math
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)

GENERAL_LIMITER = "general"
SPONSOR_LIMITER = "sponsor"


@dataclass
class RateLimitWindow:
    """Request count and reset time for a single key."""
    count: int = 0
    reset_at: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock)


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0


class RateLimiter:
    """
    In-memory fixed window rate limiter.

    Thread-safe for concurrent access.
    """

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the rate limiter.

        Args:
            max_requests: Max requests allowed per window. If None, uses RATE_LIMIT_PER_MINUTE.
            window_seconds: Size of the window in seconds.
            clock: Time source (seconds since epoch).
        """
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, RateLimitWindow] = defaultdict(RateLimitWindow)
        self._cleanup_lock = threading.Lock()
        self._last_cleanup = clock()

    @property
    def max_requests(self) -> int:
        """Get the rate limit (lazy load from settings if not set)."""
        if self._max_requests is not None:
            return self._max_requests
        return settings.RATE_LIMIT_PER_MINUTE

    @property
    def window_seconds(self) -> int:
        """Get the window size in seconds."""
        return self._window_seconds

    def hit(self, key: str) -> RateLimitResult:
        """
        Count a request for key.

        Returns:
            RateLimitResult; allowed is False once the ceiling is reached
        """
        limit = self.max_requests
        now = self._clock()

        if not key or key == "unknown":
            # Don't rate limit unknown clients (they'll fail other checks)
            return RateLimitResult(allowed=True, limit=limit, remaining=limit, reset_at=now + self._window_seconds)

        self._maybe_cleanup(now)

        window = self._windows[key]

        with window.lock:
            if now >= window.reset_at:
                window.count = 0
                window.reset_at = now + self._window_seconds

            if window.count >= limit:
                retry_after = max(0, math.ceil(window.reset_at - now))
                logger.warning(
                    f"Rate limit exceeded for {key}: "
                    f"{window.count}/{limit} requests, resets in {retry_after}s"
                )
                return RateLimitResult(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    reset_at=window.reset_at,
                    retry_after=retry_after,
                )

            window.count += 1

            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=limit - window.count,
                reset_at=window.reset_at,
            )

    def get_client_stats(self, key: str) -> Dict[str, any]:
        """
        Get rate limit statistics for a key without counting a request.
        """
        now = self._clock()
        window = self._windows.get(key)

        if window is None or now >= window.reset_at:
            return {
                "key": key,
                "requests_in_window": 0,
                "limit": self.max_requests,
                "window_seconds": self._window_seconds,
                "remaining": self.max_requests,
            }

        with window.lock:
            count = window.count

        return {
            "key": key,
            "requests_in_window": count,
            "limit": self.max_requests,
            "window_seconds": self._window_seconds,
            "remaining": max(0, self.max_requests - count),
            "reset_at": window.reset_at,
        }

    def reset_client(self, key: str) -> None:
        """Reset rate limit tracking for a key."""
        if key in self._windows:
            window = self._windows[key]
            with window.lock:
                window.count = 0
                window.reset_at = 0.0
            logger.debug(f"Reset rate limit for {key}")

    def reset_all(self) -> None:
        """Reset all rate limit tracking."""
        self._windows.clear()
        logger.info("Reset all rate limits")

    def _maybe_cleanup(self, now: float) -> None:
        """
        Periodically drop expired windows to prevent memory growth.

        Runs cleanup every 5 minutes.
        """
        cleanup_interval = 300  # 5 minutes

        if now - self._last_cleanup < cleanup_interval:
            return

        with self._cleanup_lock:
            # Double-check after acquiring lock
            if now - self._last_cleanup < cleanup_interval:
                return

            self._last_cleanup = now
            stale_keys = [
                key for key, window in list(self._windows.items())
                if now >= window.reset_at
            ]

            for key in stale_keys:
                self._windows.pop(key, None)

            if stale_keys:
                logger.debug(f"Cleaned up {len(stale_keys)} stale rate limit entries")


# Global rate limiter instances
_rate_limiters: Dict[str, RateLimiter] = {}
_rate_limiter_lock = threading.Lock()


def _build_limiter(name: str) -> RateLimiter:
    if name == SPONSOR_LIMITER:
        return RateLimiter(
            max_requests=settings.SPONSOR_RATE_LIMIT,
            window_seconds=settings.SPONSOR_RATE_LIMIT_WINDOW_SECONDS,
        )
    return RateLimiter(window_seconds=60)


def get_rate_limiter(name: str = GENERAL_LIMITER) -> RateLimiter:
    """
    Get a named global rate limiter instance.

    Returns:
        The singleton RateLimiter for that name
    """
    limiter = _rate_limiters.get(name)
    if limiter is None:
        with _rate_limiter_lock:
            limiter = _rate_limiters.get(name)
            if limiter is None:
                limiter = _build_limiter(name)
                _rate_limiters[name] = limiter
    return limiter


def check_rate_limit(key: str, name: str = GENERAL_LIMITER) -> RateLimitResult:
    """
    Count a request against the named limiter.

    This is the main entry point for rate limiting in the endpoints.
    """
    return get_rate_limiter(name).hit(key)


def get_rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    """
    Generate rate limit headers for HTTP responses.

    Returns:
        Dict of HTTP headers to add to the response
    """
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(math.ceil(result.reset_at))),
    }
    if not result.allowed:
        headers["Retry-After"] = str(result.retry_after)
    return headers


def reset_rate_limiter() -> None:
    """Reset all global rate limiters (useful for testing)."""
    with _rate_limiter_lock:
        for limiter in _rate_limiters.values():
            limiter.reset_all()
        _rate_limiters.clear()
