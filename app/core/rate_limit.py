from fastapi import Depends, HTTPException, Request, status
from typing import Dict, Protocol, Tuple
import threading
import time


class RateLimitStore(Protocol):
    def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        """Count one request for key; returns (count in current window, window start)."""
        ...


class InMemoryRateLimitStore:
    """Single-process counter store. Swap for a shared cache when running several instances."""

    def __init__(self):
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        now = time.time()
        with self._lock:
            count, started = self._counters.get(key, (0, now))
            if now - started >= window_seconds:
                count, started = 0, now
            count += 1
            self._counters[key] = (count, started)

            # Clean up old entries
            for k in [k for k, (_, ts) in self._counters.items() if now - ts >= window_seconds]:
                del self._counters[k]
            return count, started

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()


default_rate_limit_store = InMemoryRateLimitStore()


def get_rate_limit_store() -> RateLimitStore:
    return default_rate_limit_store


class RateLimiter:
    """
    Rate limiting dependency.
    Args:
        times: Number of allowed requests
        minutes: Time window in minutes
        scope: Key prefix, usually the endpoint name
    """

    def __init__(self, times: int, minutes: int, scope: str):
        self.times = times
        self.minutes = minutes
        self.scope = scope

    def __call__(self, request: Request, store: RateLimitStore = Depends(get_rate_limit_store)) -> None:
        client_ip = request.client.host if request.client else "unknown"
        key = f"{self.scope}:{client_ip}"
        window = self.minutes * 60

        count, started = store.hit(key, window)
        if count > self.times:
            retry_in = max(int(started + window - time.time()), 0)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=f"Rate limit exceeded. Try again in {retry_in} seconds",
            )
