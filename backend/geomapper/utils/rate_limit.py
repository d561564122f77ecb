import time
from collections import defaultdict, deque
from typing import Any, Deque, Dict, Optional

from .logging import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """In-memory sliding window limiter keyed by client identifier."""

    def __init__(self, max_requests: int = 100, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests: Dict[str, Deque[float]] = defaultdict(deque)

    def _prune(self, identifier: str, now: float) -> Deque[float]:
        window_start = now - self.window_seconds
        stamps = self.requests[identifier]
        while stamps and stamps[0] < window_start:
            stamps.popleft()
        return stamps

    def is_allowed(self, identifier: str) -> bool:
        now = time.time()
        stamps = self._prune(identifier, now)
        if len(stamps) >= self.max_requests:
            logger.warning("Rate limit exceeded", extra={"client": identifier})
            return False
        stamps.append(now)
        return True

    def get_stats(self, identifier: str) -> Dict[str, Any]:
        stamps = self._prune(identifier, time.time())
        return {
            "current_requests": len(stamps),
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
            "remaining": max(0, self.max_requests - len(stamps)),
        }

    def reset(self) -> None:
        self.requests.clear()


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter(max_requests: int = 100, window_seconds: int = 60) -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(max_requests=max_requests, window_seconds=window_seconds)
        logger.info(f"Initialized rate limiter: {max_requests} requests per {window_seconds}s")
    return _rate_limiter
