"""
Rate limiting for API endpoints and outbound CRM calls.

Uses SlowAPI for inbound rate limiting with in-memory or Redis backend, and
an in-process sliding window for requests sent to AcmeCRM.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Optional

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request

logger = logging.getLogger(__name__)

# Rate limit configurations
DEFAULT_RATE_LIMIT = "100/minute"  # General API endpoints
AUTH_RATE_LIMIT = "10/minute"  # Authentication endpoints
BULK_RATE_LIMIT = "10/minute"  # Bulk contact creation


def get_identifier(request: Request) -> str:
    """
    Get unique identifier for rate limiting.

    Priority:
    1. User ID from JWT (if authenticated)
    2. IP address (for unauthenticated requests)
    """
    principal = getattr(request.state, "principal", None)
    if principal:
        user_id = principal.get("user_id")
        if user_id:
            return f"user:{user_id}"

    # Fall back to IP address
    return get_remote_address(request)


# Initialize rate limiter
# For production with multiple instances, use Redis:
# limiter = Limiter(
#     key_func=get_identifier,
#     storage_uri="redis://localhost:6379"
# )
limiter = Limiter(
    key_func=get_identifier,
    default_limits=[DEFAULT_RATE_LIMIT]
)


def setup_rate_limiting(app) -> None:
    """
    Configure rate limiting for FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    logger.info("Rate limiting configured with SlowAPI")


def rate_limit_auth():
    """Auth endpoint rate limit decorator."""
    return limiter.limit(AUTH_RATE_LIMIT)


def rate_limit_bulk():
    """Bulk endpoint rate limit decorator."""
    return limiter.limit(BULK_RATE_LIMIT)


# Outbound CRM rate limiting (separate from HTTP rate limiting)
class SlidingWindowRateLimiter:
    """
    Sliding window of request timestamps for calls to an external API.

    The window is guarded by a lock so that the check and the recording of a
    request happen atomically; concurrent callers in one process can never
    push the count above ``max_requests``. Multi-process deployments need a
    shared store instead.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self._timestamps: Deque[float] = deque()
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        threshold = now - self.window_seconds
        while self._timestamps and self._timestamps[0] < threshold:
            self._timestamps.popleft()

    def try_acquire(self) -> bool:
        """Record a request if the window has room; return False otherwise."""
        with self._lock:
            now = self._clock()
            self._evict(now)

            if len(self._timestamps) >= self.max_requests:
                logger.warning(
                    f"Outbound rate limit reached: {len(self._timestamps)} requests "
                    f"in the last {self.window_seconds:g}s"
                )
                return False

            self._timestamps.append(now)
            return True

    def current_count(self) -> int:
        with self._lock:
            self._evict(self._clock())
            return len(self._timestamps)

    def reset(self) -> None:
        with self._lock:
            self._timestamps.clear()
