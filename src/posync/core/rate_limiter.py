"""Token bucket rate limiting for outbound accounting API calls.

The Conductor client is synchronous and is called from worker threads (the
gateway fans document fetches out with asyncio.to_thread), so the bucket is
guarded by a threading lock rather than an asyncio lock.

Standard rate limits by service:
- conductor: 5 requests per second (QuickBooks Desktop via Conductor)
"""

import threading
import time

from posync.core.errors import RateLimitExceeded
from posync.core.logging import get_logger

logger = get_logger(__name__)

# Longest we are willing to block a worker thread waiting for a token
MAX_WAIT_SECONDS = 20.0


class TokenBucket:
    """Token bucket rate limiter.

    Tokens are added at a fixed rate up to ``capacity``; each request
    consumes one. When the bucket is empty the caller sleeps until enough
    tokens have accumulated.

    Example:
        limiter = TokenBucket(rate=5.0, capacity=5)
        limiter.consume()  # blocks if needed
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: float | None = None,
    ):
        """Initialize a token bucket.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Initial number of tokens (defaults to capacity)
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens = float(capacity if initial_tokens is None else initial_tokens)
        self.last_refill = time.monotonic()
        self._lock = threading.Lock()

    def consume(self, tokens: int = 1) -> bool:
        """Consume tokens, sleeping until they are available.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True once the tokens were consumed

        Raises:
            RateLimitExceeded: If the request exceeds capacity or would wait too long
        """
        if tokens > self.capacity:
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})",
                status_code=None,
            )

        with self._lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True

            required_tokens = tokens - self.tokens
            wait_time = required_tokens / self.rate
            if wait_time > MAX_WAIT_SECONDS:
                logger.warning(
                    "rate_limit_wait_excessive",
                    wait_time=wait_time,
                    tokens_needed=required_tokens,
                )
                raise RateLimitExceeded(
                    f"Rate limit exceeded, would require {wait_time:.2f}s wait",
                    status_code=None,
                )

        logger.debug("rate_limit_waiting", wait_time=round(wait_time, 3))
        time.sleep(wait_time)

        with self._lock:
            self._refill()
            # May go negative if another thread took the refill; later callers wait longer
            self.tokens -= tokens
            return True

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.rate)
        self.last_refill = now


_buckets: dict[str, TokenBucket] = {}
_buckets_lock = threading.Lock()


def get_bucket(name: str = "default", rate: float = 1.0, capacity: int = 1) -> TokenBucket:
    """Get or create the shared token bucket for a service.

    Args:
        name: Bucket name/identifier
        rate: Token refill rate if creating a new bucket
        capacity: Token capacity if creating a new bucket

    Returns:
        TokenBucket instance
    """
    with _buckets_lock:
        if name not in _buckets:
            _buckets[name] = TokenBucket(rate=rate, capacity=capacity)
        return _buckets[name]
