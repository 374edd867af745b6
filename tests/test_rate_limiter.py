"""Tests for the token bucket rate limiter."""

from unittest.mock import patch

import pytest

from posync.core.errors import RateLimitExceeded
from posync.core.rate_limiter import TokenBucket


class TestTokenBucket:
    def test_consumes_without_waiting_while_tokens_remain(self) -> None:
        bucket = TokenBucket(rate=1.0, capacity=3)
        with patch("posync.core.rate_limiter.time.sleep") as sleep:
            for _ in range(3):
                assert bucket.consume()
        sleep.assert_not_called()

    def test_waits_when_empty(self) -> None:
        bucket = TokenBucket(rate=10.0, capacity=1, initial_tokens=0)
        with patch("posync.core.rate_limiter.time.sleep") as sleep:
            assert bucket.consume()
        sleep.assert_called_once()
        assert sleep.call_args.args[0] == pytest.approx(0.1, abs=0.01)

    def test_request_over_capacity(self) -> None:
        with pytest.raises(RateLimitExceeded):
            TokenBucket(rate=1.0, capacity=2).consume(3)

    def test_excessive_wait_raises(self) -> None:
        bucket = TokenBucket(rate=0.01, capacity=1, initial_tokens=0)
        with pytest.raises(RateLimitExceeded):
            bucket.consume()
