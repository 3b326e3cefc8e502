"""
Unit tests for the AdaptiveRateLimiter - scaling on 429s and backoff hints.

Run with: python -m pytest tests/test_adaptive_rate_limiter.py -v
"""

import pytest

from codeweaver.services.adaptive_rate_limiter import (
    AdaptiveRateLimiter,
    is_rate_limit_error,
    extract_retry_after,
)
from codeweaver.services.errors import RateLimitError


class FakeResponse:
    def __init__(self, headers):
        self.headers = headers


class ProviderThrottled(Exception):
    def __init__(self, retry_after=None):
        super().__init__("429 Too Many Requests")
        self.status_code = 429
        self.response = FakeResponse({"Retry-After": retry_after} if retry_after else {})


class TestRateLimitDetection:
    """Recognising 429s across provider error shapes"""

    def test_status_code(self):
        assert is_rate_limit_error(ProviderThrottled())

    def test_message_indicators(self):
        assert is_rate_limit_error(Exception("Quota exceeded for tokens per minute"))
        assert not is_rate_limit_error(Exception("invalid api key"))

    def test_retry_after_header(self):
        assert extract_retry_after(ProviderThrottled(retry_after="3")) == 3.0
        assert extract_retry_after(ProviderThrottled()) is None


class TestAdaptiveScaling:
    """Concurrency halves on 429 and grows back after sustained success"""

    def setup_method(self):
        self.limiter = AdaptiveRateLimiter(initial_max_concurrent=4, base_backoff=1.0, jitter=0.0)

    async def test_rate_limit_scales_down_and_suggests_backoff(self):
        with pytest.raises(RateLimitError) as exc_info:
            async with self.limiter.acquire("azure"):
                raise ProviderThrottled()

        assert exc_info.value.retry_after == 1.0
        stats = self.limiter.get_stats()["azure"]
        assert stats["max_concurrent"] == 2
        assert stats["rate_limited_calls"] == 1
        assert stats["current_concurrent"] == 0

    async def test_provider_retry_after_wins(self):
        with pytest.raises(RateLimitError) as exc_info:
            async with self.limiter.acquire("openai"):
                raise ProviderThrottled(retry_after="7")

        assert exc_info.value.retry_after == 7.0

    async def test_other_errors_pass_through(self):
        with pytest.raises(ValueError):
            async with self.limiter.acquire("azure"):
                raise ValueError("bad payload")

        assert self.limiter.get_stats()["azure"]["rate_limited_calls"] == 0

    async def test_sustained_success_scales_up(self):
        for _ in range(20):
            async with self.limiter.acquire("azure"):
                pass

        stats = self.limiter.get_stats()["azure"]
        assert stats["max_concurrent"] == 6
        assert stats["success_rate"] == 100.0

    def test_provider_names(self):
        assert AdaptiveRateLimiter.extract_provider("gpt-4o-mini") == "openai"
        assert AdaptiveRateLimiter.extract_provider("azure/model-router") == "azure"
        assert AdaptiveRateLimiter.extract_provider("fake") == "default"
