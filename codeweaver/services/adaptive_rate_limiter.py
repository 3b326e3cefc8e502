"""
Adaptive Rate Limiter for Generation API Calls

Features:
1. Per-provider concurrency tracking (azure, openai, default)
2. Dynamic scaling based on 429/rate limit responses
3. Backoff hint with jitter attached to the raised RateLimitError
4. Async context manager for easy integration
5. Statistics for observability

The limiter never sleeps itself: the GenerationClient owns the retry loop
and the latency budget, so the backoff is handed back as
RateLimitError.retry_after.

Usage:
    from codeweaver.services.adaptive_rate_limiter import AdaptiveRateLimiter

    limiter = AdaptiveRateLimiter(initial_max_concurrent=10)

    async with limiter.acquire("azure"):
        response = await some_generation_call()
"""

import asyncio
import time
import random
import logging
from typing import Dict, Optional, Any
from dataclasses import dataclass, field
from contextlib import asynccontextmanager

from codeweaver.services.errors import RateLimitError

logger = logging.getLogger(__name__)


@dataclass
class ProviderState:
    """Tracks state for a single generation provider"""

    name: str
    max_concurrent: int = 10  # Starting max
    current_concurrent: int = 0
    semaphore: asyncio.Semaphore = field(default=None)

    # Metrics
    total_calls: int = 0
    successful_calls: int = 0
    rate_limited_calls: int = 0
    last_429_time: Optional[float] = None
    consecutive_successes: int = 0

    # Scaling parameters
    min_concurrent: int = 1
    scale_down_factor: float = 0.5  # Reduce by 50% on 429
    scale_up_threshold: int = 20  # Successes before scaling up
    scale_up_increment: int = 2  # Add 2 concurrent slots

    # Permits withheld after a scale-down, reclaimed as slots are released
    pending_reductions: int = 0

    def __post_init__(self):
        if self.semaphore is None:
            self.semaphore = asyncio.Semaphore(self.max_concurrent)


def is_rate_limit_error(error: Exception) -> bool:
    """Detect 429/rate limit errors from various providers"""
    if isinstance(error, RateLimitError):
        return True
    if getattr(error, "status_code", None) == 429:
        return True

    error_str = str(error).lower()
    error_type = type(error).__name__.lower()

    if "ratelimit" in error_type or "toomanyrequests" in error_type:
        return True

    rate_limit_indicators = [
        "429",
        "rate limit",
        "rate_limit",
        "ratelimit",
        "too many requests",
        "quota exceeded",
        "requests per minute",
        "tokens per minute",
        "resource exhausted",
    ]
    return any(indicator in error_str for indicator in rate_limit_indicators)


def extract_retry_after(error: Exception) -> Optional[float]:
    """Extract a Retry-After value from the error or its HTTP response"""
    retry_after = getattr(error, "retry_after", None)
    if retry_after is not None:
        return float(retry_after)

    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        value = headers.get("Retry-After") or headers.get("retry-after")
        if value:
            try:
                return float(value)
            except ValueError:
                return None
    cause = error.__cause__
    if cause is not None and cause is not error:
        return extract_retry_after(cause)
    return None


class AdaptiveRateLimiter:
    """
    Adaptive rate limiter with per-provider tracking.

    Automatically adjusts concurrency based on API responses:
    - On 429: Reduce max_concurrent by 50% and raise RateLimitError with a
      backoff hint
    - On sustained success: Gradually increase back up
    """

    def __init__(
        self,
        initial_max_concurrent: int = 10,
        min_concurrent: int = 1,
        max_concurrent_ceiling: int = 20,
        base_backoff: float = 1.0,
        max_backoff: float = 30.0,
        jitter: float = 0.5,
    ):
        self.initial_max = initial_max_concurrent
        self.min_concurrent = min_concurrent
        self.max_ceiling = max_concurrent_ceiling
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self.jitter = jitter

        self._providers: Dict[str, ProviderState] = {}

        logger.info(
            f"AdaptiveRateLimiter initialized: max={initial_max_concurrent}, "
            f"min={min_concurrent}, ceiling={max_concurrent_ceiling}"
        )

    def _get_provider_state(self, provider: str) -> ProviderState:
        """Get or create state for a provider"""
        if provider not in self._providers:
            self._providers[provider] = ProviderState(
                name=provider,
                max_concurrent=self.initial_max,
                min_concurrent=self.min_concurrent,
                semaphore=asyncio.Semaphore(self.initial_max),
            )
            logger.debug(f"Created provider state for '{provider}' with max={self.initial_max}")
        return self._providers[provider]

    @staticmethod
    def extract_provider(model: str) -> str:
        """Extract provider name from a model or provider string"""
        if not model:
            return "default"

        model_lower = model.lower()
        if model_lower in ("azure", "openai", "default"):
            return model_lower
        if model_lower.startswith("azure/") or "model-router" in model_lower:
            return "azure"
        if model_lower.startswith("openai/") or model_lower.startswith("gpt"):
            return "openai"
        return "default"

    @asynccontextmanager
    async def acquire(self, provider_or_model: str = "default"):
        """
        Async context manager to acquire a slot for a generation call.

        Usage:
            async with limiter.acquire("azure"):
                response = await generation_call()

        Raises:
            RateLimitError: If a rate limit is detected during the call,
                with retry_after set to the suggested backoff
        """
        provider = self.extract_provider(provider_or_model)
        state = self._get_provider_state(provider)

        await state.semaphore.acquire()
        state.current_concurrent += 1
        state.total_calls += 1

        try:
            yield
            self._record_success(provider, state)
        except Exception as e:
            if is_rate_limit_error(e):
                backoff = self._handle_rate_limit(provider, state, e)
                raise RateLimitError(provider, retry_after=backoff) from e
            raise
        finally:
            state.current_concurrent -= 1
            if state.pending_reductions > 0:
                # Swallow this permit to shrink the effective concurrency
                state.pending_reductions -= 1
            else:
                state.semaphore.release()

    def _record_success(self, provider: str, state: ProviderState):
        """Record successful call and potentially scale up"""
        state.successful_calls += 1
        state.consecutive_successes += 1

        if state.consecutive_successes >= state.scale_up_threshold:
            new_max = min(state.max_concurrent + state.scale_up_increment, self.max_ceiling)
            if new_max > state.max_concurrent:
                old_max = state.max_concurrent
                added = new_max - old_max
                state.max_concurrent = new_max
                # Cancel withheld permits first, then add fresh ones
                reclaimed = min(added, state.pending_reductions)
                state.pending_reductions -= reclaimed
                for _ in range(added - reclaimed):
                    state.semaphore.release()
                logger.info(
                    f"📈 {provider}: Scaled UP concurrency {old_max} → {new_max} "
                    f"(after {state.scale_up_threshold} successes)"
                )
            state.consecutive_successes = 0

    def _handle_rate_limit(self, provider: str, state: ProviderState, error: Exception) -> float:
        """Scale down and compute the backoff the caller should wait"""
        state.rate_limited_calls += 1
        state.consecutive_successes = 0
        state.last_429_time = time.time()

        new_max = max(int(state.max_concurrent * state.scale_down_factor), state.min_concurrent)
        if new_max < state.max_concurrent:
            old_max = state.max_concurrent
            state.pending_reductions += old_max - new_max
            state.max_concurrent = new_max
            logger.warning(
                f"📉 {provider}: Scaled DOWN concurrency {old_max} → {new_max} "
                f"(429 rate limit hit)"
            )

        retry_after = extract_retry_after(error)
        if retry_after:
            backoff = retry_after
        else:
            backoff = min(
                self.base_backoff * (2 ** min(state.rate_limited_calls - 1, 5)),
                self.max_backoff,
            )
            # Add jitter (+-50%)
            backoff = max(0.1, backoff + backoff * self.jitter * (random.random() * 2 - 1))

        logger.warning(f"⏳ {provider}: Suggesting backoff of {backoff:.1f}s")
        return backoff

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics for all providers"""
        return {
            provider: {
                "max_concurrent": state.max_concurrent,
                "current_concurrent": state.current_concurrent,
                "total_calls": state.total_calls,
                "successful_calls": state.successful_calls,
                "rate_limited_calls": state.rate_limited_calls,
                "success_rate": (
                    round(state.successful_calls / state.total_calls * 100, 1)
                    if state.total_calls > 0
                    else 100.0
                ),
                "last_429": state.last_429_time,
                "consecutive_successes": state.consecutive_successes,
            }
            for provider, state in self._providers.items()
        }

    def log_stats(self):
        """Log current statistics for all providers"""
        stats = self.get_stats()
        if not stats:
            logger.info("📊 AdaptiveRateLimiter: No providers tracked yet")
            return

        logger.info("📊 AdaptiveRateLimiter Statistics:")
        for provider, data in stats.items():
            logger.info(
                f"   {provider}: {data['successful_calls']}/{data['total_calls']} calls "
                f"({data['success_rate']}% success), "
                f"max_concurrent={data['max_concurrent']}, "
                f"rate_limits={data['rate_limited_calls']}"
            )
