"""
Generation Client

Wraps the external text generator with a connectivity check, per-attempt
timeouts, bounded retry and an overall latency budget.

    generate(prompt, options) -> RawGenerationResponse

1. Offline -> OfflineError immediately, no network attempt
2. Each attempt: asyncio.wait_for(min(options.timeout, remaining budget))
3. Transient failures (timeout, 5xx, 429, connection error, empty response)
   retry with exponential backoff + jitter, up to options.max_retries
4. Non-retryable failures (4xx, content policy) raise immediately

Provider Retry-After hints are honoured when they fit inside the budget.
"""

import asyncio
import logging
import random
import time
from typing import Optional, Callable, Awaitable

from codeweaver.models import PromptSpec, RawGenerationResponse, GenerationOptions
from codeweaver.services.adaptive_rate_limiter import AdaptiveRateLimiter
from codeweaver.services.connectivity import ConnectivityChecker
from codeweaver.services.errors import (
    GenerationError,
    OfflineError,
    GenerationTimeoutError,
    TransientServiceError,
    NonRetryableGenerationError,
)
from codeweaver.services.foundry import TextGenerator

logger = logging.getLogger(__name__)

# Finish reasons meaning the generator hit its token limit
TRUNCATION_REASONS = ("length", "max_tokens")


def classify_error(error: Exception) -> GenerationError:
    """
    Map an arbitrary generator exception onto the GenerationError taxonomy.

    Generators that already raise GenerationError pass through unchanged.
    Others are classified by HTTP status code, then by connection type.
    """
    if isinstance(error, GenerationError):
        return error
    if isinstance(error, asyncio.TimeoutError):
        return GenerationTimeoutError(str(error) or "Generator timed out")

    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if isinstance(status, int):
        if status == 429 or status == 408 or status >= 500:
            return TransientServiceError(f"Generator returned {status}: {error}", status_code=status)
        if 400 <= status < 500:
            return NonRetryableGenerationError(f"Generator returned {status}: {error}", status_code=status)

    if isinstance(error, (ConnectionError, OSError)):
        return TransientServiceError(f"Connection failed: {error}")

    return NonRetryableGenerationError(f"Unexpected generator failure: {type(error).__name__}: {error}")


class GenerationClient:
    """
    Reliable wrapper around a TextGenerator.

    Attributes:
        generator: Concrete text generator (e.g. FoundryTextGenerator)
        connectivity: Online/offline capability
        rate_limiter: Optional adaptive per-provider concurrency limiter
        options: Default timeout / retry / budget settings
    """

    def __init__(
        self,
        generator: TextGenerator,
        connectivity: ConnectivityChecker,
        rate_limiter: Optional[AdaptiveRateLimiter] = None,
        options: Optional[GenerationOptions] = None,
        backoff_base: float = 0.5,
        backoff_max: float = 4.0,
        jitter: float = 0.25,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        narrative_logger=None,
    ):
        self.generator = generator
        self.connectivity = connectivity
        self.rate_limiter = rate_limiter
        self.options = options or GenerationOptions()
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.jitter = jitter
        self._sleep = sleep
        self._clock = clock
        self.narrative_logger = narrative_logger

    @property
    def provider(self) -> str:
        return getattr(self.generator, "provider", "default")

    def _backoff(self, attempt: int, error: GenerationError) -> float:
        """Delay before the next attempt; Retry-After wins when present"""
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            return float(retry_after)
        delay = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        return delay + delay * self.jitter * random.random()

    async def _attempt(self, prompt: PromptSpec, timeout: float):
        call = self.generator.complete(
            prompt.text,
            max_tokens=prompt.max_output_tokens,
            temperature=prompt.temperature,
        )
        if self.rate_limiter is None:
            return await asyncio.wait_for(call, timeout=timeout)
        async with self.rate_limiter.acquire(self.provider):
            return await asyncio.wait_for(call, timeout=timeout)

    async def generate(
        self,
        prompt: PromptSpec,
        options: Optional[GenerationOptions] = None
    ) -> RawGenerationResponse:
        """
        Generate text for a prompt.

        Raises:
            OfflineError: No connectivity; nothing was attempted
            GenerationTimeoutError: Attempts or the latency budget timed out
            TransientServiceError: Retries exhausted on transient failures
            NonRetryableGenerationError: Request rejected by the service
        """
        opts = options or self.options

        if not await self.connectivity.is_online():
            logger.info(f"Offline: skipping {prompt.template.value} generation")
            raise OfflineError()

        start = self._clock()
        deadline = start + opts.total_budget
        max_attempts = max(opts.max_retries, 0) + 1
        last_error: Optional[GenerationError] = None

        for attempt in range(1, max_attempts + 1):
            remaining = deadline - self._clock()
            if remaining <= 0:
                break

            attempt_timeout = min(opts.timeout, remaining)
            attempt_start = self._clock()
            try:
                completion = await self._attempt(prompt, attempt_timeout)
                if not (completion.text or "").strip():
                    raise TransientServiceError("Generator returned an empty response")
            except asyncio.TimeoutError:
                last_error = GenerationTimeoutError(
                    f"Attempt {attempt} timed out after {attempt_timeout:.1f}s"
                )
            except Exception as e:
                last_error = classify_error(e)
                if not last_error.retryable:
                    self._log_call(prompt, None, attempt, attempt_start, f"rejected: {last_error.code}")
                    if last_error is e:
                        raise
                    raise last_error from e
            else:
                latency = self._clock() - start
                truncated = (completion.finish_reason or "").lower() in TRUNCATION_REASONS
                self._log_call(prompt, completion, attempt, attempt_start, "success")
                if attempt > 1:
                    logger.info(f"✅ {prompt.template.value} generation succeeded on attempt {attempt}")
                return RawGenerationResponse(
                    text=completion.text,
                    latency_seconds=latency,
                    truncated=truncated,
                    model=completion.model,
                    finish_reason=completion.finish_reason,
                    attempts=attempt,
                )

            self._log_call(prompt, None, attempt, attempt_start, last_error.code)
            logger.warning(
                f"🔄 {prompt.template.value} attempt {attempt}/{max_attempts} failed: {last_error}"
            )

            if attempt == max_attempts:
                break
            delay = self._backoff(attempt, last_error)
            if self._clock() + delay >= deadline:
                logger.warning(f"Latency budget too small for a {delay:.1f}s backoff; giving up")
                break
            await self._sleep(delay)

        if last_error is None:
            last_error = GenerationTimeoutError(f"Latency budget of {opts.total_budget:.1f}s exhausted")
        raise last_error

    def _log_call(self, prompt: PromptSpec, completion, attempt: int, attempt_start: float, status: str):
        if self.narrative_logger is None:
            return
        usage = getattr(completion, "usage", None) or {}
        self.narrative_logger.generation_call(
            provider=self.provider,
            model=getattr(completion, "model", None),
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            latency=self._clock() - attempt_start,
            status=status,
            attempt=attempt,
            template=prompt.template.value,
        )
