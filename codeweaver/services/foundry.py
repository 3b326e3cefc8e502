"""
Foundry Text Generator - OpenAI-compatible generation client

Concrete TextGenerator backed by the openai package. Talks either to an
Azure OpenAI / Microsoft Foundry deployment (when an API version is
configured) or to any OpenAI-compatible endpoint.

Provider exceptions are translated into the pipeline's GenerationError
taxonomy so the GenerationClient can decide what to retry.

Usage:
    from codeweaver.services.foundry import FoundryTextGenerator

    generator = FoundryTextGenerator(
        endpoint="https://foundry-codeweaver.cognitiveservices.azure.com",
        api_key="your-api-key",
        api_version="2024-12-01-preview",
        model="gpt-4o-mini",
    )

    completion = await generator.complete(prompt, max_tokens=2048, temperature=0.7)
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Protocol

import openai
from openai import AsyncOpenAI, AsyncAzureOpenAI

from codeweaver.services.errors import (
    GenerationError,
    GenerationTimeoutError,
    TransientServiceError,
    RateLimitError,
    NonRetryableGenerationError,
    ContentPolicyError,
)

logger = logging.getLogger(__name__)

CONTENT_FILTER_MARKERS = ("content_filter", "content_policy", "responsibleaipolicyviolation")


@dataclass
class Completion:
    """Text returned by a generator plus call metadata"""
    text: str
    finish_reason: Optional[str] = None
    model: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)


class TextGenerator(Protocol):
    """Anything that can turn a prompt into text"""

    provider: str

    async def complete(self, prompt: str, max_tokens: int, temperature: float) -> Completion:
        ...


def _retry_after_from(error: Exception) -> Optional[float]:
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is None:
        return None
    value = headers.get("retry-after")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def translate_openai_error(error: Exception, provider: str) -> GenerationError:
    """
    Map an openai exception onto the GenerationError taxonomy.

    - timeouts                      -> GenerationTimeoutError
    - 429                           -> RateLimitError (with Retry-After)
    - connection errors, 5xx, 408   -> TransientServiceError
    - content filter rejections     -> ContentPolicyError
    - other 4xx                     -> NonRetryableGenerationError
    """
    if isinstance(error, openai.APITimeoutError):
        return GenerationTimeoutError(f"{provider} request timed out")
    if isinstance(error, openai.APIConnectionError):
        return TransientServiceError(f"{provider} connection failed: {error}")
    if isinstance(error, openai.RateLimitError):
        return RateLimitError(provider, retry_after=_retry_after_from(error))
    if isinstance(error, openai.APIStatusError):
        status = error.status_code
        message = str(error)
        if any(marker in message.lower() for marker in CONTENT_FILTER_MARKERS):
            return ContentPolicyError(f"{provider} rejected the prompt: {message}", status_code=status)
        if status >= 500 or status == 408:
            return TransientServiceError(f"{provider} returned {status}: {message}", status_code=status)
        return NonRetryableGenerationError(f"{provider} returned {status}: {message}", status_code=status)
    return TransientServiceError(f"{provider} call failed: {error}")


class FoundryTextGenerator:
    """
    OpenAI / Azure OpenAI text generator.

    Attributes:
        endpoint: Service endpoint (None = api.openai.com)
        model: Model or deployment name
        provider: "azure" for Azure deployments, otherwise "openai"
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        api_version: Optional[str] = None,
        model: str = "gpt-4o-mini",
        client: Optional[Any] = None,
    ):
        self.endpoint = endpoint
        self.model = model
        self.provider = "azure" if api_version else "openai"
        self._api_key = api_key
        self._api_version = api_version
        self._client = client

        # Track last model actually used (for debugging)
        self._last_model_used: Optional[str] = None

        logger.info(f"Foundry generator initialized: endpoint={endpoint}, model={model}")

    @property
    def client(self):
        """Created on first use so an unconfigured app can still start offline"""
        if self._client is None:
            if self._api_version:
                logger.info("Initializing Foundry generator with Azure OpenAI client")
                self._client = AsyncAzureOpenAI(
                    azure_endpoint=self.endpoint,
                    api_key=self._api_key,
                    api_version=self._api_version,
                    max_retries=0,  # GenerationClient owns retries
                )
            else:
                logger.info("Initializing Foundry generator with OpenAI client")
                self._client = AsyncOpenAI(
                    base_url=self.endpoint,
                    api_key=self._api_key,
                    max_retries=0,
                )
        return self._client

    async def complete(self, prompt: str, max_tokens: int, temperature: float) -> Completion:
        """
        Send a single chat completion request.

        Raises:
            GenerationError: Translated provider failure
        """
        logger.info(f"🔷 Foundry Request: model={self.model}, temp={temperature}, max_tokens={max_tokens}")
        logger.debug(f"   💬 Prompt: {prompt[:150].replace(chr(10), ' ')}...")

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except openai.OpenAIError as e:
            logger.error(f"Foundry chat completion failed: {e}")
            raise translate_openai_error(e, self.provider) from e

        choice = response.choices[0]
        if choice.finish_reason == "content_filter":
            raise ContentPolicyError(f"{self.provider} filtered the completion")

        usage = {}
        if response.usage is not None:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        self._last_model_used = response.model
        logger.info(
            f"🤖 Foundry Model: {response.model} | "
            f"tokens: {usage.get('total_tokens', '?')} | finish: {choice.finish_reason}"
        )

        return Completion(
            text=choice.message.content or "",
            finish_reason=choice.finish_reason,
            model=response.model,
            usage=usage,
        )
