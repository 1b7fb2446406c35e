"""
OpenAI content provider.

Wraps the async chat completions API and translates its failures into the
pipeline's RETRYABLE/FATAL taxonomy. Usage is returned to the caller, which
records it in the cost ledger before anything is delivered.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from ..core.errors import (
    FailureReason,
    FatalGenerationError,
    GenerationError,
    RetryableGenerationError,
)
from ..core.token_counter import TokenUsage

logger = logging.getLogger(__name__)

CONTENT_POLICY_CODES = ("content_policy_violation", "content_filter")


@dataclass(frozen=True)
class Completion:
    """Text and usage returned by one provider call."""
    text: str
    usage: TokenUsage
    model: str
    request_id: Optional[str] = None
    finish_reason: Optional[str] = None


def classify_provider_error(error: Exception) -> GenerationError:
    """Map an OpenAI SDK exception to a retryable or fatal generation error."""
    message = str(error) or error.__class__.__name__
    if isinstance(error, openai.APITimeoutError):
        return RetryableGenerationError(message, FailureReason.TIMEOUT)
    if isinstance(error, openai.RateLimitError):
        return RetryableGenerationError(message, FailureReason.RATE_LIMITED)
    if isinstance(error, openai.APIConnectionError):
        return RetryableGenerationError(message, FailureReason.PROVIDER_ERROR)
    if isinstance(error, openai.APIStatusError):
        if error.status_code >= 500:
            return RetryableGenerationError(message, FailureReason.PROVIDER_ERROR)
        if getattr(error, "code", None) in CONTENT_POLICY_CODES:
            return FatalGenerationError(message, FailureReason.CONTENT_POLICY)
        return FatalGenerationError(message, FailureReason.PROVIDER_ERROR)
    return FatalGenerationError(message, FailureReason.PROVIDER_ERROR)


class OpenAIContentProvider:
    """Content-generation provider backed by OpenAI chat completions.

    All failures are raised as ``GenerationError`` subclasses so the
    pipeline can decide whether to retry.
    """

    def __init__(self, model: str, client: Optional[AsyncOpenAI] = None, max_retries: int = 0):
        """Initialize the provider.

        Args:
            model: OpenAI model name (required)
            client: Preconfigured client (defaults to ``AsyncOpenAI()`` reading
                ``OPENAI_API_KEY`` from the environment)
            max_retries: SDK-level retries; the pipeline owns retry policy,
                so this defaults to none

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.client = client or AsyncOpenAI(max_retries=max_retries)

    async def complete(
        self,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        **kwargs: Any
    ) -> Completion:
        """Run one chat completion.

        Raises:
            ValueError: If messages is empty
            RetryableGenerationError: Timeouts, rate limits, connection
                failures and provider 5xx responses
            FatalGenerationError: Content-policy rejections, other 4xx
                responses and responses without usage
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
                **kwargs
            )
        except openai.OpenAIError as e:
            error = classify_provider_error(e)
            logger.warning("Provider call failed (%s): %s", error.reason.value, e)
            raise error from e

        usage = response.usage
        if not usage:
            raise FatalGenerationError(
                "OpenAI response missing usage information",
                FailureReason.MALFORMED_OUTPUT,
            )
        token_usage = TokenUsage(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        )
        if not response.choices:
            raise FatalGenerationError(
                "OpenAI response has no choices",
                FailureReason.MALFORMED_OUTPUT,
                usage=token_usage,
            )

        choice = response.choices[0]
        return Completion(
            text=choice.message.content or "",
            usage=token_usage,
            model=response.model or self.model,
            request_id=response.id,
            finish_reason=choice.finish_reason,
        )
