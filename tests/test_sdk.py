"""
Unit tests for SDK layer.

Tests the OpenAI content provider and the classification of provider
failures into retryable and fatal errors.
"""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import httpx
import openai
import pytest

from futures_pipeline.core.errors import FailureReason, FatalGenerationError, RetryableGenerationError
from futures_pipeline.sdk.notifications import LoggingNotifier, RecordingNotifier
from futures_pipeline.sdk.openai_client import Completion, OpenAIContentProvider, classify_provider_error

MESSAGES = [{"role": "user", "content": "Hello"}]
REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def status_error(cls, status, body=None):
    return cls("provider said no", response=httpx.Response(status, request=REQUEST), body=body)


def mock_response(content="Hello there", prompt_tokens=10, completion_tokens=5, finish_reason="stop"):
    response = Mock()
    response.id = "chatcmpl-123"
    response.model = "gpt-4o"
    response.usage = Mock(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    choice = Mock(finish_reason=finish_reason)
    choice.message.content = content
    response.choices = [choice]
    return response


class TestClassifyProviderError:
    """Test mapping of SDK exceptions to the pipeline taxonomy."""

    def test_timeout_is_retryable(self):
        error = classify_provider_error(openai.APITimeoutError(request=REQUEST))
        assert isinstance(error, RetryableGenerationError)
        assert error.reason == FailureReason.TIMEOUT

    def test_rate_limit_is_retryable(self):
        error = classify_provider_error(status_error(openai.RateLimitError, 429))
        assert error.retryable
        assert error.reason == FailureReason.RATE_LIMITED

    def test_connection_error_is_retryable(self):
        error = classify_provider_error(openai.APIConnectionError(request=REQUEST))
        assert error.retryable
        assert error.reason == FailureReason.PROVIDER_ERROR

    def test_server_error_is_retryable(self):
        error = classify_provider_error(status_error(openai.InternalServerError, 503))
        assert error.retryable

    def test_content_policy_is_fatal(self):
        body = {"code": "content_policy_violation", "message": "rejected"}
        error = classify_provider_error(status_error(openai.BadRequestError, 400, body))
        assert isinstance(error, FatalGenerationError)
        assert error.reason == FailureReason.CONTENT_POLICY

    def test_other_client_error_is_fatal(self):
        error = classify_provider_error(status_error(openai.AuthenticationError, 401))
        assert not error.retryable
        assert error.reason == FailureReason.PROVIDER_ERROR


class TestOpenAIContentProvider:
    """Test the async provider wrapper."""

    @patch('futures_pipeline.sdk.openai_client.AsyncOpenAI')
    def test_default_client_has_no_sdk_retries(self, mock_client_class):
        provider = OpenAIContentProvider(model="gpt-4o")

        mock_client_class.assert_called_once_with(max_retries=0)
        assert provider.model == "gpt-4o"

    def test_missing_model(self):
        with pytest.raises(ValueError, match="model is required"):
            OpenAIContentProvider(model="", client=Mock())

    def test_empty_messages(self):
        provider = OpenAIContentProvider(model="gpt-4o", client=Mock())
        with pytest.raises(ValueError, match="messages is required"):
            asyncio.run(provider.complete([]))

    def test_successful_completion(self):
        client = Mock()
        client.chat.completions.create = AsyncMock(return_value=mock_response())
        provider = OpenAIContentProvider(model="gpt-4o", client=client)

        result = asyncio.run(provider.complete(MESSAGES, max_tokens=100, temperature=0.5))

        assert result == Completion(
            text="Hello there",
            usage=result.usage,
            model="gpt-4o",
            request_id="chatcmpl-123",
            finish_reason="stop",
        )
        assert result.usage.total_tokens == 15
        client.chat.completions.create.assert_awaited_once_with(
            model="gpt-4o", messages=MESSAGES, max_tokens=100, temperature=0.5,
        )

    def test_missing_usage_is_malformed(self):
        response = mock_response()
        response.usage = None
        client = Mock()
        client.chat.completions.create = AsyncMock(return_value=response)
        provider = OpenAIContentProvider(model="gpt-4o", client=client)

        with pytest.raises(FatalGenerationError) as exc_info:
            asyncio.run(provider.complete(MESSAGES))
        assert exc_info.value.reason == FailureReason.MALFORMED_OUTPUT

    def test_no_choices_keeps_usage(self):
        response = mock_response()
        response.choices = []
        client = Mock()
        client.chat.completions.create = AsyncMock(return_value=response)
        provider = OpenAIContentProvider(model="gpt-4o", client=client)

        with pytest.raises(FatalGenerationError) as exc_info:
            asyncio.run(provider.complete(MESSAGES))
        assert exc_info.value.usage.total_tokens == 15

    def test_sdk_errors_are_translated(self):
        client = Mock()
        client.chat.completions.create = AsyncMock(side_effect=status_error(openai.RateLimitError, 429))
        provider = OpenAIContentProvider(model="gpt-4o", client=client)

        with pytest.raises(RetryableGenerationError) as exc_info:
            asyncio.run(provider.complete(MESSAGES))
        assert exc_info.value.reason == FailureReason.RATE_LIMITED
        assert isinstance(exc_info.value.__cause__, openai.RateLimitError)


class TestNotifiers:
    """Test notification sinks."""

    def test_recording_notifier(self):
        notifier = RecordingNotifier()
        notifier.episode_published("user_1", "ep_1")
        assert notifier.sent == [("user_1", "ep_1")]

    def test_logging_notifier(self, caplog):
        with caplog.at_level("INFO"):
            LoggingNotifier().episode_published("user_1", "ep_1")
        assert "Episode ep_1 published for user user_1" in caplog.text
