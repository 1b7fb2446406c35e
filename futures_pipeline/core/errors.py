"""
Error taxonomy for the episode pipeline.

Every failure is classified as RETRYABLE or FATAL. Only RETRYABLE errors
schedule another attempt inside the generation window; FATAL errors fail
the episode straight away without consuming a retry slot.
"""

from enum import Enum
from typing import Optional

from .token_counter import TokenUsage


class ErrorKind(Enum):
    """Whether a failed attempt is worth repeating."""
    RETRYABLE = "retryable"
    FATAL = "fatal"


class FailureReason(Enum):
    """Reason codes surfaced on FAILED episodes and retry history."""
    TIMEOUT = "TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    EMPTY_OUTPUT = "EMPTY_OUTPUT"
    MALFORMED_OUTPUT = "MALFORMED_OUTPUT"
    CONTENT_POLICY = "CONTENT_POLICY"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
    RETRIES_EXHAUSTED = "RETRIES_EXHAUSTED"
    NOT_ENTITLED = "NOT_ENTITLED"


class GenerationError(Exception):
    """Raised when a generation attempt cannot produce a publishable draft.

    Carries the token usage of the provider call when one was made, so the
    cost is still accounted for even though no content is delivered.
    """
    kind = ErrorKind.FATAL

    def __init__(
        self,
        message: str,
        reason: FailureReason,
        usage: Optional[TokenUsage] = None,
    ):
        super().__init__(message)
        self.reason = reason
        self.usage = usage

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.RETRYABLE


class RetryableGenerationError(GenerationError):
    """Transient failure: timeout, rate limit, provider 5xx, storage hiccup."""
    kind = ErrorKind.RETRYABLE


class FatalGenerationError(GenerationError):
    """Failure that would reproduce on retry."""
    kind = ErrorKind.FATAL


class LedgerWriteError(RetryableGenerationError):
    """The durable usage write failed; the attempt must not deliver content."""

    def __init__(self, message: str):
        super().__init__(message, FailureReason.STORAGE_ERROR)


class InvalidTransition(Exception):
    """Raised when an episode is not in the state a transition requires."""


class NotFoundError(LookupError):
    """Raised when an organization, project or episode does not exist."""


class FeedbackRejected(ValueError):
    """Raised when feedback is submitted for an episode or note that cannot take it."""


class InvalidFeedback(FeedbackRejected):
    """Raised when the feedback itself is malformed: bad rating or nothing to record."""
