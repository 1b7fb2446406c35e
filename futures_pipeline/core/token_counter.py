"""
Token counting and usage tracking.

Holds provider-reported token counts and a rough prompt-size estimate used
before a call is made.
"""

from dataclasses import dataclass


# Average characters per token for English prose.
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts as reported by the provider.
    """
    prompt_tokens: int
    completion_tokens: int

    def __post_init__(self):
        if self.prompt_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def estimate_tokens(text: str) -> int:
    """Estimate the token count of ``text`` before sending it.

    Only used for sizing requests; recorded usage always comes from the
    provider's own report.
    """
    if not text:
        return 0
    return max(1, -(-len(text) // CHARS_PER_TOKEN))
