"""
Episode generation.

The only component that crosses the external-provider boundary. One call
to ``EpisodeGenerator.generate`` is one generation attempt:

1. Assemble messages from the project brief and feedback directives
2. Cap the completion size to what the episode budget can afford
3. Call the provider under a bounded timeout
4. Record usage in the cost ledger as soon as the provider reports it
5. Validate the output and build a draft

Usage is recorded before validation, so an attempt that fails on its
output is still accounted for. A failed ledger write fails the attempt.
"""

import asyncio
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .errors import FailureReason, FatalGenerationError, GenerationError, RetryableGenerationError
from .feedback import FeedbackDirective, consumed_note_ids
from .pricing import PRICING_TABLE, PricingTable, affordable_completion_tokens
from .token_counter import TokenUsage, estimate_tokens
from ..config.loader import GenerationConfig
from ..storage.ledger import CostLedger
from ..storage.models import Episode, EpisodeDraft, Project, TokenUsageRecord

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 200

SYSTEM_PROMPT = (
    "You write strategic foresight briefings for a single subscriber. "
    "Each briefing explores plausible futures relevant to the subscriber's brief "
    "and ends with concrete signals to watch. "
    "Respond in markdown. The first line must be a level-one heading ('# ') "
    "holding the episode title."
)


class ContentProvider(Protocol):
    model: str

    async def complete(
        self,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Any:
        ...


def _format_brief(brief: Dict[str, Any]) -> str:
    lines = []
    for key, value in brief.items():
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(item) for item in value)
        lines.append(f"- {key.replace('_', ' ')}: {value}")
    return "\n".join(lines)


def build_messages(
    project: Project,
    directives: Sequence[FeedbackDirective] = (),
    sequence: Optional[int] = None,
) -> List[Dict[str, str]]:
    """Chat messages for one episode of ``project``."""
    parts = [f"Project: {project.title}"]
    if sequence is not None:
        parts.append(f"Episode number: {sequence}")
    if project.brief:
        parts.append("Brief:\n" + _format_brief(project.brief))
    if directives:
        feedback = "\n".join(f"- ({d.weight:.2f}) {d.text}" for d in directives)
        parts.append("Reader feedback to apply, strongest first:\n" + feedback)
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": "\n\n".join(parts)},
    ]


def count_words(text: str) -> int:
    return len(text.split())


def reading_minutes(text: str) -> int:
    return max(1, math.ceil(count_words(text) / WORDS_PER_MINUTE))


def extract_title(text: str) -> Optional[str]:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("# "):
            return stripped[2:].strip() or None
        if stripped:
            return None
    return None


class EpisodeGenerator:
    """Produces an episode draft from a provider call."""

    def __init__(
        self,
        provider: ContentProvider,
        ledger: CostLedger,
        config: GenerationConfig,
        pricing: PricingTable = PRICING_TABLE,
    ):
        """Initialize the generator.

        Raises:
            ValueError: If the provider's model has no price, since its
                usage could not be recorded
        """
        if not pricing.supports(provider.model):
            raise ValueError(f"Unsupported model: {provider.model}")
        self.provider = provider
        self.ledger = ledger
        self.config = config
        self.pricing = pricing

    def completion_budget(self, messages: List[Dict[str, str]], max_cost: Optional[float]) -> int:
        """Completion tokens to request, capped by the remaining episode budget."""
        if max_cost is None:
            return self.config.max_tokens
        prompt_tokens = sum(estimate_tokens(message["content"]) for message in messages)
        affordable = affordable_completion_tokens(self.provider.model, prompt_tokens, max_cost, self.pricing)
        return min(self.config.max_tokens, affordable)

    async def generate(
        self,
        project: Project,
        episode: Episode,
        directives: Sequence[FeedbackDirective] = (),
        max_cost: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> EpisodeDraft:
        """Run one generation attempt.

        Args:
            project: Project being generated for
            episode: Claimed (GENERATING) episode
            directives: Feedback directives to fold into the prompt
            max_cost: Remaining episode budget, or None for no cap
            now: Time the usage is recorded at (defaults to the current time)

        Returns:
            Draft whose usage is already recorded in the cost ledger

        Raises:
            RetryableGenerationError: Timeout, transient provider or
                storage failure
            FatalGenerationError: Unusable output, content-policy rejection,
                or a budget too small for any completion
        """
        messages = build_messages(project, directives, episode.sequence)
        max_tokens = self.completion_budget(messages, max_cost)
        if max_tokens <= 0:
            raise FatalGenerationError(
                f"Remaining episode budget £{max_cost:.4f} cannot cover a completion",
                FailureReason.BUDGET_EXCEEDED,
            )

        try:
            completion = await asyncio.wait_for(
                self.provider.complete(
                    messages,
                    max_tokens=max_tokens,
                    temperature=self.config.temperature,
                ),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise RetryableGenerationError(
                f"Provider call exceeded {self.config.timeout_seconds:g}s",
                FailureReason.TIMEOUT,
            ) from e
        except GenerationError as e:
            if e.usage is not None:
                await self._record(project, episode, e.usage, None, None, now)
            raise

        record = await self._record(
            project, episode, completion.usage, completion.request_id, completion.model, now,
        )

        text = (completion.text or "").strip()
        if completion.finish_reason == "content_filter":
            raise FatalGenerationError(
                "Provider withheld output under its content policy",
                FailureReason.CONTENT_POLICY,
                usage=completion.usage,
            )
        if not text:
            raise FatalGenerationError("Provider returned no content", FailureReason.EMPTY_OUTPUT, usage=completion.usage)
        words = count_words(text)
        if words < self.config.min_words:
            raise FatalGenerationError(
                f"Output has {words} words, fewer than the minimum of {self.config.min_words}",
                FailureReason.MALFORMED_OUTPUT,
                usage=completion.usage,
            )

        title = extract_title(text) or f"{project.title}: Episode {episode.sequence}"
        logger.info(
            "Generated episode %s for project=%s: %d words, cost %.4f",
            episode.id, project.id, words, record.cost,
        )
        return EpisodeDraft(
            title=title,
            content=text,
            reading_minutes=reading_minutes(text),
            model=self.provider.model,
            prompt_tokens=record.prompt_tokens,
            completion_tokens=record.completion_tokens,
            cost=record.cost,
            request_id=completion.request_id,
            consumed_note_ids=consumed_note_ids(directives),
        )

    async def _record(
        self,
        project: Project,
        episode: Episode,
        usage: TokenUsage,
        request_id: Optional[str],
        provider_model: Optional[str],
        now: Optional[datetime],
    ) -> TokenUsageRecord:
        # Priced at the configured model whatever the provider reports back.
        return await asyncio.to_thread(
            self.ledger.record_usage,
            project.organization_id,
            project.id,
            episode.id,
            usage.prompt_tokens,
            usage.completion_tokens,
            self.provider.model,
            "generation",
            request_id,
            now,
            provider_model,
        )
