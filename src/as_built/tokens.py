from __future__ import annotations

import math

from as_built.config import CHARS_PER_TOKEN, DEFAULT_PROVIDER_TABLE, LlmProvider, LlmTier, ProviderTable
from as_built.models import TokenEstimate


def estimate_tokens(text: str) -> int:
    """Approximate the token count of ``text`` at four characters per token.

    This is a pre-flight heuristic (about 20% either way), not a tokenizer.
    """
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class TokenEstimator:
    """Compares prompts against the context windows of a provider table."""

    def __init__(self, provider_table: ProviderTable = DEFAULT_PROVIDER_TABLE) -> None:
        self.provider_table = provider_table

    def context_window(self, provider: LlmProvider, tier: LlmTier) -> int:
        """Return the context window, in tokens, of ``provider`` at ``tier``."""
        return self.provider_table.context_window(provider, tier)

    def check_limit(self, text: str, provider: LlmProvider, tier: LlmTier) -> TokenEstimate:
        """Estimate ``text`` against the selected model's context window.

        Args:
            text (str): the fully assembled prompt
            provider (LlmProvider): provider the prompt will be sent to
            tier (LlmTier): model tier

        Returns:
            TokenEstimate: estimate, window, utilization and the two limit flags
        """
        return TokenEstimate(
            estimated_tokens=estimate_tokens(text),
            context_window=self.context_window(provider, tier),
        )
