"""Core accounting: token estimation and context window tracking."""

from agentdeck.core.context_window import ContextWindowTracker, TokenUsage
from agentdeck.core.tokens import (
    count_content_tokens,
    count_tokens,
    count_tokens_heuristic,
    invalidate_cache,
)

__all__ = [
    "ContextWindowTracker",
    "TokenUsage",
    "count_content_tokens",
    "count_tokens",
    "count_tokens_heuristic",
    "invalidate_cache",
]
