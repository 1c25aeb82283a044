"""Per-session context window accounting.

The tracker only decides *when* history should be compacted. How the history
is shrunk is up to a Compactor collaborator (see session.protocols).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from agentdeck.config.schema import DEFAULT_COMPRESS_THRESHOLD, DEFAULT_MAX_CONTEXT_TOKENS
from agentdeck.logging import get_logger

log = get_logger("context")


@dataclass(slots=True)
class TokenUsage:
    """Token counters as last reported by the provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS
    is_default_max_tokens: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ContextWindowTracker:
    """Tracks token usage for one session and signals when to compress.

    Counters are merged field by field: an update that omits a counter leaves
    the stored value untouched.
    """

    def __init__(
        self,
        max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS,
        threshold: float = DEFAULT_COMPRESS_THRESHOLD,
    ) -> None:
        self._usage = TokenUsage(max_context_tokens=max_context_tokens)
        self._default_max = max_context_tokens
        self._threshold = threshold

    @property
    def usage(self) -> TokenUsage:
        return self._usage

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def is_estimated(self) -> bool:
        """True while the max context size is a default rather than provider-reported."""
        return self._usage.is_default_max_tokens

    def merge(
        self,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        total_tokens: int | None = None,
        max_context_tokens: int | None = None,
    ) -> TokenUsage:
        """Apply a partial usage update.

        A ``max_context_tokens`` value is treated as provider-reported and
        flips the tracker from estimated to confirmed.
        """
        if input_tokens is not None:
            self._usage.input_tokens = input_tokens
        if output_tokens is not None:
            self._usage.output_tokens = output_tokens
        if total_tokens is not None:
            self._usage.total_tokens = total_tokens
        if max_context_tokens:
            self.set_max_context_tokens(max_context_tokens, is_default=False)
        return self._usage

    def set_max_context_tokens(self, tokens: int, is_default: bool = False) -> None:
        if tokens <= 0:
            log.debug("Ignoring non-positive max context size %d", tokens)
            return
        self._usage.max_context_tokens = tokens
        self._usage.is_default_max_tokens = is_default

    @property
    def usage_ratio(self) -> float:
        if self._usage.max_context_tokens <= 0:
            return 0.0
        return self._usage.total_tokens / self._usage.max_context_tokens

    @property
    def remaining_tokens(self) -> int:
        return max(self._usage.max_context_tokens - self._usage.total_tokens, 0)

    def should_compress(self, ratio: float | None = None) -> bool:
        """True when ``total / max >= ratio`` (default: configured threshold)."""
        return self.would_exceed(0, ratio)

    def would_exceed(self, extra_tokens: int, ratio: float | None = None) -> bool:
        """Whether adding ``extra_tokens`` would reach the compression ratio."""
        limit = self._threshold if ratio is None else ratio
        max_tokens = self._usage.max_context_tokens
        if max_tokens <= 0:
            return False
        return (self._usage.total_tokens + extra_tokens) / max_tokens >= limit

    def reset(self) -> None:
        """Zero the counters after compaction; the max context size is kept."""
        self._usage.input_tokens = 0
        self._usage.output_tokens = 0
        self._usage.total_tokens = 0
        log.debug("Token usage reset (max=%d)", self._usage.max_context_tokens)

    def to_dict(self) -> dict[str, Any]:
        data = self._usage.to_dict()
        data["threshold"] = self._threshold
        data["usage_ratio"] = self.usage_ratio
        return data
