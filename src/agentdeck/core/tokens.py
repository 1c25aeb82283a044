"""Token estimation for pre-flight context checks, backed by tiktoken."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

import tiktoken

# Prose averages ~4 chars/token; used when an exact count is not worth it
CHARS_PER_TOKEN = 4.0

# Flat cost charged for each image attachment
IMAGE_TOKENS = 765

# Singleton encoder (loaded once on first use)
_encoder: tiktoken.Encoding | None = None

# Content hash -> token count cache
_token_cache: dict[int, int] = {}


def _get_encoder() -> tiktoken.Encoding:
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("o200k_base")
    return _encoder


def count_tokens(text: str) -> int:
    """Count tokens with caching (uses tiktoken)."""
    key = hash(text)
    if key not in _token_cache:
        _token_cache[key] = len(_get_encoder().encode(text))
    return _token_cache[key]


def count_tokens_heuristic(text: str) -> int:
    """Estimate tokens from character count, without encoding."""
    return int(len(text) / CHARS_PER_TOKEN)


def invalidate_cache() -> None:
    """Clear the token count cache."""
    _token_cache.clear()


def count_content_tokens(
    content: str | Iterable[dict[str, Any]],
    counter: Callable[[str], int] = count_tokens,
) -> int:
    """Count tokens for plain text or a list of multi-part content dicts.

    Args:
        content: A string, or parts shaped like ``{"type": "text", "text": ...}``
            and ``{"type": "image_url", ...}``.
        counter: Callable used for text segments.
    """
    if isinstance(content, str):
        return counter(content)

    total = 0
    for part in content:
        if part.get("type") == "text":
            total += counter(part.get("text", ""))
        else:
            total += IMAGE_TOKENS
    return total
