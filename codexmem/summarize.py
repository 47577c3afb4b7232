"""
Deterministic extractive summarizer.

No model calls: a summary is an optional ``Tags: a, b. `` prefix followed by
the content, cut back to a sentence boundary when it is too long.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from codexmem.config import SummarizationConfig
from codexmem.types import MemoryItem, age_in_days

ELLIPSIS = "..."
# A sentence cut is used only if it keeps more than this share of the window.
SENTENCE_CUT_MIN_FRACTION = 0.6


def summarize_content(content: str, max_length: int) -> str:
    """Shorten *content* to at most *max_length* characters (plus ellipsis)."""
    if len(content) <= max_length:
        return content
    snippet = content[:max_length]
    cut = max(snippet.rfind("."), snippet.rfind("!"), snippet.rfind("?"))
    if cut > max_length * SENTENCE_CUT_MIN_FRACTION:
        return snippet[: cut + 1]
    return snippet.strip() + ELLIPSIS


def needs_summary(
    item: MemoryItem,
    config: SummarizationConfig,
    now: Optional[datetime] = None,
) -> bool:
    """Old enough and long enough."""
    now = now or datetime.now(timezone.utc)
    return (
        age_in_days(item.updated_at, now) >= config.older_than_days
        and len(item.content) >= config.max_content_length
    )


def summarize_item(
    item: MemoryItem,
    config: SummarizationConfig,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Summary for *item*; the stored summary when none is needed."""
    if not needs_summary(item, config, now):
        return item.summary
    prefix = f"Tags: {', '.join(item.tags)}. " if item.tags else ""
    return prefix + summarize_content(item.content, config.max_content_length)
