"""
Retrieval Scorer — deterministic ranking over an in-memory item set.

Five signals, each in [0, 1], combined by configured weights:

    scope       1 if item.scope == query.scope (0 when no scope requested)
    tag         fraction of requested tags present on the item
    recency     exp(-age_days / half_life_days); 1 if half-life <= 0
    importance  the item's stored importance
    text        fraction of query tokens found as substrings of content + summary

Same items, query, weights and reference time always give the same list.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from codexmem.config import ScoringConfig
from codexmem.types import MemoryItem, clamp_importance, parse_timestamp

_SECONDS_PER_DAY = 60 * 60 * 24


@dataclass
class SearchQuery:
    """Retrieval request. ``limit`` None or <= 0 means all results."""

    scope: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    text: Optional[str] = None
    limit: Optional[int] = None
    include_deleted: bool = False


@dataclass
class ScoredResult:
    item: MemoryItem
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {"item": self.item.to_record(), "score": self.score}


def tokenize(text: Optional[str]) -> List[str]:
    """Lower-cased whitespace tokens."""
    if not text:
        return []
    return text.lower().split()


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

def scope_score(item: MemoryItem, scope: Optional[str]) -> float:
    if not scope:
        return 0.0
    return 1.0 if item.scope == scope else 0.0


def tag_score(item: MemoryItem, tags: List[str]) -> float:
    if not tags:
        return 0.0
    have = {t.lower() for t in item.tags}
    matches = sum(1 for t in tags if t.lower() in have)
    return matches / len(tags)


def recency_score(item: MemoryItem, half_life_days: float, now: datetime) -> float:
    if half_life_days <= 0:
        return 1.0
    updated = parse_timestamp(item.updated_at)
    if updated is None:
        return 0.0
    age_days = max(0.0, (now.timestamp() - updated) / _SECONDS_PER_DAY)
    return math.exp(-age_days / half_life_days)


def text_score(item: MemoryItem, tokens: List[str]) -> float:
    if not tokens:
        return 0.0
    haystack = f"{item.content} {item.summary or ''}".lower()
    matches = sum(1 for token in tokens if token in haystack)
    return matches / len(tokens)


def score_item(
    item: MemoryItem,
    query: SearchQuery,
    weights: ScoringConfig,
    now: datetime,
) -> float:
    """Weighted sum of the five signals."""
    tokens = tokenize(query.text)
    return (
        weights.scope * scope_score(item, query.scope)
        + weights.tag * tag_score(item, query.tags)
        + weights.recency * recency_score(item, weights.half_life_days, now)
        + weights.importance * clamp_importance(item.importance)
        + weights.text * text_score(item, tokens)
    )


# ---------------------------------------------------------------------------
# Filtering and ranking
# ---------------------------------------------------------------------------

def matches_query(item: MemoryItem, query: SearchQuery) -> bool:
    """Filter applied to candidates before ranking.

    Requested scope must match exactly; at least one requested tag and at
    least one query token must be present when those are requested.
    """
    if item.deleted and not query.include_deleted:
        return False
    if query.scope and item.scope != query.scope:
        return False
    if query.tags and tag_score(item, query.tags) == 0.0:
        return False
    tokens = tokenize(query.text)
    if tokens and text_score(item, tokens) == 0.0:
        return False
    return True


def search_items(
    items: List[MemoryItem],
    query: SearchQuery,
    weights: ScoringConfig,
    now: Optional[datetime] = None,
) -> List[ScoredResult]:
    """Score, sort (score desc, then updatedAt desc) and truncate to the limit."""
    now = now or datetime.now(timezone.utc)
    pool = items if query.include_deleted else [it for it in items if not it.deleted]
    results = [ScoredResult(it, score_item(it, query, weights, now)) for it in pool]

    def _key(r: ScoredResult):
        updated = parse_timestamp(r.item.updated_at)
        return (-r.score, -(updated if updated is not None else 0.0))

    results.sort(key=_key)
    if query.limit is not None and query.limit > 0:
        return results[: query.limit]
    return results
