"""
Deterministic Prune — dedup, retention, aging, compression.

Pure policy: takes the latest view and returns proposed patches.  Nothing
is written here; callers apply the actions through the normal update path
(or print them for a dry run).

Prune contract, per scope:
  - Dedup: first item with a given content fingerprint is canonical;
    later duplicates are soft-deleted and their new tags merged onto it
  - Retention: rank by importance + 1/(1 + age_days); top max_per_scope untouched
  - Aging beyond the cutoff: age >= delete_older_than_days -> soft-delete,
    except canonical items that absorbed duplicates (the only visible copy);
    age >= compress_older_than_days -> summary patch (only if it changes)
  - Everything else is retained as-is
  - Same inputs and reference time -> same actions, same order
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from codexmem.config import PruneConfig, SummarizationConfig
from codexmem.summarize import summarize_item
from codexmem.types import (
    MemoryItem,
    MemoryPatch,
    PruneAction,
    PruneStats,
    age_in_days,
)

logger = logging.getLogger(__name__)

REASON_DUPLICATE = "duplicate content in scope"
REASON_MERGE_TAGS = "merge tags from duplicate"
REASON_AGED_OUT = "aged out"
REASON_COMPRESS = "compress older memory"

_WS_RE = re.compile(r"\s+")


@dataclass
class PruneResult:
    actions: List[PruneAction] = field(default_factory=list)
    stats: PruneStats = field(default_factory=PruneStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actions": [a.to_dict() for a in self.actions],
            "stats": self.stats.to_dict(),
        }


def content_fingerprint(content: str) -> str:
    """SHA-256 of lower-cased, whitespace-collapsed content."""
    normalized = _WS_RE.sub(" ", content.lower()).strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def _dedupe_scope(
    items: List[MemoryItem],
    result: PruneResult,
) -> Tuple[Set[str], Set[str]]:
    """Propose soft-deletes for duplicates.

    Returns:
        (ids proposed for deletion, canonical ids that absorbed a duplicate)
    """
    canonical: Dict[str, MemoryItem] = {}
    merged_tags: Dict[str, List[str]] = {}
    removed: Set[str] = set()
    absorbed: Set[str] = set()

    for item in items:
        if item.deleted:
            continue
        fp = content_fingerprint(item.content)
        first = canonical.get(fp)
        if first is None:
            canonical[fp] = item
            merged_tags[item.id] = list(item.tags)
            continue

        tags = merged_tags[first.id]
        new_tags = [t for t in item.tags if t not in tags]
        if new_tags:
            tags.extend(new_tags)
            result.actions.append(PruneAction(
                id=first.id,
                patch=MemoryPatch(tags=list(tags)),
                reason=REASON_MERGE_TAGS,
            ))

        result.actions.append(PruneAction(
            id=item.id,
            patch=MemoryPatch(deleted=True),
            reason=REASON_DUPLICATE,
        ))
        result.stats.deduped += 1
        removed.add(item.id)
        absorbed.add(first.id)

    return removed, absorbed


def _age_scope(
    items: List[MemoryItem],
    prune_config: PruneConfig,
    summarization_config: SummarizationConfig,
    now: datetime,
    result: PruneResult,
    keep: Set[str],
) -> None:
    ranked = []
    for item in items:
        age = age_in_days(item.updated_at, now)
        ranked.append((item.importance + 1.0 / (1.0 + age), age, item))
    # Stable: equal scores keep log order.
    ranked.sort(key=lambda entry: -entry[0])

    for position, (_score, age, item) in enumerate(ranked):
        if position < prune_config.max_per_scope:
            result.stats.retained += 1
            continue

        if age >= prune_config.delete_older_than_days and item.id not in keep:
            result.actions.append(PruneAction(
                id=item.id,
                patch=MemoryPatch(deleted=True),
                reason=REASON_AGED_OUT,
            ))
            result.stats.deleted += 1
            continue

        if age >= prune_config.compress_older_than_days:
            summary = summarize_item(item, summarization_config, now)
            if summary and summary != item.summary:
                result.actions.append(PruneAction(
                    id=item.id,
                    patch=MemoryPatch(summary=summary),
                    reason=REASON_COMPRESS,
                ))
                result.stats.summarized += 1
                continue

        result.stats.retained += 1


def prune_items(
    items: List[MemoryItem],
    prune_config: Optional[PruneConfig] = None,
    summarization_config: Optional[SummarizationConfig] = None,
    now: Optional[datetime] = None,
) -> PruneResult:
    """
    Compute prune actions for *items* (the latest view). No I/O.

    Args:
        items: Current items, any scopes.
        prune_config: Retention/aging/dedup policy.
        summarization_config: Summary thresholds used for compression.
        now: Reference time (default: current UTC time).

    Returns:
        PruneResult with actions in scope order and aggregate stats.
    """
    prune_config = prune_config or PruneConfig()
    summarization_config = summarization_config or SummarizationConfig()
    now = now or datetime.now(timezone.utc)
    result = PruneResult()

    by_scope: "OrderedDict[str, List[MemoryItem]]" = OrderedDict()
    for item in items:
        by_scope.setdefault(item.scope, []).append(item)

    for scope, scope_items in by_scope.items():
        removed: Set[str] = set()
        absorbed: Set[str] = set()
        if prune_config.dedupe:
            removed, absorbed = _dedupe_scope(scope_items, result)
        live = [it for it in scope_items if not it.deleted and it.id not in removed]
        _age_scope(live, prune_config, summarization_config, now, result, absorbed)
        logger.debug(f"Prune scope {scope!r}: {len(scope_items)} item(s) examined")

    return result
