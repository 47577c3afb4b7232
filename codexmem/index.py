"""
Derived Index — scope/tag -> id lists over the latest view.

The index is an accelerator, never a source of truth.  A missing,
malformed or version-mismatched index document loads as empty, and
``rebuild_index`` always reconstructs it wholesale from the log.

Buckets hold ids ordered by descending ``updatedAt``.  Writers of the index
file (incremental update and rebuild) hold ``<index>.lock`` for the whole
load-modify-save, so concurrent processes cannot drop each other's entries.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Union

from codexmem.lock import (
    DEFAULT_RETRY_DELAY,
    DEFAULT_STALE_AFTER,
    DEFAULT_TIMEOUT,
    file_lock,
)
from codexmem.types import (
    INDEX_VERSION,
    MemoryIndex,
    MemoryItem,
    _now_iso,
    normalize_tags,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def load_index(index_file: Union[str, Path]) -> MemoryIndex:
    """Load the index document; anything unusable yields an empty index.

    A present but unusable document loads with an empty ``updated_at`` so
    callers can tell it apart from a genuinely empty index.
    """
    try:
        with open(index_file, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return MemoryIndex()
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning(f"Index {index_file} unreadable, treating as empty: {exc}")
        return MemoryIndex(updated_at="")

    if not isinstance(data, dict) or data.get("version") != INDEX_VERSION:
        logger.info(f"Index {index_file} has unexpected version, treating as empty")
        return MemoryIndex(updated_at="")
    try:
        return MemoryIndex.from_dict(data)
    except (AttributeError, TypeError) as exc:
        logger.warning(f"Index {index_file} malformed, treating as empty: {exc}")
        return MemoryIndex(updated_at="")


def save_index(index_file: Union[str, Path], index: MemoryIndex) -> MemoryIndex:
    """Stamp and persist *index* (temp file + os.replace)."""
    index.updated_at = _now_iso()
    path = Path(index_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = f"{path}.tmp"
    with open(temp_path, "w", encoding="utf-8") as f:
        json.dump(index.to_dict(), f, ensure_ascii=False, indent=2)
    os.replace(temp_path, path)
    return index


def is_stale(index_file: Union[str, Path], memory_file: Union[str, Path]) -> bool:
    """True if the index is missing or older than the log it was built from."""
    try:
        index_mtime = os.stat(index_file).st_mtime_ns
    except FileNotFoundError:
        return True
    try:
        log_mtime = os.stat(memory_file).st_mtime_ns
    except FileNotFoundError:
        return False
    return log_mtime > index_mtime


# ---------------------------------------------------------------------------
# Bucket helpers
# ---------------------------------------------------------------------------

def _updated_ts(item: MemoryItem) -> float:
    ts = parse_timestamp(item.updated_at)
    return ts if ts is not None else 0.0


def _add(index: MemoryIndex, item: MemoryItem) -> None:
    index.by_scope.setdefault(item.scope, []).append(item.id)
    for tag in normalize_tags(item.tags):
        index.by_tag.setdefault(tag, []).append(item.id)
        index.by_scope_tag.setdefault(item.scope, {}).setdefault(tag, []).append(item.id)


def _remove(index: MemoryIndex, item_id: str) -> None:
    for scope in list(index.by_scope):
        ids = [i for i in index.by_scope[scope] if i != item_id]
        if ids:
            index.by_scope[scope] = ids
        else:
            del index.by_scope[scope]
    for tag in list(index.by_tag):
        ids = [i for i in index.by_tag[tag] if i != item_id]
        if ids:
            index.by_tag[tag] = ids
        else:
            del index.by_tag[tag]
    for scope in list(index.by_scope_tag):
        tags = index.by_scope_tag[scope]
        for tag in list(tags):
            ids = [i for i in tags[tag] if i != item_id]
            if ids:
                tags[tag] = ids
            else:
                del tags[tag]
        if not tags:
            del index.by_scope_tag[scope]


# ---------------------------------------------------------------------------
# Build / incremental update
# ---------------------------------------------------------------------------

def build_index(items: Iterable[MemoryItem]) -> MemoryIndex:
    """Full build from current items; deleted items are left out."""
    index = MemoryIndex()
    live = sorted(
        (item for item in items if not item.deleted),
        key=lambda it: -_updated_ts(it),
    )
    # Appending in descending-updatedAt order leaves every bucket sorted;
    # sorted() is stable, so equal timestamps keep their input order.
    for item in live:
        _add(index, item)
    return index


def apply_items(index: MemoryIndex, items: Iterable[MemoryItem]) -> MemoryIndex:
    """Patch *index* in place for just-written *items*. Idempotent.

    Each id is first removed from every bucket, then re-added unless it is
    soft-deleted.  In each touched bucket the affected ids (descending
    ``updatedAt``) come first, ahead of untouched ids in their prior order.
    """
    affected = {item.id: item for item in items}
    for item_id in affected:
        _remove(index, item_id)

    fresh = MemoryIndex()
    for item in sorted(affected.values(), key=lambda it: -_updated_ts(it)):
        if not item.deleted:
            _add(fresh, item)

    for scope, ids in fresh.by_scope.items():
        index.by_scope[scope] = ids + index.by_scope.get(scope, [])
    for tag, ids in fresh.by_tag.items():
        index.by_tag[tag] = ids + index.by_tag.get(tag, [])
    for scope, tags in fresh.by_scope_tag.items():
        bucket = index.by_scope_tag.setdefault(scope, {})
        for tag, ids in tags.items():
            bucket[tag] = ids + bucket.get(tag, [])
    return index


def update_index(
    index_file: Union[str, Path],
    items: Iterable[MemoryItem],
    timeout: float = DEFAULT_TIMEOUT,
    retry_delay: float = DEFAULT_RETRY_DELAY,
    stale_after: float = DEFAULT_STALE_AFTER,
) -> MemoryIndex:
    """Load, patch for *items*, save; all under the index lock.

    An unreadable index is returned unpatched and left on disk, older than
    the log, so it is rebuilt on the next search.

    Raises:
        LockTimeoutError: if another writer holds the index lock too long.
    """
    with file_lock(index_file, timeout=timeout, retry_delay=retry_delay,
                   stale_after=stale_after):
        index = load_index(index_file)
        if not index.updated_at:
            # Patching an unreadable index would hide every older item;
            # leave it for a rebuild.
            logger.warning(f"Index {index_file} unusable, not patching it")
            return index
        return save_index(index_file, apply_items(index, items))


def rebuild_index(
    store,
    index_file: Union[str, Path],
    timeout: float = DEFAULT_TIMEOUT,
    retry_delay: float = DEFAULT_RETRY_DELAY,
    stale_after: float = DEFAULT_STALE_AFTER,
) -> MemoryIndex:
    """Replace the persisted index with a full build from *store*'s latest view."""
    with file_lock(index_file, timeout=timeout, retry_delay=retry_delay,
                   stale_after=stale_after):
        latest = store.read_latest()
        index = save_index(index_file, build_index(latest.items))
    logger.info(
        f"Index rebuilt: {len(latest.items)} item(s), "
        f"{len(index.by_scope)} scope(s), {len(index.by_tag)} tag(s)"
    )
    return index


# ---------------------------------------------------------------------------
# Candidate narrowing
# ---------------------------------------------------------------------------

def candidate_ids(
    index: MemoryIndex,
    scope: Optional[str] = None,
    tags: Optional[List[str]] = None,
) -> Optional[Set[str]]:
    """Ids that may satisfy a scope/tag filter, or None when nothing narrows.

    scope + tags -> union of by_scope_tag[scope][tag]; scope -> by_scope[scope];
    tags -> union of by_tag[tag].  Tags are matched lower-cased.
    """
    wanted = [t.strip().lower() for t in tags or [] if t.strip()]
    if scope and wanted:
        bucket: Dict[str, List[str]] = index.by_scope_tag.get(scope, {})
        return {i for tag in wanted for i in bucket.get(tag, [])}
    if scope:
        return set(index.by_scope.get(scope, []))
    if wanted:
        return {i for tag in wanted for i in index.by_tag.get(tag, [])}
    return None
