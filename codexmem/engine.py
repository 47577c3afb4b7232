"""
Memory Engine — the operations exposed to callers.

Wires the JSONL store, the derived index, the scorer and the prune policy
together.  Configuration is passed in explicitly; nothing here reads
process-wide state.

    add / update / delete   lock -> append -> (outside lock) index patch
    search                  latest view -> index narrowing -> verify -> rank
    prune                   latest view -> pure policy -> update per action
    repair / compact        locked rewrite -> index rebuild
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from codexmem.config import MemoryConfig
from codexmem.errors import (
    ItemNotFoundError,
    LockTimeoutError,
    SanityCheckError,
    ValidationError,
)
from codexmem.index import (
    candidate_ids,
    is_stale,
    load_index,
    rebuild_index,
    update_index,
)
from codexmem.prune import prune_items
from codexmem.retrieve import ScoredResult, SearchQuery, matches_query, search_items
from codexmem.store import MemoryStore
from codexmem.types import (
    HealthResult,
    MemoryIndex,
    MemoryItem,
    MemoryPatch,
    RepairResult,
    normalize_scope,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


def _check_tags(tags: Any) -> List[str]:
    if tags is None:
        return []
    if not isinstance(tags, list) or any(not isinstance(t, str) for t in tags):
        raise ValidationError("tags must be a list of strings")
    return tags


def _written_since(item: MemoryItem, stamp: Optional[float]) -> bool:
    if stamp is None:
        return True
    ts = parse_timestamp(item.updated_at)
    return ts is None or ts >= stamp


class MemoryEngine:
    """
    Durable scoped memory: JSONL log + derived index + deterministic ranking.
    """

    def __init__(self, config: Optional[MemoryConfig] = None):
        self._config = config or MemoryConfig()
        sc = self._config.store
        self._index_file = sc.index_file
        self._store = MemoryStore(
            sc.memory_file,
            lock_timeout=sc.lock_timeout_ms / 1000.0,
            lock_retry_delay=sc.lock_retry_delay_ms / 1000.0,
            lock_stale_after=sc.lock_stale_ms / 1000.0,
        )
        self._index_lock = {
            "timeout": sc.lock_timeout_ms / 1000.0,
            "retry_delay": sc.lock_retry_delay_ms / 1000.0,
            "stale_after": sc.lock_stale_ms / 1000.0,
        }

    @property
    def config(self) -> MemoryConfig:
        return self._config

    @property
    def store(self) -> MemoryStore:
        return self._store

    @property
    def index_file(self) -> str:
        return self._index_file

    def _index_is_stale(self) -> bool:
        return is_stale(self._index_file, self._store.path)

    def _index_written(self, items: List[MemoryItem], was_stale: bool) -> None:
        """Patch the index for *items*, or rebuild it if it was already behind the log.

        The log write has already succeeded.  If the index lock cannot be taken
        the index is left behind the log, where the next search finds it stale.
        """
        try:
            if was_stale:
                self._rebuild()
            else:
                update_index(self._index_file, items, **self._index_lock)
        except LockTimeoutError as exc:
            logger.warning(f"Index not updated, will rebuild on next search: {exc}")

    def _rebuild(self) -> MemoryIndex:
        return rebuild_index(self._store, self._index_file, **self._index_lock)

    # -- Writes ------------------------------------------------------------

    def add(
        self,
        scope: str,
        content: str,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        importance: Any = None,
        summary: Optional[str] = None,
    ) -> MemoryItem:
        """Create a new item. Raises ValidationError on empty scope/content."""
        was_stale = self._index_is_stale()
        item = self._store.add(
            scope, content,
            tags=_check_tags(tags),
            summary=summary,
            metadata=metadata,
            importance=importance,
        )
        self._index_written([item], was_stale)
        return item

    def update(self, item_id: str, patch: Union[MemoryPatch, Dict[str, Any], None]) -> MemoryItem:
        """Merge *patch* onto *item_id*.

        Raises:
            ValidationError: missing id or malformed patch.
            ItemNotFoundError: id absent from the latest view.
        """
        if not item_id:
            raise ValidationError("id is required")
        if patch is None:
            raise ValidationError("patch is required")
        was_stale = self._index_is_stale()
        updated = self._store.update(item_id, patch)
        if updated is None:
            raise ItemNotFoundError(item_id)
        self._index_written([updated], was_stale)
        return updated

    def delete(self, item_id: str) -> MemoryItem:
        """Soft delete. Raises ItemNotFoundError if absent."""
        return self.update(item_id, MemoryPatch(deleted=True))

    # -- Reads -------------------------------------------------------------

    def get(self, item_id: str) -> MemoryItem:
        """Current value of *item_id* (deleted items included)."""
        if not item_id:
            raise ValidationError("id is required")
        item = self._store.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    def list_items(
        self,
        scope: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[MemoryItem]:
        items = self._store.list_items()
        return [
            it for it in items
            if (include_deleted or not it.deleted)
            and (scope is None or it.scope == scope)
        ]

    def _current_index(self) -> MemoryIndex:
        """Persisted index, rebuilt first when missing or older than the log.

        An index that cannot be rebuilt right now comes back unstamped, which
        disables narrowing for this search.
        """
        if self._index_is_stale():
            logger.warning(f"Index {self._index_file} is stale, rebuilding")
            try:
                return self._rebuild()
            except LockTimeoutError as exc:
                logger.warning(f"Index rebuild skipped, searching the full log: {exc}")
                return MemoryIndex(updated_at="")
        return load_index(self._index_file)

    def search(
        self,
        scope: Optional[str] = None,
        tags: Optional[List[str]] = None,
        query: Optional[str] = None,
        limit: Optional[int] = None,
        include_deleted: bool = False,
        now: Optional[datetime] = None,
    ) -> List[ScoredResult]:
        """Filter by scope/tags/text, rank, and truncate.

        ``limit`` None falls back to ``retrieval.default_limit``; <= 0 means all.
        """
        tags = _check_tags(tags)
        if limit is None:
            limit = self._config.retrieval.default_limit
        q = SearchQuery(
            scope=normalize_scope(scope) if scope else None,
            tags=tags,
            text=query,
            limit=limit,
            include_deleted=include_deleted,
        )

        items = self._store.list_items()
        if not include_deleted and (q.scope or q.tags):
            # The index holds live items only, so it cannot narrow
            # include_deleted queries.
            index = self._current_index()
            allowed = candidate_ids(index, q.scope, q.tags)
            if allowed is not None:
                # Items written at or after the index stamp may be missing
                # from it; they stay candidates.
                stamp = parse_timestamp(index.updated_at)
                items = [
                    it for it in items
                    if it.id in allowed or _written_since(it, stamp)
                ]

        candidates = [it for it in items if matches_query(it, q)]
        results = search_items(
            candidates, q, self._config.scoring,
            now=now or datetime.now(timezone.utc),
        )
        logger.debug(
            f"search scope={q.scope!r} tags={q.tags} -> "
            f"{len(candidates)} candidate(s), {len(results)} returned"
        )
        return results

    # -- Maintenance -------------------------------------------------------

    def prune(
        self,
        scope: Optional[str] = None,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Dedup + aging policies; applies actions unless *dry_run*.

        Returns:
            {"actions": [...], "stats": {...}, "dryRun": bool}
        """
        items = self._store.list_items()
        scope = normalize_scope(scope) if scope else None
        if scope:
            items = [it for it in items if it.scope == scope]
        result = prune_items(
            items, self._config.prune, self._config.summarization, now=now,
        )

        if not dry_run and result.actions:
            was_stale = self._index_is_stale()
            updated: List[MemoryItem] = []
            for action in result.actions:
                item = self._store.update(action.id, action.patch)
                if item is not None:
                    updated.append(item)
            if updated:
                self._index_written(updated, was_stale)
            logger.info(
                f"Prune applied {len(result.actions)} action(s): "
                f"{result.stats.to_dict()}"
            )

        out = result.to_dict()
        out["dryRun"] = dry_run
        return out

    def rebuild_index(self) -> MemoryIndex:
        return self._rebuild()

    def health(self) -> HealthResult:
        m = self._config.maintenance
        return self._store.health(
            max_line_ratio=m.max_line_ratio,
            min_lines=m.min_lines,
            max_bytes=m.max_bytes,
        )

    def repair(self, compact: bool = False, quarantine: bool = True) -> RepairResult:
        result = self._store.repair(compact=compact, quarantine=quarantine)
        if result.repaired or result.compacted:
            self._rebuild()
        return result

    def compact(self) -> RepairResult:
        result = self._store.compact()
        self._rebuild()
        return result


# ---------------------------------------------------------------------------
# Sanity check
# ---------------------------------------------------------------------------

def run_sanity_check(config: Optional[MemoryConfig] = None) -> Dict[str, Any]:
    """add -> get -> rebuild -> search round trip in a throwaway directory.

    The directory is created beside the configured log and always removed.

    Raises:
        SanityCheckError: if any step does not behave as expected.
    """
    config = config or MemoryConfig()
    parent = Path(config.store.memory_file).resolve().parent
    parent.mkdir(parents=True, exist_ok=True)
    temp_dir = tempfile.mkdtemp(prefix="sanity-", dir=str(parent))
    try:
        temp_config = replace(
            config,
            store=replace(
                config.store,
                memory_file=str(Path(temp_dir) / "memory.jsonl"),
                index_file=str(Path(temp_dir) / "index.json"),
            ),
        )
        engine = MemoryEngine(temp_config)
        item = engine.add(
            "sanity", "Sanity check content", tags=["check"], importance=0.7,
        )
        try:
            engine.get(item.id)
        except ItemNotFoundError:
            raise SanityCheckError("Sanity check failed: item not found")
        engine.rebuild_index()
        results = engine.search(scope="sanity", tags=["check"], query="content")
        if not results:
            raise SanityCheckError("Sanity check failed: search returned no results")
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)
    return {"ok": True}
