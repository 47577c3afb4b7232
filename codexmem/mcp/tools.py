"""
codexmem MCP Tools — 10 memory tools for MCP integration.

Thin wrappers around MemoryEngine.  Each tool follows the same order:

    (1) request id + timer
    (2) engine call
    (3) exception -> {"status": <outcome>, "message": ...}
    (4) audit record, always (finally block)

Tool groups:
    CRUD:         memory_add, memory_get, memory_update, memory_delete
    RETRIEVAL:    memory_search
    MAINTENANCE:  memory_prune, memory_rebuild_index, memory_health,
                  memory_repair, memory_compact
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from codexmem.engine import MemoryEngine
from codexmem.errors import ItemNotFoundError, LockTimeoutError, ValidationError
from codexmem.mcp.audit import AuditLogger

logger = logging.getLogger(__name__)


def _failure(exc: Exception, action: str) -> Tuple[str, Dict[str, Any]]:
    """Map an exception to (audit outcome, tool response)."""
    if isinstance(exc, ItemNotFoundError):
        status = "not_found"
    elif isinstance(exc, ValidationError):
        status = "invalid"
    elif isinstance(exc, LockTimeoutError):
        status = "lock_timeout"
    else:
        status = "error"
        logger.exception(f"{action} failed")
    return status, {"status": status, "message": f"{action} failed: {exc}"}


def register_memory_tools(
    mcp,
    engine: MemoryEngine,
    *,
    audit: Optional[AuditLogger] = None,
) -> None:
    """
    Register all memory MCP tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance (anything exposing ``tool()``).
        engine: MemoryEngine bound to the served log.
        audit: AuditLogger for the audit trail (default: stderr).
    """
    if audit is None:
        audit = AuditLogger()

    memory_file = engine.store.path

    # =====================================================================
    # CRUD
    # =====================================================================

    @mcp.tool()
    def memory_add(
        scope: str,
        content: str,
        tags: Optional[List[str]] = None,
        importance: Optional[float] = None,
        summary: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Store a new memory item.

        Args:
            scope: Namespace, e.g. "project", "user", "repo:api".
            content: The text to remember (required, non-empty).
            tags: Labels; normalized to lowercase, duplicates dropped.
            importance: 0..1 (default 0.5).
            summary: Optional short form.
            metadata: Optional JSON object.

        Returns:
            item: The stored record.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            if isinstance(content, str):
                detail = AuditLogger.content_detail(content, scope=scope, tags=tags)
            item = engine.add(
                scope, content,
                tags=tags, metadata=metadata,
                importance=importance, summary=summary,
            )
            detail["id"] = item.id
            return {"status": "ok", "item": item.to_record()}
        except Exception as e:
            outcome, response = _failure(e, "Add")
            return response
        finally:
            audit.log("memory_add", rid, memory_file,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def memory_get(id: str) -> Dict[str, Any]:
        """Current value of one item (soft-deleted items included).

        Args:
            id: Item id.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"id": id}
        try:
            item = engine.get(id)
            return {"status": "ok", "item": item.to_record()}
        except Exception as e:
            outcome, response = _failure(e, "Get")
            return response
        finally:
            audit.log("memory_get", rid, memory_file,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def memory_update(id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Merge a partial update onto an item.

        Only keys present in *patch* change. Accepted keys: scope, tags,
        content, summary, metadata, importance, deleted. An explicit null
        clears summary or metadata.

        Args:
            id: Item id.
            patch: Fields to change.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"id": id}
        try:
            if isinstance(patch, dict):
                detail["fields"] = sorted(patch)
            item = engine.update(id, patch)
            return {"status": "ok", "item": item.to_record()}
        except Exception as e:
            outcome, response = _failure(e, "Update")
            return response
        finally:
            audit.log("memory_update", rid, memory_file,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def memory_delete(id: str) -> Dict[str, Any]:
        """Soft-delete an item (a new revision with deleted=true).

        Args:
            id: Item id.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"id": id}
        try:
            item = engine.delete(id)
            return {"status": "ok", "item": item.to_record()}
        except Exception as e:
            outcome, response = _failure(e, "Delete")
            return response
        finally:
            audit.log("memory_delete", rid, memory_file,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    # =====================================================================
    # RETRIEVAL
    # =====================================================================

    @mcp.tool()
    def memory_search(
        scope: Optional[str] = None,
        tags: Optional[List[str]] = None,
        query: Optional[str] = None,
        limit: Optional[int] = None,
        include_deleted: bool = False,
    ) -> Dict[str, Any]:
        """Ranked retrieval.

        Scope must match exactly; at least one tag and one query word must
        be present when given. Ranking combines scope, tag, recency,
        importance and text signals.

        Args:
            scope: Restrict to this scope.
            tags: Any-of tag filter.
            query: Free text; whitespace-separated words.
            limit: Max results (default from config; <= 0 for all).
            include_deleted: Also return soft-deleted items.

        Returns:
            results: [{item, score}] best first.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            results = engine.search(
                scope=scope, tags=tags, query=query,
                limit=limit, include_deleted=include_deleted,
            )
            detail = {
                "scope": scope,
                "tags": len(tags or []),
                "query_len": len(query or ""),
                "returned": len(results),
            }
            return {
                "status": "ok",
                "results": [r.to_dict() for r in results],
                "count": len(results),
            }
        except Exception as e:
            outcome, response = _failure(e, "Search")
            return response
        finally:
            audit.log("memory_search", rid, memory_file,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    # =====================================================================
    # MAINTENANCE
    # =====================================================================

    @mcp.tool()
    def memory_prune(
        scope: Optional[str] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """Deduplicate, age out and compress memory.

        Args:
            scope: Limit to one scope (default: all).
            dry_run: Report actions without applying them.

        Returns:
            actions: [{id, patch, reason}], stats: counts per outcome.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            result = engine.prune(scope=scope, dry_run=dry_run)
            detail = {"dry_run": dry_run, "actions": len(result["actions"]),
                      **result["stats"]}
            return {"status": "ok", **result}
        except Exception as e:
            outcome, response = _failure(e, "Prune")
            return response
        finally:
            audit.log("memory_prune", rid, memory_file,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def memory_rebuild_index() -> Dict[str, Any]:
        """Rebuild the scope/tag index from the log."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            index = engine.rebuild_index()
            detail = {"scopes": len(index.by_scope), "tags": len(index.by_tag)}
            return {"status": "ok", "index": index.to_dict()}
        except Exception as e:
            outcome, response = _failure(e, "Rebuild")
            return response
        finally:
            audit.log("memory_rebuild_index", rid, memory_file,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def memory_health() -> Dict[str, Any]:
        """Log statistics and whether compaction or repair is advised."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            health = engine.health()
            detail = {"should_compact": health.should_compact,
                      "needs_repair": health.needs_repair}
            return {"status": "ok", **health.to_dict()}
        except Exception as e:
            outcome, response = _failure(e, "Health")
            return response
        finally:
            audit.log("memory_health", rid, memory_file,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def memory_repair(compact: bool = False, quarantine: bool = True) -> Dict[str, Any]:
        """Drop corrupt log lines, optionally compacting.

        Args:
            compact: Also rewrite the log to the latest view.
            quarantine: Save dropped lines to a .corrupt file.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            result = engine.repair(compact=compact, quarantine=quarantine)
            detail = {"repaired": result.repaired, "compacted": result.compacted,
                      "quarantined": result.quarantined_lines}
            return {"status": "ok", **result.to_dict()}
        except Exception as e:
            outcome, response = _failure(e, "Repair")
            return response
        finally:
            audit.log("memory_repair", rid, memory_file,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def memory_compact() -> Dict[str, Any]:
        """Rewrite the log to one line per item (previous file kept as backup)."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            result = engine.compact()
            detail = {"lines_before": result.stats.valid_lines}
            return {"status": "ok", **result.to_dict()}
        except Exception as e:
            outcome, response = _failure(e, "Compact")
            return response
        finally:
            audit.log("memory_compact", rid, memory_file,
                      outcome, detail, (time.monotonic() - t0) * 1000)
