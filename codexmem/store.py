"""
Memory Store — Append-only JSONL Log

Every create or update appends one JSON record; the current value of an id
is the record with the greatest ``updatedAt`` (``createdAt``, then epoch zero
as fallbacks), later records winning exact ties.  Reads tolerate corrupt
lines: each one becomes a line-numbered diagnostic and is skipped.

Mutations (append, compact, repair) run under the cooperative file lock.
Full rewrites go through temp file -> copy original to backup -> rename
temp into place, so the primary path always holds a complete file.

Files:
    <memory_file>                        - the log
    <memory_file>.lock                   - lock marker while a writer is active
    <memory_file>.tmp                    - rewrite in progress
    <memory_file>.bak.<epoch-ms>         - log content before a rewrite
    <memory_file>.corrupt.<epoch-ms>.jsonl - quarantined lines (repair)
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from codexmem.errors import ValidationError
from codexmem.lock import (
    DEFAULT_RETRY_DELAY,
    DEFAULT_STALE_AFTER,
    DEFAULT_TIMEOUT,
    file_lock,
)
from codexmem.types import (
    LineError,
    MemoryItem,
    MemoryPatch,
    ReadResult,
    ReadStats,
    HealthResult,
    RepairResult,
    _generate_id,
    _now_iso,
    clamp_importance,
    normalize_scope,
    normalize_tags,
    validate_record,
)

logger = logging.getLogger(__name__)

_LINE_SPLIT_RE = re.compile(r"\r?\n")


# ---------------------------------------------------------------------------
# Parsing helpers (module-level, shared by read and repair)
# ---------------------------------------------------------------------------

def parse_line(line: str, line_number: int) -> tuple:
    """Decode and validate one non-blank log line.

    Returns:
        (item, None) on success, (None, LineError) on failure.
    """
    try:
        parsed = json.loads(line)
    except json.JSONDecodeError as e:
        return None, LineError(line_number, f"Line {line_number}: {e}", line)
    field_errors = validate_record(parsed)
    if field_errors:
        message = "; ".join(str(fe) for fe in field_errors)
        return None, LineError(line_number, f"Line {line_number}: {message}", line)
    return MemoryItem.from_record(parsed), None


def parse_text(text: str, size: Optional[int] = None) -> ReadResult:
    """Parse a whole log body. Never raises on corrupt content.

    Args:
        text: Decoded log content.
        size: On-disk byte size; defaults to the UTF-8 length of *text*.
    """
    lines = _LINE_SPLIT_RE.split(text)
    result = ReadResult(stats=ReadStats(
        total_lines=len(lines),
        bytes=len(text.encode("utf-8")) if size is None else size,
    ))
    for i, line in enumerate(lines, start=1):
        if not line.strip():
            result.stats.empty_lines += 1
            continue
        item, error = parse_line(line, i)
        if item is not None:
            result.stats.valid_lines += 1
            result.items.append(item)
        else:
            result.stats.invalid_lines += 1
            result.errors.append(error)
    return result


def select_latest(items: List[MemoryItem]) -> List[MemoryItem]:
    """One item per id: greatest resolved timestamp, later wins exact ties.

    Output order follows the first appearance of each id in *items*.
    """
    latest: Dict[str, MemoryItem] = {}
    for item in items:
        current = latest.get(item.id)
        if current is None or item.timestamp >= current.timestamp:
            latest[item.id] = item
    return list(latest.values())


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def _render(items: List[MemoryItem]) -> str:
    if not items:
        return ""
    return "\n".join(item.to_line() for item in items) + "\n"


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------

class MemoryStore:
    """
    Append-only JSONL memory log with latest-record resolution.

    Safe across processes that share the same lock discipline. Plain reads
    do not take the lock.
    """

    def __init__(
        self,
        memory_file: Union[str, Path],
        lock_timeout: float = DEFAULT_TIMEOUT,
        lock_retry_delay: float = DEFAULT_RETRY_DELAY,
        lock_stale_after: float = DEFAULT_STALE_AFTER,
    ):
        """Open (and create if needed) the log at *memory_file*.

        Args:
            memory_file: Path of the JSONL log.
            lock_timeout: Seconds to wait for the write lock.
            lock_retry_delay: Seconds between lock attempts.
            lock_stale_after: Age in seconds after which a lock marker is evicted.
        """
        self._path = str(memory_file)
        self._lock_timeout = lock_timeout
        self._lock_retry_delay = lock_retry_delay
        self._lock_stale_after = lock_stale_after
        self._ensure_file()
        logger.debug(f"MemoryStore opened: {self._path}")

    @property
    def path(self) -> str:
        return self._path

    def _ensure_file(self) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        if not os.path.exists(self._path):
            with open(self._path, "a", encoding="utf-8"):
                pass

    def _lock(self):
        return file_lock(
            self._path,
            timeout=self._lock_timeout,
            retry_delay=self._lock_retry_delay,
            stale_after=self._lock_stale_after,
        )

    def _parse_file(self) -> ReadResult:
        # Undecodable bytes become U+FFFD instead of aborting the whole read.
        self._ensure_file()
        with open(self._path, "rb") as f:
            raw = f.read()
        return parse_text(raw.decode("utf-8", errors="replace"), size=len(raw))

    # -- Read operations ---------------------------------------------------

    def read_all(self) -> ReadResult:
        """Every parseable record, the diagnostics, and aggregate stats."""
        result = self._parse_file()
        if result.errors:
            logger.warning(
                f"{self._path}: skipped {len(result.errors)} corrupt line(s)"
            )
        return result

    def read_latest(self) -> ReadResult:
        """The latest view: one current item per id."""
        result = self.read_all()
        result.items = select_latest(result.items)
        return result

    def list_items(self) -> List[MemoryItem]:
        return self.read_latest().items

    def get(self, item_id: str) -> Optional[MemoryItem]:
        """Current value of *item_id*, or None."""
        for item in self.read_latest().items:
            if item.id == item_id:
                return item
        return None

    # -- Write operations --------------------------------------------------

    def _append_unlocked(self, item: MemoryItem) -> None:
        """Append one record. Caller holds the lock."""
        self._ensure_file()
        line = item.to_line() + "\n"
        with open(self._path, "a", encoding="utf-8", newline="") as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())

    def add(
        self,
        scope: str,
        content: str,
        tags: Optional[List[str]] = None,
        summary: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        importance: Any = None,
    ) -> MemoryItem:
        """Append a brand new item.

        Raises:
            ValidationError: if scope or content is empty, or fields have the wrong type.
        """
        if not isinstance(scope, str) or not normalize_scope(scope):
            raise ValidationError("scope is required")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("content is required")
        if tags is not None and (
            not isinstance(tags, list) or any(not isinstance(t, str) for t in tags)
        ):
            raise ValidationError("tags must be a list of strings")
        if summary is not None and not isinstance(summary, str):
            raise ValidationError("summary must be a string or null")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object or null")

        now = _now_iso()
        item = MemoryItem(
            id=_generate_id(),
            created_at=now,
            updated_at=now,
            scope=normalize_scope(scope),
            tags=normalize_tags(tags),
            content=content,
            summary=summary,
            metadata=metadata,
            importance=clamp_importance(importance),
            deleted=False,
        )
        with self._lock():
            self._append_unlocked(item)
        logger.debug(f"Added {item.id} (scope={item.scope!r})")
        return item

    def update(self, item_id: str, patch: Union[MemoryPatch, Dict[str, Any]]) -> Optional[MemoryItem]:
        """Append a revision of *item_id* with *patch* merged on top.

        Only supplied patch fields change; an explicit ``None`` clears
        ``summary``/``metadata``.

        Returns:
            The new current item, or None if *item_id* is absent.

        Raises:
            ValidationError: if the patch is malformed.
        """
        if not isinstance(item_id, str) or not item_id:
            raise ValidationError("id is required")
        if not isinstance(patch, MemoryPatch):
            patch = MemoryPatch.from_dict(patch)
        errors = patch.validate()
        if errors:
            raise ValidationError("; ".join(errors))

        with self._lock():
            existing = None
            for item in self.read_latest().items:
                if item.id == item_id:
                    existing = item
                    break
            if existing is None:
                return None
            updated = patch.apply_to(existing, updated_at=_now_iso())
            self._append_unlocked(updated)
        logger.debug(f"Updated {item_id}: {', '.join(patch.fields_set()) or '(touch)'}")
        return updated

    def delete(self, item_id: str) -> Optional[MemoryItem]:
        """Soft delete: append a revision with ``deleted=True``."""
        return self.update(item_id, MemoryPatch(deleted=True))

    # -- Rewrites ----------------------------------------------------------

    def _rewrite_unlocked(self, items: List[MemoryItem]) -> str:
        """Replace the log with *items*. Caller holds the lock.

        Order: write + fsync temp -> copy + fsync log to backup -> rename
        temp over log.  The primary path is occupied at every step: a crash
        before the rename leaves the full old log in place (plus a complete
        backup), a crash after it leaves the full new log.

        Returns:
            The backup path.
        """
        temp_path = f"{self._path}.tmp"
        backup_path = f"{self._path}.bak.{_epoch_ms()}"
        with open(temp_path, "w", encoding="utf-8", newline="") as f:
            f.write(_render(items))
            f.flush()
            os.fsync(f.fileno())
        shutil.copyfile(self._path, backup_path)
        with open(backup_path, "rb") as f:
            os.fsync(f.fileno())
        os.replace(temp_path, self._path)
        return backup_path

    def compact(self) -> RepairResult:
        """Rewrite the log to contain only the latest view."""
        with self._lock():
            latest = self.read_latest()
            backup = self._rewrite_unlocked(latest.items)
        logger.info(
            f"Compacted {self._path}: {latest.stats.valid_lines} -> "
            f"{len(latest.items)} line(s) (backup: {backup})"
        )
        return RepairResult(
            repaired=False,
            compacted=True,
            errors=latest.errors,
            stats=latest.stats,
            backup_file=backup,
        )

    def repair(self, compact: bool = False, quarantine: bool = True) -> RepairResult:
        """Drop corrupt lines (optionally quarantining them) and optionally compact.

        Args:
            compact: Also reduce the log to the latest view.
            quarantine: Write corrupt lines to ``<file>.corrupt.<ms>.jsonl``.
        """
        with self._lock():
            parsed = self._parse_file()
            repaired = parsed.stats.invalid_lines > 0
            compacted = compact and bool(parsed.items)
            result = RepairResult(
                repaired=repaired,
                compacted=compacted,
                errors=parsed.errors,
                stats=parsed.stats,
                quarantined_lines=len(parsed.errors),
            )

            if quarantine and parsed.errors:
                qpath = f"{self._path}.corrupt.{_epoch_ms()}.jsonl"
                with open(qpath, "w", encoding="utf-8", newline="") as f:
                    for entry in parsed.errors:
                        f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
                result.quarantined_file = qpath

            if repaired or compacted:
                output = select_latest(parsed.items) if compacted else parsed.items
                result.backup_file = self._rewrite_unlocked(output)

        if repaired or compacted:
            logger.info(
                f"Repaired {self._path}: dropped {parsed.stats.invalid_lines} "
                f"corrupt line(s), compacted={compacted}"
            )
        return result

    # -- Diagnostics -------------------------------------------------------

    def health(
        self,
        max_line_ratio: float = 2.0,
        min_lines: int = 200,
        max_bytes: int = 5_000_000,
    ) -> HealthResult:
        """Report whether the log should be compacted or repaired."""
        parsed = self.read_all()
        latest_count = len(select_latest(parsed.items))
        reasons: List[str] = []

        if parsed.stats.valid_lines >= min_lines and latest_count > 0:
            ratio = parsed.stats.valid_lines / latest_count
            if ratio >= max_line_ratio:
                reasons.append(f"line-ratio:{ratio:.2f}>={max_line_ratio:g}")

        if parsed.stats.bytes >= max_bytes:
            reasons.append(f"bytes:{parsed.stats.bytes}>={max_bytes}")

        needs_repair = parsed.stats.invalid_lines > 0
        if needs_repair:
            reasons.append(f"invalid-lines:{parsed.stats.invalid_lines}")

        return HealthResult(
            stats=parsed.stats,
            errors=parsed.errors,
            latest_items=latest_count,
            needs_repair=needs_repair,
            should_compact=bool(reasons),
            reasons=reasons,
        )
