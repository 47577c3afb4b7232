"""
Memory Data Model

Defines the durable memory item, the patch applied on update, the derived
index document, and the transient diagnostic values produced by the log
reader, health check, repair and prune engine.

Records are never rewritten in place: every create or update appends a new
record for the same id, and the latest one wins.
"""

from __future__ import annotations

import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from codexmem.errors import ValidationError

INDEX_VERSION = 1
DEFAULT_IMPORTANCE = 0.5

_SECONDS_PER_DAY = 60 * 60 * 24


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _generate_id() -> str:
    """Generate an opaque unique memory id."""
    return str(uuid.uuid4())


def parse_timestamp(value: Any) -> Optional[float]:
    """Parse an ISO-8601 instant into epoch seconds. None if unparsable.

    Naive timestamps are read as UTC; a trailing ``Z`` is accepted.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def age_in_days(value: Any, now: datetime) -> float:
    """Days between *value* and *now*; 0.0 when *value* is unparsable."""
    ts = parse_timestamp(value)
    if ts is None:
        return 0.0
    return (now.timestamp() - ts) / _SECONDS_PER_DAY


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

def normalize_scope(scope: str) -> str:
    return scope.strip()


def normalize_tag(tag: str) -> str:
    return tag.strip().lower()


def normalize_tags(tags: Optional[List[str]]) -> List[str]:
    """Trim, lower-case, drop empties, de-duplicate (first seen wins)."""
    out: List[str] = []
    seen = set()
    for tag in tags or []:
        norm = normalize_tag(tag)
        if norm and norm not in seen:
            seen.add(norm)
            out.append(norm)
    return out


def clamp_importance(value: Any, fallback: float = DEFAULT_IMPORTANCE) -> float:
    """Clamp to [0, 1]; non-numeric values (booleans and NaN included) yield *fallback*."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    if math.isnan(value):
        return fallback
    if value < 0:
        return 0.0
    if value > 1:
        return 1.0
    return float(value)


# ---------------------------------------------------------------------------
# Record validation
# ---------------------------------------------------------------------------

_REQUIRED_STRING_FIELDS = ("id", "createdAt", "updatedAt", "scope", "content")


@dataclass(frozen=True)
class FieldError:
    """One field-level schema violation."""

    field: str
    message: str

    def __str__(self) -> str:
        return self.message


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_record(value: Any) -> List[FieldError]:
    """Validate a decoded log record. Returns field errors (empty = valid)."""
    if not isinstance(value, dict):
        return [FieldError("", "Memory item is not an object")]

    errors: List[FieldError] = []
    for name in _REQUIRED_STRING_FIELDS:
        v = value.get(name)
        if not isinstance(v, str) or not v.strip():
            errors.append(FieldError(name, f"Invalid or missing {name}"))

    tags = value.get("tags")
    if not isinstance(tags, list) or any(not isinstance(t, str) for t in tags):
        errors.append(FieldError("tags", "Invalid or missing tags"))

    if not isinstance(value.get("deleted"), bool):
        errors.append(FieldError("deleted", "Invalid or missing deleted flag"))

    if not _is_number(value.get("importance")):
        errors.append(FieldError("importance", "Invalid or missing importance"))

    # Absent is not null: both keys must be present.
    if "summary" not in value or not (
        value["summary"] is None or isinstance(value["summary"], str)
    ):
        errors.append(FieldError("summary", "Invalid summary"))

    if "metadata" not in value or not (
        value["metadata"] is None or isinstance(value["metadata"], dict)
    ):
        errors.append(FieldError("metadata", "Invalid metadata"))

    return errors


# ---------------------------------------------------------------------------
# Memory Item
# ---------------------------------------------------------------------------

@dataclass
class MemoryItem:
    """
    The durable unit of memory.

    On disk a record uses camelCase keys (``createdAt``, ``updatedAt``);
    ``to_record``/``from_record`` translate.
    """

    id: str = field(default_factory=_generate_id)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    scope: str = ""
    tags: List[str] = field(default_factory=list)
    content: str = ""
    summary: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    importance: float = DEFAULT_IMPORTANCE
    deleted: bool = False

    @property
    def timestamp(self) -> float:
        """Resolution timestamp: updatedAt, else createdAt, else epoch zero."""
        ts = parse_timestamp(self.updated_at)
        if ts is None:
            ts = parse_timestamp(self.created_at)
        return ts if ts is not None else 0.0

    def to_record(self) -> Dict[str, Any]:
        """Serialize to the on-disk record (JSON-safe)."""
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "scope": self.scope,
            "tags": list(self.tags),
            "content": self.content,
            "summary": self.summary,
            "metadata": self.metadata,
            "importance": self.importance,
            "deleted": self.deleted,
        }

    def to_dict(self) -> Dict[str, Any]:
        return self.to_record()

    def to_line(self) -> str:
        """One JSONL line, without the trailing newline."""
        return json.dumps(self.to_record(), ensure_ascii=False)

    @classmethod
    def from_record(cls, d: Dict[str, Any]) -> MemoryItem:
        """Build from an already validated record."""
        return cls(
            id=d["id"],
            created_at=d["createdAt"],
            updated_at=d["updatedAt"],
            scope=d["scope"],
            tags=list(d.get("tags") or []),
            content=d["content"],
            summary=d.get("summary"),
            metadata=d.get("metadata"),
            importance=d.get("importance", DEFAULT_IMPORTANCE),
            deleted=bool(d.get("deleted", False)),
        )


# ---------------------------------------------------------------------------
# Patch (absent vs. explicit null)
# ---------------------------------------------------------------------------

class _Unset:
    """Marker for a patch field that was not supplied."""

    _instance: Optional[_Unset] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()

PATCH_FIELDS = ("scope", "tags", "content", "summary", "metadata", "importance", "deleted")


@dataclass
class MemoryPatch:
    """
    Partial update. Every field is independently UNSET (keep prior value)
    or supplied; ``None`` is a real value for ``summary`` and ``metadata``.
    """

    scope: Any = UNSET
    tags: Any = UNSET
    content: Any = UNSET
    summary: Any = UNSET
    metadata: Any = UNSET
    importance: Any = UNSET
    deleted: Any = UNSET

    def fields_set(self) -> List[str]:
        """Names of supplied fields, in declaration order."""
        return [name for name in PATCH_FIELDS if getattr(self, name) is not UNSET]

    def is_empty(self) -> bool:
        return not self.fields_set()

    def validate(self) -> List[str]:
        """Return validation error messages for supplied fields (empty = valid)."""
        errors: List[str] = []
        if self.scope is not UNSET and not isinstance(self.scope, str):
            errors.append("patch.scope: expected string")
        if self.tags is not UNSET and (
            not isinstance(self.tags, list)
            or any(not isinstance(t, str) for t in self.tags)
        ):
            errors.append("patch.tags: expected list of strings")
        if self.content is not UNSET and (
            not isinstance(self.content, str) or not self.content.strip()
        ):
            errors.append("patch.content: expected non-empty string")
        if self.summary is not UNSET and not (
            self.summary is None or isinstance(self.summary, str)
        ):
            errors.append("patch.summary: expected string or null")
        if self.metadata is not UNSET and not (
            self.metadata is None or isinstance(self.metadata, dict)
        ):
            errors.append("patch.metadata: expected object or null")
        if self.deleted is not UNSET and not isinstance(self.deleted, bool):
            errors.append("patch.deleted: expected boolean")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Only the supplied fields."""
        return {name: getattr(self, name) for name in self.fields_set()}

    @classmethod
    def from_dict(cls, d: Any) -> MemoryPatch:
        """Build a patch marking exactly the keys present in *d*.

        Raises:
            ValidationError: if *d* is not a dict or carries unknown keys.
        """
        if not isinstance(d, dict):
            raise ValidationError("patch must be an object")
        unknown = sorted(k for k in d if k not in PATCH_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown patch field(s): {', '.join(unknown)}")
        return cls(**d)

    def apply_to(self, existing: MemoryItem, updated_at: str) -> MemoryItem:
        """Merge supplied fields onto *existing*; returns a new item."""
        scope = existing.scope
        if self.scope is not UNSET and normalize_scope(self.scope):
            scope = normalize_scope(self.scope)
        return MemoryItem(
            id=existing.id,
            created_at=existing.created_at,
            updated_at=updated_at,
            scope=scope,
            tags=normalize_tags(self.tags) if self.tags is not UNSET else list(existing.tags),
            content=self.content if self.content is not UNSET else existing.content,
            summary=self.summary if self.summary is not UNSET else existing.summary,
            metadata=self.metadata if self.metadata is not UNSET else existing.metadata,
            importance=(
                clamp_importance(self.importance, existing.importance)
                if self.importance is not UNSET
                else existing.importance
            ),
            deleted=self.deleted if self.deleted is not UNSET else existing.deleted,
        )


# ---------------------------------------------------------------------------
# Derived index document
# ---------------------------------------------------------------------------

@dataclass
class MemoryIndex:
    """Scope/tag -> id lists over current, non-deleted items. Advisory only."""

    version: int = INDEX_VERSION
    updated_at: str = field(default_factory=_now_iso)
    by_scope: Dict[str, List[str]] = field(default_factory=dict)
    by_tag: Dict[str, List[str]] = field(default_factory=dict)
    by_scope_tag: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.by_scope or self.by_tag or self.by_scope_tag)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "updatedAt": self.updated_at,
            "byScope": self.by_scope,
            "byTag": self.by_tag,
            "byScopeTag": self.by_scope_tag,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryIndex:
        return cls(
            version=d.get("version", INDEX_VERSION),
            updated_at=d.get("updatedAt", ""),
            by_scope={k: list(v) for k, v in (d.get("byScope") or {}).items()},
            by_tag={k: list(v) for k, v in (d.get("byTag") or {}).items()},
            by_scope_tag={
                scope: {tag: list(ids) for tag, ids in tags.items()}
                for scope, tags in (d.get("byScopeTag") or {}).items()
            },
        )


# ---------------------------------------------------------------------------
# Log diagnostics
# ---------------------------------------------------------------------------

@dataclass
class LineError:
    """A log line that failed to decode or validate."""

    line_number: int
    error: str
    raw: str = ""

    def __str__(self) -> str:
        return self.error

    def to_dict(self) -> Dict[str, Any]:
        """Quarantine record shape."""
        return {"lineNumber": self.line_number, "error": self.error, "raw": self.raw}


@dataclass
class ReadStats:
    total_lines: int = 0
    empty_lines: int = 0
    valid_lines: int = 0
    invalid_lines: int = 0
    bytes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalLines": self.total_lines,
            "emptyLines": self.empty_lines,
            "validLines": self.valid_lines,
            "invalidLines": self.invalid_lines,
            "bytes": self.bytes,
        }


@dataclass
class ReadResult:
    items: List[MemoryItem] = field(default_factory=list)
    errors: List[LineError] = field(default_factory=list)
    stats: ReadStats = field(default_factory=ReadStats)


@dataclass
class HealthResult:
    """Physical condition of the log and the reasons to compact or repair."""

    stats: ReadStats = field(default_factory=ReadStats)
    errors: List[LineError] = field(default_factory=list)
    latest_items: int = 0
    needs_repair: bool = False
    should_compact: bool = False
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stats": self.stats.to_dict(),
            "errors": [str(e) for e in self.errors],
            "latestItems": self.latest_items,
            "needsRepair": self.needs_repair,
            "shouldCompact": self.should_compact,
            "reasons": list(self.reasons),
        }


@dataclass
class RepairResult:
    """Outcome of a repair (or compaction) pass."""

    repaired: bool = False
    compacted: bool = False
    errors: List[LineError] = field(default_factory=list)
    stats: ReadStats = field(default_factory=ReadStats)
    quarantined_file: Optional[str] = None
    quarantined_lines: int = 0
    backup_file: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "repaired": self.repaired,
            "compacted": self.compacted,
            "errors": [str(e) for e in self.errors],
            "stats": self.stats.to_dict(),
            "quarantinedLines": self.quarantined_lines,
        }
        if self.quarantined_file:
            d["quarantinedFile"] = self.quarantined_file
        if self.backup_file:
            d["backupFile"] = self.backup_file
        return d


# ---------------------------------------------------------------------------
# Prune proposals
# ---------------------------------------------------------------------------

@dataclass
class PruneAction:
    """A proposed mutation and why. Never persisted."""

    id: str
    patch: MemoryPatch
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "patch": self.patch.to_dict(), "reason": self.reason}


@dataclass
class PruneStats:
    deduped: int = 0
    deleted: int = 0
    summarized: int = 0
    retained: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deduped": self.deduped,
            "deleted": self.deleted,
            "summarized": self.summarized,
            "retained": self.retained,
        }
