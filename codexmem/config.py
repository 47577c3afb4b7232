"""
codexmem Configuration

Configuration dataclasses for codexmem: storage paths and lock timing,
summarization, prune policy, scoring weights, retrieval defaults and
maintenance thresholds.  Includes load_config() for reading a JSON config
file with silent fallback to compiled defaults.

The original ``codex-mem.config.json`` layout (camelCase keys, top-level
``memoryFile``/``indexFile``) is accepted as well as snake_case sections.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from codexmem.errors import ValidationError

_NUMBER = (int, float)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and (isinstance(value, bool) or not isinstance(value, typ)):
        expected = "number" if typ is _NUMBER else typ.__name__
        errors.append(f"{name}: expected {expected}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake_keys(d: Dict[str, Any]) -> Dict[str, Any]:
    """maxContentLength -> max_content_length (snake_case passes through)."""
    return {_CAMEL_RE.sub("_", k).lower(): v for k, v in d.items()}


@dataclass
class StoreConfig:
    """Log/index locations and lock timing."""
    memory_file: str = ".memory/memory.jsonl"
    index_file: str = ".memory/index.json"
    lock_timeout_ms: int = 5000
    lock_retry_delay_ms: int = 50
    lock_stale_ms: int = 30000

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not isinstance(self.memory_file, str) or not self.memory_file.strip():
            errors.append("store.memory_file: must be a non-empty path")
        if not isinstance(self.index_file, str) or not self.index_file.strip():
            errors.append("store.index_file: must be a non-empty path")
        _check_range(errors, "store.lock_timeout_ms",
                     self.lock_timeout_ms, 0, 600_000, int)
        _check_range(errors, "store.lock_retry_delay_ms",
                     self.lock_retry_delay_ms, 1, 60_000, int)
        _check_range(errors, "store.lock_stale_ms",
                     self.lock_stale_ms, 1, 86_400_000, int)
        return errors


@dataclass
class SummarizationConfig:
    """When and how far to shorten old, long content."""
    max_content_length: int = 800
    older_than_days: float = 30

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "summarization.max_content_length",
                     self.max_content_length, 1, 1_000_000, int)
        _check_range(errors, "summarization.older_than_days",
                     self.older_than_days, 0, 36_500, _NUMBER)
        return errors


@dataclass
class PruneConfig:
    """Per-scope retention, aging and dedup policy."""
    max_per_scope: int = 200
    delete_older_than_days: float = 365
    compress_older_than_days: float = 30
    dedupe: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "prune.max_per_scope",
                     self.max_per_scope, 0, 1_000_000, int)
        _check_range(errors, "prune.delete_older_than_days",
                     self.delete_older_than_days, 0, 36_500, _NUMBER)
        _check_range(errors, "prune.compress_older_than_days",
                     self.compress_older_than_days, 0, 36_500, _NUMBER)
        if not isinstance(self.dedupe, bool):
            errors.append("prune.dedupe: expected bool")
        return errors


@dataclass
class ScoringConfig:
    """Retrieval signal weights; half_life_days <= 0 disables recency decay."""
    scope: float = 2.0
    tag: float = 1.5
    recency: float = 1.0
    importance: float = 1.0
    text: float = 1.0
    half_life_days: float = 30

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        for name in ("scope", "tag", "recency", "importance", "text"):
            _check_range(errors, f"scoring.{name}",
                         getattr(self, name), 0.0, 1000.0, _NUMBER)
        _check_range(errors, "scoring.half_life_days",
                     self.half_life_days, -36_500, 36_500, _NUMBER)
        return errors


@dataclass
class RetrievalConfig:
    """Search defaults."""
    default_limit: int = 10

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "retrieval.default_limit",
                     self.default_limit, 0, 100_000, int)
        return errors


@dataclass
class MaintenanceConfig:
    """Health thresholds that recommend compaction."""
    max_line_ratio: float = 2.0
    min_lines: int = 200
    max_bytes: int = 5_000_000

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "maintenance.max_line_ratio",
                     self.max_line_ratio, 1.0, 1000.0, _NUMBER)
        _check_range(errors, "maintenance.min_lines",
                     self.min_lines, 0, 100_000_000, int)
        _check_range(errors, "maintenance.max_bytes",
                     self.max_bytes, 1, 1 << 40, int)
        return errors


@dataclass
class MemoryConfig:
    """Top-level codexmem configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    summarization: SummarizationConfig = field(default_factory=SummarizationConfig)
    prune: PruneConfig = field(default_factory=PruneConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        store = _snake_keys(d.get("store", {}))
        for key in ("memoryFile", "memory_file", "indexFile", "index_file"):
            if key in d:
                store[_CAMEL_RE.sub("_", key).lower()] = d[key]
        if store:
            kwargs["store"] = StoreConfig(**store)
        if "summarization" in d:
            kwargs["summarization"] = SummarizationConfig(**_snake_keys(d["summarization"]))
        if "prune" in d:
            kwargs["prune"] = PruneConfig(**_snake_keys(d["prune"]))
        if "scoring" in d:
            kwargs["scoring"] = ScoringConfig(**_snake_keys(d["scoring"]))
        if "retrieval" in d:
            kwargs["retrieval"] = RetrievalConfig(**_snake_keys(d["retrieval"]))
        if "maintenance" in d:
            kwargs["maintenance"] = MaintenanceConfig(**_snake_keys(d["maintenance"]))
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.summarization.validate())
        errors.extend(self.prune.validate())
        errors.extend(self.scoring.validate())
        errors.extend(self.retrieval.validate())
        errors.extend(self.maintenance.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> MemoryConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to the JSON config. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        MemoryConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = MemoryConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = MemoryConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError,
                AttributeError):
            cfg = MemoryConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
