"""
codexmem — durable, scoped memory for coding agents.

One append-only JSONL log is the truth; a derived JSON index narrows
lookups; ranking, pruning and summarization are deterministic.
"""

__version__ = "0.1.0"

from codexmem.types import (
    MemoryItem,
    MemoryPatch,
    MemoryIndex,
    UNSET,
)
from codexmem.store import MemoryStore
from codexmem.engine import MemoryEngine, run_sanity_check
from codexmem.config import MemoryConfig, load_config
from codexmem.errors import (
    CodexMemError,
    ItemNotFoundError,
    LockTimeoutError,
    SanityCheckError,
    ValidationError,
)

__all__ = [
    "__version__",
    "MemoryItem",
    "MemoryPatch",
    "MemoryIndex",
    "UNSET",
    "MemoryStore",
    "MemoryEngine",
    "run_sanity_check",
    "MemoryConfig",
    "load_config",
    "CodexMemError",
    "ItemNotFoundError",
    "LockTimeoutError",
    "SanityCheckError",
    "ValidationError",
]
