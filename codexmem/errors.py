"""
Error taxonomy for codexmem.

Corrupt log lines are never raised: they become line diagnostics
(see ``codexmem.types.LineError``).  Everything else that prevents a
requested mutation surfaces as one of the classes below, or as a plain
``OSError`` for filesystem failures.
"""

from __future__ import annotations


class CodexMemError(Exception):
    """Base class for all codexmem errors."""


class ValidationError(CodexMemError, ValueError):
    """Malformed or missing arguments, patches, or config values."""


class ItemNotFoundError(CodexMemError, KeyError):
    """The requested id is absent from the latest view."""

    def __init__(self, item_id: str):
        super().__init__(item_id)
        self.item_id = item_id

    def __str__(self) -> str:
        return f"memory item not found: {self.item_id}"


class LockTimeoutError(CodexMemError, TimeoutError):
    """The cooperative file lock was not acquired within the wait bound."""

    def __init__(self, lock_path: str, waited: float):
        super().__init__(f"Timed out waiting for lock: {lock_path}")
        self.lock_path = lock_path
        self.waited = waited


class SanityCheckError(CodexMemError):
    """The add/get/rebuild/search round trip did not behave as expected."""
