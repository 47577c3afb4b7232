"""
MCP Audit Trail — one JSONL record per tool call.

Records are schema-versioned and never carry full content: content-bearing
calls log a short preview plus a SHA-256 digest so repeated writes can be
correlated without storing what was written.

    {"v":1,"ts":"...Z","rid":"...","tool":"memory_add","file":"...",
     "outcome":"ok","d":{...},"ms":1.2}

log() must not disturb the tool it observes: write failures are reported
through the module logger and otherwise dropped.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, TextIO

logger = logging.getLogger(__name__)

AUDIT_SCHEMA_VERSION = 1
PREVIEW_MAX_CHARS = 120

OUTCOMES = ("ok", "error", "not_found", "invalid", "lock_timeout")


def _utc_stamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


class AuditLogger:
    """Structured JSONL audit logger for MCP tool calls."""

    def __init__(self, output: Optional[TextIO] = None):
        """
        Args:
            output: Text stream for audit records. None -> stderr.
        """
        self._output = output if output is not None else sys.stderr

    def new_rid(self) -> str:
        """Request id (UUID4 hex)."""
        return uuid.uuid4().hex

    def log(
        self,
        tool: str,
        rid: str,
        memory_file: str,
        outcome: str,
        detail: Optional[Dict[str, Any]] = None,
        latency_ms: float = 0.0,
    ) -> None:
        """
        Write one audit record.

        Args:
            tool: MCP tool name (e.g. "memory_add").
            rid: Request id from new_rid().
            memory_file: Log path the call operated on.
            outcome: One of OUTCOMES.
            detail: Tool-specific fields.
            latency_ms: Wall-clock latency in milliseconds.
        """
        record: Dict[str, Any] = {
            "v": AUDIT_SCHEMA_VERSION,
            "ts": _utc_stamp(),
            "rid": rid,
            "tool": tool,
            "file": memory_file,
            "outcome": outcome,
        }
        if detail:
            record["d"] = detail
        record["ms"] = round(latency_ms, 1)

        try:
            line = json.dumps(record, ensure_ascii=False, separators=(",", ":"),
                              default=str)
            self._output.write(line + "\n")
            self._output.flush()
        except (OSError, ValueError) as e:
            # ValueError: write to a closed stream.
            logger.debug(f"audit record for {tool} dropped: {e}")

    @staticmethod
    def content_detail(
        content: str,
        scope: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Privacy-safe detail for content-bearing calls.

        preview: first 120 chars, newlines flattened, "..." when cut
        hash:    SHA-256 hex digest of the UTF-8 content
        bytes:   UTF-8 size
        """
        encoded = content.encode("utf-8")
        preview = content[:PREVIEW_MAX_CHARS].replace("\n", " ").replace("\r", "")
        if len(content) > PREVIEW_MAX_CHARS:
            preview = preview.rstrip() + "..."

        detail: Dict[str, Any] = {
            "bytes": len(encoded),
            "hash": hashlib.sha256(encoded).hexdigest(),
            "preview": preview,
        }
        if scope is not None:
            detail["scope"] = scope
        if tags:
            detail["tags"] = len(tags)
        return detail
