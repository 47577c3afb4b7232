"""
codexmem MCP Server — durable scoped memory for coding agents

Standalone MCP server exposing MemoryEngine operations via the Model
Context Protocol.  Thin layer: all behavior lives in codexmem/*.

Usage:
    python -m codexmem.mcp.server
    python -m codexmem.mcp.server --memory-file .memory/memory.jsonl
    python -m codexmem.mcp.server --config codex-mem.config.json --audit-log audit.jsonl
"""

from __future__ import annotations

import argparse
import logging
import os

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP, visible to every MCP client.
_MCP_INSTRUCTIONS = (
    "Durable scoped memory (10 tools).\n"
    "\n"
    "STORE:    memory_add with a scope, 1-5 lowercase tags and importance 0..1.\n"
    "RECALL:   memory_search by scope/tags/query; results are ranked.\n"
    "EDIT:     memory_get, memory_update (partial patch), memory_delete (soft).\n"
    "MAINTAIN: memory_health, then memory_compact / memory_repair when advised;\n"
    "          memory_prune (dry_run first) to dedupe and age out old items.\n"
    "\n"
    "Rules:\n"
    "- Store distilled facts and decisions, not raw transcripts\n"
    "- NEVER store secrets or credentials\n"
)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the memory MCP server."""
    p = argparse.ArgumentParser(
        prog="codexmem-mcp",
        description="codexmem MCP Server — durable scoped memory",
    )
    p.add_argument(
        "--config",
        default=os.environ.get("CODEXMEM_CONFIG"),
        help="JSON config file (default: $CODEXMEM_CONFIG)",
    )
    p.add_argument(
        "--memory-file",
        default=os.environ.get("CODEXMEM_MEMORY_FILE"),
        help="JSONL log path (overrides config; default: $CODEXMEM_MEMORY_FILE)",
    )
    p.add_argument(
        "--index-file",
        default=os.environ.get("CODEXMEM_INDEX_FILE"),
        help="Index path (overrides config; default: $CODEXMEM_INDEX_FILE)",
    )
    p.add_argument(
        "--audit-log",
        default=None,
        help="Audit log file path (default: stderr)",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with memory tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, engine) tuple.
    """
    from dataclasses import replace

    from mcp.server.fastmcp import FastMCP

    from codexmem.config import load_config
    from codexmem.engine import MemoryEngine
    from codexmem.mcp.audit import AuditLogger
    from codexmem.mcp.tools import register_memory_tools

    if args is None:
        args = build_parser().parse_args()

    config = load_config(args.config, strict=True)
    overrides = {}
    if args.memory_file:
        overrides["memory_file"] = args.memory_file
    if args.index_file:
        overrides["index_file"] = args.index_file
    if overrides:
        config = replace(config, store=replace(config.store, **overrides))

    engine = MemoryEngine(config)

    audit_output = None
    if args.audit_log:
        audit_output = open(args.audit_log, "a", encoding="utf-8")
    audit = AuditLogger(output=audit_output)

    mcp = FastMCP(
        name="codexmem Memory",
        instructions=_MCP_INSTRUCTIONS,
    )
    register_memory_tools(mcp, engine, audit=audit)

    logger.info(
        "codexmem MCP server ready: memory=%s, index=%s",
        config.store.memory_file, config.store.index_file,
    )
    return mcp, engine


def main():
    """CLI entry point — parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, _engine = create_server(args)
    mcp.run()


if __name__ == "__main__":
    main()
