"""
codexmem CLI — Scoped Memory Commands

Commands:
    codexmem add     "content" --scope S [--tags a,b]  — store a new item
    codexmem search  ["query"] [--scope S] [--tags T]  — ranked retrieval
    codexmem show    <id>                              — display one item
    codexmem update  <id> [--content ...] [...]        — partial update
    codexmem delete  <id>                              — soft delete
    codexmem prune   [--scope S] [--dry-run]           — dedupe + age out
    codexmem reindex                                   — rebuild the index
    codexmem health                                    — log statistics
    codexmem repair  [--compact] [--no-quarantine]     — drop corrupt lines
    codexmem compact                                   — one line per item
    codexmem check                                     — sanity round trip
    codexmem serve                                     — start MCP server

Environment variables:
    CODEXMEM_CONFIG       JSON config file
    CODEXMEM_MEMORY_FILE  JSONL log path (default: .memory/memory.jsonl)
    CODEXMEM_INDEX_FILE   Index path (default: .memory/index.json)

Precedence (invariant):
    CLI --flag  >  CODEXMEM_* env var  >  config file  >  compiled default

Exit codes:
    0  Success (including "no results")
    1  Operational error (bad args, unknown id, invalid config, lock timeout)
    2  Internal failure (unexpected exception, I/O error)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import replace
from typing import Any, Dict, List, Optional

from codexmem.errors import CodexMemError, ValidationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    """Read a string env var; empty counts as unset."""
    return os.environ.get(name) or default


def _resolve_config(args: argparse.Namespace):
    """Config file, then env and flag overrides for the two paths."""
    from codexmem.config import load_config

    path = getattr(args, "config", None) or _env_str("CODEXMEM_CONFIG")
    config = load_config(path, strict=True)

    overrides: Dict[str, str] = {}
    memory_file = getattr(args, "memory_file", None) or _env_str("CODEXMEM_MEMORY_FILE")
    index_file = getattr(args, "index_file", None) or _env_str("CODEXMEM_INDEX_FILE")
    if memory_file:
        overrides["memory_file"] = memory_file
    if index_file:
        overrides["index_file"] = index_file
    if overrides:
        config = replace(config, store=replace(config.store, **overrides))
    return config


def _open_engine(args: argparse.Namespace):
    from codexmem.engine import MemoryEngine
    return MemoryEngine(_resolve_config(args))


def _split_tags(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [t.strip() for t in value.split(",") if t.strip()]


def _parse_metadata(value: Optional[str]) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        raise ValidationError(f"--metadata is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise ValidationError("--metadata must be a JSON object")
    return data


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _print_item(item) -> None:
    print(f"ID:         {item.id}")
    print(f"Scope:      {item.scope}")
    print(f"Tags:       {', '.join(item.tags) if item.tags else '(none)'}")
    print(f"Importance: {item.importance:.2f}")
    print(f"Created:    {item.created_at}")
    print(f"Updated:    {item.updated_at}")
    if item.deleted:
        print("Deleted:    yes")
    if item.summary:
        print(f"Summary:    {item.summary}")
    if item.metadata:
        print(f"Metadata:   {json.dumps(item.metadata, ensure_ascii=False)}")
    print(f"\n--- Content ---\n{item.content}")


# ===========================================================================
# Item commands
# ===========================================================================


def cmd_add(args: argparse.Namespace) -> None:
    """Store a new memory item. Content '-' reads stdin."""
    content = args.content
    if content == "-":
        content = sys.stdin.read()

    engine = _open_engine(args)
    item = engine.add(
        args.scope,
        content,
        tags=_split_tags(args.tags),
        metadata=_parse_metadata(args.metadata),
        importance=args.importance,
        summary=args.summary,
    )

    if getattr(args, "json", False):
        _print_json(item.to_record())
    else:
        print(item.id)
    _info(f"Stored in scope '{item.scope}' ({len(item.tags)} tag(s))")


def cmd_search(args: argparse.Namespace) -> None:
    """Ranked retrieval over the latest view."""
    engine = _open_engine(args)
    results = engine.search(
        scope=args.scope,
        tags=_split_tags(args.tags),
        query=args.query,
        limit=args.limit,
        include_deleted=args.include_deleted,
    )

    if getattr(args, "json", False):
        _print_json([r.to_dict() for r in results])
        return

    if not results:
        _info("No results found.")
        return

    print(f"Found {len(results)} item(s):\n")
    for r in results:
        it = r.item
        flag = " [DELETED]" if it.deleted else ""
        text = (it.summary or it.content).replace("\n", " ")
        print(f"  {r.score:6.3f}  {it.id}  [{it.scope}]{flag}")
        if it.tags:
            print(f"    tags: {', '.join(it.tags)}")
        print(f"    {text[:160]}")
        print()


def cmd_show(args: argparse.Namespace) -> None:
    """Show a memory item by ID."""
    engine = _open_engine(args)
    item = engine.get(args.id)
    if getattr(args, "json", False):
        _print_json(item.to_record())
    else:
        _print_item(item)


def cmd_update(args: argparse.Namespace) -> None:
    """Apply a partial update built from the given flags."""
    patch: Dict[str, Any] = {}
    if args.content is not None:
        patch["content"] = args.content
    if args.scope is not None:
        patch["scope"] = args.scope
    if args.tags is not None:
        patch["tags"] = _split_tags(args.tags)
    if args.importance is not None:
        patch["importance"] = args.importance
    if args.clear_summary:
        patch["summary"] = None
    elif args.summary is not None:
        patch["summary"] = args.summary
    if args.clear_metadata:
        patch["metadata"] = None
    elif args.metadata is not None:
        patch["metadata"] = _parse_metadata(args.metadata)
    if args.restore:
        patch["deleted"] = False
    if not patch:
        raise ValidationError("nothing to update (pass at least one field flag)")

    engine = _open_engine(args)
    item = engine.update(args.id, patch)
    if getattr(args, "json", False):
        _print_json(item.to_record())
    else:
        _info(f"Updated {item.id}: {', '.join(sorted(patch))}")


def cmd_delete(args: argparse.Namespace) -> None:
    """Soft-delete an item."""
    engine = _open_engine(args)
    item = engine.delete(args.id)
    if getattr(args, "json", False):
        _print_json(item.to_record())
    else:
        _info(f"Deleted {item.id}")


# ===========================================================================
# Maintenance commands
# ===========================================================================


def cmd_prune(args: argparse.Namespace) -> None:
    """Deduplicate, age out and compress memory."""
    engine = _open_engine(args)
    result = engine.prune(scope=args.scope, dry_run=args.dry_run)

    if getattr(args, "json", False):
        _print_json(result)
        return

    stats = result["stats"]
    label = "Prune (dry run)" if args.dry_run else "Prune"
    _info(
        f"{label}: {stats['deduped']} deduped, {stats['deleted']} deleted, "
        f"{stats['summarized']} summarized, {stats['retained']} retained"
    )
    for action in result["actions"]:
        fields = ", ".join(sorted(action["patch"]))
        print(f"  {action['id']}  {action['reason']}  ({fields})")


def cmd_reindex(args: argparse.Namespace) -> None:
    """Rebuild the index from the log."""
    engine = _open_engine(args)
    index = engine.rebuild_index()
    if getattr(args, "json", False):
        _print_json(index.to_dict())
    else:
        _info(
            f"Index rebuilt: {len(index.by_scope)} scope(s), "
            f"{len(index.by_tag)} tag(s) -> {engine.index_file}"
        )


def cmd_health(args: argparse.Namespace) -> None:
    """Log statistics and maintenance advice."""
    engine = _open_engine(args)
    health = engine.health()
    if getattr(args, "json", False):
        _print_json(health.to_dict())
        return

    s = health.stats
    print(f"File:          {engine.store.path}")
    print(f"Bytes:         {s.bytes}")
    print(f"Lines:         {s.total_lines} ({s.valid_lines} valid, "
          f"{s.invalid_lines} invalid, {s.empty_lines} empty)")
    print(f"Latest items:  {health.latest_items}")
    print(f"Needs repair:  {'yes' if health.needs_repair else 'no'}")
    print(f"Compact:       {'recommended' if health.should_compact else 'no'}")
    for reason in health.reasons:
        print(f"  - {reason}")
    for err in health.errors[:10]:
        _warn(f"  {err}")


def _report_rewrite(args: argparse.Namespace, result) -> None:
    if getattr(args, "json", False):
        _print_json(result.to_dict())
        return
    _info(
        f"repaired={result.repaired} compacted={result.compacted} "
        f"quarantined={result.quarantined_lines}"
    )
    if result.quarantined_file:
        _info(f"  Quarantine: {result.quarantined_file}")
    if result.backup_file:
        _info(f"  Backup:     {result.backup_file}")


def cmd_repair(args: argparse.Namespace) -> None:
    """Drop corrupt lines, optionally compacting."""
    engine = _open_engine(args)
    result = engine.repair(compact=args.compact, quarantine=not args.no_quarantine)
    _report_rewrite(args, result)


def cmd_compact(args: argparse.Namespace) -> None:
    """Rewrite the log to the latest view."""
    engine = _open_engine(args)
    _report_rewrite(args, engine.compact())


def cmd_check(args: argparse.Namespace) -> None:
    """Sanity round trip in a throwaway directory."""
    from codexmem.engine import run_sanity_check

    result = run_sanity_check(_resolve_config(args))
    if getattr(args, "json", False):
        _print_json(result)
    else:
        _info("Sanity check passed.")


# ===========================================================================
# Command: serve  (start MCP server)
# ===========================================================================


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the codexmem MCP server in foreground."""
    try:
        from codexmem.mcp.server import create_server, build_parser as mcp_parser
        import mcp  # noqa: F401
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install codexmem[mcp]")
        sys.exit(1)

    config = _resolve_config(args)
    server_argv = [
        "--memory-file", config.store.memory_file,
        "--index-file", config.store.index_file,
    ]
    config_path = getattr(args, "config", None) or _env_str("CODEXMEM_CONFIG")
    if config_path:
        server_argv.extend(["--config", config_path])
    if getattr(args, "audit_log", None):
        server_argv.extend(["--audit-log", args.audit_log])
    if getattr(args, "verbose", False):
        server_argv.append("--verbose")

    server_args = mcp_parser().parse_args(server_argv)
    mcp_server, _ = create_server(server_args)

    _info(f"codexmem MCP server (memory={server_args.memory_file})")
    _info("Press Ctrl+C to stop.")
    mcp_server.run()


# ===========================================================================
# Entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    """Top-level parser with every subcommand registered."""
    # Shared parent so `codexmem --json health` and `codexmem health --json`
    # both work. SUPPRESS keeps subparser defaults from clobbering values
    # parsed at the top level.
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="JSON config file (default: $CODEXMEM_CONFIG)",
    )
    _common.add_argument(
        "--memory-file", default=argparse.SUPPRESS,
        help="JSONL log path (default: $CODEXMEM_MEMORY_FILE or config)",
    )
    _common.add_argument(
        "--index-file", default=argparse.SUPPRESS,
        help="Index path (default: $CODEXMEM_INDEX_FILE or config)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="codexmem",
        description="codexmem — durable scoped memory for coding agents",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- add ---------------------------------------------------------------
    p_add = sub.add_parser("add", parents=[_common], help="Store a new memory item")
    p_add.add_argument("content", help="Item content ('-' reads stdin)")
    p_add.add_argument("--scope", required=True, help="Item scope")
    p_add.add_argument("--tags", default=None, help="Comma-separated tags")
    p_add.add_argument("--importance", type=float, default=None,
                       help="Importance 0..1 (default: 0.5)")
    p_add.add_argument("--summary", default=None, help="Optional summary")
    p_add.add_argument("--metadata", default=None, help="JSON object")
    p_add.set_defaults(func=cmd_add)

    # -- search ------------------------------------------------------------
    p_search = sub.add_parser("search", parents=[_common], help="Ranked retrieval")
    p_search.add_argument("query", nargs="?", default=None, help="Free-text query")
    p_search.add_argument("--scope", default=None, help="Exact scope filter")
    p_search.add_argument("--tags", default=None, help="Comma-separated tags (any of)")
    p_search.add_argument("-k", "--limit", type=int, default=None,
                          help="Max results (default: retrieval.default_limit; 0 = all)")
    p_search.add_argument("--include-deleted", action="store_true",
                          help="Also return soft-deleted items")
    p_search.set_defaults(func=cmd_search)

    # -- show --------------------------------------------------------------
    p_show = sub.add_parser("show", parents=[_common], help="Show memory item details")
    p_show.add_argument("id", help="Memory item ID")
    p_show.set_defaults(func=cmd_show)

    # -- update ------------------------------------------------------------
    p_upd = sub.add_parser("update", parents=[_common], help="Partially update an item")
    p_upd.add_argument("id", help="Memory item ID")
    p_upd.add_argument("--content", default=None)
    p_upd.add_argument("--scope", default=None)
    p_upd.add_argument("--tags", default=None, help="Comma-separated tags (replaces)")
    p_upd.add_argument("--importance", type=float, default=None)
    p_upd.add_argument("--summary", default=None)
    p_upd.add_argument("--clear-summary", action="store_true")
    p_upd.add_argument("--metadata", default=None, help="JSON object (replaces)")
    p_upd.add_argument("--clear-metadata", action="store_true")
    p_upd.add_argument("--restore", action="store_true", help="Undo a soft delete")
    p_upd.set_defaults(func=cmd_update)

    # -- delete ------------------------------------------------------------
    p_del = sub.add_parser("delete", parents=[_common], help="Soft-delete an item")
    p_del.add_argument("id", help="Memory item ID")
    p_del.set_defaults(func=cmd_delete)

    # -- prune -------------------------------------------------------------
    p_prune = sub.add_parser("prune", parents=[_common], help="Dedupe, age out, compress")
    p_prune.add_argument("--scope", default=None, help="Limit to one scope")
    p_prune.add_argument("--dry-run", action="store_true",
                         help="Report actions without applying them")
    p_prune.set_defaults(func=cmd_prune)

    # -- reindex -----------------------------------------------------------
    p_reindex = sub.add_parser("reindex", parents=[_common], help="Rebuild the index")
    p_reindex.set_defaults(func=cmd_reindex)

    # -- health ------------------------------------------------------------
    p_health = sub.add_parser("health", parents=[_common], help="Log statistics")
    p_health.set_defaults(func=cmd_health)

    # -- repair ------------------------------------------------------------
    p_repair = sub.add_parser("repair", parents=[_common], help="Drop corrupt lines")
    p_repair.add_argument("--compact", action="store_true", help="Also compact")
    p_repair.add_argument("--no-quarantine", action="store_true",
                          help="Do not save dropped lines to a .corrupt file")
    p_repair.set_defaults(func=cmd_repair)

    # -- compact -----------------------------------------------------------
    p_compact = sub.add_parser("compact", parents=[_common], help="One line per item")
    p_compact.set_defaults(func=cmd_compact)

    # -- check -------------------------------------------------------------
    p_check = sub.add_parser("check", parents=[_common], help="Sanity round trip")
    p_check.set_defaults(func=cmd_check)

    # -- serve -------------------------------------------------------------
    p_serve = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p_serve.add_argument("--audit-log", default=None,
                         help="Audit log file path (default: stderr)")
    p_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point: codexmem <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args(argv)

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except BrokenPipeError:
        # e.g. codexmem search ... | head
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except CodexMemError as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
