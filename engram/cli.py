"""
Engram CLI — operator utilities for a local Engram data directory.

Usage:
    python -m engram.cli stats
    python -m engram.cli context "what did we decide about the trip?"
    python -m engram.cli search "trip" --limit 10
    python -m engram.cli facts list | facts add TEXT | facts delete ID
    python -m engram.cli rebuild
    python -m engram.cli reconcile
    python -m engram.cli reset --yes

Commands run as the owner. The background reconciliation daemon is not
started; use ``reconcile`` to run one pass explicitly.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

from engram.core.config import EngramConfig, IndexConfig, StoreConfig
from engram.core.errors import EngramError
from engram.core.memory import MemoryManager, wipe_persisted_state
from engram.core.types import Capability, format_timestamp
from engram.platform import get_config_dir

logger = logging.getLogger("Engram.CLI")


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

def _load_config(args: argparse.Namespace) -> EngramConfig:
    """
    Resolution order:
      1. --config YAML file
      2. config.yaml in the platform config directory, when present
      3. ENGRAM_* environment variables
    --data-dir then relocates the store and index.
    """
    config_path = args.config or get_config_dir() / "config.yaml"
    if args.config or Path(config_path).exists():
        config = EngramConfig.from_yaml(str(config_path))
    else:
        config = EngramConfig.from_env()
    if args.data_dir:
        data_dir = str(Path(args.data_dir).expanduser())
        config = config.model_copy(
            update={
                "data_dir": data_dir,
                "store": StoreConfig(path=str(Path(data_dir) / "memory.db")),
                "index": IndexConfig(
                    **{**config.index.model_dump(), "path": str(Path(data_dir) / "index")}
                ),
            }
        )
    config.reconcile.enabled = False
    return config


def _configure_logging(config: EngramConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def _run(config: EngramConfig, command: Callable[[MemoryManager], Awaitable[int]]) -> int:
    async def _session() -> int:
        async with MemoryManager(config) as memory:
            return await command(memory)

    try:
        return asyncio.run(_session())
    except (EngramError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


# ─────────────────────────────────────────────────────────────────────────────
# Commands
# ─────────────────────────────────────────────────────────────────────────────

def cmd_stats(args: argparse.Namespace, config: EngramConfig) -> int:
    async def _stats(memory: MemoryManager) -> int:
        print(json.dumps(await memory.health(), indent=2, default=str))
        return 0

    return _run(config, _stats)


def cmd_context(args: argparse.Namespace, config: EngramConfig) -> int:
    async def _context(memory: MemoryManager) -> int:
        block = await memory.build_context(args.text)
        print(block.render() if not block.is_empty else "(empty context)")
        return 0

    return _run(config, _context)


def cmd_search(args: argparse.Namespace, config: EngramConfig) -> int:
    async def _search(memory: MemoryManager) -> int:
        hits = await memory.search_memory(args.query, limit=args.limit)
        if not hits:
            print("No relevant memories found.")
            return 0
        for hit in hits:
            print(f"{hit.score:.3f}  [{format_timestamp(hit.timestamp)}] ({hit.kind.value} {hit.id})")
            print(f"  {hit.text}")
        return 0

    return _run(config, _search)


def cmd_facts(args: argparse.Namespace, config: EngramConfig) -> int:
    async def _facts(memory: MemoryManager) -> int:
        if args.facts_command == "add":
            fact_id = await memory.add_fact(args.text, Capability.OWNER)
            print(fact_id)
        elif args.facts_command == "delete":
            await memory.delete_fact(args.id, Capability.OWNER)
            print(f"Deleted fact {args.id}")
        else:
            facts = await memory.list_facts()
            if not facts:
                print("No facts stored.")
            for fact in facts:
                print(f"{fact.id}  [{format_timestamp(fact.created_at)}]  {fact.text}")
        return 0

    return _run(config, _facts)


def cmd_rebuild(args: argparse.Namespace, config: EngramConfig) -> int:
    async def _rebuild(memory: MemoryManager) -> int:
        result = await memory.rebuild_index()
        print(f"Indexed {result['indexed']} records; {result['unembedded']} awaiting embedding.")
        return 0

    return _run(config, _rebuild)


def cmd_reconcile(args: argparse.Namespace, config: EngramConfig) -> int:
    async def _reconcile(memory: MemoryManager) -> int:
        result = await memory.reconcile()
        print(
            f"Removed {result['removed']}, indexed {result['indexed']}, "
            f"embedded {result['embedded']}, failed {result['failed']}."
        )
        return 0 if result["failed"] == 0 else 1

    return _run(config, _reconcile)


def cmd_reset(args: argparse.Namespace, config: EngramConfig) -> int:
    if not args.yes:
        print("Refusing to wipe memory without --yes.", file=sys.stderr)
        return 2
    try:
        wipe_persisted_state(config)
    except EngramError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"Wiped conversation store and vector index under {config.data_dir}")
    return 0


# ─────────────────────────────────────────────────────────────────────────────
# Argument parser
# ─────────────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="engram",
        description="Engram CLI — inspect and maintain an Engram memory directory.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  engram stats\n"
               "  engram search \"birthday\" --limit 10\n"
               "  engram facts add \"Prefers metric units\"\n"
               "  engram --data-dir /srv/engram rebuild\n"
               "  engram reset --yes\n",
    )
    parser.add_argument("--config", default=None, metavar="PATH", help="YAML configuration file.")
    parser.add_argument(
        "--data-dir",
        default=None,
        metavar="PATH",
        help="Data directory (default: ENGRAM_DATA_DIR or the platform data dir).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", default=False, help="Debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("stats", help="Print health and counters as JSON.")

    context = subparsers.add_parser("context", help="Show the context block built for an input.")
    context.add_argument("text", help="The new input to build context for.")

    search = subparsers.add_parser("search", help="Similarity search over turns and facts.")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=5, help="Max results (capped at 20).")

    facts = subparsers.add_parser("facts", help="Manage curated facts.")
    facts_sub = facts.add_subparsers(dest="facts_command", required=True)
    facts_sub.add_parser("list", help="List all facts.")
    facts_add = facts_sub.add_parser("add", help="Add a fact.")
    facts_add.add_argument("text")
    facts_delete = facts_sub.add_parser("delete", help="Delete a fact by id.")
    facts_delete.add_argument("id")

    subparsers.add_parser("rebuild", help="Recreate the vector index from stored vectors.")
    subparsers.add_parser("reconcile", help="Run one reconciliation pass.")

    reset = subparsers.add_parser(
        "reset",
        help="Delete the conversation store and vector index.",
        description="Irreversibly deletes every turn and fact in the data directory.",
    )
    reset.add_argument("--yes", action="store_true", default=False, help="Confirm the wipe.")
    return parser


COMMANDS = {
    "stats": cmd_stats,
    "context": cmd_context,
    "search": cmd_search,
    "facts": cmd_facts,
    "rebuild": cmd_rebuild,
    "reconcile": cmd_reconcile,
    "reset": cmd_reset,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = _load_config(args)
    _configure_logging(config, args.verbose)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    return handler(args, config)


if __name__ == "__main__":
    raise SystemExit(main())
