"""agentmem CLI -- memory commands, maintenance, model setup, and server management."""

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

BGE_MODEL_DIR = Path.home() / ".cache" / "agentmem" / "models" / "bge-small-en-v1.5-onnx"


# ---------------------------------------------------------------------------
# Model download
# ---------------------------------------------------------------------------


def _download_file(url: str, target: Path) -> None:
    """Download a file with a progress line showing bytes and percentage."""
    import urllib.request

    req = urllib.request.Request(url, headers={"User-Agent": "agentmem/1.0"})
    with urllib.request.urlopen(req, timeout=60) as resp:
        total = int(resp.headers.get("Content-Length", 0))
        downloaded = 0
        chunk_size = 64 * 1024

        # Temp file + rename so no partial model is ever picked up
        tmp = target.with_suffix(target.suffix + ".tmp")
        try:
            with open(tmp, "wb") as f:
                while True:
                    chunk = resp.read(chunk_size)
                    if not chunk:
                        break
                    f.write(chunk)
                    downloaded += len(chunk)
                    mb_done = downloaded / (1024 * 1024)
                    if total > 0:
                        pct = downloaded * 100 // total
                        print(f"\r    {target.name}: {mb_done:.1f}/{total / (1024 * 1024):.1f} MB ({pct}%)",
                              end="", flush=True)
                    else:
                        print(f"\r    {target.name}: {mb_done:.1f} MB", end="", flush=True)
            tmp.rename(target)
            print()
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise


def _download_bge_model(target_dir: Path) -> bool:
    """Download the bge-small-en-v1.5 ONNX model from HuggingFace."""
    target_dir.mkdir(parents=True, exist_ok=True)
    hf_repo = "https://huggingface.co/BAAI/bge-small-en-v1.5/resolve/main"
    files = {
        "model.onnx": f"{hf_repo}/onnx/model.onnx",
        "tokenizer.json": f"{hf_repo}/tokenizer.json",
        "config.json": f"{hf_repo}/config.json",
    }
    if all((target_dir / name).exists() for name in files):
        print(f"  bge-small-en-v1.5 already present at {target_dir}")
        return True

    print("  Downloading bge-small-en-v1.5 ONNX model (~130MB)...")
    try:
        for name, url in files.items():
            target = target_dir / name
            if not target.exists():
                _download_file(url, target)
    except Exception as e:
        print(f"  ERROR: model download failed: {e}", file=sys.stderr)
        print(f"  Manually place model files in {target_dir}", file=sys.stderr)
        return False
    print(f"  Model downloaded to {target_dir}")
    return True


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def _format_age(created_at) -> str:
    """Relative age string, e.g. '2d ago', '1w ago'."""
    if not created_at:
        return ""
    seconds = int((datetime.now(timezone.utc) - created_at).total_seconds())
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    days = seconds // 86400
    if days < 7:
        return f"{days}d ago"
    if days < 30:
        return f"{days // 7}w ago"
    return f"{days // 30}mo ago"


def _print_entries(entries, as_json: bool = False) -> None:
    if as_json:
        print(json.dumps([e.to_dict() for e in entries], indent=2))
        return
    if not entries:
        print("No memories found.")
        return
    for e in entries:
        score = f" {e.relevance:.2f}" if e.relevance else ""
        print(f"#{e.id}{score} [{e.agent_id}/{e.category}] {e.importance.value} "
              f"({e.status.value}, {_format_age(e.created_at)})")
        print(f"    {e.content[:200]}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_store(args):
    """Store a fact for an agent."""
    content = " ".join(args.content)
    if not content.strip():
        print("Usage: agentmem store AGENT CATEGORY <text>", file=sys.stderr)
        sys.exit(1)

    from agentmem.bridge import store_detailed

    try:
        result = store_detailed(
            args.agent,
            args.category,
            content,
            keywords=args.keywords.split(",") if args.keywords else None,
            importance=args.importance,
            visibility=args.visibility,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    line = f"Memory #{result['id']} ({result['action']})"
    if result["reason"]:
        line += f": {result['reason']}"
    print(line)


def cmd_recall(args):
    """Recall memories relevant to a query."""
    from agentmem.bridge import recall

    entries = recall(args.agent, " ".join(args.query), limit=args.limit)
    if args.context:
        from agentmem.keywords import format_memories_as_context

        print(format_memories_as_context(entries) or "No relevant memories.")
        return
    _print_entries(entries, as_json=args.json)


def cmd_list(args):
    from agentmem.bridge import list_memories

    try:
        entries = list_memories(agent_id=args.agent, limit=args.limit, status=args.status)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    _print_entries(entries, as_json=args.json)


def cmd_delete(args):
    from agentmem.bridge import delete_memory

    result = delete_memory(args.memory_id)
    if result["success"]:
        print(f"Deleted memory #{args.memory_id}")
    else:
        print(f"Error: {result['error']}", file=sys.stderr)
        sys.exit(1)


def cmd_maintain(args):
    """Run the daily maintenance pass."""
    from agentmem.bridge import run_maintenance

    result = run_maintenance()
    print(f"Archived: {result['archived']}  Decayed: {result['decayed']}  "
          f"Consolidated: {result['consolidated']}")
    for err in result["errors"]:
        print(f"  error: {err}", file=sys.stderr)
    if result["errors"]:
        sys.exit(1)


def cmd_health(args):
    from agentmem.bridge import check_health, health

    if args.json:
        print(json.dumps(health(), indent=2, default=str))
    else:
        print(check_health())


def cmd_backfill(args):
    from agentmem.bridge import backfill_embeddings

    stats = backfill_embeddings(batch_size=args.batch_size, limit=args.limit)
    if stats["skipped"]:
        print(f"Embedding provider not configured; {stats['skipped']} memories lack embeddings.")
        print("Run `agentmem setup` to download the model.")
        sys.exit(1)
    print(f"Embedded: {stats['embedded']}  Failed: {stats['failed']}")


def cmd_setup(args):
    """Download the embedding model and initialize the database."""
    from agentmem.config import agentmem_home

    home = agentmem_home()
    home.mkdir(parents=True, exist_ok=True, mode=0o700)
    print(f"agentmem home: {home}")

    ok = _download_bge_model(Path(args.model_dir) if args.model_dir else BGE_MODEL_DIR)

    from agentmem.sqlite_store import MemoryStore

    store = MemoryStore()
    print(f"  Database ready at {store.db_path} (sqlite-vec: {'yes' if store.vec_available else 'no'})")
    store.close()
    if not ok:
        sys.exit(1)


def cmd_serve(args):
    """Run the MCP server (stdio), or the HTTP server with --http."""
    import asyncio

    if args.http:
        from agentmem.server.http_server import get_or_create_api_key, run_http

        api_key = None if args.no_auth else get_or_create_api_key()
        asyncio.run(run_http(args.host, args.port, api_key))
        return

    from agentmem.server.mcp_server import main

    asyncio.run(main())


def main():
    parser = argparse.ArgumentParser(
        prog="agentmem",
        description="agentmem -- persistent semantic memory for conversational agents",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    store_parser = subparsers.add_parser("store", help="Store a fact for an agent")
    store_parser.add_argument("agent", help="Agent id")
    store_parser.add_argument("category", help="Category")
    store_parser.add_argument("content", nargs="+", help="Fact text")
    store_parser.add_argument("--keywords", help="Comma-separated keywords")
    store_parser.add_argument("--importance", choices=["low", "medium", "high", "critical"])
    store_parser.add_argument("--visibility", choices=["private", "shared", "broadcast"])

    recall_parser = subparsers.add_parser("recall", help="Recall memories relevant to a query")
    recall_parser.add_argument("agent", help="Agent id")
    recall_parser.add_argument("query", nargs="*", help="Query text")
    recall_parser.add_argument("--limit", type=int, default=8, help="Max results (default: 8)")
    recall_parser.add_argument("--json", action="store_true")
    recall_parser.add_argument("--context", action="store_true", help="Print as a prompt context section")

    list_parser = subparsers.add_parser("list", help="List memories, newest first")
    list_parser.add_argument("--agent")
    list_parser.add_argument("--status", choices=["active", "archived", "contradicted"])
    list_parser.add_argument("--limit", type=int, default=50)
    list_parser.add_argument("--json", action="store_true")

    delete_parser = subparsers.add_parser("delete", help="Permanently delete a memory by id")
    delete_parser.add_argument("memory_id", type=int)

    subparsers.add_parser("maintain", help="Archive stale, decay importance, consolidate duplicates")

    health_parser = subparsers.add_parser("health", help="Show the memory health report")
    health_parser.add_argument("--json", action="store_true")

    backfill_parser = subparsers.add_parser("backfill", help="Embed memories stored without embeddings")
    backfill_parser.add_argument("--batch-size", type=int, default=32)
    backfill_parser.add_argument("--limit", type=int)

    setup_parser = subparsers.add_parser("setup", help="Download the embedding model, initialize the DB")
    setup_parser.add_argument("--model-dir", help=f"Model directory (default: {BGE_MODEL_DIR})")

    serve_parser = subparsers.add_parser("serve", help="Run MCP server (stdio, or HTTP with --http)")
    serve_parser.add_argument("--http", action="store_true", help="Serve Streamable HTTP instead of stdio")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8765)
    serve_parser.add_argument("--no-auth", action="store_true", help="Disable the API key check")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    commands = {
        "store": cmd_store,
        "recall": cmd_recall,
        "list": cmd_list,
        "delete": cmd_delete,
        "maintain": cmd_maintain,
        "health": cmd_health,
        "backfill": cmd_backfill,
        "setup": cmd_setup,
        "serve": cmd_serve,
    }

    if args.command in commands:
        commands[args.command](args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
