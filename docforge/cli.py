"""Command-line interface: generate, plan, cache administration and serve."""

import argparse
import json
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Optional

from .core.config import settings
from .core.logging_config import setup_logging
from .database import SessionLocal, engine, init_db
from .exceptions import DocForgeException
from .pipeline.backend import LiteLLMBackend
from .pipeline.cancellation import CancellationToken
from .pipeline.executor import GenerationRequest, PipelineExecutor, PipelineResult, RunState
from .pipeline.file_source import LocalFileSource
from .pipeline.options import PipelineOptions
from .pipeline.progress import COMPLETE, ERROR, ProgressChannel
from .services.cache_maintenance import MB, CacheMaintenance, CleanupConfig
from .services.cache_store import CacheStore


def _store() -> CacheStore:
    init_db(engine)
    return CacheStore(SessionLocal, lock_timeout=settings.cache_lock_timeout)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _collect(args: argparse.Namespace):
    source = LocalFileSource(
        args.path,
        include=args.include or None,
        exclude=args.exclude,
        max_file_size=settings.max_file_size,
    )
    result = source.collect()
    for skipped in result.skipped:
        print(f"[Skip] {skipped.path} ({skipped.size} bytes, {skipped.reason})", file=sys.stderr)
    return result.files


def _repo_url(args: argparse.Namespace) -> str:
    return args.repo_url or Path(args.path).resolve().as_posix()


# ===================================================================
# generate / plan
# ===================================================================

def cmd_generate(args: argparse.Namespace) -> int:
    if not settings.generation_model:
        print("[Error] GENERATION_MODEL is not set; cannot generate.", file=sys.stderr)
        return 2

    files = _collect(args)
    if not files:
        print(f"[Error] No matching files under {args.path}", file=sys.stderr)
        return 1

    executor = PipelineExecutor(
        _store(),
        LiteLLMBackend.from_settings(settings),
        options=PipelineOptions.from_settings(settings),
    )
    request = GenerationRequest(
        repo_url=_repo_url(args),
        files=files,
        project_name=args.project_name,
        language=args.language,
        documentation_mode=args.mode,
        force_full=args.force,
        use_cache=not args.no_cache,
    )

    token = CancellationToken()
    channel = ProgressChannel(settings.progress_buffer_size)
    holder: dict[str, Optional[PipelineResult]] = {"result": None}

    def _handle_interrupt(signum, frame):
        print("\n[Cancel] Stopping after in-flight chapters finish...", file=sys.stderr)
        token.cancel("interrupted")

    signal.signal(signal.SIGINT, _handle_interrupt)
    signal.signal(signal.SIGTERM, _handle_interrupt)

    def _worker() -> None:
        try:
            holder["result"] = executor.run(request, progress=channel, token=token)
        except DocForgeException as e:
            channel.error("validate", e.message)

    worker = threading.Thread(target=_worker, name="generation")
    worker.start()
    for event in channel.events():
        if event.kind == ERROR:
            print(f"[Error] {event.stage}: {event.message}", file=sys.stderr)
        elif event.kind == COMPLETE:
            print(f"[{event.percent:3d}%] {event.message}")
        else:
            unit = f" ({event.current_unit}/{event.total_units})" if event.total_units else ""
            print(f"[{event.percent:3d}%] {event.message}{unit}")
    worker.join()

    result = holder["result"]
    if result is None or result.status.state != RunState.COMPLETED:
        return 130 if result is not None and result.status.state == RunState.CANCELLED else 1

    output_dir = Path(args.output or Path("output") / result.output.project_name)
    output_dir.mkdir(parents=True, exist_ok=True)
    for filename, content in result.output.files().items():
        (output_dir / filename).write_text(content, encoding="utf-8")

    print(f"\nMode: {result.plan.mode.value} ({result.plan.reason})")
    print(f"Regenerated: {len(result.regenerated_units)}  Reused: {len(result.reused_units)}")
    print(f"Tokens: {result.usage.get('total_tokens', 0)}  Calls: {result.usage.get('calls', 0)}")
    if result.failures:
        print(f"\n[Warning] {len(result.failures)} chapter(s) failed:", file=sys.stderr)
        for failure in result.failures:
            print(f"  - {failure.title}: {failure.error}", file=sys.stderr)
    if result.commit_error:
        print(f"[Warning] Cache not updated: {result.commit_error}", file=sys.stderr)
    elif result.commit_skipped_reason:
        print(f"[Info] Cache not updated: {result.commit_skipped_reason}", file=sys.stderr)
    print(f"\n[Info] Documentation written to {output_dir}")
    return 0


def cmd_plan(args: argparse.Namespace) -> int:
    files = _collect(args)
    if not files:
        print(f"[Error] No matching files under {args.path}", file=sys.stderr)
        return 1
    analysis, plan = PipelineExecutor(_store()).preview(
        _repo_url(args), files, force_full=args.force,
        language=args.language, documentation_mode=args.mode,
    )
    _print_json({"analysis": analysis.to_dict(), "plan": plan.to_dict()})
    return 0


# ===================================================================
# cache administration
# ===================================================================

def cmd_cache(args: argparse.Namespace) -> int:
    store = _store()
    maintenance = CacheMaintenance(store)

    if args.cache_command == "stats":
        stats = store.stats()
        _print_json({
            "total_entries": stats.total_entries,
            "total_size_mb": round(stats.total_bytes / MB, 2),
            "corrupt_entries": stats.corrupt_entries,
            "oldest_entry": stats.oldest_entry.repo_id if stats.oldest_entry else None,
            "newest_entry": stats.newest_entry.repo_id if stats.newest_entry else None,
        })
    elif args.cache_command == "list":
        for entry in store.list():
            flag = " [corrupt]" if entry.is_corrupt else ""
            print(
                f"{entry.repo_id}  {entry.unit_count} units  {entry.size_bytes} bytes  "
                f"last used {entry.last_accessed_at:%Y-%m-%d %H:%M}{flag}"
            )
    elif args.cache_command == "cleanup":
        result = maintenance.cleanup(CleanupConfig(
            max_age_days=args.max_age_days,
            max_size_mb=args.max_size_mb,
            max_entries=args.max_entries,
            min_entries_to_keep=args.keep,
            dry_run=args.dry_run,
        ))
        prefix = "[dry run] Would delete" if result.dry_run else "Deleted"
        print(f"{prefix} {len(result.deleted_repos)} entries ({result.freed_space_mb} MB)")
        for repo_id in result.deleted_repos:
            print(f"  - {repo_id}")
        for error in result.errors:
            print(f"[Error] {error}", file=sys.stderr)
        return 1 if result.errors else 0
    elif args.cache_command == "orphans":
        result = maintenance.cleanup_orphans(dry_run=args.dry_run)
        _print_json({"orphans": result.orphans, "removed_rows": result.removed_rows, "errors": result.errors})
        return 1 if result.errors else 0
    elif args.cache_command == "remove":
        if not store.remove(args.repo_url):
            print(f"[Error] No cache entry for {args.repo_url}", file=sys.stderr)
            return 1
        print(f"Removed cache entry for {args.repo_url}")
    elif args.cache_command == "clear":
        if not args.yes:
            print("[Error] Refusing to clear the whole cache without --yes", file=sys.stderr)
            return 1
        result = maintenance.clear_all()
        print(f"Cleared {len(result.deleted_repos)} entries ({result.freed_space_mb} MB)")
        return 1 if result.errors else 0
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("docforge.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


# ===================================================================
# CLI Entry Point
# ===================================================================

def _add_source_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("path", help="Local repository checkout")
    parser.add_argument("--repo-url", default=None, help="Repository identifier (default: the absolute path)")
    parser.add_argument("--include", action="append", help="Glob of files to include (repeatable)")
    parser.add_argument("--exclude", action="append", help="Glob of files to exclude (repeatable)")
    parser.add_argument("--force", action="store_true", help="Regenerate everything, ignoring the cache")
    parser.add_argument("--language", default="english", help="Output language (default: english)")
    parser.add_argument(
        "--mode",
        default="tutorial",
        choices=["tutorial", "architecture"],
        help="Documentation mode (default: tutorial)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docforge",
        description="Change-aware documentation generator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s generate ./myrepo --repo-url https://github.com/org/myrepo
  %(prog)s plan ./myrepo --repo-url https://github.com/org/myrepo
  %(prog)s cache cleanup --max-age-days 14 --dry-run
  %(prog)s serve --port 8000
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Generate (or incrementally refresh) documentation")
    _add_source_args(gen)
    gen.add_argument("--output", default=None, help="Output directory (default: ./output/<project>)")
    gen.add_argument("--project-name", default=None, help="Project name used in titles")
    gen.add_argument("--no-cache", action="store_true", help="Neither read nor write the cache")
    gen.set_defaults(func=cmd_generate)

    plan = sub.add_parser("plan", help="Show what a run would regenerate, without running it")
    _add_source_args(plan)
    plan.set_defaults(func=cmd_plan)

    cache = sub.add_parser("cache", help="Cache administration")
    cache_sub = cache.add_subparsers(dest="cache_command", required=True)
    cache_sub.add_parser("stats", help="Entry count and size")
    cache_sub.add_parser("list", help="List cached repositories")
    cleanup = cache_sub.add_parser("cleanup", help="Evict by age, count and size")
    cleanup.add_argument("--max-age-days", type=float, default=settings.cleanup_max_age_days)
    cleanup.add_argument("--max-size-mb", type=float, default=settings.cleanup_max_size_mb)
    cleanup.add_argument("--max-entries", type=int, default=settings.cleanup_max_entries)
    cleanup.add_argument("--keep", type=int, default=settings.cleanup_min_entries_to_keep,
                         help="Never evict below this many entries")
    cleanup.add_argument("--dry-run", action="store_true")
    orphans = cache_sub.add_parser("orphans", help="Remove rows with no owning entry")
    orphans.add_argument("--dry-run", action="store_true")
    remove = cache_sub.add_parser("remove", help="Clear one repository")
    remove.add_argument("repo_url")
    clear = cache_sub.add_parser("clear", help="Remove every entry")
    clear.add_argument("--yes", action="store_true", help="Confirm clearing the whole cache")
    cache.set_defaults(func=cmd_cache)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(
        log_level=settings.log_level, log_format="text", stream=sys.stderr,
        secrets=(settings.generation_api_key or "",),
    )
    try:
        code = args.func(args)
    except DocForgeException as e:
        print(f"[Error] {e.message}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
