"""
CLI entry point for crashlink. Wires the pipeline: intake -> resolve -> fetch -> extract -> reconcile -> report.
An external scheduler (cron, a worker) runs `--batch` periodically; everything else is operator tooling.
"""

import argparse
import logging
import os
import json
from datetime import datetime, timezone

from config import load_config
from correlate.stack import get_all_user_frames
from errors import ConfigError, CrashNotFoundError
from normalize.util import crash_report_from_payload
from pipeline import CrashPipeline
from report.renderer import render, render_components
from storage.cache import Cache
from storage.cache import configure_retry
from storage.store import CrashStore

# cached source files older than this are fetched again; 0 keeps them forever
DEFAULT_CACHE_TTL = float(os.getenv("CRASHLINK_CACHE_TTL", "3600"))


def _print_json(obj):
    print(json.dumps(obj, indent=2, default=str))


def _print_cache_stats(cache: Cache):
    _print_json(cache.stats())


def _print_cache_list(cache: Cache):
    _print_json(cache.list_keys(limit=1000))


def _print_cache_get(cache: Cache, key: str):
    entry = cache.get(key)
    if entry is None:
        print(f"Cache key not found: {key}")
    else:
        _print_json(entry)


def _remove_cache_key(cache: Cache, key: str, force: bool):
    if not force:
        confirm = input(f"Are you sure you want to remove cache key '{key}' from {cache.path}? [y/N]: ")
        if confirm.strip().lower() not in ("y", "yes"):
            print("Aborted cache key removal.")
            return
    removed = cache.delete_key(key)
    if removed:
        print(f"Removed {removed} row(s) for key: {key}")
    else:
        print(f"Cache key not found: {key}")


def _clear_cache(cache: Cache, force: bool):
    if not force:
        confirm = input(f"Are you sure you want to clear the cache at {cache.path}? This cannot be undone. [y/N]: ")
        if confirm.strip().lower() not in ("y", "yes"):
            print("Aborted cache clear.")
            return
    cache.clear()
    print(f"Cleared cache at {cache.path}")


def _cache_action_requested(args) -> bool:
    return bool(args.cache_info or args.cache_clear or args.cache_list or args.cache_get or args.cache_remove)


def _handle_cache_actions(args):
    """Process cache inspection/management flags and return a Cache or None.
    If an inspection/management action is performed, this function prints output and returns None to signal exit.
    """
    if not _cache_action_requested(args):
        if not args.cache:
            return None
        ttl = args.cache_ttl if args.cache_ttl is not None else DEFAULT_CACHE_TTL
        return Cache(args.cache, ttl_seconds=ttl if ttl > 0 else None)

    cache = Cache(args.cache or "cache.db")
    try:
        flag_actions = [
            (args.cache_info, lambda: _print_cache_stats(cache)),
            (args.cache_clear, lambda: _clear_cache(cache, args.force)),
            (args.cache_list, lambda: _print_cache_list(cache)),
            (bool(args.cache_get), lambda: _print_cache_get(cache, args.cache_get)),
            (bool(args.cache_remove), lambda: _remove_cache_key(cache, args.cache_remove, args.force)),
        ]
        for enabled, handler in flag_actions:
            if enabled:
                handler()
                return None
        return None
    finally:
        cache.close()


def _apply_overrides(config, args):
    """CLI flags take precedence over the config file and environment variables."""
    if args.github_token:
        config.github_token = args.github_token
    if args.repo:
        owner, _, name = args.repo.partition('/')
        config.repo_owner, config.repo_name = owner, name
    if args.branch:
        config.branch = args.branch
    if args.batch_size:
        config.batch_size = args.batch_size
    if args.workers:
        config.workers = max(1, args.workers)
    return config


def _resolve_tokens(config, parser):
    """Calls parser.error() if the source host cannot be reached with the resolved settings."""
    missing = []
    if not config.github_token:
        missing.append('github_token (CLI flag --github_token or env GITHUB_TOKEN)')
    if not (config.repo_owner and config.repo_name):
        missing.append('repository (CLI flag --repo OWNER/NAME or env GITHUB_REPO_OWNER/GITHUB_REPO_NAME)')
    if missing:
        parser.error('Missing required settings: ' + ', '.join(missing))
    if not config.gemini_api_key:
        logging.getLogger(__name__).warning("GEMINI_API_KEY not set; generative extraction disabled")


def _load_json_file(path: str, description: str):
    """Return the parsed JSON or None on failure (the error is printed)."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        print(f"Failed to read {description} {path}: {e}")
        return None


def import_crashes(store: CrashStore, path: str, project_id: str = '') -> int:
    """Load a JSON array (or a single object) of SDK/Sentry payloads into the store; returns how many were new."""
    payloads = _load_json_file(path, 'crash file')
    if payloads is None:
        return 0
    if isinstance(payloads, dict):
        payloads = [payloads]
    added = 0
    for raw in payloads:
        try:
            report = crash_report_from_payload(raw, project_id or None)
        except ValueError as exc:
            print(f"Skipping payload: {exc}")
            continue
        if store.add_crash(report):
            added += 1
    print(f"Imported {added} new crash(es) from {path}")
    return added


def _explain(store: CrashStore, config, crash_id: str):
    crash = store.get_crash(crash_id)
    if crash is None:
        print(f"Crash not found: {crash_id}")
        return
    frames = get_all_user_frames(crash.stack_trace, config.source_extensions, config.deny_list)
    print(f"{crash_id}: {crash.error_message}")
    for i, frame in enumerate(frames):
        marker = '*' if i == 0 else ' '
        print(f" {marker} {frame.file_path}:{frame.line_number}:{frame.column_number} in {frame.function_name}")
    if not frames:
        print("   no user frames")
    state = store.get_crash_state(crash_id) or {}
    print(f"   status: {state.get('status')} ({state.get('reason') or 'ok'})")


def write_output(fmt: str, rendered: str, args):
    """Write output to --out-file when given, otherwise print it."""
    out_path = (args.out_file or '').strip()
    if not out_path:
        print(rendered)
        return
    if '.' not in os.path.basename(out_path):
        out_path = f"{out_path}.{fmt}"
    out_dir = os.path.dirname(out_path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    # newline='' is safe for CSV on Windows and harmless for other formats
    with open(out_path, 'w', encoding='utf-8', newline='') as fh:
        fh.write(rendered)
    print(f"Wrote report to {out_path}")


def _run_maintenance(args, store: CrashStore, pipeline: CrashPipeline) -> bool:
    """Status, archive and recompute commands. Returns True when any ran."""
    ran = False
    if args.set_status:
        project, ident, status = args.set_status
        try:
            comp = store.set_component_status(project, ident, status, fallback_message=args.fallback_message or None)
        except ValueError as exc:
            print(str(exc))
            return True
        print(f"{project}/{ident}: " + (f"{comp.status} (manual)" if comp else "no such component"))
        ran = True
    if args.clear_override:
        project, ident = args.clear_override
        store.clear_override(project, ident)
        pipeline.reconciler.recompute_all(project)
        print(f"{project}/{ident}: status returned to automatic control")
        ran = True
    if args.archive_days is not None:
        res = pipeline.archive_and_recompute(args.archive_days)
        print(f"Archived {res['archived']} error record(s); recomputed {len(res['components'])} component(s)")
        ran = True
    elif args.recompute_all:
        comps = pipeline.recompute_all_components()
        print(render_components(comps, args.output))
        ran = True
    if args.component_status:
        project, ids = args.component_status
        _print_json(store.component_status(project, [i.strip() for i in ids.split(',')]))
        ran = True
    return ran


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Crash resolution pipeline CLI")
    parser.add_argument("--config", type=str, default="", help="Path to YAML config (default config/crashlink.yaml)")
    parser.add_argument("--db", type=str, default="crashlink.db", help="Path to the SQLite state store")
    parser.add_argument("--crash-id", type=str, default="", help="Process a single stored crash")
    parser.add_argument("--explain", action="store_true", help="With --crash-id: print the user frames and stored status instead of processing")
    parser.add_argument("--batch", action="store_true", help="Process the oldest unlinked crashes")
    parser.add_argument("--batch-size", type=int, default=None, help="Crashes per batch (overrides config batch_size)")
    parser.add_argument("--workers", type=int, default=None, help="Concurrent workers for --batch (overrides config workers)")
    parser.add_argument("--import", dest="import_file", type=str, default="", help="JSON file with SDK or Sentry crash payloads to store")
    parser.add_argument("--project", type=str, default="", help="Project id for imported payloads that carry none")
    parser.add_argument("--recompute-all", action="store_true", help="Re-derive every component aggregate and status")
    parser.add_argument("--archive-days", type=float, default=None, help="Archive error records not seen for N days, then recompute")
    parser.add_argument("--component-status", nargs=2, metavar=("PROJECT", "IDS"), help="Print status for comma-separated identifiers")
    parser.add_argument("--set-status", nargs=3, metavar=("PROJECT", "IDENT", "STATUS"), help="Set a sticky manual status")
    parser.add_argument("--fallback-message", type=str, default="", help="Fallback message stored with --set-status")
    parser.add_argument("--clear-override", nargs=2, metavar=("PROJECT", "IDENT"), help="Return a component status to automatic control")
    parser.add_argument("--output", type=str, help="Output format (text, md, csv, json, html)", default="text")
    parser.add_argument("--out-file", type=str, default="", help="Output file path. If omitted the report is printed")
    parser.add_argument("--github_token", type=str)
    parser.add_argument("--repo", type=str, default="", help="Source repository as OWNER/NAME")
    parser.add_argument("--branch", type=str, default="")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--cache", type=str, default="", help="Path to SQLite HTTP cache file (optional)")
    parser.add_argument("--cache-ttl", type=float, default=None, help="Seconds before a cached source file is refetched (overrides CRASHLINK_CACHE_TTL env, 0 disables expiry)")
    # retry/backoff knobs: optional CLI overrides. Environment variables CRASHLINK_MAX_RETRIES, CRASHLINK_BACKOFF_BASE,
    # CRASHLINK_BACKOFF_JITTER, CRASHLINK_MAX_BACKOFF may also be used to set defaults.
    parser.add_argument("--max-retries", type=int, default=None, help="Maximum retry attempts for HTTP requests (overrides CRASHLINK_MAX_RETRIES env)")
    parser.add_argument("--backoff-base", type=float, default=None, help="Base backoff seconds (overrides CRASHLINK_BACKOFF_BASE env)")
    parser.add_argument("--backoff-jitter", type=float, default=None, help="Jitter seconds added to backoff (overrides CRASHLINK_BACKOFF_JITTER env)")
    parser.add_argument("--max-backoff", type=float, default=None, help="Maximum backoff cap in seconds (overrides CRASHLINK_MAX_BACKOFF env)")
    parser.add_argument("--cache-info", action="store_true", help="Show cache statistics (requires --cache or uses default cache.db)")
    parser.add_argument("--cache-clear", action="store_true", help="Clear the persistent cache (requires --cache or uses default cache.db)")
    parser.add_argument("--cache-list", action="store_true", help="List cache keys (requires --cache or uses default cache.db)")
    parser.add_argument("--cache-get", type=str, default="", help="Get a specific cache key value (requires --cache or uses default cache.db)")
    parser.add_argument("--cache-remove", type=str, default="", help="Remove a specific cache key (requires --cache or uses default cache.db)")
    parser.add_argument("--force", action="store_true", help="Force actions without confirmation (use with --cache-clear or --cache-remove)")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        configure_retry(max_retries=args.max_retries, backoff_base=args.backoff_base, backoff_jitter=args.backoff_jitter, max_backoff=args.max_backoff)
    except ValueError as exc:
        parser.error(f"Invalid retry settings: {exc}")

    cache = _handle_cache_actions(args)
    if cache is None and _cache_action_requested(args):
        return

    try:
        config = _apply_overrides(load_config(args.config or None), args)
    except ConfigError as exc:
        parser.error(str(exc))

    store = CrashStore(args.db)
    try:
        if args.import_file:
            import_crashes(store, args.import_file, args.project)
        if args.crash_id and args.explain:
            _explain(store, config, args.crash_id)
            return

        pipeline = CrashPipeline.from_config(config, store, cache=cache)
        ran = _run_maintenance(args, store, pipeline)

        if args.crash_id or args.batch:
            _resolve_tokens(config, parser)
            if args.crash_id:
                try:
                    results = [pipeline.process_crash(args.crash_id)]
                except CrashNotFoundError as exc:
                    print(str(exc))
                    return
            else:
                results = pipeline.process_batch()
            fmt = (args.output or 'text').lower()
            rendered = render(results, fmt=fmt, generated_at=datetime.now(timezone.utc).isoformat(), scope=config.repo_slug)
            write_output(fmt, rendered, args)
        elif not (ran or args.import_file):
            parser.print_help()
    finally:
        store.close()
        if cache:
            cache.close()


if __name__ == "__main__":
    main()
