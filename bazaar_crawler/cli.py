"""Command-line entry point for bazaar scans.

Usage:
    python -m bazaar_crawler.cli ids --from 120000 --range 5000
    python -m bazaar_crawler.cli ids --resume
    python -m bazaar_crawler.cli history --pages 10
    python -m bazaar_crawler.cli current --rescrape
    python -m bazaar_crawler.cli highscores --world Lunarian --category exp --pages 3
    python -m bazaar_crawler.cli bans --no-db
    python -m bazaar_crawler.cli checkpoint show ids

Exit codes: 0 complete, 2 aborted, 130 interrupted (checkpoint saved).
"""

import argparse
import asyncio
import json
import logging
import signal
import sys

from bazaar_crawler.config import settings
from bazaar_crawler.core.logging_config import configure_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ABORTED = 2
EXIT_INTERRUPTED = 130

# Subcommand -> scan kind value
COMMAND_KINDS = {
    "ids": "auction-ids",
    "history": "auction-history",
    "current": "current-auctions",
    "highscores": "highscores",
    "bans": "bans",
    "transfers": "transfers",
}


def _build_options(args):
    from bazaar_crawler.schemas.scan import ScanOptions

    overrides = {
        "resume": bool(args.resume) and not args.fresh,
        "dry_run": args.no_db,
    }
    if args.command == "highscores":
        # Daily highscore runs resume by default; --fresh starts over
        overrides["resume"] = not args.fresh
    if args.headless:
        overrides["headless"] = True
    if args.count is not None:
        overrides["max_items"] = args.count
    if args.profile:
        overrides["profile"] = args.profile
    if args.not_found_limit is not None:
        overrides["not_found_limit"] = args.not_found_limit
    if args.error_threshold is not None:
        overrides["error_threshold"] = args.error_threshold
    if args.replace_rounds is not None:
        overrides["replace_rounds"] = args.replace_rounds
    if args.tabs is not None:
        overrides["pool_size"] = args.tabs

    if args.command == "ids":
        overrides["start_id"] = args.start
        overrides["end_id"] = args.end
        overrides["max_range"] = args.range
        overrides["descending"] = args.reverse
        overrides["rescrape"] = args.rescrape
    if args.command in ("history", "current", "highscores"):
        overrides["max_pages"] = args.pages
    if args.command in ("history", "current"):
        overrides["with_details"] = not args.no_details
    if args.command == "current":
        overrides["rescrape"] = args.rescrape

    return ScanOptions(**overrides)


def _build_target_spec(args):
    from bazaar_crawler.schemas.scan import HighscoreQuery, IdRange
    from bazaar_crawler.services import targets

    if args.command == "ids":
        return IdRange(start=args.start, end=args.end)
    if args.command == "highscores":
        worlds = (targets.resolve_world(args.world),) if args.world else ()
        categories = (targets.resolve_category(args.category),) if args.category else ()
        if args.vocation:
            professions = (targets.resolve_profession(args.vocation),)
        elif args.all:
            professions = tuple(targets.HIGHSCORE_PROFESSIONS)
        else:
            professions = targets.DAILY_PROFESSIONS
        return HighscoreQuery(
            worlds=worlds, categories=categories, professions=professions, pages=args.pages
        )
    return None


def _print_summary(summary, as_json: bool):
    if as_json:
        print(summary.model_dump_json(indent=2))
        return
    rows = [
        ("Kind", summary.kind.value),
        ("Result", summary.termination.value),
        ("Cause", summary.cause.value if summary.cause else "-"),
        ("Saved", summary.saved),
        ("Updated", summary.updated),
        ("Skipped", summary.skipped),
        ("Not found", summary.not_found),
        ("Failed", summary.failed),
        ("Store errors", summary.store_errors),
        ("Last cursor", summary.last_cursor if summary.last_cursor is not None else "-"),
        ("Archived", summary.archived if summary.archived is not None else "-"),
        ("Deactivated", summary.deactivated),
        ("Reconcile errors", summary.reconcile_errors),
        ("Session replaces", summary.replace_calls),
        ("Pool restarts", summary.restart_calls),
        ("Duration", f"{summary.duration_seconds or 0:.0f}s"),
    ]
    width = max(len(label) for label, _ in rows)
    for label, value in rows:
        print(f"  {label.ljust(width)}  {value}")


def _exit_code(summary) -> int:
    from bazaar_crawler.schemas.scan import StopCause, Termination

    if summary.termination == Termination.COMPLETE:
        return EXIT_OK
    if summary.cause == StopCause.INTERRUPTED:
        return EXIT_INTERRUPTED
    return EXIT_ABORTED


async def _cmd_scan(args) -> int:
    from bazaar_crawler.schemas.scan import ScanKind
    from bazaar_crawler.services.scan_service import start_scan

    kind = ScanKind(COMMAND_KINDS[args.command])
    options = _build_options(args)
    target_spec = _build_target_spec(args)

    if args.fresh:
        from bazaar_crawler.services.checkpoint import CheckpointStore

        CheckpointStore().delete(kind.value)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _request_stop():
        logger.warning("Stopping after the current batch (Ctrl+C again to abort now)")
        stop_event.set()
        # Second Ctrl+C falls through to the default KeyboardInterrupt
        loop.remove_signal_handler(signal.SIGINT)

    try:
        loop.add_signal_handler(signal.SIGINT, _request_stop)
        loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    except NotImplementedError:
        pass  # Windows event loops

    summary = await start_scan(kind, target_spec, options, stop_event=stop_event)
    _print_summary(summary, args.json)
    return _exit_code(summary)


def _cmd_checkpoint(args) -> int:
    from bazaar_crawler.services.checkpoint import CheckpointStore

    store = CheckpointStore()
    kind = COMMAND_KINDS.get(args.kind, args.kind)
    if args.action == "clear":
        removed = store.delete(kind)
        print(f"Checkpoint for {kind} {'removed' if removed else 'not found'}")
        return EXIT_OK

    state = store.load(kind)
    if state is None:
        print(f"No checkpoint for {kind}")
        return EXIT_OK
    print(json.dumps(state.to_dict(), indent=2))
    return EXIT_OK


def _add_common_flags(parser: argparse.ArgumentParser):
    parser.add_argument("--headless", action="store_true", help="Run the browser headless (may not clear the challenge)")
    parser.add_argument("--resume", action="store_true", help="Continue from the saved checkpoint")
    parser.add_argument("--fresh", action="store_true", help="Discard any checkpoint and start over")
    parser.add_argument("--count", type=int, default=None, help="Stop after saving this many new records")
    parser.add_argument(
        "--profile", default=None, choices=sorted(settings.RATE_PROFILES),
        help=f"Rate profile (default: {settings.DEFAULT_RATE_PROFILE})",
    )
    parser.add_argument("--not-found-limit", type=int, default=None, help="Consecutive not-found ids before stopping")
    parser.add_argument("--error-threshold", type=int, default=None, help="Consecutive failures before replacing a session")
    parser.add_argument("--replace-rounds", type=int, default=None, help="Replace rounds before a full pool restart")
    parser.add_argument("--tabs", type=int, default=None, help="Concurrent sessions (1-4)")
    parser.add_argument("--no-db", action="store_true", help="Fetch and classify only; write nothing")
    parser.add_argument("--json", action="store_true", help="Print the run summary as JSON")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="bazaar-crawler",
        description="Resumable scans of the character bazaar, highscores, bans and transfers",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # --- ids ---
    ids_parser = subparsers.add_parser("ids", help="Walk auction ids one by one")
    _add_common_flags(ids_parser)
    ids_parser.add_argument("--from", dest="start", type=int, default=None, help="First id (default: highest known + 1)")
    ids_parser.add_argument("--to", dest="end", type=int, default=None, help="Last id, inclusive")
    ids_parser.add_argument("--range", type=int, default=None, help=f"Window size (default: {settings.ID_SCAN_WINDOW})")
    ids_parser.add_argument("--reverse", action="store_true", help="Walk ids downwards")
    ids_parser.add_argument("--rescrape", action="store_true", help="Fetch ids already in history too")

    # --- history / current ---
    history_parser = subparsers.add_parser("history", help="Past auctions from the list pages")
    _add_common_flags(history_parser)
    history_parser.add_argument("--pages", type=int, default=None, help="Max list pages")
    history_parser.add_argument("--no-details", action="store_true", help="Save list rows without detail pages")

    current_parser = subparsers.add_parser("current", help="Live auctions, then archive the ones that ended")
    _add_common_flags(current_parser)
    current_parser.add_argument("--pages", type=int, default=None, help="Max list pages (disables archiving)")
    current_parser.add_argument("--rescrape", action="store_true", help="Re-fetch details of known auctions")
    current_parser.add_argument("--no-details", action="store_true", help="Save list rows without detail pages")

    # --- highscores ---
    hs_parser = subparsers.add_parser("highscores", help="Leaderboards per world, category and vocation")
    _add_common_flags(hs_parser)
    hs_parser.add_argument("--world", default=None, help="Single world")
    hs_parser.add_argument("--category", default=None, help="Single category (name or alias, e.g. exp, ml)")
    hs_parser.add_argument("--vocation", default=None, help="Single vocation (e.g. knights, ek, all)")
    hs_parser.add_argument("--pages", type=int, default=None, help=f"Pages per combo (default: {settings.HIGHSCORE_MAX_PAGES})")
    hs_parser.add_argument("--all", action="store_true", help='Include the unfiltered "All" vocation board')

    # --- bans / transfers ---
    bans_parser = subparsers.add_parser("bans", help="Active bans")
    _add_common_flags(bans_parser)
    transfers_parser = subparsers.add_parser("transfers", help="World transfers")
    _add_common_flags(transfers_parser)

    # --- checkpoint ---
    cp_parser = subparsers.add_parser("checkpoint", help="Inspect or clear a saved checkpoint")
    cp_parser.add_argument("action", choices=["show", "clear"])
    cp_parser.add_argument("kind", help="Command or scan kind, e.g. ids or auction-ids")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    configure_logging(settings.LOG_FORMAT, "DEBUG" if args.verbose else settings.LOG_LEVEL)

    if args.command == "checkpoint":
        sys.exit(_cmd_checkpoint(args))

    if settings.METRICS_ENABLED and settings.METRICS_PORT > 0:
        from bazaar_crawler.core.metrics import start_metrics_server

        start_metrics_server(settings.METRICS_PORT)

    try:
        code = asyncio.run(_cmd_scan(args))
    except KeyboardInterrupt:
        print("Interrupted; checkpoint saved. Re-run with --resume to continue.", file=sys.stderr)
        code = EXIT_INTERRUPTED
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
