"""Entry point for Reflectra.

Usage:
    python -m reflectra --watch             # Watch the inbox and sweep periodically
    python -m reflectra --import FILE       # Import one session export and exit
    python -m reflectra --categorize [N]    # Categorize up to N uncategorized sessions
    python -m reflectra --reconcile         # Fold stored duplicates and exit
    python -m reflectra --stats             # Print store counts and today's score
    python -m reflectra --reflect "Q"       # Ask about your browsing (--range week)
    python -m reflectra --weekly            # LLM summary of the last 7 days
    python -m reflectra --history [N]       # Show past reflections
    python -m reflectra --reindex           # Re-embed all sessions into the index
"""

import argparse
import logging
import logging.handlers
import sys
import time
from datetime import datetime
from pathlib import Path

from .categorizer import Categorizer
from .classifier import resolve_api_key
from .config import Config
from .db import ReflectraDB
from .index import SimilarityIndex
from .reconciler import SessionReconciler
from .reflection import TIME_RANGES, ReflectionError, Reflector
from .urls import format_duration
from .wellness import category_breakdown, daily_score, focus_rest_ratio


def _setup_logging():
    """Configure logging to both stderr and file with rotation."""
    log_dir = Path.home() / ".reflectra"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "reflectra.log"

    logger = logging.getLogger("reflectra")
    logger.setLevel(logging.INFO)

    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=10*1024*1024, backupCount=3
    )
    file_handler.setLevel(logging.INFO)
    file_formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    file_handler.setFormatter(file_formatter)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_formatter = logging.Formatter("%(levelname)s: %(message)s")
    console_handler.setFormatter(console_formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    return logger


def build_index(config: Config, db: ReflectraDB) -> SimilarityIndex:
    return SimilarityIndex(
        db,
        embedding_url=config["embedding_url"],
        model=config.get("embedding_model", "text-embedding-3-small"),
        api_key=resolve_api_key(config),
    )


def build(config: Config):
    """Wire the store, categorizer, reconciler and optional index from config."""
    db = ReflectraDB(
        Path(config["db_path"]),
        sync_url=config.get("sync_url", ""),
        auth_token=config.get("sync_auth_token", ""),
    )
    categorizer = Categorizer.from_config(db, config)
    reconciler = SessionReconciler.from_config(db, config, categorizer=categorizer)
    if config.get("index_enabled"):
        reconciler.add_update_hook(build_index(config, db).hook)
    return db, categorizer, reconciler


def main():
    _setup_logging()
    logger = logging.getLogger("reflectra")

    parser = argparse.ArgumentParser(description="Reflectra session pipeline")
    parser.add_argument("--watch", action="store_true",
                        help="Watch the inbox for exports and run the periodic sweep")
    parser.add_argument("--import", dest="import_path", type=str, default=None,
                        help="Import one JSONL session export and exit")
    parser.add_argument("--dry-run", action="store_true",
                        help="With --import: count records without storing them")
    parser.add_argument("--categorize", nargs="?", type=int, const=0, default=None,
                        metavar="N", help="Categorize up to N uncategorized sessions and exit")
    parser.add_argument("--reconcile", action="store_true",
                        help="Merge stored duplicate sessions and exit")
    parser.add_argument("--stats", action="store_true",
                        help="Print store counts and today's wellness score")
    parser.add_argument("--reflect", type=str, default=None, metavar="QUESTION",
                        help="Ask a reflection question about your browsing")
    parser.add_argument("--range", dest="time_range", choices=TIME_RANGES, default="today",
                        help="With --reflect: time range to reflect on")
    parser.add_argument("--weekly", action="store_true",
                        help="Print an LLM summary of the last 7 days")
    parser.add_argument("--history", nargs="?", type=int, const=20, default=None,
                        metavar="N", help="Print the last N reflections")
    parser.add_argument("--reindex", action="store_true",
                        help="Re-embed every stored session into the similarity index")
    parser.add_argument("--config", type=str, default=None,
                        help="Path to config file")
    args = parser.parse_args()

    config = Config(Path(args.config)) if args.config else Config()
    logger.info(f"Starting Reflectra with config from {config.config_path}")

    db, categorizer, reconciler = build(config)

    if args.import_path:
        from .importer import import_file
        counts = import_file(reconciler, Path(args.import_path), dry_run=args.dry_run)
        action = "Would import" if args.dry_run else "Imported"
        print(f"{action}: {counts['inserted']} new | Merged: {counts['merged']} | "
              f"Rejected: {counts['rejected']} | Failed: {counts['failed']}")
        return

    if args.categorize is not None:
        result = categorizer.categorize_unclassified(args.categorize or None)
        print(f"Categorized {result['categorized']} of {result['total']} sessions")
        return

    if args.reconcile:
        result = reconciler.reconcile_all()
        print(f"Merged {result['merged']} runs, deleted {result['deleted']} duplicates")
        return

    if args.reindex:
        result = build_index(config, db).reindex()
        print(f"Indexed {result['indexed']} sessions, {result['failed']} failed")
        return

    if args.reflect or args.weekly:
        index = build_index(config, db) if config.get("index_enabled") else None
        reflector = Reflector.from_config(db, config, index=index)
        try:
            if args.weekly:
                print(reflector.weekly_summary())
            else:
                print(reflector.ask(args.reflect, args.time_range)["answer"])
        except (ReflectionError, ValueError) as e:
            print(f"Reflection failed: {e}", file=sys.stderr)
            sys.exit(1)
        return

    if args.history is not None:
        for reflection in db.get_reflections(limit=args.history):
            asked = datetime.fromtimestamp(reflection["timestamp"] / 1000)
            print(f"[{asked:%Y-%m-%d %H:%M}] {reflection['query']}\n{reflection['response']}\n")
        return

    if args.stats:
        _print_stats(db)
        return

    if args.watch:
        from .watcher import ReflectraWatcher
        print("Reflectra watcher starting...", file=sys.stderr)
        ReflectraWatcher(config, reconciler, categorizer).start()
        return

    parser.print_help()


def _print_stats(db: ReflectraDB):
    stats = db.get_stats()
    print(f"Sessions: {stats['sessions']} ({stats['uncategorized']} uncategorized)")
    print(f"Tracked time: {format_duration(stats['total_duration_ms'])}")
    print(f"Categories: {stats['categories']} | Vectors: {stats['vectors']}")

    today = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)
    breakdown = category_breakdown(db, start=int(today.timestamp() * 1000),
                                   end=int(time.time() * 1000))
    score = daily_score(breakdown)
    print(f"\nToday: score {score if score is not None else '-'} | "
          f"focus/rest {focus_rest_ratio(breakdown)}")
    for entry in breakdown:
        print(f"  {entry['name']:<18} {format_duration(entry['time']):>8}  ({entry['count']})")


if __name__ == "__main__":
    main()
