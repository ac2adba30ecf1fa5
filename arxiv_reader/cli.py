"""Command line interface: ``arxiv-reader <command>``."""

import argparse
import logging
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

from .citations import bookmark_citations, check_file, read_citation_file
from .config import LoggingConfig, load_config, resolve_data_dir, write_default_config
from .errors import ArxivReaderError, UserInputError
from .fetcher import OaiFeedClient
from .filter import compile_filter
from .models import CitationStatus, parse_arxiv_id
from .notifications import NotificationGenerator
from .notifier import ConsoleNotifier, NotificationError, build_notifier
from .rate_limit import RateLimiter
from .reconciler import Reconciler, artifact_requests
from .storage import RecordStore

logger = logging.getLogger(__name__)


def setup_logging(log_config: LoggingConfig, data_dir: Optional[Path] = None) -> None:
    """Configure logging based on config."""
    level = getattr(logging, log_config.level, logging.INFO)
    handlers: List[logging.Handler] = []

    # File handler
    if log_config.log_file:
        log_path = Path(log_config.log_file).expanduser()
        if not log_path.is_absolute() and data_dir is not None:
            log_path = data_dir / log_path
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(level)
        handlers.append(file_handler)

    # Console handler
    if log_config.console_output:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        handlers.append(console_handler)

    if not handlers:
        handlers.append(logging.NullHandler())

    # Configure root logger
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def run_hook(command: Optional[str], data_dir: Path, name: str) -> bool:
    """Run a configured shell hook inside the data directory."""
    if not command:
        return True
    logger.info(f"Running {name} hook: {command}")
    result = subprocess.run(command, shell=True, cwd=data_dir)
    if result.returncode != 0:
        logger.error(f"{name} hook exited with status {result.returncode}")
        return False
    return True


def _open(args) -> tuple:
    config = load_config(args.data_dir, args.config)
    setup_logging(config.logging, config.data_dir)
    return config, RecordStore(config.db_path)


def _normalize_id(value: str) -> str:
    try:
        article_id, _ = parse_arxiv_id(value)
    except ValueError as e:
        raise UserInputError(str(e)) from e
    return article_id


def cmd_init(args) -> int:
    path = write_default_config(args.data_dir)
    setup_logging(LoggingConfig())
    store = RecordStore(Path(args.data_dir) / "db.sqlite")
    print(f"Config: {path}")
    print(f"Database: {store.db_path} ({store.count()} articles)")
    return 0


def cmd_pull(args) -> int:
    config, store = _open(args)
    if not config.categories:
        logger.warning("No categories configured, nothing to pull")
        return 0

    logger.info("=" * 60)
    logger.info("arxiv-reader pull")
    logger.info("=" * 60)

    if not args.no_hooks and not run_hook(config.hooks.pre_pull, config.data_dir, "pre_pull"):
        return 1

    # Step 1: Sync categories
    logger.info(f"[1/3] Syncing {len(config.categories)} categories...")
    rate_limiter = RateLimiter(config.sync.min_request_interval)
    client = OaiFeedClient(config.sync, rate_limiter)
    reconciler = Reconciler(store, client, config.sync, rate_limiter=rate_limiter)
    try:
        report = reconciler.sync_all(config.categories)
    except KeyboardInterrupt:
        logger.warning("Interrupted, merged pages are kept")
        return 130

    # Step 2: Notifications
    # Everything still unacknowledged goes out, including events left over
    # from an earlier run whose delivery failed or was interrupted.
    logger.info("[2/3] Generating notifications...")
    generator = NotificationGenerator(store, config.new_filter, config.update_filter)
    events = generator.generate_all()
    notifier = build_notifier(config.notification)
    if notifier is not None and events:
        try:
            generator.deliver(events, notifier)
        except NotificationError as e:
            logger.error(f"Notification delivery failed, events stay pending: {e}")
    elif events:
        logger.info(f"{len(events)} notifications pending, see 'arxiv-reader news'")

    # Step 3: Push hook
    logger.info("[3/3] Finishing...")
    hooks_ok = True
    if report.mutated and not args.no_hooks:
        hooks_ok = run_hook(config.hooks.push, config.data_dir, "push")

    logger.info("=" * 60)
    logger.info("Sync Summary:")
    for result in report.results:
        status = result.state.value
        detail = f" ({result.error})" if result.error else ""
        logger.info(
            f"  {result.category}: {status}, {result.pages} pages, "
            f"{len(result.diffs)} changes{detail}"
        )
    logger.info(f"  Notifications: {len(events)}")
    logger.info("=" * 60)

    return 0 if not report.failed and hooks_ok else 1


def cmd_news(args) -> int:
    config, store = _open(args)
    generator = NotificationGenerator(store, config.new_filter, config.update_filter)
    events = generator.generate_all()
    if args.limit:
        events = events[:args.limit]
    sink = ConsoleNotifier(max_items=len(events) or 1)
    if args.no_ack or not events:
        sink.send(events)
    else:
        generator.deliver(events, sink)
    return 0


# Store order (by identifier) is used for "id".
_SORT_KEYS = {
    "date": lambda record: (record.first_version.submitted.timestamp(), record.id),
    "seen": lambda record: (record.first_version.first_seen or "", record.id),
}


def cmd_find(args) -> int:
    config, store = _open(args)
    expr = compile_filter(" ".join(args.filter))
    records = [record for record in store.iter_records() if expr.matches(record)]
    if args.sort_by in _SORT_KEYS:
        records.sort(key=_SORT_KEYS[args.sort_by])
    if args.limit:
        records = records[:args.limit]
    for record in records:
        mark = "*" if record.bookmarked else " "
        print(f"{mark} {record.id}v{record.max_version}  {record.title}")
    logger.info(f"{len(records)} articles shown")
    return 0


def cmd_bookmark(args) -> int:
    config, store = _open(args)
    article_id = _normalize_id(args.id)
    if not store.set_bookmarked(article_id, not args.off):
        print(f"Article {article_id} not found, run a pull first", file=sys.stderr)
        return 1
    print(f"{'Removed bookmark for' if args.off else 'Bookmarked'} {article_id}")
    return 0


def cmd_note(args) -> int:
    config, store = _open(args)
    article_id = _normalize_id(args.id)
    if not store.set_note(article_id, " ".join(args.text)):
        print(f"Article {article_id} not found, run a pull first", file=sys.stderr)
        return 1
    return 0


def cmd_bibtex(args) -> int:
    config, store = _open(args)
    if args.action == "bookmark":
        entries, problems = read_citation_file(args.file)
        bookmarked, unknown = bookmark_citations(store, entries)
        for article_id in bookmarked:
            print(f"Bookmarked {article_id}")
        for article_id in unknown:
            print(f"Article {article_id} not found")
        return 1 if problems else 0

    check = check_file(store, args.file)
    for problem in check.problems:
        print(f"Skipped: {problem}")
    for report in check.reports:
        if report.status != CitationStatus.UP_TO_DATE or args.verbose:
            print(report.describe())
    return 1 if check.stale or check.problems else 0


def cmd_db(args) -> int:
    config, store = _open(args)
    if args.action == "dump":
        path = Path(args.file) if args.file else config.data_dir / "dump.json"
        count = store.dump_json(path)
        print(f"Wrote {count} articles to {path}")
    else:
        if not args.file:
            print("db load needs a file", file=sys.stderr)
            return 2
        count = store.load_json(Path(args.file))
        print(f"Loaded {count} articles from {args.file}")
    return 0


def cmd_artifacts(args) -> int:
    config, store = _open(args)
    for request in artifact_requests(store.iter_records()):
        print(request.url)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="arxiv-reader", description="Keep a local replica of arXiv metadata up to date"
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Data directory (default: $ARXIV_READER_DIR or ~/arxiv-reader)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to configuration file (default: <data-dir>/config.yaml)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="Create the data directory and a default config")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("pull", help="Fetch changes for all configured categories")
    p.add_argument("--no-hooks", action="store_true", help="Do not run pre_pull/push hooks")
    p.set_defaults(func=cmd_pull)

    p = sub.add_parser("news", help="Show unseen new articles and updates of bookmarks")
    p.add_argument("--no-ack", action="store_true", help="Do not mark the shown items as seen")
    p.add_argument("--limit", type=int, default=0, help="Show at most this many items")
    p.set_defaults(func=cmd_news)

    p = sub.add_parser("find", help="List articles matching a filter expression")
    p.add_argument("filter", nargs="+", help='Filter, e.g. \'category:cs.AI title:"graph"\'')
    p.add_argument("--limit", type=int, default=0, help="Show at most this many articles")
    p.add_argument(
        "--sort-by",
        choices=["id", "date", "seen"],
        default="id",
        help="Order by identifier, first submission date, or the date first seen",
    )
    p.set_defaults(func=cmd_find)

    p = sub.add_parser("bookmark", help="Bookmark an article")
    p.add_argument("id", help="arXiv identifier")
    p.add_argument("--off", action="store_true", help="Remove the bookmark instead")
    p.set_defaults(func=cmd_bookmark)

    p = sub.add_parser("note", help="Attach a note to an article")
    p.add_argument("id", help="arXiv identifier")
    p.add_argument("text", nargs="*", help="Note text (empty clears the note)")
    p.set_defaults(func=cmd_note)

    p = sub.add_parser("bibtex", help="Check or bookmark the arXiv citations of a BibTeX file")
    p.add_argument("action", choices=["check", "bookmark"])
    p.add_argument("file", type=Path)
    p.add_argument("-v", "--verbose", action="store_true", help="Also list up-to-date entries")
    p.set_defaults(func=cmd_bibtex)

    p = sub.add_parser("db", help="Dump or load the database as JSON")
    p.add_argument("action", choices=["dump", "load"])
    p.add_argument("file", nargs="?", default=None)
    p.set_defaults(func=cmd_db)

    p = sub.add_parser("artifacts", help="List PDF/source URLs of bookmarked articles")
    p.set_defaults(func=cmd_artifacts)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main execution function."""
    parser = build_parser()
    args = parser.parse_args(argv)
    args.data_dir = resolve_data_dir(args.data_dir)

    try:
        return args.func(args)
    except ArxivReaderError as e:
        logger.error(f"Error during execution: {e}")
        print(f"error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        logger.error(f"Error during execution: {e}", exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
