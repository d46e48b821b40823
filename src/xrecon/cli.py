from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from datetime import timedelta
from typing import Any

from xrecon.config import AppConfig, ConfigError, load_config
from xrecon.hydration import HydrationRequestError, HydrationService
from xrecon.ingest import IngestService
from xrecon.logging_config import setup_logging
from xrecon.models import CONTENT_STATUSES, POST_TYPES
from xrecon.query import ContentQuery
from xrecon.sources import Source, SourceRegistrationError, create_source
from xrecon.store import SQLiteStore
from xrecon.taggers import GrokTagger, Tagger

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="xrecon",
        description="Store, canonicalize, hydrate and search social-media posts locally.",
    )
    parser.add_argument(
        "-c",
        "--config",
        default="config.yaml",
        help="Path to config YAML file (default: config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        help="Override config log level (e.g. INFO, DEBUG)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("init-db", help="Initialize SQLite schema")

    hydrate = subparsers.add_parser("hydrate", help="Fetch full article content for stored posts")
    hydrate.add_argument("ids", nargs="*", help="Explicit post ids (overrides retry scheduling)")
    hydrate.add_argument("--limit", type=int, help="Maximum candidates to process")
    hydrate.add_argument("--force", action="store_true", help="Include hydrated rows and accept any new content")
    hydrate.add_argument("--dry-run", action="store_true", help="Show candidates without claiming them")
    hydrate.add_argument("--max-attempts", type=int, help="Attempts before a row becomes missing")
    hydrate.add_argument("--backfill", action="store_true", help="Resume from the persisted backfill checkpoint")
    hydrate.add_argument("--resume-from", help="Backfill cursor token to resume after")

    search = subparsers.add_parser("search", help="Full-text search over stored content")
    search.add_argument("query", help="Free-text query")
    _add_filter_arguments(search)
    _add_page_arguments(search)

    listing = subparsers.add_parser("list", help="List stored content, newest first")
    _add_filter_arguments(listing)
    listing.add_argument("--from-date", help="ISO timestamp lower bound for created_at")
    listing.add_argument("--to-date", help="ISO timestamp upper bound for created_at")
    listing.add_argument(
        "--has-full-content",
        action="store_true",
        help="Only rows with non-empty canonical content",
    )
    _add_page_arguments(listing)

    tag = subparsers.add_parser("tag", help="Add or remove tags on stored posts")
    tag.add_argument("post_ids", nargs="+", help="Post ids to tag")
    tag.add_argument("-t", "--tag", dest="tags", action="append", required=True, help="Tag (repeatable)")
    tag.add_argument("--remove", action="store_true", help="Remove the tags instead of adding them")

    tags = subparsers.add_parser("tags", help="List tags, or posts carrying one tag")
    tags.add_argument("tag", nargs="?", help="Show posts carrying this tag")
    tags.add_argument("--limit", type=int, default=100, help="Maximum posts to return")

    ingest = subparsers.add_parser("ingest", help="Fetch posts by id and store them")
    ingest.add_argument("post_ids", nargs="+", help="Post ids or status URLs to ingest")
    ingest.add_argument("-t", "--tag", dest="tags", action="append", help="Tag to apply (repeatable)")
    ingest.add_argument("--no-auto-tag", action="store_true", help="Skip automatic classification")
    ingest.add_argument("--source-label", default="manual", help="Write source recorded on the rows")

    sync = subparsers.add_parser("sync-bookmarks", help="Page through bookmarks and store them")
    sync.add_argument("--max-pages", type=int, default=5, help="Maximum pages to fetch")
    sync.add_argument("-t", "--tag", dest="tags", action="append", help="Tag to apply (repeatable)")
    sync.add_argument("--no-auto-tag", action="store_true", help="Skip automatic classification")
    sync.add_argument(
        "--no-stop-on-overlap",
        action="store_true",
        help="Keep paging after reaching already stored bookmarks",
    )
    sync.add_argument("--stop-before", help="Stop at a page holding posts older than this timestamp")
    sync.add_argument("--force-full-scan", action="store_true", help="Disable smart stopping")

    checkpoint = subparsers.add_parser("checkpoint", help="Inspect or reset a backfill checkpoint")
    checkpoint.add_argument("action", choices=["show", "reset"])
    checkpoint.add_argument("--job", help="Backfill job name (default from config)")

    stale = subparsers.add_parser("mark-stale", help="Mark hydrated content as outdated")
    stale.add_argument("post_ids", nargs="+")

    reset = subparsers.add_parser("reset-hydration", help="Make rows eligible for hydration again")
    reset.add_argument("post_ids", nargs="+")

    stuck = subparsers.add_parser("stuck", help="List rows claimed for hydration too long ago")
    stuck.add_argument("--older-than-minutes", type=int, default=30)

    return parser


def _add_filter_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--tag", help="Only rows carrying this tag")
    parser.add_argument("--status", choices=CONTENT_STATUSES, help="Content status filter")
    parser.add_argument("--type", dest="post_type", choices=POST_TYPES, help="Post type filter")
    parser.add_argument("--author", help="Author handle filter (with or without @)")


def _add_page_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--limit", type=int, help="Rows per page")
    parser.add_argument("--cursor", help="Cursor from a previous page")
    parser.add_argument("--full", action="store_true", help="Include full content text")
    parser.add_argument("--snippet-chars", type=int, help="Snippet length in characters")
    parser.add_argument("--max-total-chars", type=int, help="Cap on total returned content")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        app_config = load_config(args.config)
        store = _build_store(app_config)
    except ConfigError as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return 2

    log_level = args.log_level or app_config.log_level
    setup_logging(log_level)

    store.init_db()
    if args.command == "init-db":
        logger.info("Initialized SQLite database at %s", app_config.storage.path)
        return 0

    if args.command in ("hydrate", "ingest", "sync-bookmarks"):
        try:
            source = create_source(app_config.source)
        except SourceRegistrationError as exc:
            print(f"Config error: {exc}", file=sys.stderr)
            return 2
        return _run_remote_command(args, app_config=app_config, store=store, source=source)

    return _run_local_command(args, app_config=app_config, store=store)


def _run_remote_command(
    args: argparse.Namespace,
    *,
    app_config: AppConfig,
    store: SQLiteStore,
    source: Source,
) -> int:
    if args.command == "hydrate":
        service = HydrationService(
            store=store,
            source=source,
            fetch_batch_size=app_config.hydration.fetch_batch_size,
            backfill_job=app_config.hydration.backfill_job,
        )
        try:
            result = service.run(
                ids=args.ids,
                limit=args.limit if args.limit is not None else app_config.hydration.limit,
                force=args.force,
                dry_run=args.dry_run,
                max_attempts=(
                    args.max_attempts
                    if args.max_attempts is not None
                    else app_config.hydration.max_attempts
                ),
                backfill=args.backfill,
                resume_from=args.resume_from,
            )
        except HydrationRequestError as exc:
            print(f"Hydration error: {exc}", file=sys.stderr)
            return 2
        _print_json(result.to_dict())
        return 0 if result.ok else 1

    ingest_service = IngestService(store=store, source=source, tagger=_build_tagger(app_config))
    try:
        if args.command == "ingest":
            outcome = ingest_service.ingest_posts(
                args.post_ids,
                tags=args.tags,
                auto_tag=not args.no_auto_tag,
                source_label=args.source_label,
            )
        else:
            outcome = ingest_service.sync_bookmarks(
                max_pages=args.max_pages,
                auto_tag=not args.no_auto_tag,
                tags=args.tags,
                stop_on_overlap=not args.no_stop_on_overlap,
                stop_before=args.stop_before,
                force_full_scan=args.force_full_scan,
            )
    except Exception as exc:  # noqa: BLE001
        logger.exception("%s failed: %s", args.command, exc)
        return 1
    _print_json(outcome.to_dict())
    return 0


def _run_local_command(args: argparse.Namespace, *, app_config: AppConfig, store: SQLiteStore) -> int:
    query = ContentQuery(store, app_config.listing)

    if args.command == "search":
        result = query.search_content(
            args.query,
            limit=args.limit,
            cursor=args.cursor,
            tag=args.tag,
            content_status=args.status,
            post_type=args.post_type,
            author=args.author,
            include_full_content=args.full,
            snippet_chars=args.snippet_chars,
            max_total_chars=args.max_total_chars,
        )
        _print_json(result.to_dict())
        return 0

    if args.command == "list":
        result = query.list_content(
            limit=args.limit,
            cursor=args.cursor,
            post_type=args.post_type,
            tag=args.tag,
            author=args.author,
            from_date=args.from_date,
            to_date=args.to_date,
            content_status=args.status,
            has_full_content=args.has_full_content,
            include_full_content=args.full,
            snippet_chars=args.snippet_chars,
            max_total_chars=args.max_total_chars,
        )
        _print_json(result.to_dict())
        return 0

    if args.command == "tag":
        changes = 0
        for tag in args.tags:
            for post_id in args.post_ids:
                changed = store.untag_post(post_id, tag) if args.remove else store.tag_post(post_id, tag)
                changes += int(changed)
        _print_json(
            {
                "action": "removed" if args.remove else "added",
                "changes": changes,
                "post_count": len(args.post_ids),
                "tag_count": len(args.tags),
            }
        )
        return 0

    if args.command == "tags":
        if args.tag:
            posts = query.get_posts_by_tag(args.tag, args.limit)
            _print_json([post.to_dict() for post in posts])
        else:
            _print_json(query.list_tags())
        return 0

    if args.command == "checkpoint":
        job_name = args.job or app_config.hydration.backfill_job
        if args.action == "reset":
            _print_json({"job_name": job_name, "reset": store.reset_backfill_checkpoint(job_name)})
            return 0
        checkpoint = store.get_backfill_checkpoint(job_name)
        _print_json(asdict(checkpoint) if checkpoint else {"job_name": job_name, "checkpoint": None})
        return 0

    if args.command == "mark-stale":
        _print_json({post_id: store.mark_content_stale(post_id) for post_id in args.post_ids})
        return 0

    if args.command == "reset-hydration":
        _print_json({post_id: store.reset_hydration(post_id) for post_id in args.post_ids})
        return 0

    if args.command == "stuck":
        rows = store.find_stuck_fetching(timedelta(minutes=max(0, args.older_than_minutes)))
        _print_json([asdict(row) for row in rows])
        return 0

    raise AssertionError(f"Unhandled command: {args.command}")


def _build_store(app_config: AppConfig) -> SQLiteStore:
    if app_config.storage.type != "sqlite":
        raise ConfigError(f"Unsupported storage type: {app_config.storage.type}")
    return SQLiteStore(app_config.storage.path)


def _build_tagger(app_config: AppConfig) -> Tagger | None:
    if not app_config.tagging.enabled:
        return None

    api_key = os.getenv(app_config.tagging.api_key_env_var, "").strip()
    if not api_key:
        logger.warning(
            "Tagging enabled but %s is not set; posts will be stored untagged",
            app_config.tagging.api_key_env_var,
        )
        return None

    return GrokTagger(
        api_key,
        model=app_config.tagging.model,
        batch_size=app_config.tagging.batch_size,
    )


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


if __name__ == "__main__":
    raise SystemExit(main())
