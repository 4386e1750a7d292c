from __future__ import annotations

import argparse
import sys
from datetime import date
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from .client import GenieClient
from .config import SyncSettings, get_settings
from .errors import ConfigurationError, SyncError
from .logging import get_logger, setup_logging
from .session import UID_HEADER, AuthState, build_api_headers, build_session
from .sync import SyncReport, SyncRunner, day_start, write_items_file
from .watermark import WatermarkStore

logger = get_logger("genie_sync.cli")

EXIT_OK = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_MISSING_AUTH = 2
EXIT_SESSION_FAILED = 4
EXIT_ENROLLMENTS_FAILED = 6
EXIT_NO_ENROLLMENTS = 7
EXIT_INVALID_MAX_ASSETS = 8


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from exc


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}")
    return number


def _non_negative_float(value: str) -> float:
    number = float(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"expected a non-negative number, got {value!r}")
    return number


def _add_feed_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", type=_iso_date, help="Earliest local day to include (YYYY-MM-DD)")
    parser.add_argument("--end", type=_iso_date, help="Latest local day to include (YYYY-MM-DD)")
    parser.add_argument("--count", type=_positive_int, help="Notes requested per page (default: 50)")
    parser.add_argument("--max-pages", type=_positive_int, help="Maximum pages fetched per enrollment (default: 200)")
    parser.add_argument("--delay", type=_non_negative_float, help="Seconds to wait between pages (default: 0.35)")
    parser.add_argument("--timezone", help="IANA zone overriding the enrollment's own zone")
    parser.add_argument("--note-category", help="Note category requested from the feed (default: report)")
    parser.add_argument(
        "--video-book",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Include video book entries in the feed (default: on)",
    )
    parser.add_argument("--auth", type=Path, help="Path to the saved browser auth state")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="genie-sync",
        description="Download Learning Genie photos and videos with capture-time metadata",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Fetch new notes, download media and advance watermarks")
    _add_feed_options(sync_parser)
    sync_parser.add_argument("--state", type=Path, help="Path to the watermark state file")
    sync_parser.add_argument("--outdir", type=Path, help="Directory that receives one folder per child")
    sync_parser.add_argument("--outfile", type=Path, help="Where to write the fetched items JSON")
    sync_parser.add_argument("--max-assets", help="Soft cap on media assets downloaded per enrollment")
    sync_parser.add_argument("--enrollment", help="Only sync this enrollment id")
    sync_parser.add_argument("--concurrency", type=_positive_int, help="Parallel downloads (default: 6)")
    sync_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch and write the items JSON without downloading or updating state",
    )

    fetch_parser = subparsers.add_parser("fetch", help="Fetch notes for one enrollment and write them as JSON")
    _add_feed_options(fetch_parser)
    fetch_parser.add_argument("--enrollment", required=True, help="Enrollment id to fetch")
    fetch_parser.add_argument("--out", type=Path, help="Output file (default: OUTFILE)")

    return parser.parse_args(argv)


def parse_max_assets(raw: Optional[str]) -> Optional[int]:
    """``None`` when unset; raises ``ValueError`` unless a positive integer."""

    if raw is None:
        return None
    value = int(raw.strip())
    if value <= 0:
        raise ValueError(f"max assets must be positive, got {value}")
    return value


def settings_from_args(args: argparse.Namespace, base: SyncSettings) -> SyncSettings:
    mapping = {
        "auth": "auth_path",
        "state": "state_path",
        "outdir": "outdir",
        "outfile": "outfile",
        "out": "outfile",
        "enrollment": "enrollment",
        "start": "start",
        "end": "end",
        "count": "page_size",
        "max_pages": "max_pages",
        "delay": "page_delay",
        "timezone": "timezone",
        "concurrency": "download_concurrency",
        "note_category": "note_category",
        "video_book": "include_video_book",
    }
    update: Dict[str, Any] = {}
    for option, setting in mapping.items():
        value = getattr(args, option, None)
        if value is not None:
            update[setting] = value
    if getattr(args, "dry_run", False):
        update["dry_run"] = True
    return SyncSettings.model_validate({**base.model_dump(), **update})


def open_session(settings: SyncSettings):
    state = AuthState.load(settings.auth_path)
    headers = build_api_headers(state, uid=settings.uid)
    return headers, build_session(state, headers)


def run_sync(settings: SyncSettings) -> int:
    if not settings.auth_path.exists():
        logger.error("auth_state_missing", path=str(settings.auth_path))
        return EXIT_MISSING_AUTH
    try:
        headers, session = open_session(settings)
    except ConfigurationError as exc:
        logger.error("session_setup_failed", error=str(exc))
        return EXIT_SESSION_FAILED

    client = GenieClient(session, settings)
    try:
        enrollments = client.list_enrollments(headers[UID_HEADER])
    except SyncError as exc:
        logger.error("enrollment_listing_failed", error=str(exc))
        return EXIT_ENROLLMENTS_FAILED
    if not enrollments:
        logger.error("no_enrollments_found")
        return EXIT_NO_ENROLLMENTS
    logger.info("enrollments_listed", count=len(enrollments))

    store = WatermarkStore.load(settings.state_path)
    runner = SyncRunner(settings, client, store, headers)
    report = runner.run(enrollments)

    if settings.enrollment and not report.outcomes:
        logger.error("enrollment_not_found", enrollment_id=settings.enrollment)
        return EXIT_NO_ENROLLMENTS

    print_summary(report)
    return EXIT_PARTIAL_FAILURE if report.failed else EXIT_OK


def print_summary(report: SyncReport) -> None:
    print("\n" + "=" * 60)
    print("LEARNING GENIE SYNC COMPLETE")
    print("=" * 60)
    for outcome in report.outcomes:
        if outcome.error:
            print(f"{outcome.display_name}: FAILED ({outcome.error})")
            continue
        downloads = outcome.downloads
        line = f"{outcome.display_name}: {outcome.notes} notes"
        if downloads is not None:
            line += f", {len(downloads.succeeded)} downloaded, {len(downloads.failed)} failed"
        if outcome.limited:
            line += f" (capped at {outcome.selected_assets} of {outcome.total_assets} assets)"
        if outcome.watermark is not None:
            line += f", synced through {outcome.watermark.isoformat()}"
        print(line)
    if report.skipped:
        print(f"Skipped {report.skipped} enrollment(s) without an id")


def run_fetch(settings: SyncSettings) -> int:
    if not settings.auth_path.exists():
        logger.error("auth_state_missing", path=str(settings.auth_path))
        return EXIT_MISSING_AUTH
    try:
        headers, session = open_session(settings)
    except ConfigurationError as exc:
        logger.error("session_setup_failed", error=str(exc))
        return EXIT_SESSION_FAILED

    client = GenieClient(session, settings)
    runner = SyncRunner(settings, client, WatermarkStore(path=settings.state_path), headers)
    context = runner.context_for(None)
    try:
        result = runner.paginate(settings.enrollment, context, day_start(settings.start, context))
    except SyncError as exc:
        logger.error("fetch_failed", enrollment_id=settings.enrollment, error=str(exc))
        return EXIT_PARTIAL_FAILURE

    write_items_file(settings.outfile, result.items)
    logger.info(
        "fetch_complete",
        enrollment_id=settings.enrollment,
        items=len(result.items),
        pages=result.pages,
        path=str(settings.outfile),
    )
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    settings = settings_from_args(args, get_settings())
    setup_logging(settings.log_level)

    if args.command == "sync":
        try:
            max_assets = parse_max_assets(args.max_assets)
        except ValueError as exc:
            logger.error("invalid_max_assets", value=args.max_assets, error=str(exc))
            return EXIT_INVALID_MAX_ASSETS
        settings = SyncSettings.model_validate({**settings.model_dump(), "max_assets": max_assets})
        return run_sync(settings)
    return run_fetch(settings)


if __name__ == "__main__":
    sys.exit(main())
