from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import orjson

from .client import GenieClient
from .config import SyncSettings
from .downloader import DownloadReport, MediaDownloader
from .errors import MissingIdentity, SyncError
from .limiter import apply_soft_asset_limit
from .logging import get_logger
from .models import Enrollment, FeedContext, SlugAllocator, resolve_feed_context
from .paginator import NotesPaginator, PaginationResult
from .stamping import ExiftoolWriter
from .timestamps import find_latest_timestamp
from .watermark import WatermarkStore, effective_start

logger = get_logger("genie_sync.sync")


@dataclass
class EnrollmentOutcome:
    enrollment_id: str
    display_name: str
    folder: str
    notes: int = 0
    total_assets: int = 0
    selected_assets: int = 0
    limited: bool = False
    watermark: Optional[datetime] = None
    advanced: bool = False
    downloads: Optional[DownloadReport] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SyncReport:
    outcomes: List[EnrollmentOutcome] = field(default_factory=list)
    skipped: int = 0
    state_saved: bool = False

    @property
    def failed(self) -> List[EnrollmentOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]


def day_start(day: Optional[date], context: FeedContext) -> Optional[datetime]:
    if day is None:
        return None
    return datetime.combine(day, dt_time.min, tzinfo=context.zone)


def append_file_suffix(path: Path, suffix: str) -> Path:
    return path.with_name(f"{path.stem}{suffix}{path.suffix}")


def write_items_file(path: Path, items: List[Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(orjson.dumps({"items": items}, option=orjson.OPT_INDENT_2))


class SyncRunner:
    """Runs the fetch → select → download → watermark sequence per enrollment.

    Enrollments are processed one at a time and isolated from each other: a
    fatal feed error or a local I/O error stops only the enrollment it
    happened in, and only enrollments that completed have their watermark
    advanced.
    """

    def __init__(
        self,
        settings: SyncSettings,
        client: GenieClient,
        watermarks: WatermarkStore,
        headers: Mapping[str, str],
        *,
        writer: Optional[ExiftoolWriter] = None,
        downloader_factory: Optional[Callable[[FeedContext], MediaDownloader]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.client = client
        self.watermarks = watermarks
        self.headers = dict(headers)
        self.writer = writer or ExiftoolWriter(settings.exiftool_path)
        self._downloader_factory = downloader_factory or self._default_downloader
        self._sleep = sleep
        self._clock = clock

    def _default_downloader(self, context: FeedContext) -> MediaDownloader:
        return MediaDownloader(
            self.writer,
            context.zone,
            concurrency=self.settings.download_concurrency,
            timeout=self.settings.request_timeout,
        )

    def context_for(self, enrollment: Optional[Enrollment]) -> FeedContext:
        return resolve_feed_context(
            enrollment,
            self.headers,
            override=self.settings.timezone,
            default=self.settings.default_timezone,
        )

    def paginate(self, enrollment_id: str, context: FeedContext, start: Optional[datetime]) -> PaginationResult:
        paginator_kwargs: Dict[str, Any] = dict(
            page_size=self.settings.page_size,
            max_pages=self.settings.max_pages,
            page_delay=self.settings.page_delay,
            sleep=self._sleep,
        )
        if self._clock is not None:
            paginator_kwargs["clock"] = self._clock
        paginator = NotesPaginator(self.client, context, **paginator_kwargs)
        return paginator.run(enrollment_id, start=start, end_day=self.settings.end)

    def sync_enrollment(self, enrollment: Enrollment, folder: str, outfile: Path) -> EnrollmentOutcome:
        enrollment_id = enrollment.enrollment_id
        log = logger.bind(enrollment_id=enrollment_id, child=enrollment.display_name)
        outcome = EnrollmentOutcome(enrollment_id=enrollment_id, display_name=enrollment.display_name, folder=folder)

        context = self.context_for(enrollment)
        stored = self.watermarks.get(enrollment_id)
        start = effective_start(day_start(self.settings.start, context), self.watermarks.resume_point(enrollment_id))
        log.info(
            "enrollment_sync_start",
            timezone=context.zone_name,
            watermark=stored.isoformat() if stored else None,
            start=start.isoformat() if start else None,
        )

        try:
            pagination = self.paginate(enrollment_id, context, start)
        except SyncError as exc:
            log.error("enrollment_fetch_failed", error=str(exc))
            outcome.error = str(exc)
            return outcome

        items = pagination.items
        outcome.notes = len(items)
        processed = items
        latest: Optional[datetime]

        if self.settings.max_assets:
            limit = apply_soft_asset_limit(items, self.settings.max_assets, context.zone)
            processed = limit.filtered_items
            latest = limit.latest_timestamp
            outcome.total_assets = limit.total_assets
            outcome.selected_assets = limit.selected_assets
            outcome.limited = limit.limited
            log.info(
                "soft_limit_evaluated",
                max_assets=self.settings.max_assets,
                total_assets=limit.total_assets,
                selected_assets=limit.selected_assets,
                limited=limit.limited,
                cutoff=limit.cutoff_timestamp.isoformat() if limit.cutoff_timestamp else None,
            )
        else:
            latest = find_latest_timestamp(items, context.zone)

        if latest is None:
            latest = find_latest_timestamp(processed, context.zone)
        outcome.watermark = latest

        try:
            write_items_file(outfile, processed)
        except OSError as exc:
            log.error("items_file_failed", path=str(outfile), error=str(exc))
            outcome.error = str(exc)
            return outcome
        log.info("items_file_written", path=str(outfile), items=len(processed))

        if not processed:
            log.info("enrollment_nothing_new")
            return outcome
        if self.settings.dry_run:
            log.info("enrollment_dry_run", items=len(processed))
            return outcome

        downloader = self._downloader_factory(context)
        try:
            outcome.downloads = downloader.run(processed, self.settings.outdir / folder, label=enrollment.display_name)
        except OSError as exc:
            log.error("enrollment_download_failed", error=str(exc))
            outcome.error = str(exc)
            return outcome

        outcome.advanced = self.watermarks.advance(enrollment_id, latest)
        return outcome

    def run(self, payloads: Iterable[Mapping[str, Any]]) -> SyncReport:
        report = SyncReport()
        enrollments: List[Enrollment] = []
        for payload in payloads:
            try:
                enrollment = Enrollment.from_payload(payload)
            except MissingIdentity:
                logger.warning("enrollment_missing_id", payload=orjson.dumps(payload, default=str).decode())
                report.skipped += 1
                continue
            if self.settings.enrollment and enrollment.enrollment_id != self.settings.enrollment:
                continue
            enrollments.append(enrollment)

        slugs = SlugAllocator()
        multi = len(enrollments) > 1
        for enrollment in enrollments:
            folder = slugs.allocate(enrollment.display_name)
            outfile = append_file_suffix(self.settings.outfile, f"-{folder}") if multi else self.settings.outfile
            report.outcomes.append(self.sync_enrollment(enrollment, folder, outfile))

        report.state_saved = self.watermarks.save()
        logger.info(
            "sync_complete",
            enrollments=len(report.outcomes),
            failed=len(report.failed),
            skipped=report.skipped,
            state_saved=report.state_saved,
        )
        return report


__all__ = [
    "EnrollmentOutcome",
    "SyncReport",
    "SyncRunner",
    "append_file_suffix",
    "day_start",
    "write_items_file",
]
