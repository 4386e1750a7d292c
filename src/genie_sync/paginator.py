"""Backward cursor pagination over the notes feed.

The feed is queried with an exclusive upper time bound (``before_time``).
Each page's oldest record becomes the next bound, stepped back by one
millisecond and rendered in the same basis that record used. Pages must be
fetched strictly in order since every cursor depends on the previous page.

The asset cap selects oldest first, so any older page can change the
selection. The cap is applied to the finished result and never ends
pagination.
"""

from __future__ import annotations

import time as _time
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple

from .logging import get_logger
from .models import FeedContext
from .timestamps import MILLISECOND, ResolvedTimestamp, extract_timestamp, format_cursor, format_wall_clock
from .watermark import NoteDeduplicator

logger = get_logger("genie_sync.paginator")


class NotesSource(Protocol):
    def fetch_notes(self, enrollment_id: str, before_time: str, page_size: int) -> List[Any]: ...


class StopReason(str, Enum):
    EMPTY_PAGE = "empty_page"
    NO_TIMESTAMPS = "no_timestamps"
    REACHED_START = "reached_start"
    CURSOR_STALLED = "cursor_stalled"
    PAGE_BUDGET = "page_budget"


@dataclass
class PaginationResult:
    items: List[Any]
    pages: int
    stop_reason: StopReason
    cursors: List[str] = field(default_factory=list)


def initial_cursor(context: FeedContext, now: datetime, end_day: Optional[date] = None) -> datetime:
    """Midnight after ``end_day`` (or after today) on the enrollment's wall clock."""

    reference = end_day or now.astimezone(context.zone).date()
    return datetime.combine(reference + timedelta(days=1), time.min, tzinfo=context.zone)


def filter_page(
    items: Sequence[Any],
    context: FeedContext,
    start: Optional[datetime] = None,
    exclusive_end: Optional[datetime] = None,
) -> Tuple[List[Any], Optional[ResolvedTimestamp]]:
    """Drop records outside ``[start, exclusive_end)`` and find the page's oldest record.

    Records without any resolvable timestamp are kept. The oldest record is
    taken over the whole page, including dropped records.
    """

    kept: List[Any] = []
    oldest: Optional[ResolvedTimestamp] = None
    for item in items:
        resolved = extract_timestamp(item, context.zone)
        if resolved is None:
            kept.append(item)
            continue
        if oldest is None or resolved.instant < oldest.instant:
            oldest = resolved
        if start is not None and resolved.instant < start:
            continue
        if exclusive_end is not None and resolved.instant >= exclusive_end:
            continue
        kept.append(item)
    return kept, oldest


class NotesPaginator:
    def __init__(
        self,
        source: NotesSource,
        context: FeedContext,
        *,
        page_size: int = 50,
        max_pages: int = 200,
        page_delay: float = 0.35,
        sleep: Callable[[float], None] = _time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now().astimezone(),
    ) -> None:
        self.source = source
        self.context = context
        self.page_size = page_size
        self.max_pages = max_pages
        self.page_delay = page_delay
        self._sleep = sleep
        self._clock = clock

    def run(
        self,
        enrollment_id: str,
        start: Optional[datetime] = None,
        end_day: Optional[date] = None,
    ) -> PaginationResult:
        log = logger.bind(enrollment_id=enrollment_id)
        upper = initial_cursor(self.context, self._clock(), end_day)
        exclusive_end = upper if end_day is not None else None
        cursor = format_wall_clock(upper)

        accumulated = NoteDeduplicator()
        cursors: List[str] = []
        pages = 0
        stop_reason = StopReason.PAGE_BUDGET

        while pages < self.max_pages:
            cursors.append(cursor)
            page = self.source.fetch_notes(enrollment_id, cursor, self.page_size)
            if not page:
                stop_reason = StopReason.EMPTY_PAGE
                break

            kept, oldest = filter_page(page, self.context, start, exclusive_end)
            added = accumulated.add_page(kept)
            pages += 1
            log.info(
                "notes_page_fetched",
                page=pages,
                before_time=cursor,
                received=len(page),
                kept=len(kept),
                added=added,
                oldest=oldest.instant.isoformat() if oldest else None,
            )

            if oldest is None:
                stop_reason = StopReason.NO_TIMESTAMPS
                break

            candidate = oldest.instant - MILLISECOND
            if start is not None and candidate <= start:
                stop_reason = StopReason.REACHED_START
                break

            # cursors share one fixed-width layout, so string order is time order
            next_cursor = format_cursor(candidate, oldest.basis, self.context)
            if next_cursor >= cursor:
                next_cursor = format_cursor(candidate - MILLISECOND, oldest.basis, self.context)
                if next_cursor >= cursor:
                    stop_reason = StopReason.CURSOR_STALLED
                    break
            cursor = next_cursor

            if pages < self.max_pages:
                self._sleep(self.page_delay)

        log.info(
            "notes_pagination_complete",
            pages=pages,
            notes=len(accumulated),
            stop_reason=stop_reason.value,
        )
        return PaginationResult(
            items=accumulated.items,
            pages=pages,
            stop_reason=stop_reason,
            cursors=cursors,
        )


__all__ = [
    "NotesPaginator",
    "NotesSource",
    "PaginationResult",
    "StopReason",
    "filter_page",
    "initial_cursor",
]
