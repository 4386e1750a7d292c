"""Resolution of the vendor's ambiguous timestamp fields.

Notes and media entries carry several spellings of "created at", some of them
UTC instants (``createAtUtc``) and some naive wall-clock strings in the
center's local time (``createAt``). Each concept is an ordered list of
``TimestampField`` accessors evaluated in a fixed priority, absolute-basis
fields first so that an explicit UTC value always wins over a local one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Sequence

from dateutil import parser as dateparser

from .errors import UnparsableTimestamp
from .logging import get_logger
from .models import FeedContext

logger = get_logger("genie_sync.timestamps")

MILLISECOND = timedelta(milliseconds=1)

_ZONE_MARKER = re.compile(r"(?:[zZ]|[+-]\d{2}(?::?\d{2})?)$")


class Basis(str, Enum):
    ABSOLUTE = "absolute"
    CIVIL_LOCAL = "civil-local"


@dataclass(frozen=True, slots=True)
class TimestampField:
    key: str
    basis: Basis


@dataclass(frozen=True, slots=True)
class ResolvedTimestamp:
    instant: datetime
    basis: Basis
    raw: str

    @property
    def is_absolute(self) -> bool:
        return self.basis is Basis.ABSOLUTE


def _fields(keys: Iterable[str], basis: Basis) -> tuple[TimestampField, ...]:
    return tuple(TimestampField(key, basis) for key in keys)


_CREATE_UTC_KEYS = (
    "create_at_utc",
    "createAtUtc",
    "createdAtUtc",
    "created_at_utc",
    "createAtUTC",
    "createdAtUTC",
)
_CREATE_LOCAL_KEYS = ("create_at", "createAt", "createdAt", "created_at")

NOTE_TIMESTAMP_FIELDS: tuple[TimestampField, ...] = (
    _fields(_CREATE_UTC_KEYS, Basis.ABSOLUTE)
    + _fields(("update_at_utc", "updateAtUtc", "updatedAtUtc"), Basis.ABSOLUTE)
    + _fields(_CREATE_LOCAL_KEYS, Basis.CIVIL_LOCAL)
    + _fields(("from_date", "timestamp", "to_date", "update_at", "updatedAt"), Basis.CIVIL_LOCAL)
)

# Creation-time fields only; update stamps on a media entry say nothing about capture time.
MEDIA_TIMESTAMP_FIELDS: tuple[TimestampField, ...] = (
    _fields(_CREATE_UTC_KEYS, Basis.ABSOLUTE) + _fields(_CREATE_LOCAL_KEYS, Basis.CIVIL_LOCAL)
)


def parse_timestamp(
    raw: Any,
    basis: Basis,
    zone: tzinfo = timezone.utc,
) -> Optional[ResolvedTimestamp]:
    """Parse one raw value.

    Returns ``None`` for absent or blank values and raises
    ``UnparsableTimestamp`` when no grammar accepts the string. Absolute
    values without a zone marker are taken as UTC; civil-local values are
    wall-clock readings in ``zone``.
    """

    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None

    normalized = text.replace(" ", "T", 1)
    if basis is Basis.ABSOLUTE and not _ZONE_MARKER.search(normalized):
        normalized += "Z"

    try:
        parsed = dateparser.isoparse(normalized)
    except (ValueError, OverflowError):
        try:
            parsed = dateparser.parse(text)
        except (ValueError, OverflowError) as exc:
            raise UnparsableTimestamp(text, basis.value) from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc if basis is Basis.ABSOLUTE else zone)

    return ResolvedTimestamp(
        instant=parsed.astimezone(timezone.utc),
        basis=basis,
        raw=text,
    )


def resolve_fields(
    record: Any,
    fields: Sequence[TimestampField],
    zone: tzinfo = timezone.utc,
) -> Optional[ResolvedTimestamp]:
    """First field in ``fields`` that carries a parseable value."""

    if not isinstance(record, Mapping):
        return None
    for field in fields:
        value = record.get(field.key)
        if value is None:
            continue
        try:
            resolved = parse_timestamp(value, field.basis, zone)
        except UnparsableTimestamp as exc:
            logger.debug("timestamp_candidate_rejected", field=field.key, raw=exc.raw)
            continue
        if resolved is not None:
            return resolved
    return None


def extract_timestamp(note: Any, zone: tzinfo = timezone.utc) -> Optional[ResolvedTimestamp]:
    """Resolve a note's own timestamp, falling back to its media entries."""

    resolved = resolve_fields(note, NOTE_TIMESTAMP_FIELDS, zone)
    if resolved is not None or not isinstance(note, Mapping):
        return resolved

    media = note.get("media")
    if not isinstance(media, list):
        return None
    for entry in media:
        resolved = resolve_fields(entry, NOTE_TIMESTAMP_FIELDS, zone)
        if resolved is not None:
            return resolved
    return None


def resolve_asset_timestamp(
    media: Mapping[str, Any],
    note: Mapping[str, Any],
    zone: tzinfo = timezone.utc,
    parent: Optional[ResolvedTimestamp] = None,
) -> Optional[ResolvedTimestamp]:
    """Asset creation fields, then any asset timestamp, then the parent note's."""

    resolved = resolve_fields(media, MEDIA_TIMESTAMP_FIELDS, zone)
    if resolved is not None:
        return resolved
    resolved = resolve_fields(media, NOTE_TIMESTAMP_FIELDS, zone)
    if resolved is not None:
        return resolved
    if parent is not None:
        return parent
    return extract_timestamp(note, zone)


def find_latest_timestamp(items: Iterable[Any], zone: tzinfo = timezone.utc) -> Optional[datetime]:
    latest: Optional[datetime] = None
    for item in items:
        resolved = extract_timestamp(item, zone)
        if resolved is not None and (latest is None or resolved.instant > latest):
            latest = resolved.instant
    return latest


def format_wall_clock(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") + f".{value.microsecond // 1000:03d}"


def format_cursor(instant: datetime, basis: Basis, context: FeedContext) -> str:
    """Render an instant as the feed's ``before_time`` cursor.

    Civil-local records are rendered back on the enrollment's wall clock;
    absolute records on the wall clock of the offset the session declared to
    the API, or UTC when it declared none.
    """

    if basis is Basis.CIVIL_LOCAL:
        local = instant.astimezone(context.zone)
    elif context.api_offset is not None:
        local = instant.astimezone(timezone(context.api_offset))
    else:
        local = instant.astimezone(timezone.utc)
    return format_wall_clock(local)


__all__ = [
    "Basis",
    "MEDIA_TIMESTAMP_FIELDS",
    "MILLISECOND",
    "NOTE_TIMESTAMP_FIELDS",
    "ResolvedTimestamp",
    "TimestampField",
    "extract_timestamp",
    "find_latest_timestamp",
    "format_cursor",
    "format_wall_clock",
    "parse_timestamp",
    "resolve_asset_timestamp",
    "resolve_fields",
]
