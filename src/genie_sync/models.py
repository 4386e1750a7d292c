from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from datetime import timedelta, timezone, tzinfo
from typing import Any, Dict, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import MissingIdentity
from .logging import get_logger

logger = get_logger("genie_sync.models")

ENROLLMENT_ID_FIELDS = (
    "enrollment_id",
    "enrollmentId",
    "enrollmentID",
    "id",
    "childEnrollmentId",
)

TIMEZONE_OFFSET_HEADER = "x-lg-timezoneoffset"


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _child(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, Mapping) else {}


@dataclass(frozen=True)
class Enrollment:
    """One child profile linked to the parent account."""

    enrollment_id: str
    display_name: str
    timezone_hint: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Enrollment":
        enrollment_id = None
        for key in ENROLLMENT_ID_FIELDS:
            value = payload.get(key)
            if value is not None and str(value).strip():
                enrollment_id = str(value).strip()
                break
        if enrollment_id is None:
            raise MissingIdentity("enrollment payload has no identifier")

        child = _child(payload, "child")
        first, last = _clean(child.get("firstName")), _clean(child.get("lastName"))
        name_candidates = [
            payload.get("display_name"),
            payload.get("displayName"),
            payload.get("name"),
            child.get("name"),
            child.get("fullName"),
            f"{first} {last}" if first and last else None,
            child.get("nickname"),
        ]
        display_name = next((c for c in map(_clean, name_candidates) if c), enrollment_id)

        tz_candidates = [
            _child(payload, "center").get("timezone"),
            _child(payload, "group").get("timezone"),
            payload.get("timezone"),
            payload.get("timeZone"),
            child.get("timezone"),
            child.get("timeZone"),
        ]
        timezone_hint = next((c for c in map(_clean, tz_candidates) if c), None)

        return cls(
            enrollment_id=enrollment_id,
            display_name=display_name,
            timezone_hint=timezone_hint,
            raw=dict(payload),
        )


@dataclass(frozen=True)
class FeedContext:
    """Per-enrollment time context threaded through parsing and cursor formatting.

    ``zone`` interprets civil-local vendor strings and localizes metadata.
    ``api_offset`` is the offset the session declared to the API; absolute
    cursors are rendered shifted by it so they line up with the feed's own
    wall clock.
    """

    zone: tzinfo
    zone_name: str
    api_offset: Optional[timedelta] = None


def parse_offset_hours(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped or stripped == "null":
            return None
        try:
            return float(stripped)
        except ValueError:
            return None
    return None


def offset_to_zone(offset_hours: float) -> tuple[tzinfo, str]:
    if float(offset_hours).is_integer():
        # Etc/GMT names use inverted signs: UTC-8 is Etc/GMT+8
        inverted = -int(offset_hours)
        name = f"Etc/GMT{inverted:+d}" if inverted else "Etc/GMT"
        return ZoneInfo(name), name
    fixed = timezone(timedelta(hours=offset_hours))
    return fixed, str(fixed)


def _load_zone(name: Optional[str], source: str) -> Optional[tuple[tzinfo, str]]:
    if not name:
        return None
    try:
        return ZoneInfo(name), name
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("timezone_unknown", timezone=name, source=source)
        return None


def resolve_feed_context(
    enrollment: Optional[Enrollment],
    headers: Mapping[str, str],
    *,
    override: Optional[str] = None,
    default: str = "UTC",
) -> FeedContext:
    """Pick the enrollment's target zone.

    Order: explicit override, enrollment-declared zone, zone derived from the
    session's offset header, process default.
    """

    offset_hours = parse_offset_hours(header_value(headers, TIMEZONE_OFFSET_HEADER))
    api_offset = timedelta(hours=offset_hours) if offset_hours is not None else None

    resolved = _load_zone(override, "override")
    if resolved is None and enrollment is not None:
        resolved = _load_zone(enrollment.timezone_hint, "enrollment")
    if resolved is None and offset_hours is not None:
        resolved = offset_to_zone(offset_hours)
    if resolved is None:
        resolved = _load_zone(default, "default") or (ZoneInfo("UTC"), "UTC")

    zone, name = resolved
    return FeedContext(zone=zone, zone_name=name, api_offset=api_offset)


def header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    if not headers:
        return None
    if name in headers:
        return headers[name]
    target = name.lower()
    for key, value in headers.items():
        if key.lower() == target:
            return value
    return None


def slugify_name(value: str) -> str:
    if not value:
        return ""
    folded = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^a-zA-Z0-9]+", "-", folded).strip("-").lower()


class SlugAllocator:
    """Hands out unique folder names per display name within one run."""

    def __init__(self) -> None:
        self._used: Dict[str, int] = {}

    def allocate(self, value: str) -> str:
        base = slugify_name(value) or "child"
        attempt = self._used.get(base, 0)
        self._used[base] = attempt + 1
        return f"{base}-{attempt}" if attempt else base


__all__ = [
    "Enrollment",
    "FeedContext",
    "SlugAllocator",
    "header_value",
    "offset_to_zone",
    "parse_offset_hours",
    "resolve_feed_context",
    "slugify_name",
]
