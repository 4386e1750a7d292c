from __future__ import annotations

import hashlib
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

import orjson

from .logging import get_logger
from .timestamps import MILLISECOND, NOTE_TIMESTAMP_FIELDS

logger = get_logger("genie_sync.watermark")

NOTE_ID_FIELDS = ("id", "note_id", "noteId", "child_media_id", "childMediaId")
MEDIA_KEY_FIELDS = ("public_url", "publicUrl", "id", "media_id", "mediaId")


def _first_raw_timestamp(note: Mapping[str, Any]) -> Optional[str]:
    for field_ in NOTE_TIMESTAMP_FIELDS:
        value = note.get(field_.key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def _media_keys(note: Mapping[str, Any]) -> List[str]:
    keys: List[str] = []
    media = note.get("media")
    if not isinstance(media, list):
        return keys
    for entry in media:
        if not isinstance(entry, Mapping):
            continue
        for name in MEDIA_KEY_FIELDS:
            value = entry.get(name)
            if value is not None and str(value).strip():
                keys.append(str(value).strip())
                break
    return sorted(keys)


def note_identity(note: Any) -> str:
    """Stable identity of a feed record.

    The first present id-like field wins; without one the record is
    fingerprinted from its timestamp, payload and media keys, so two records
    with identical fingerprints are the same note.
    """

    if not isinstance(note, Mapping):
        return "fp:" + hashlib.sha256(orjson.dumps(note, option=orjson.OPT_SORT_KEYS)).hexdigest()

    for name in NOTE_ID_FIELDS:
        value = note.get(name)
        if value is not None and str(value).strip():
            return f"{name}:{value}"

    fingerprint = {
        "timestamp": _first_raw_timestamp(note),
        "payload": note.get("payload"),
        "media": _media_keys(note),
    }
    digest = hashlib.sha256(
        orjson.dumps(fingerprint, option=orjson.OPT_SORT_KEYS | orjson.OPT_NON_STR_KEYS, default=str)
    ).hexdigest()
    return f"fp:{digest}"


@dataclass
class NoteDeduplicator:
    """Accumulates unseen notes for one enrollment, in the order received."""

    items: List[Any] = field(default_factory=list)
    _seen: Set[str] = field(default_factory=set, init=False, repr=False)

    def add_page(self, notes: Iterable[Any]) -> int:
        added = 0
        for note in notes:
            identity = note_identity(note)
            if identity in self._seen:
                continue
            self._seen.add(identity)
            self.items.append(note)
            added += 1
        return added

    def __len__(self) -> int:
        return len(self.items)


def _parse_iso(raw: Any) -> Optional[datetime]:
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class WatermarkStore:
    """Per-enrollment "last synced instant" file.

    Read once at run start, rewritten atomically at run end and only when
    some enrollment advanced. Watermarks only ever move forward.
    """

    path: Path
    marks: Dict[str, datetime] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)
    dirty: bool = False

    @classmethod
    def load(cls, path: Path) -> "WatermarkStore":
        if not path.exists():
            return cls(path=path)
        try:
            raw = orjson.loads(path.read_bytes())
        except (OSError, orjson.JSONDecodeError):
            logger.warning("watermark_state_load_failed", path=str(path))
            return cls(path=path)
        if not isinstance(raw, dict):
            logger.warning("watermark_state_invalid", path=str(path))
            return cls(path=path)

        marks: Dict[str, datetime] = {}
        extra: Dict[str, Any] = {}
        for key, value in raw.items():
            parsed = _parse_iso(value)
            if parsed is None:
                extra[key] = value
                continue
            marks[str(key)] = parsed
        return cls(path=path, marks=marks, extra=extra)

    def get(self, enrollment_id: str) -> Optional[datetime]:
        return self.marks.get(enrollment_id)

    def resume_point(self, enrollment_id: str) -> Optional[datetime]:
        mark = self.marks.get(enrollment_id)
        if mark is None:
            return None
        return mark + MILLISECOND

    def advance(self, enrollment_id: str, instant: Optional[datetime]) -> bool:
        if instant is None:
            return False
        current = self.marks.get(enrollment_id)
        if current is not None and instant <= current:
            if instant < current:
                logger.info(
                    "watermark_regression_ignored",
                    enrollment_id=enrollment_id,
                    current=_iso(current),
                    proposed=_iso(instant),
                )
            return False
        self.marks[enrollment_id] = instant.astimezone(timezone.utc)
        self.dirty = True
        return True

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        for key, value in self.marks.items():
            payload[key] = _iso(value)
        return payload

    def save(self) -> bool:
        if not self.dirty:
            return False
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(orjson.dumps(self.to_payload(), option=orjson.OPT_INDENT_2))
            tmp_path.replace(self.path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        self.dirty = False
        logger.info("watermark_state_saved", path=str(self.path), enrollments=len(self.marks))
        return True


def effective_start(user_start: Optional[datetime], resume: Optional[datetime]) -> Optional[datetime]:
    """The later of an explicit start bound and the watermark resume point."""

    if user_start is None:
        return resume
    if resume is None:
        return user_start
    return max(user_start, resume)


__all__ = [
    "NOTE_ID_FIELDS",
    "NoteDeduplicator",
    "WatermarkStore",
    "effective_start",
    "note_identity",
]
