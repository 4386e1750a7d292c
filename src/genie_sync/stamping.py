"""Capture-time metadata for downloaded media.

Which tags get written is a fixed lookup on the asset's classification, with
the file extension as a secondary signal. Videos get QuickTime dates, broadly
supported stills get EXIF/IPTC/XMP, PNG/WebP get XMP plus a sidecar because
their containers hold metadata unreliably, and anything else only gets a
sidecar and a file modification time.
"""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass, field
from datetime import tzinfo
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import orjson

from .errors import AssetFetchFailure
from .logging import get_logger
from .timestamps import ResolvedTimestamp

logger = get_logger("genie_sync.stamping")

VIDEO_EXTENSIONS = {"mp4", "mov", "m4v"}
LIMITED_RASTER_EXTENSIONS = {"png", "webp"}
RICH_RASTER_EXTENSIONS = {"jpg", "jpeg", "heic"}

_VIDEO_URL = re.compile(r"\.(mp4|mov|m4v)(\?|$)")
_IMAGE_URL = re.compile(r"\.(jpe?g|heic|png|webp)(\?|$)")

EXIFTOOL_BASE_ARGS = ("-overwrite_original", "-P", "-m")
SIDECAR_TEMPLATE = "%d%f.xmp"


class MediaType(str, Enum):
    VIDEO = "video"
    IMAGE = "image"
    UNKNOWN = "unknown"


class StampKind(str, Enum):
    VIDEO = "video"
    RICH_RASTER = "rich_raster"
    LIMITED_RASTER = "limited_raster"
    GENERIC = "generic"


@dataclass(frozen=True)
class PreparedTimestamp:
    exif: str
    xmp: str
    iptc_date: str
    iptc_time: str
    file: str
    log: str


@dataclass
class StampPlan:
    kind: StampKind
    embedded: Dict[str, str] = field(default_factory=dict)
    sidecar: Dict[str, str] = field(default_factory=dict)


def media_url(media: Mapping[str, Any]) -> Optional[str]:
    for key in ("public_url", "publicUrl"):
        value = media.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def classify_media(media: Mapping[str, Any]) -> MediaType:
    mime = media.get("mimeType")
    if not isinstance(mime, str):
        mime = media.get("type") if isinstance(media.get("type"), str) else ""
    mime = mime.lower()
    if mime.startswith("video/"):
        return MediaType.VIDEO
    if mime.startswith("image/"):
        return MediaType.IMAGE

    url = media_url(media)
    if url:
        lower = url.lower()
        if _VIDEO_URL.search(lower):
            return MediaType.VIDEO
        if _IMAGE_URL.search(lower):
            return MediaType.IMAGE
    return MediaType.UNKNOWN


def derive_caption(note: Mapping[str, Any]) -> Optional[str]:
    """Caption text for Activity notes, whitespace collapsed to single spaces."""

    if note.get("type") != "Activity":
        return None
    raw = next(
        (note.get(key) for key in ("payload", "caption", "description") if note.get(key) is not None),
        None,
    )
    if raw is None:
        return None
    if isinstance(raw, str):
        text = raw
    else:
        text = orjson.dumps(raw, default=str).decode("utf-8")
    text = re.sub(r"\s+", " ", text).strip()
    return text or None


def _offset(value) -> str:
    raw = value.strftime("%z")
    return f"{raw[:3]}:{raw[3:]}" if raw else "+00:00"


def prepare_timestamp(resolved: ResolvedTimestamp, zone: tzinfo) -> PreparedTimestamp:
    local = resolved.instant.astimezone(zone)
    offset = _offset(local)
    xmp = local.strftime("%Y-%m-%dT%H:%M:%S") + offset
    return PreparedTimestamp(
        exif=local.strftime("%Y:%m:%d %H:%M:%S"),
        xmp=xmp,
        iptc_date=local.strftime("%Y:%m:%d"),
        iptc_time=local.strftime("%H:%M:%S") + offset,
        file=xmp,
        log=local.isoformat(),
    )


def stamp_kind(path: Path, media_type: MediaType) -> StampKind:
    extension = path.suffix.lower().lstrip(".")
    if media_type is MediaType.VIDEO or extension in VIDEO_EXTENSIONS:
        return StampKind.VIDEO
    if extension in LIMITED_RASTER_EXTENSIONS:
        return StampKind.LIMITED_RASTER
    if media_type is MediaType.IMAGE or extension in RICH_RASTER_EXTENSIONS:
        return StampKind.RICH_RASTER
    return StampKind.GENERIC


def _xmp_dates(ts: PreparedTimestamp) -> Dict[str, str]:
    return {
        "XMP:CreateDate": ts.xmp,
        "XMP:ModifyDate": ts.xmp,
        "XMP:MetadataDate": ts.xmp,
        "XMP-photoshop:DateCreated": ts.xmp,
    }


def plan_stamp(
    path: Path,
    ts: PreparedTimestamp,
    caption: Optional[str],
    media_type: MediaType,
) -> StampPlan:
    kind = stamp_kind(path, media_type)

    if kind is StampKind.VIDEO:
        embedded = {
            "QuickTime:CreateDate": ts.exif,
            "QuickTime:ModifyDate": ts.exif,
            "QuickTime:TrackCreateDate": ts.exif,
            "QuickTime:TrackModifyDate": ts.exif,
            "QuickTime:MediaCreateDate": ts.exif,
            "QuickTime:MediaModifyDate": ts.exif,
            **_xmp_dates(ts),
            "FileModifyDate": ts.file,
        }
        if caption:
            embedded["QuickTime:Comment"] = caption
            embedded["XMP-dc:Description"] = caption
        return StampPlan(kind=kind, embedded=embedded)

    if kind is StampKind.RICH_RASTER:
        embedded = {
            "AllDates": ts.exif,
            "IPTC:DateCreated": ts.iptc_date,
            "IPTC:TimeCreated": ts.iptc_time,
            **_xmp_dates(ts),
            "FileModifyDate": ts.file,
        }
        if caption:
            embedded["EXIF:ImageDescription"] = caption
            embedded["IPTC:Caption-Abstract"] = caption
            embedded["XMP-dc:Description"] = caption
        return StampPlan(kind=kind, embedded=embedded)

    sidecar = _xmp_dates(ts)
    if caption:
        sidecar["XMP-dc:Description"] = caption

    if kind is StampKind.LIMITED_RASTER:
        embedded = {**_xmp_dates(ts), "FileModifyDate": ts.file}
        if caption:
            embedded["XMP-dc:Description"] = caption
        return StampPlan(kind=kind, embedded=embedded, sidecar=sidecar)

    return StampPlan(kind=kind, embedded={"FileModifyDate": ts.file}, sidecar=sidecar)


def sidecar_path(path: Path) -> Path:
    return path.with_suffix(".xmp")


class ExiftoolWriter:
    """Writes tag mappings through the ``exiftool`` command line tool."""

    def __init__(self, executable: str = "exiftool", timeout: float = 120.0) -> None:
        self.executable = executable
        self.timeout = timeout

    def build_args(self, path: Path, tags: Mapping[str, str], *, sidecar: bool = False) -> List[str]:
        args = [self.executable, *EXIFTOOL_BASE_ARGS]
        args.extend(f"-{name}={value}" for name, value in tags.items())
        if sidecar:
            args.extend(["-o", SIDECAR_TEMPLATE])
        args.append(str(path))
        return args

    def _run(self, args: Sequence[str], path: Path) -> None:
        logger.debug("exiftool_invoked", path=str(path), args=len(args))
        try:
            completed = subprocess.run(
                list(args),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise AssetFetchFailure(str(path), f"exiftool failed to run: {exc}") from exc
        if completed.returncode != 0:
            detail = (completed.stderr or completed.stdout or "").strip()[:200]
            raise AssetFetchFailure(str(path), f"exiftool exited {completed.returncode}: {detail}")

    def write(self, path: Path, tags: Mapping[str, str]) -> None:
        self._run(self.build_args(path, tags), path)

    def write_sidecar(self, path: Path, tags: Mapping[str, str]) -> Path:
        target = sidecar_path(path)
        # exiftool refuses to overwrite with -o
        target.unlink(missing_ok=True)
        self._run(self.build_args(path, tags, sidecar=True), path)
        return target


def apply_stamp(writer: ExiftoolWriter, path: Path, plan: StampPlan) -> None:
    if plan.embedded and plan.kind is not StampKind.GENERIC:
        writer.write(path, plan.embedded)
    if plan.sidecar:
        writer.write_sidecar(path, plan.sidecar)
    if plan.kind is StampKind.GENERIC and plan.embedded:
        writer.write(path, plan.embedded)


__all__ = [
    "ExiftoolWriter",
    "MediaType",
    "PreparedTimestamp",
    "StampKind",
    "StampPlan",
    "apply_stamp",
    "classify_media",
    "derive_caption",
    "media_url",
    "plan_stamp",
    "prepare_timestamp",
    "sidecar_path",
    "stamp_kind",
]
