from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import tzinfo
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence, Set, Tuple
from urllib.parse import unquote, urlparse

import backoff
import requests

from .errors import AssetFetchFailure
from .logging import get_logger
from .stamping import (
    ExiftoolWriter,
    MediaType,
    apply_stamp,
    classify_media,
    derive_caption,
    media_url,
    plan_stamp,
    prepare_timestamp,
)
from .timestamps import ResolvedTimestamp, extract_timestamp, resolve_asset_timestamp

logger = get_logger("genie_sync.downloader")

CHUNK_SIZE = 64 * 1024
PARTIAL_SUFFIX = ".partial"
_KNOWN_EXTENSIONS = (
    (".jpeg", ".jpg"),
    (".jpg", ".jpg"),
    (".png", ".png"),
    (".webp", ".webp"),
    (".heic", ".heic"),
    (".mp4", ".mp4"),
    (".mov", ".mov"),
    (".m4v", ".m4v"),
)


@dataclass
class MediaDescriptor:
    url: str
    timestamp: Optional[ResolvedTimestamp]
    caption: Optional[str]
    media_type: MediaType


@dataclass
class DownloadReport:
    succeeded: List[Path] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)
    unstamped: List[Path] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


def collect_media_entries(items: Sequence[Any], zone: tzinfo) -> List[MediaDescriptor]:
    descriptors: List[MediaDescriptor] = []
    for item in items:
        if not isinstance(item, Mapping) or not isinstance(item.get("media"), list):
            continue
        parent = extract_timestamp(item, zone)
        caption = derive_caption(item)
        for entry in item["media"]:
            if not isinstance(entry, Mapping):
                continue
            url = media_url(entry)
            if not url:
                continue
            descriptors.append(
                MediaDescriptor(
                    url=url,
                    timestamp=resolve_asset_timestamp(entry, item, zone, parent=parent),
                    caption=caption,
                    media_type=classify_media(entry),
                )
            )
    return descriptors


def guess_extension(url: str) -> str:
    lower = url.lower()
    for needle, extension in _KNOWN_EXTENSIONS:
        if needle in lower:
            return extension
    return ".bin"


def destination_filename(outdir: Path, url: str, index: int, reserved: Set[str]) -> str:
    """Filename derived from the URL path, suffixed ``-N`` until unused."""

    base = Path(unquote(urlparse(url).path)).name
    path = Path(base)
    stem = path.stem if base else ""
    stem = stem or f"media-{index}"
    extension = path.suffix or guess_extension(url)

    candidate = f"{stem}{extension}"
    attempt = 1
    while candidate in reserved or (outdir / candidate).exists():
        candidate = f"{stem}-{attempt}{extension}"
        attempt += 1
    reserved.add(candidate)
    return candidate


class MediaDownloader:
    """Downloads assets and stamps capture metadata with a bounded worker pool.

    A failing asset is logged and skipped; it never aborts its siblings.
    """

    def __init__(
        self,
        writer: ExiftoolWriter,
        zone: tzinfo,
        *,
        session: Optional[requests.Session] = None,
        concurrency: int = 6,
        timeout: float = 60.0,
    ) -> None:
        self.writer = writer
        self.zone = zone
        self.session = session or requests.Session()
        self.concurrency = max(1, concurrency)
        self.timeout = timeout

    @backoff.on_exception(backoff.expo, (requests.ConnectionError, requests.Timeout), max_tries=3)
    def _fetch(self, url: str, destination: Path) -> None:
        partial = destination.with_name(destination.name + PARTIAL_SUFFIX)
        with self.session.get(url, stream=True, timeout=self.timeout) as response:
            if response.status_code != 200:
                raise AssetFetchFailure(url, f"download failed: {response.status_code} {response.reason}")
            try:
                with partial.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
                partial.replace(destination)
            except BaseException:
                partial.unlink(missing_ok=True)
                raise

    def handle(self, descriptor: MediaDescriptor, destination: Path) -> bool:
        """Download one asset and stamp it; returns whether metadata was written."""

        try:
            self._fetch(descriptor.url, destination)
        except requests.RequestException as exc:
            raise AssetFetchFailure(descriptor.url, str(exc)) from exc

        if descriptor.timestamp is None:
            logger.warning("asset_timestamp_missing", url=descriptor.url, path=str(destination))
            return False

        prepared = prepare_timestamp(descriptor.timestamp, self.zone)
        plan = plan_stamp(destination, prepared, descriptor.caption, descriptor.media_type)
        apply_stamp(self.writer, destination, plan)
        logger.info(
            "asset_stamped",
            path=destination.name,
            kind=plan.kind.value,
            captured_at=prepared.log,
            raw=descriptor.timestamp.raw,
        )
        return True

    def run(self, items: Sequence[Any], outdir: Path, *, label: str = "") -> DownloadReport:
        report = DownloadReport()
        descriptors = collect_media_entries(items, self.zone)
        if not descriptors:
            logger.info("download_nothing_to_do", label=label)
            return report

        outdir.mkdir(parents=True, exist_ok=True)
        reserved: Set[str] = set()
        jobs = [
            (descriptor, outdir / destination_filename(outdir, descriptor.url, index, reserved))
            for index, descriptor in enumerate(descriptors)
        ]
        logger.info("download_started", label=label, count=len(jobs), outdir=str(outdir), workers=self.concurrency)

        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            futures = {executor.submit(self.handle, descriptor, path): (descriptor, path) for descriptor, path in jobs}
            for future in as_completed(futures):
                descriptor, path = futures[future]
                try:
                    stamped = future.result()
                except (AssetFetchFailure, OSError) as exc:
                    logger.warning("asset_failed", url=descriptor.url, error=str(exc))
                    report.failed.append((descriptor.url, str(exc)))
                    continue
                report.succeeded.append(path)
                if not stamped:
                    report.unstamped.append(path)

        logger.info(
            "download_complete",
            label=label,
            succeeded=len(report.succeeded),
            failed=len(report.failed),
        )
        return report


__all__ = [
    "DownloadReport",
    "MediaDescriptor",
    "MediaDownloader",
    "collect_media_entries",
    "destination_filename",
    "guess_extension",
]
