"""Soft per-run cap on media assets.

An enrollment's backlog can hold far more media than one run should
download. The limiter counts individual assets rather than notes and drains
the backlog oldest first, so the persisted watermark advances steadily and a
small cap never strands old assets behind a stream of new ones. Assets that
share the boundary instant are taken together so one upload batch is never
split across runs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

from .timestamps import extract_timestamp, find_latest_timestamp, resolve_asset_timestamp


@dataclass(frozen=True, slots=True)
class AssetRecord:
    item_index: int
    media_index: int
    instant: Optional[datetime]

    def sort_key(self) -> tuple:
        # absent instants sort after every resolved one
        return (
            self.instant is None,
            self.instant or datetime.max.replace(tzinfo=timezone.utc),
            self.item_index,
            self.media_index,
        )


@dataclass(frozen=True)
class SoftLimitResult:
    filtered_items: List[Any]
    total_assets: int
    selected_assets: int
    limited: bool
    latest_timestamp: Optional[datetime]
    cutoff_timestamp: Optional[datetime]


def _media_list(item: Any) -> Optional[list]:
    if not isinstance(item, Mapping):
        return None
    media = item.get("media")
    return media if isinstance(media, list) else None


def collect_asset_records(items: Sequence[Any], zone: tzinfo = timezone.utc) -> List[AssetRecord]:
    records: List[AssetRecord] = []
    for item_index, item in enumerate(items):
        media = _media_list(item)
        if not media:
            continue
        parent = extract_timestamp(item, zone)
        for media_index, entry in enumerate(media):
            if not isinstance(entry, Mapping):
                continue
            resolved = resolve_asset_timestamp(entry, item, zone, parent=parent)
            records.append(
                AssetRecord(
                    item_index=item_index,
                    media_index=media_index,
                    instant=resolved.instant if resolved else None,
                )
            )
    return records


def select_records(records: Sequence[AssetRecord], max_assets: int) -> List[AssetRecord]:
    """Oldest-first selection up to ``max_assets``, extended through boundary ties."""

    ordered = sorted(records, key=AssetRecord.sort_key)
    selected: List[AssetRecord] = []
    boundary: Optional[datetime] = None
    for record in ordered:
        if len(selected) < max_assets:
            selected.append(record)
            if record.instant is not None:
                boundary = record.instant
            continue
        if boundary is not None and record.instant == boundary:
            selected.append(record)
            continue
        break
    return selected


def _rebuild(items: Sequence[Any], selected: Sequence[AssetRecord]) -> List[Any]:
    by_item: Dict[int, Set[int]] = {}
    for record in selected:
        by_item.setdefault(record.item_index, set()).add(record.media_index)

    filtered: List[Any] = []
    for item_index, item in enumerate(items):
        media = _media_list(item)
        if not media:
            # notes without media are never subject to the cap
            filtered.append(item)
            continue
        keep = by_item.get(item_index)
        if not keep:
            continue
        clone = dict(item)
        clone["media"] = [entry for idx, entry in enumerate(media) if idx in keep]
        filtered.append(clone)
    return filtered


def apply_soft_asset_limit(
    items: Sequence[Any],
    max_assets: int,
    zone: tzinfo = timezone.utc,
) -> SoftLimitResult:
    if max_assets <= 0:
        raise ValueError("max_assets must be positive")

    items = list(items)
    records = collect_asset_records(items, zone)
    total = len(records)

    if total <= max_assets:
        return SoftLimitResult(
            filtered_items=items,
            total_assets=total,
            selected_assets=total,
            limited=False,
            latest_timestamp=find_latest_timestamp(items, zone),
            cutoff_timestamp=None,
        )

    selected = select_records(records, max_assets)
    cutoff = max((r.instant for r in selected if r.instant is not None), default=None)

    if len(selected) >= total:
        return SoftLimitResult(
            filtered_items=items,
            total_assets=total,
            selected_assets=total,
            limited=False,
            latest_timestamp=find_latest_timestamp(items, zone),
            cutoff_timestamp=cutoff,
        )

    filtered = _rebuild(items, selected)
    latest = cutoff or find_latest_timestamp(filtered, zone)
    return SoftLimitResult(
        filtered_items=filtered,
        total_assets=total,
        selected_assets=len(selected),
        limited=True,
        latest_timestamp=latest,
        cutoff_timestamp=cutoff,
    )


__all__ = [
    "AssetRecord",
    "SoftLimitResult",
    "apply_soft_asset_limit",
    "collect_asset_records",
    "select_records",
]
