"""Authenticated request context from a saved browser storage state.

Logging in is done elsewhere (an interactive browser session saves its
cookies, local storage and the API headers it observed). This module only
reads that file and turns it into a ``requests.Session``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import orjson
import requests

from .errors import ConfigurationError
from .logging import get_logger
from .models import parse_offset_hours

logger = get_logger("genie_sync.session")

WEB_ORIGIN = "https://web.learning-genie.com"
DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:120.0) Gecko/20100101 Firefox/120.0"
SAVED_HEADERS_KEY = "__extraHTTPHeaders"
UID_HEADER = "x-uid"


@dataclass
class AuthState:
    cookies: List[Dict[str, Any]] = field(default_factory=list)
    origins: List[Dict[str, Any]] = field(default_factory=list)
    saved_headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def load(cls, path: Path) -> "AuthState":
        if not path.exists():
            raise ConfigurationError(f"auth state not found at {path}")
        try:
            raw = orjson.loads(path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as exc:
            raise ConfigurationError(f"auth state at {path} is unreadable: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigurationError(f"auth state at {path} is not a JSON object")

        saved = raw.get(SAVED_HEADERS_KEY) or {}
        return cls(
            cookies=[c for c in raw.get("cookies") or [] if isinstance(c, dict)],
            origins=[o for o in raw.get("origins") or [] if isinstance(o, dict)],
            saved_headers={str(k).lower(): str(v) for k, v in saved.items() if v} if isinstance(saved, dict) else {},
        )

    def local_storage(self, key: str) -> Optional[str]:
        for origin in self.origins:
            for entry in origin.get("localStorage") or []:
                if isinstance(entry, dict) and entry.get("name") == key:
                    return entry.get("value")
        return None

    def group_field(self, key: str) -> Any:
        raw = self.local_storage("group")
        if not raw:
            return None
        try:
            group = orjson.loads(raw)
        except orjson.JSONDecodeError:
            return None
        if isinstance(group, dict):
            return group.get(key)
        return None

    def language(self) -> Optional[str]:
        raw = self.local_storage("NG_TRANSLATE_LANG_KEY")
        if not raw:
            return None
        try:
            parsed = orjson.loads(raw)
        except orjson.JSONDecodeError:
            return raw
        return parsed if isinstance(parsed, str) else None


def _local_offset_hours() -> float:
    offset = datetime.now().astimezone().utcoffset()
    return offset.total_seconds() / 3600 if offset else 0.0


def _format_offset(hours: float) -> str:
    return str(int(hours)) if float(hours).is_integer() else str(hours)


def build_api_headers(
    state: AuthState,
    *,
    uid: Optional[str] = None,
    allow_missing_uid: bool = False,
) -> Dict[str, str]:
    """Merge defaults, captured headers and values inferred from local storage."""

    headers: Dict[str, str] = {
        "accept": "application/json, text/plain, */*",
        "origin": WEB_ORIGIN,
        "referer": WEB_ORIGIN + "/",
        "user-agent": DEFAULT_USER_AGENT,
        "x-lg-platform": "web",
    }
    headers.update(state.saved_headers)

    if not headers.get("accept-language"):
        language = state.language()
        if language:
            headers["accept-language"] = language
    if not headers.get("x-lg-language") and headers.get("accept-language"):
        headers["x-lg-language"] = headers["accept-language"].split(",")[0] or "en-US"

    if not headers.get("x-center-id"):
        center_id = state.group_field("center_id")
        headers["x-center-id"] = str(center_id) if center_id else "null"

    if not headers.get("x-lg-timezoneoffset"):
        offset = parse_offset_hours(state.group_field("timezone"))
        headers["x-lg-timezoneoffset"] = _format_offset(offset if offset is not None else _local_offset_hours())

    if not headers.get(UID_HEADER) and uid and uid.strip():
        headers[UID_HEADER] = uid.strip()

    headers.setdefault("accept-language", "en-US,en;q=0.9")

    cleaned = {key: str(value) for key, value in headers.items() if value not in (None, "")}
    if not cleaned.get(UID_HEADER) and not allow_missing_uid:
        raise ConfigurationError(
            "Missing X-UID header. Re-capture the auth state or provide LG_UID."
        )
    return cleaned


def build_session(state: AuthState, headers: Mapping[str, str]) -> requests.Session:
    session = requests.Session()
    session.headers.update(headers)
    for cookie in state.cookies:
        name, value = cookie.get("name"), cookie.get("value")
        if not name or value is None:
            continue
        session.cookies.set(
            name,
            value,
            domain=cookie.get("domain") or "",
            path=cookie.get("path") or "/",
        )
    logger.debug("session_built", cookies=len(state.cookies), headers=sorted(headers))
    return session


__all__ = ["AuthState", "build_api_headers", "build_session"]
