from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests

from .config import SyncSettings
from .errors import FatalFeedError, TransientFeedError
from .logging import get_logger

logger = get_logger("genie_sync.client")

BODY_PREVIEW_LIMIT = 200


def _truncate_response(response: requests.Response, limit: int = BODY_PREVIEW_LIMIT) -> str:
    try:
        text = response.text
    except Exception:
        return "<unavailable>"
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def _is_transient(status: int) -> bool:
    return status >= 500 or status == 429


def unwrap_items(payload: Any) -> List[Any]:
    """Accept a bare list, an ``items``/``data`` envelope, or a keyed object."""

    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        for key in ("items", "data"):
            inner = payload.get(key)
            if inner is not None:
                return unwrap_items(inner)
        return list(payload.values())
    return []


class GenieClient:
    """JSON transport for the Learning Genie API.

    Server errors and rate limits are retried in a bounded loop with capped
    exponential backoff; any other non-success status is fatal.
    """

    def __init__(
        self,
        session: requests.Session,
        settings: SyncSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session
        self.settings = settings
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        return min(self.settings.retry_base_delay * (2 ** attempt), self.settings.retry_max_delay)

    def get_json(self, url: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        max_retries = max(0, self.settings.max_retries)
        last_error: Optional[TransientFeedError] = None

        for attempt in range(max_retries + 1):
            try:
                response = self.session.get(url, params=params, timeout=self.settings.request_timeout)
            except requests.RequestException as exc:
                last_error = TransientFeedError(url, None, f"{type(exc).__name__}: {exc}")
            else:
                status = response.status_code
                if _is_transient(status):
                    last_error = TransientFeedError(url, status, _truncate_response(response))
                elif not 200 <= status < 300:
                    raise FatalFeedError(url, status, _truncate_response(response))
                else:
                    try:
                        return response.json()
                    except ValueError as exc:
                        raise FatalFeedError(url, status, "invalid JSON body") from exc
                    except requests.RequestException as exc:
                        # body stream broke off mid-read
                        last_error = TransientFeedError(url, status, f"{type(exc).__name__}: {exc}")

            if attempt < max_retries:
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "feed_request_retry",
                    url=url,
                    status=last_error.status if last_error else None,
                    attempt=attempt + 1,
                    delay=delay,
                )
                self._sleep(delay)

        status = last_error.status if last_error else None
        raise FatalFeedError(url, status, f"retries exhausted: {last_error}") from last_error

    def notes_params(self, enrollment_id: str, before_time: str, page_size: int) -> Dict[str, str]:
        params: Dict[str, str] = {}
        if before_time:
            params["before_time"] = before_time
        if page_size:
            params["count"] = str(page_size)
        params["enrollment_id"] = str(enrollment_id)
        if self.settings.note_category:
            params["note_category"] = self.settings.note_category
        params["video_book"] = "true" if self.settings.include_video_book else "false"
        return params

    def fetch_notes(self, enrollment_id: str, before_time: str, page_size: int) -> List[Any]:
        params = self.notes_params(enrollment_id, before_time, page_size)
        logger.debug("notes_page_request", enrollment_id=enrollment_id, before_time=before_time)
        return unwrap_items(self.get_json(self.settings.notes_url, params=params))

    def list_enrollments(self, parent_id: str) -> List[Dict[str, Any]]:
        payload = self.get_json(self.settings.enrollments_url, params={"parent_id": parent_id})
        if isinstance(payload, list):
            return payload
        if isinstance(payload, Mapping) and isinstance(payload.get("data"), list):
            return payload["data"]
        raise FatalFeedError(self.settings.enrollments_url, None, "unexpected enrollments response shape")


__all__ = ["GenieClient", "unwrap_items"]
