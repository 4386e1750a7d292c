from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base exception for Learning Genie sync failures."""

    pass


class ConfigurationError(SyncError):
    """No usable configuration (missing auth state, account id, bad option)."""

    pass


class UnparsableTimestamp(SyncError, ValueError):
    """A candidate timestamp value matched none of the accepted grammars."""

    def __init__(self, raw: str, basis: str) -> None:
        super().__init__(f"unparsable {basis} timestamp: {raw!r}")
        self.raw = raw
        self.basis = basis


class TransientFeedError(SyncError):
    """Server-side or rate-limit failure that is worth retrying."""

    def __init__(self, url: str, status: Optional[int], detail: str = "") -> None:
        message = f"GET {url} failed transiently"
        if status is not None:
            message += f": {status}"
        if detail:
            message += f" {detail}"
        super().__init__(message)
        self.url = url
        self.status = status


class FatalFeedError(SyncError):
    """Non-retryable feed failure, or retries exhausted."""

    def __init__(self, url: str, status: Optional[int], body: str = "") -> None:
        message = f"GET {url} failed"
        if status is not None:
            message += f": {status}"
        if body:
            message += f" {body}"
        super().__init__(message)
        self.url = url
        self.status = status
        self.body = body


class MissingIdentity(SyncError):
    """An enrollment payload carries no usable identifier."""

    pass


class AssetFetchFailure(SyncError):
    """Downloading or stamping a single media asset failed."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


__all__ = [
    "AssetFetchFailure",
    "ConfigurationError",
    "FatalFeedError",
    "MissingIdentity",
    "SyncError",
    "TransientFeedError",
    "UnparsableTimestamp",
]
