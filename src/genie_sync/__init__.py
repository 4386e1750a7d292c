"""Learning Genie media sync."""

from .config import SyncSettings, get_settings
from .errors import (
    AssetFetchFailure,
    ConfigurationError,
    FatalFeedError,
    MissingIdentity,
    SyncError,
    TransientFeedError,
    UnparsableTimestamp,
)
from .sync import SyncReport, SyncRunner

__all__ = [
    "AssetFetchFailure",
    "ConfigurationError",
    "FatalFeedError",
    "MissingIdentity",
    "SyncError",
    "SyncReport",
    "SyncRunner",
    "SyncSettings",
    "TransientFeedError",
    "UnparsableTimestamp",
    "get_settings",
]
