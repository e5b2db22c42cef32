"""Utility modules for Media Relay."""

from media_relay.utils.errors import (
    CompressionError,
    DownloadError,
    MediaRelayError,
    PersistenceError,
    PublishError,
    TeraBoxAPIError,
)
from media_relay.utils.retry import with_retry

__all__ = [
    "MediaRelayError",
    "DownloadError",
    "CompressionError",
    "PublishError",
    "TeraBoxAPIError",
    "PersistenceError",
    "with_retry",
]
