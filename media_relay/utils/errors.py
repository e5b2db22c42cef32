"""Custom exception classes for Media Relay."""

from typing import Optional


class MediaRelayError(Exception):
    """Base exception for all application errors."""

    pass


class DownloadError(MediaRelayError):
    """The fetcher could not retrieve the source."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class CompressionError(MediaRelayError):
    """The transcoder process failed to start, crashed or timed out."""

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        self.returncode = returncode
        self.stderr = stderr
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)


class PublishError(MediaRelayError):
    """Errors from the publisher."""

    pass


class TeraBoxAPIError(PublishError):
    """TeraBox API returned an error."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(f"TeraBox error {status_code}: {message}")


class PersistenceError(MediaRelayError):
    """Media was published but the content record could not be written back."""

    def __init__(self, item_id: int, message: str) -> None:
        self.item_id = item_id
        super().__init__(f"Failed to update item {item_id}: {message}")
