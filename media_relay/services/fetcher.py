"""Resumable HTTP fetcher that streams source media to the temp directory."""

import logging
import re
import time
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlparse

import httpx

from media_relay.models.job import JobProgress, ProgressSink
from media_relay.utils.errors import DownloadError
from media_relay.utils.retry import with_retry

logger = logging.getLogger(__name__)

MB = 1024 * 1024
MEDIA_EXTENSIONS = {".mp4", ".m4v", ".mkv", ".webm", ".mov", ".avi", ".ts", ".flv", ".wmv"}
CONTENT_RANGE_RE = re.compile(r"bytes\s+(?:\d+-\d+|\*)/(\d+|\*)")


def source_path_for(temp_dir: Path, job_id: str, url: str) -> Path:
    """Local path of the downloaded source for a job."""
    suffix = Path(urlparse(url).path).suffix.lower()
    if suffix not in MEDIA_EXTENSIONS:
        suffix = ".mp4"
    return temp_dir / f"{job_id}_source{suffix}"


def parse_content_range_total(header: Optional[str]) -> Optional[int]:
    """Return the complete length from a ``Content-Range`` header, if known."""
    if not header:
        return None
    match = CONTENT_RANGE_RE.match(header.strip())
    if not match or match.group(1) == "*":
        return None
    return int(match.group(1))


class FetcherService:
    """Downloads a URL to ``<temp_dir>/<job_id>_source.<ext>``, resuming partial files."""

    def __init__(
        self,
        temp_dir: Path,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        timeout: float = 60.0,
        chunk_size: int = 64 * 1024,
        progress_interval: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the FetcherService.

        Args:
            temp_dir: Directory that receives partial and finished downloads
            max_retries: Retries after the first attempt before giving up
            retry_delay: Linear backoff step in seconds (2s, 4s, 6s, ...)
            timeout: httpx timeout applied to each attempt
            chunk_size: Bytes requested per streamed chunk
            progress_interval: Minimum seconds between progress callbacks
            transport: Optional httpx transport (tests use MockTransport)
            clock: Monotonic clock used for progress throttling
        """
        self.temp_dir = Path(temp_dir)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.progress_interval = progress_interval
        self._transport = transport
        self._clock = clock

    async def download(
        self,
        url: str,
        job_id: str,
        on_progress: Optional[ProgressSink] = None,
    ) -> Path:
        """
        Download ``url`` for ``job_id`` and return the local path.

        Each attempt resumes from whatever a previous attempt left on disk.

        Raises:
            DownloadError: After all attempts have failed
        """
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        target = source_path_for(self.temp_dir, job_id, url)
        logger.info(f"Starting download for job {job_id} from {url}")

        attempt = with_retry(
            max_attempts=self.max_retries + 1,
            base_delay=self.retry_delay,
            backoff="linear",
        )(self._download_once)

        try:
            return await attempt(url, target, on_progress)
        except DownloadError:
            raise
        except Exception as e:
            raise DownloadError(f"Download failed for {url}: {e}") from e

    async def _download_once(
        self,
        url: str,
        target: Path,
        on_progress: Optional[ProgressSink],
    ) -> Path:
        offset = target.stat().st_size if target.exists() else 0
        headers: dict[str, str] = {}
        if offset > 0:
            headers["Range"] = f"bytes={offset}-"
            logger.info(f"Resuming {target.name} from byte {offset}")

        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=self.timeout,
            follow_redirects=True,
        ) as client:
            async with client.stream("GET", url, headers=headers) as response:
                if response.status_code == 416 and offset > 0:
                    total = parse_content_range_total(response.headers.get("content-range"))
                    if total == offset:
                        logger.info(f"{target.name} was already complete ({offset} bytes)")
                        self._report(on_progress, offset, total, final=True)
                        return target
                    if total is not None and total < offset:
                        logger.warning(
                            f"{target.name} has {offset} bytes but the source has {total}, "
                            f"discarding partial file"
                        )
                        target.unlink()
                        # offset is 0 on the next pass, so no range is sent
                        return await self._download_once(url, target, on_progress)

                if response.status_code not in (200, 206):
                    raise DownloadError(
                        f"Download failed: {response.status_code}",
                        status_code=response.status_code,
                    )

                if response.status_code == 200 and offset > 0:
                    logger.warning(f"Range ignored by server, restarting {target.name}")
                    offset = 0

                total = self._total_size(response, offset)
                if total:
                    logger.info(f"File size: {total / MB:.2f} MB")
                else:
                    logger.info("File size: unknown")

                downloaded = offset
                last_report = self._clock()
                with open(target, "ab" if offset else "wb") as fh:
                    async for chunk in response.aiter_bytes(self.chunk_size):
                        fh.write(chunk)
                        downloaded += len(chunk)

                        now = self._clock()
                        if now - last_report >= self.progress_interval:
                            self._report(on_progress, downloaded, total)
                            last_report = now
                    fh.flush()

        if total is not None and downloaded < total:
            raise DownloadError(f"Stream ended early: {downloaded}/{total} bytes")

        self._report(on_progress, downloaded, total, final=True)
        logger.info(f"Downloaded {downloaded / MB:.2f} MB to {target}")
        return target

    @staticmethod
    def _total_size(response: httpx.Response, offset: int) -> Optional[int]:
        if response.status_code == 206:
            total = parse_content_range_total(response.headers.get("content-range"))
            if total is not None:
                return total
        content_length = response.headers.get("content-length")
        if content_length and content_length.isdigit():
            return int(content_length) + (offset if response.status_code == 206 else 0)
        return None

    @staticmethod
    def _report(
        on_progress: Optional[ProgressSink],
        downloaded: int,
        total: Optional[int],
        final: bool = False,
    ) -> None:
        if on_progress is None:
            return

        current_mb = downloaded / MB
        total_mb = total / MB if total else None
        if final:
            percent = 100.0
        elif total:
            percent = min(100.0, downloaded / total * 100)
        else:
            percent = 0.0

        if total_mb is not None:
            message = f"Downloading: {percent:.1f}% ({current_mb:.1f}/{total_mb:.1f} MB)"
        else:
            message = f"Downloading: {current_mb:.1f} MB"

        on_progress(
            JobProgress(
                percentage=percent,
                size_current_mb=current_mb,
                size_total_mb=total_mb,
                message=message,
            )
        )


def create_fetcher_service() -> FetcherService:
    """
    Create a FetcherService instance using application settings.

    Returns:
        Configured FetcherService instance
    """
    from media_relay.config import get_settings
    from media_relay.services.paths import resolve_temp_dir

    settings = get_settings()
    return FetcherService(
        temp_dir=resolve_temp_dir(settings),
        max_retries=settings.download_max_retries,
        retry_delay=settings.download_retry_delay_seconds,
        timeout=settings.download_timeout_seconds,
        chunk_size=settings.download_chunk_size,
        progress_interval=settings.progress_interval_seconds,
    )
