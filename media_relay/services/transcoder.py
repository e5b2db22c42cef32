"""Transcoder service driving ffmpeg to produce size-capped H.264/AAC MP4s."""

import asyncio
import codecs
import logging
import re
from pathlib import Path
from typing import Optional, Sequence

from pydantic import BaseModel, Field

from media_relay.models.job import JobProgress, ProgressSink
from media_relay.services.paths import compressed_path_for, remove_quietly
from media_relay.utils.errors import CompressionError

logger = logging.getLogger(__name__)

MB = 1024 * 1024
STDERR_TAIL_CHARS = 4000

DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
TIME_RE = re.compile(r"time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
FPS_RE = re.compile(r"fps=\s*(\d+(?:\.\d+)?)")
SIZE_RE = re.compile(r"size=\s*(\d+\s*[kKmMgG]i?B)")
LINE_SPLIT_RE = re.compile(r"[\r\n]")


class QualityTier(BaseModel):
    """One rung of the quality ladder."""

    label: str = Field(min_length=1)
    height: int = Field(gt=0)
    crf: int = Field(ge=0, le=51)


DEFAULT_LADDER: tuple[QualityTier, ...] = (
    QualityTier(label="720p", height=720, crf=23),
    QualityTier(label="480p", height=480, crf=28),
    QualityTier(label="320p", height=320, crf=32),
)


def _to_seconds(hours: str, minutes: str, seconds: str) -> float:
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


class FfmpegProgressParser:
    """
    Incremental parser for ffmpeg's stderr.

    ffmpeg terminates progress lines with ``\\r`` and header lines with ``\\n``;
    both are treated as line breaks. Text is buffered until a line is complete.
    """

    def __init__(self) -> None:
        self.duration: float = 0.0
        self._buffer = ""
        self._last_message: Optional[str] = None

    def feed(self, text: str) -> list[tuple[float, str]]:
        """
        Consume a chunk of stderr.

        Returns:
            New ``(percent, message)`` events, with identical consecutive
            events dropped
        """
        self._buffer += text
        *lines, self._buffer = LINE_SPLIT_RE.split(self._buffer)
        events: list[tuple[float, str]] = []
        for line in lines:
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[tuple[float, str]]:
        """Parse whatever is left in the buffer once the stream has closed."""
        remainder, self._buffer = self._buffer, ""
        event = self._parse_line(remainder)
        return [event] if event is not None else []

    def _parse_line(self, line: str) -> Optional[tuple[float, str]]:
        if not self.duration:
            duration_match = DURATION_RE.search(line)
            if duration_match:
                self.duration = _to_seconds(*duration_match.groups())
                logger.info(f"Media duration: {self.duration:.2f}s")
                return None

        time_match = TIME_RE.search(line)
        if not time_match:
            return None

        elapsed = _to_seconds(*time_match.groups())
        percent = min(100.0, elapsed / self.duration * 100) if self.duration > 0 else 0.0

        parts = [time_match.group(0).replace(" ", "")]
        fps_match = FPS_RE.search(line)
        if fps_match:
            parts.append(f"{fps_match.group(1)} fps")
        size_match = SIZE_RE.search(line)
        if size_match:
            parts.append(size_match.group(1).replace(" ", ""))
        message = " | ".join(parts)

        key = f"{percent:.1f}% - {message}"
        if key == self._last_message:
            return None
        self._last_message = key
        return percent, message


def build_ffmpeg_args(
    input_path: Path,
    output_path: Path,
    tier: QualityTier,
    preset: str = "slow",
) -> list[str]:
    """Arguments for a browser-friendly H.264 + AAC MP4 encode at ``tier``."""
    return [
        "-hide_banner",
        "-i", str(input_path),
        "-vf", f"scale=-2:{tier.height}",
        "-c:v", "libx264",
        "-crf", str(tier.crf),
        "-preset", preset,
        "-profile:v", "high",
        "-level", "4.2",
        "-pix_fmt", "yuv420p",
        "-threads", "0",
        "-c:a", "aac",
        "-b:a", "128k",
        "-movflags", "+faststart",
        "-y", str(output_path),
    ]


class TranscoderService:
    """Service for compressing downloaded media with ffmpeg."""

    def __init__(
        self,
        temp_dir: Path,
        ffmpeg_path: str = "ffmpeg",
        preset: str = "slow",
        max_output_mb: float = 50.0,
        timeout: Optional[float] = 3600.0,
        ladder: Sequence[QualityTier] = DEFAULT_LADDER,
    ) -> None:
        """
        Initialize the TranscoderService.

        Args:
            temp_dir: Directory receiving ``<job_id>_compressed.mp4``
            ffmpeg_path: ffmpeg executable
            preset: x264 preset
            max_output_mb: Largest acceptable output; bigger results step
                down the ladder
            timeout: Seconds before a single encode is killed, None to disable
            ladder: Quality tiers from best to smallest
        """
        if not ladder:
            raise ValueError("ladder needs at least one tier")
        self.temp_dir = Path(temp_dir)
        self.ffmpeg_path = ffmpeg_path
        self.preset = preset
        self.max_output_bytes = int(max_output_mb * MB)
        self.timeout = timeout
        self.ladder = tuple(ladder)

    async def compress(
        self,
        input_path: Path,
        job_id: str,
        on_progress: Optional[ProgressSink] = None,
    ) -> Optional[Path]:
        """
        Compress ``input_path`` and return the output path.

        Returns:
            Path of the compressed file, or None when even the lowest tier
            exceeds the size cap

        Raises:
            CompressionError: If ffmpeg cannot be started, fails or times out
        """
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        output_path = compressed_path_for(self.temp_dir, job_id)

        for idx, tier in enumerate(self.ladder):
            logger.info(
                f"Compressing {input_path} at {tier.label} (crf {tier.crf}), "
                f"tier {idx + 1}/{len(self.ladder)}"
            )
            try:
                await self._run_ffmpeg(input_path, output_path, tier, on_progress)
            except CompressionError:
                remove_quietly(output_path)
                raise

            size = output_path.stat().st_size if output_path.exists() else 0
            if size <= self.max_output_bytes:
                logger.info(f"Compressed to {output_path} ({size / MB:.1f} MB at {tier.label})")
                if on_progress:
                    on_progress(JobProgress(percentage=100.0, message="Complete"))
                return output_path

            logger.warning(
                f"Output {size / MB:.1f} MB exceeds {self.max_output_bytes / MB:.0f} MB "
                f"at {tier.label}"
            )
            remove_quietly(output_path)

        logger.warning(f"Job {job_id}: too large even at {self.ladder[-1].label}, skipping")
        return None

    async def _run_ffmpeg(
        self,
        input_path: Path,
        output_path: Path,
        tier: QualityTier,
        on_progress: Optional[ProgressSink],
    ) -> None:
        args = build_ffmpeg_args(input_path, output_path, tier, self.preset)
        logger.debug(f"ffmpeg command: {self.ffmpeg_path} {' '.join(args)}")

        try:
            process = await asyncio.create_subprocess_exec(
                self.ffmpeg_path,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CompressionError(f"Failed to start {self.ffmpeg_path}: {e}")

        parser = FfmpegProgressParser()
        stderr_chunks: list[str] = []
        # Reads can end inside a multibyte character.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        def emit(events: list[tuple[float, str]]) -> None:
            for percent, message in events:
                logger.debug(f"Progress: {percent:.1f}% - {message}")
                if on_progress:
                    on_progress(
                        JobProgress(
                            percentage=percent,
                            message=f"Compressing {tier.label}: {percent:.1f}% - {message}",
                        )
                    )

        async def pump() -> int:
            assert process.stderr is not None
            while True:
                chunk = await process.stderr.read(4096)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                stderr_chunks.append(text)
                emit(parser.feed(text))
            tail = decoder.decode(b"", final=True)
            if tail:
                stderr_chunks.append(tail)
                emit(parser.feed(tail))
            emit(parser.flush())
            return await process.wait()

        try:
            returncode = await asyncio.wait_for(pump(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise CompressionError(
                f"ffmpeg timed out after {self.timeout}s",
                stderr="".join(stderr_chunks)[-STDERR_TAIL_CHARS:],
            )

        if returncode != 0:
            stderr = "".join(stderr_chunks)[-STDERR_TAIL_CHARS:]
            logger.error(f"ffmpeg failed with code {returncode}")
            raise CompressionError(f"ffmpeg failed ({returncode})", returncode, stderr)


def create_transcoder_service() -> TranscoderService:
    """
    Create a TranscoderService instance using application settings.

    Returns:
        Configured TranscoderService instance
    """
    from media_relay.config import get_settings
    from media_relay.services.paths import resolve_temp_dir

    settings = get_settings()
    return TranscoderService(
        temp_dir=resolve_temp_dir(settings),
        ffmpeg_path=settings.ffmpeg_path,
        preset=settings.ffmpeg_preset,
        max_output_mb=settings.max_output_mb,
        timeout=settings.transcode_timeout_seconds or None,
    )
