"""Pytest fixtures and fake stage services for Media Relay tests."""

import asyncio
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from media_relay.models.job import JobProgress
from media_relay.utils.errors import CompressionError, DownloadError


async def settle(rounds: int = 50) -> None:
    """Give every runnable task a chance to advance."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ConcurrencyTracker:
    """Counts how many calls are inside a stage at once."""

    def __init__(self) -> None:
        self.current = 0
        self.peak = 0
        self.calls: list[str] = []

    def enter(self, key: str) -> None:
        self.calls.append(key)
        self.current += 1
        self.peak = max(self.peak, self.current)

    def leave(self) -> None:
        self.current -= 1


class FakeFetcher:
    """Writes a tiny source file after an optional gate opens."""

    def __init__(
        self,
        temp_dir: Path,
        fail_urls: Optional[set[str]] = None,
        gates: Optional[dict[str, asyncio.Event]] = None,
        steps: int = 1,
        observer: Optional[Callable[[], None]] = None,
    ) -> None:
        self.temp_dir = temp_dir
        self.fail_urls = fail_urls or set()
        self.gates = gates or {}
        self.steps = steps
        self.observer = observer
        self.tracker = ConcurrencyTracker()

    async def download(self, url: str, job_id: str, on_progress: Any) -> Path:
        self.tracker.enter(url)
        try:
            if url in self.gates:
                await self.gates[url].wait()
            for step in range(self.steps):
                if self.observer:
                    self.observer()
                on_progress(JobProgress(percentage=100.0 * step / self.steps))
                await asyncio.sleep(0)
            if url in self.fail_urls:
                raise DownloadError(f"Download failed: 404 for {url}", status_code=404)
            path = self.temp_dir / f"{job_id}_source.mp4"
            path.write_bytes(b"source-bytes")
            return path
        finally:
            self.tracker.leave()


class FakeTranscoder:
    """Copies input to ``<job_id>_compressed.mp4``; can fail or report too large."""

    def __init__(
        self,
        temp_dir: Path,
        fail_jobs: Optional[set[str]] = None,
        too_large_jobs: Optional[set[str]] = None,
        gates: Optional[dict[str, asyncio.Event]] = None,
        steps: int = 1,
        observer: Optional[Callable[[], None]] = None,
    ) -> None:
        self.temp_dir = temp_dir
        self.fail_jobs = fail_jobs or set()
        self.too_large_jobs = too_large_jobs or set()
        self.gates = gates or {}
        self.steps = steps
        self.observer = observer
        self.tracker = ConcurrencyTracker()
        self.inputs: list[Path] = []

    async def compress(self, input_path: Path, job_id: str, on_progress: Any) -> Optional[Path]:
        self.tracker.enter(job_id)
        self.inputs.append(Path(input_path))
        try:
            if job_id in self.gates:
                await self.gates[job_id].wait()
            for _ in range(self.steps):
                if self.observer:
                    self.observer()
                await asyncio.sleep(0)
            if job_id in self.fail_jobs:
                raise CompressionError("ffmpeg failed (1)", 1, "moov atom not found")
            if job_id in self.too_large_jobs:
                return None
            output = self.temp_dir / f"{job_id}_compressed.mp4"
            output.write_bytes(Path(input_path).read_bytes())
            return output
        finally:
            self.tracker.leave()


class FakePublisher:
    """Records published artifacts and returns a mock reference."""

    def __init__(self, steps: int = 1, observer: Optional[Callable[[], None]] = None) -> None:
        self.steps = steps
        self.observer = observer
        self.tracker = ConcurrencyTracker()
        self.published: list[Path] = []

    async def publish(self, artifact_path: Path, job_ref: str, on_progress: Any = None) -> str:
        self.tracker.enter(job_ref)
        try:
            for _ in range(self.steps):
                if self.observer:
                    self.observer()
                await asyncio.sleep(0)
            assert Path(artifact_path).exists()
            self.published.append(Path(artifact_path))
            return f"mock://{job_ref}"
        finally:
            self.tracker.leave()


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Isolated directory standing in for the system temp dir."""
    path = tmp_path / "media"
    path.mkdir()
    return path


@pytest.fixture
def sample_ffmpeg_stderr() -> str:
    """Abbreviated ffmpeg stderr for a 10 second input."""
    return (
        "Input #0, mov,mp4,m4a,3gp,3g2,mj2, from 'in.mp4':\n"
        "  Duration: 00:00:10.00, start: 0.000000, bitrate: 1205 kb/s\n"
        "frame=   60 fps= 30 q=28.0 size=     256kB time=00:00:02.50 bitrate= 838.9kbits/s\r"
        "frame=  120 fps= 30 q=28.0 size=     512kB time=00:00:05.00 bitrate= 838.9kbits/s\r"
        "frame=  120 fps= 30 q=28.0 size=     512kB time=00:00:05.00 bitrate= 838.9kbits/s\r"
        "frame=  240 fps= 31 q=-1.0 Lsize=    1024kB time=00:00:10.00 bitrate= 838.9kbits/s\n"
    )


class FakeProcess:
    """Stands in for an asyncio subprocess writing to stderr."""

    def __init__(self, stderr_text: str, returncode: int, finish: bool = True) -> None:
        self.stderr = asyncio.StreamReader()
        self.stderr.feed_data(stderr_text.encode())
        if finish:
            self.stderr.feed_eof()
        self._returncode = returncode
        self.returncode: Optional[int] = None
        self.killed = False

    async def wait(self) -> int:
        self.returncode = -9 if self.killed else self._returncode
        return self.returncode

    def kill(self) -> None:
        self.killed = True


class FakeFfmpeg:
    """Replacement for asyncio.create_subprocess_exec.

    Each call writes an output file of the next configured size.
    """

    def __init__(
        self,
        stderr_text: str = "",
        returncode: int = 0,
        output_sizes: Optional[list[int]] = None,
        finish: bool = True,
    ) -> None:
        self.stderr_text = stderr_text
        self.returncode = returncode
        self.output_sizes = list(output_sizes or [100])
        self.finish = finish
        self.calls: list[tuple[str, ...]] = []
        self.processes: list[FakeProcess] = []

    async def __call__(self, *args: str, **kwargs) -> FakeProcess:
        self.calls.append(args)
        size = self.output_sizes.pop(0) if self.output_sizes else 100
        Path(args[-1]).write_bytes(b"\0" * size)
        process = FakeProcess(self.stderr_text, self.returncode, self.finish)
        self.processes.append(process)
        return process
