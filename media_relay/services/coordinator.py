"""Pipeline coordinator: job records, per-stage lanes and scheduling sweeps.

Every job passes through three stages (download, compress, upload). Each stage
has its own lane with a concurrency limit, so different jobs can occupy
different stages at the same time. After every submission and every stage
completion the coordinator sweeps all lanes and claims the oldest eligible job
for each free slot.

All state changes happen synchronously between awaits on the event loop, so no
lock guards the job map or the lanes.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from media_relay.models.job import (
    STATUS_ORDER,
    Job,
    JobProgress,
    JobStatus,
    ProgressSink,
    QueueSnapshot,
    Stage,
)
from media_relay.services.paths import compressed_path_for, remove_quietly
from media_relay.utils.errors import MediaRelayError

logger = logging.getLogger(__name__)

SKIPPED_TOO_LARGE = "SkippedTooLarge"
SKIPPED_MESSAGE = "File too large even at the lowest quality tier. Skipped upload."

# Status a job must hold to be picked up by each lane.
ENTRY_STATUS: dict[Stage, JobStatus] = {
    Stage.DOWNLOAD: "queued",
    Stage.COMPRESS: "compressing",
    Stage.UPLOAD: "uploading",
}


class Lane:
    """Concurrency slots for one stage."""

    def __init__(self, stage: Stage, limit: int) -> None:
        if limit < 1:
            raise ValueError(f"{stage.value} lane needs a limit of at least 1")
        self.stage = stage
        self.limit = limit
        self.active: list[str] = []

    @property
    def has_capacity(self) -> bool:
        return len(self.active) < self.limit


def describe_status(snapshot: QueueSnapshot) -> str:
    """One-line human readable summary of a snapshot."""
    parts = [f"queued: {snapshot.queued_count}"]
    for stage, job in snapshot.per_stage.items():
        if job is None:
            parts.append(f"{stage.value}: -")
        else:
            parts.append(f"{stage.value}: {job.progress.percentage:.0f}%")
    parts.append(f"done: {snapshot.done_count}")
    parts.append(f"failed: {snapshot.error_count}")
    parts.append(f"skipped: {snapshot.skipped_count}")
    return " | ".join(parts)


class PipelineCoordinator:
    """Owns every job and advances it through the stage lanes."""

    def __init__(
        self,
        fetcher: Any,
        transcoder: Any,
        publisher: Any,
        content_db: Optional[Any] = None,
        concurrency: Optional[dict[Stage, int]] = None,
        temp_dir: Optional[Path] = None,
        retention_seconds: Optional[float] = None,
        status_log_interval: float = 0.0,
    ) -> None:
        """
        Initialize the PipelineCoordinator.

        Args:
            fetcher: Object with ``download(url, job_id, on_progress)``
            transcoder: Object with ``compress(path, job_id, on_progress)``
            publisher: Object with ``publish(path, job_ref, on_progress)``
            content_db: Optional object with ``mark_published(item_id, ref)``
            concurrency: Per-stage lane limits, 1 for any stage not given
            temp_dir: Directory scanned for leftover artifacts on cleanup
            retention_seconds: Drop finished jobs older than this, None keeps all
            status_log_interval: Seconds between status log lines, 0 disables
        """
        self.fetcher = fetcher
        self.transcoder = transcoder
        self.publisher = publisher
        self.content_db = content_db
        self.temp_dir = Path(temp_dir) if temp_dir else None
        self.retention_seconds = retention_seconds
        self.status_log_interval = status_log_interval

        limits = {stage: 1 for stage in Stage}
        limits.update(concurrency or {})
        self._lanes = {stage: Lane(stage, limits[stage]) for stage in Stage}
        self._jobs: dict[str, Job] = {}
        self._tasks: set[asyncio.Task] = set()
        self._status_task: Optional[asyncio.Task] = None
        self._handlers: dict[Stage, Callable[[Job], Awaitable[None]]] = {
            Stage.DOWNLOAD: self._run_download,
            Stage.COMPRESS: self._run_compress,
            Stage.UPLOAD: self._run_upload,
        }

    # ==================== PUBLIC API ====================

    def submit(
        self,
        source: str,
        is_local_file: bool = False,
        item_id: Optional[int] = None,
        source_url: Optional[str] = None,
    ) -> str:
        """
        Register a job and start scheduling it. Returns immediately.

        Must be called while the event loop is running.

        Args:
            source: Source URL, or a local file path when ``is_local_file``
            is_local_file: Skip the download stage and compress ``source``
            item_id: Catalog row to update after publishing
            source_url: Label kept on local-file jobs (defaults to ``source``)

        Returns:
            The new job id

        Raises:
            ValueError: If ``source`` is empty, or is a local file outside
                ``temp_dir``
        """
        if not source or not source.strip():
            raise ValueError("source must not be empty")

        if is_local_file:
            # The job deletes its input, so it may only own files in temp_dir.
            if self.temp_dir is None or not Path(source).resolve().is_relative_to(
                self.temp_dir.resolve()
            ):
                raise ValueError(f"Local file must be inside {self.temp_dir}: {source}")
            job = Job(
                source_url=source_url or source,
                source_file=source,
                item_id=item_id,
                status="compressing",
                download_path=Path(source),
            )
        else:
            job = Job(source_url=source, item_id=item_id)

        self._jobs[job.id] = job
        logger.info(f"Job {job.id} submitted ({job.status}): {job.source_url}")

        self._sweep()
        self._ensure_status_logger()
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        """Look up a job by id. Callers must treat the record as read-only."""
        return self._jobs.get(job_id)

    def list_jobs(self) -> list[Job]:
        """All retained jobs, newest first."""
        return sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)

    def get_status(self) -> QueueSnapshot:
        """Point-in-time snapshot of queue depth, lane occupants and outcomes."""
        jobs = list(self._jobs.values())
        return QueueSnapshot(
            queued_count=sum(1 for j in jobs if j.status == "queued"),
            per_stage={
                stage: self._jobs[lane.active[0]] if lane.active else None
                for stage, lane in self._lanes.items()
            },
            active={stage: list(lane.active) for stage, lane in self._lanes.items()},
            done_count=sum(1 for j in jobs if j.status == "done"),
            error_count=sum(1 for j in jobs if j.status == "error" and not j.skipped),
            skipped_count=sum(1 for j in jobs if j.skipped),
            total=len(jobs),
        )

    def lane_occupancy(self) -> dict[Stage, int]:
        return {stage: len(lane.active) for stage, lane in self._lanes.items()}

    async def drain(self) -> None:
        """Wait until no stage is running and nothing is left to claim."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def prune_finished(self, now: Optional[datetime] = None) -> int:
        """Forget finished jobs older than the retention window."""
        if self.retention_seconds is None:
            return 0

        cutoff = (now or datetime.utcnow()) - timedelta(seconds=self.retention_seconds)
        stale = [
            job_id
            for job_id, job in self._jobs.items()
            if job.is_terminal and job.completed_at and job.completed_at < cutoff
        ]
        for job_id in stale:
            del self._jobs[job_id]
        if stale:
            logger.info(f"Pruned {len(stale)} finished jobs")
        return len(stale)

    # ==================== SCHEDULING ====================

    def _sweep(self) -> None:
        self.prune_finished()
        for lane in self._lanes.values():
            while lane.has_capacity:
                job = self._next_eligible(lane.stage)
                if job is None:
                    break
                self._claim(lane, job)

    def _next_eligible(self, stage: Stage) -> Optional[Job]:
        claimed = {job_id for lane in self._lanes.values() for job_id in lane.active}
        entry_status = ENTRY_STATUS[stage]
        for job in self._jobs.values():
            if job.id in claimed or job.status != entry_status:
                continue
            if stage is Stage.COMPRESS and not job.download_path:
                continue
            if stage is Stage.UPLOAD and not job.compressed_path:
                continue
            return job
        return None

    def _claim(self, lane: Lane, job: Job) -> None:
        lane.active.append(job.id)
        if job.started_at is None:
            job.started_at = datetime.utcnow()
        if lane.stage is Stage.DOWNLOAD:
            self._transition(job, "downloading")
        job.progress = JobProgress(message=f"Starting {lane.stage.value}...")
        logger.info(f"Job {job.id} claimed by {lane.stage.value} lane")

        task = asyncio.create_task(self._run_stage(lane, job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_stage(self, lane: Lane, job: Job) -> None:
        handler = self._handlers[lane.stage]
        try:
            await handler(job)
        except MediaRelayError as e:
            self._fail(job, e)
        except Exception as e:
            logger.exception(f"Unexpected error in {lane.stage.value} for job {job.id}")
            self._fail(job, e)
        finally:
            lane.active.remove(job.id)
            self._sweep()

    # ==================== STAGES ====================

    async def _run_download(self, job: Job) -> None:
        path = await self.fetcher.download(job.source_url, job.id, self._sink(job))
        job.download_path = Path(path)
        self._transition(job, "compressing")
        job.progress = JobProgress(message="Waiting for compressor")

    async def _run_compress(self, job: Job) -> None:
        input_path = job.download_path
        output_path = await self.transcoder.compress(input_path, job.id, self._sink(job))

        if output_path is None:
            self._skip(job)
            return

        job.compressed_path = Path(output_path)
        remove_quietly(input_path)
        job.download_path = None
        self._transition(job, "uploading")
        job.progress = JobProgress(message="Waiting for uploader")

    async def _run_upload(self, job: Job) -> None:
        artifact = job.compressed_path
        reference = await self.publisher.publish(artifact, job.id, self._sink(job))
        job.result = reference
        logger.info(f"Job {job.id} published as {reference}")

        if job.item_id is not None and self.content_db is not None:
            job.progress = JobProgress(percentage=95.0, message="Updating database...")
            await self.content_db.mark_published(job.item_id, reference)

        remove_quietly(artifact)
        job.compressed_path = None
        self._transition(job, "done")
        job.progress = JobProgress(percentage=100.0, message="Complete!")
        job.completed_at = datetime.utcnow()
        logger.info(f"Job {job.id} done")

    # ==================== TRANSITIONS ====================

    def _sink(self, job: Job) -> ProgressSink:
        def update(progress: JobProgress) -> None:
            if not job.is_terminal:
                job.progress = progress

        return update

    @staticmethod
    def _transition(job: Job, status: JobStatus) -> None:
        if job.is_terminal:
            raise RuntimeError(f"Job {job.id} is already {job.status}")
        if status != "error" and STATUS_ORDER[status] <= STATUS_ORDER[job.status]:
            raise RuntimeError(f"Job {job.id} cannot move from {job.status} to {status}")
        job.status = status

    def _fail(self, job: Job, exc: Exception) -> None:
        logger.error(f"Job {job.id} failed during {job.status}: {exc}")
        self._transition(job, "error")
        job.error = str(exc)
        job.error_type = type(exc).__name__
        job.completed_at = datetime.utcnow()
        self._cleanup(job)

    def _skip(self, job: Job) -> None:
        logger.warning(f"Job {job.id}: {SKIPPED_MESSAGE}")
        self._transition(job, "error")
        job.skipped = True
        job.error = SKIPPED_MESSAGE
        job.error_type = SKIPPED_TOO_LARGE
        job.progress = JobProgress(percentage=100.0, message="Skipped (file too large)")
        job.completed_at = datetime.utcnow()
        self._cleanup(job)

    def _cleanup(self, job: Job) -> None:
        remove_quietly(job.download_path)
        remove_quietly(job.compressed_path)
        job.download_path = None
        job.compressed_path = None
        if self.temp_dir is not None:
            for partial in self.temp_dir.glob(f"{job.id}_source.*"):
                remove_quietly(partial)
            remove_quietly(compressed_path_for(self.temp_dir, job.id))

    # ==================== STATUS LOGGING ====================

    def _has_pending(self) -> bool:
        return any(not job.is_terminal for job in self._jobs.values())

    def _ensure_status_logger(self) -> None:
        if self.status_log_interval <= 0:
            return
        if self._status_task is not None and not self._status_task.done():
            return
        self._status_task = asyncio.create_task(self._log_status())

    async def _log_status(self) -> None:
        while self._has_pending():
            await asyncio.sleep(self.status_log_interval)
            logger.info(describe_status(self.get_status()))


def create_coordinator() -> PipelineCoordinator:
    """
    Create a PipelineCoordinator wired to services built from settings.

    Returns:
        Configured PipelineCoordinator instance
    """
    from media_relay.config import get_settings
    from media_relay.services.content_db import create_content_database_service
    from media_relay.services.fetcher import create_fetcher_service
    from media_relay.services.paths import resolve_temp_dir
    from media_relay.services.publisher import create_publisher_service
    from media_relay.services.transcoder import create_transcoder_service

    settings = get_settings()
    return PipelineCoordinator(
        fetcher=create_fetcher_service(),
        transcoder=create_transcoder_service(),
        publisher=create_publisher_service(),
        content_db=create_content_database_service(),
        concurrency={
            Stage.DOWNLOAD: settings.download_concurrency,
            Stage.COMPRESS: settings.compress_concurrency,
            Stage.UPLOAD: settings.upload_concurrency,
        },
        temp_dir=resolve_temp_dir(settings),
        retention_seconds=settings.job_retention_seconds,
        status_log_interval=settings.status_log_interval_seconds,
    )
