"""Pydantic data models for Media Relay."""

from media_relay.models.job import (
    STATUS_ORDER,
    Job,
    JobProgress,
    JobStatus,
    ProgressSink,
    QueueSnapshot,
    Stage,
    new_job_id,
)

__all__ = [
    "Job",
    "JobProgress",
    "JobStatus",
    "ProgressSink",
    "QueueSnapshot",
    "Stage",
    "STATUS_ORDER",
    "new_job_id",
]
