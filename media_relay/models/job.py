"""Job and queue status Pydantic models."""

import random
import string
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Literal, Optional

from pydantic import BaseModel, Field

JobStatus = Literal["queued", "downloading", "compressing", "uploading", "done", "error"]

# Forward order of the pipeline; "error" sits outside it.
STATUS_ORDER: dict[str, int] = {
    "queued": 0,
    "downloading": 1,
    "compressing": 2,
    "uploading": 3,
    "done": 4,
}

TERMINAL_STATUSES = frozenset({"done", "error"})


class Stage(str, Enum):
    DOWNLOAD = "download"
    COMPRESS = "compress"
    UPLOAD = "upload"


def new_job_id() -> str:
    """Timestamp-prefixed id with a short random suffix."""
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(random.choices(alphabet, k=7))
    return f"job_{int(time.time() * 1000)}_{suffix}"


class JobProgress(BaseModel):
    """Stage-local progress, reset at every stage entry."""

    percentage: float = Field(default=0.0, ge=0.0, le=100.0)
    size_current_mb: Optional[float] = None
    size_total_mb: Optional[float] = None
    message: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Job(BaseModel):
    """A single media item moving through download, compress and upload."""

    id: str = Field(default_factory=new_job_id, min_length=1)
    source_url: str
    source_file: Optional[str] = None
    item_id: Optional[int] = None
    status: JobStatus = "queued"
    progress: JobProgress = Field(default_factory=JobProgress)

    download_path: Optional[Path] = None
    compressed_path: Optional[Path] = None

    result: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    skipped: bool = False

    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class QueueSnapshot(BaseModel):
    """Point-in-time view of the pipeline for polling consumers."""

    queued_count: int
    per_stage: dict[Stage, Optional[Job]]
    active: dict[Stage, list[str]]
    done_count: int
    error_count: int
    skipped_count: int
    total: int


# Narrow capability handed to stage services for reporting progress.
ProgressSink = Callable[[JobProgress], None]
