"""FastAPI routes for Media Relay API."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from media_relay.api.deps import get_coordinator, get_stream_gate
from media_relay.models.job import Job, QueueSnapshot
from media_relay.services.coordinator import PipelineCoordinator
from media_relay.services.stream_gate import StreamAdmissionGate
from media_relay.utils.errors import (
    CompressionError,
    DownloadError,
    MediaRelayError,
    PersistenceError,
    PublishError,
)

logger = logging.getLogger(__name__)

# Create router
router = APIRouter()


# ==================== Error Response Model ====================


class ErrorResponse(BaseModel):
    """Standard error response model."""

    detail: str
    error_type: str
    errors: Optional[List[Dict[str, Any]]] = None


# ==================== Exception Handlers ====================


async def validation_exception_handler(
    request: Request, exc: Union[RequestValidationError, ValidationError]
) -> JSONResponse:
    """Handle Pydantic validation errors."""
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Validation error",
            "error_type": "ValidationError",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


async def media_relay_exception_handler(request: Request, exc: MediaRelayError) -> JSONResponse:
    """Handle application-specific errors."""
    status_code = 500

    if isinstance(exc, (DownloadError, PublishError)):
        status_code = 502  # Bad Gateway for upstream failures
    elif isinstance(exc, CompressionError):
        status_code = 500
    elif isinstance(exc, PersistenceError):
        status_code = 503

    return JSONResponse(
        status_code=status_code,
        content={
            "detail": str(exc),
            "error_type": type(exc).__name__,
        },
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions with consistent format."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error_type": "HTTPException",
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error_type": "InternalError",
        },
    )


# ==================== Request/Response Models ====================


class SubmitJobRequest(BaseModel):
    """Request model for job submission."""

    source_url: str = Field(min_length=1, description="Remote media URL, or a label for local files")
    local_file_path: Optional[str] = Field(
        default=None, description="Already-downloaded file; skips the download stage"
    )
    item_id: Optional[int] = Field(default=None, ge=1, description="Catalog row to update")


class SubmitJobResponse(BaseModel):
    """Response model for job submission."""

    job_id: str
    status: str
    message: str


class StreamResponse(BaseModel):
    """Response model for playback admission."""

    item_id: str
    streaming: bool
    queue_position: Optional[int] = None


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


# ==================== Endpoints ====================


@router.post(
    "/jobs",
    response_model=SubmitJobResponse,
    responses={400: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def submit_job(
    request: SubmitJobRequest,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
) -> SubmitJobResponse:
    """
    Submit a URL (or a local file) to the pipeline.

    Returns immediately with a job_id that can be polled for status.
    """
    if request.local_file_path:
        if not Path(request.local_file_path).is_file():
            raise HTTPException(
                status_code=400,
                detail=f"Local file not found: {request.local_file_path}",
            )
        try:
            job_id = coordinator.submit(
                request.local_file_path,
                is_local_file=True,
                item_id=request.item_id,
                source_url=request.source_url,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    else:
        if not _is_http_url(request.source_url):
            raise HTTPException(status_code=400, detail="source_url must be an http(s) URL")
        job_id = coordinator.submit(request.source_url, item_id=request.item_id)

    job = coordinator.get_job(job_id)
    return SubmitJobResponse(
        job_id=job_id,
        status=job.status if job else "queued",
        message="Upload in progress",
    )


@router.get("/jobs", response_model=List[Job])
async def list_jobs(
    coordinator: PipelineCoordinator = Depends(get_coordinator),
) -> List[Job]:
    """All retained jobs, newest first."""
    return coordinator.list_jobs()


@router.get("/jobs/{job_id}", response_model=Job, responses={404: {"model": ErrorResponse}})
async def get_job(
    job_id: str,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
) -> Job:
    """Get the full record of one job."""
    job = coordinator.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return job


@router.get("/status", response_model=QueueSnapshot)
async def get_status(
    coordinator: PipelineCoordinator = Depends(get_coordinator),
) -> QueueSnapshot:
    """Aggregate queue snapshot for polling consumers."""
    return coordinator.get_status()


@router.post("/streams/{item_id}", response_model=StreamResponse)
async def request_stream(
    item_id: str,
    gate: StreamAdmissionGate = Depends(get_stream_gate),
) -> StreamResponse:
    """Ask for a playback slot; the item is queued when all slots are taken."""
    gate.request_stream(item_id)
    return _stream_response(gate, item_id)


@router.delete("/streams/{item_id}", response_model=StreamResponse)
async def finish_stream(
    item_id: str,
    gate: StreamAdmissionGate = Depends(get_stream_gate),
) -> StreamResponse:
    """Release a playback slot (or leave the queue)."""
    gate.finish(item_id)
    return _stream_response(gate, item_id)


def _stream_response(gate: StreamAdmissionGate, item_id: str) -> StreamResponse:
    queue = gate.get_queue()
    return StreamResponse(
        item_id=item_id,
        streaming=gate.is_streaming(item_id),
        queue_position=queue.index(item_id) + 1 if item_id in queue else None,
    )
