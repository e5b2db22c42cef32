"""FastAPI dependencies for Media Relay API."""

from functools import lru_cache

from media_relay.services.coordinator import PipelineCoordinator, create_coordinator
from media_relay.services.stream_gate import StreamAdmissionGate, create_stream_gate


@lru_cache
def get_coordinator() -> PipelineCoordinator:
    """Dependency for the process-wide pipeline coordinator."""
    return create_coordinator()


@lru_cache
def get_stream_gate() -> StreamAdmissionGate:
    """Dependency for the process-wide playback admission gate."""
    return create_stream_gate()
