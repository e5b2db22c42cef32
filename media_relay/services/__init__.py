"""Service layer for Media Relay."""

from media_relay.services.active_set import ActiveSetBroadcaster, active_set, create_active_set
from media_relay.services.content_db import (
    ContentDatabaseService,
    create_content_database_service,
)
from media_relay.services.coordinator import PipelineCoordinator, create_coordinator
from media_relay.services.fetcher import FetcherService, create_fetcher_service
from media_relay.services.publisher import (
    PublisherService,
    TeraBoxClient,
    TeraBoxCredentials,
    create_publisher_service,
)
from media_relay.services.stream_gate import StreamAdmissionGate, create_stream_gate
from media_relay.services.transcoder import TranscoderService, create_transcoder_service

__all__ = [
    "ActiveSetBroadcaster",
    "active_set",
    "create_active_set",
    "ContentDatabaseService",
    "create_content_database_service",
    "PipelineCoordinator",
    "create_coordinator",
    "FetcherService",
    "create_fetcher_service",
    "PublisherService",
    "TeraBoxClient",
    "TeraBoxCredentials",
    "create_publisher_service",
    "StreamAdmissionGate",
    "create_stream_gate",
    "TranscoderService",
    "create_transcoder_service",
]
