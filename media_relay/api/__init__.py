"""HTTP API for Media Relay."""
