"""Media Relay: staged download, transcode and publish pipeline."""

__version__ = "0.1.0"
