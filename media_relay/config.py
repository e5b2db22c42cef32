"""Application settings from environment variables."""

from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

# Load environment variables
load_dotenv()


class Settings(BaseSettings):
    """Application settings from environment."""

    # Supabase (content database write-back)
    supabase_url: str = ""
    supabase_key: str = ""

    # TeraBox credential bundle; all five are required for real uploads
    terabox_ndus: str = ""
    terabox_app_id: str = ""
    terabox_upload_id: str = ""
    terabox_js_token: str = ""
    terabox_browser_id: str = ""
    terabox_remote_dir: str = "/videos"

    # Configuration
    log_level: str = "INFO"
    temp_dir: str = ""

    # Fetcher
    download_max_retries: int = 3
    download_retry_delay_seconds: float = 2.0
    download_timeout_seconds: float = 60.0
    download_chunk_size: int = 64 * 1024
    progress_interval_seconds: float = 2.0

    # Transcoder
    ffmpeg_path: str = "ffmpeg"
    ffmpeg_preset: str = "slow"
    transcode_timeout_seconds: float = 3600.0
    max_output_mb: float = 50.0

    # Coordinator lanes
    download_concurrency: int = 1
    compress_concurrency: int = 1
    upload_concurrency: int = 1
    job_retention_seconds: Optional[float] = None
    status_log_interval_seconds: float = 0.0

    # Playback
    stream_max_concurrent: int = 10
    max_loaded_items: int = 10

    model_config = {"env_file": ".env"}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
