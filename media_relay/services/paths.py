"""Temp directory layout and best-effort artifact removal."""

import logging
import tempfile
from pathlib import Path
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)


def resolve_temp_dir(settings: Any) -> Path:
    """Configured temp dir, or the system one when unset."""
    return Path(settings.temp_dir or tempfile.gettempdir())


def compressed_path_for(temp_dir: Path, job_id: str) -> Path:
    return temp_dir / f"{job_id}_compressed.mp4"


def remove_quietly(path: Optional[Union[str, Path]]) -> bool:
    """Delete ``path`` if present. Returns True when a file was removed."""
    if not path:
        return False
    try:
        Path(path).unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"Could not remove {path}: {e}")
        return False
