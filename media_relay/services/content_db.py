"""Content database write-back for published items."""

import logging
import re
from typing import Any, Optional

from media_relay.utils.errors import PersistenceError

logger = logging.getLogger(__name__)

UPLOAD_TAG_RE = re.compile(r"\[upload\]\s*", re.IGNORECASE)


def strip_upload_tag(title: str) -> str:
    """Remove the "[upload]" in-progress marker from a title."""
    return UPLOAD_TAG_RE.sub("", title).strip()


class ContentDatabaseService:
    """Service for recording publish results on catalog items in Supabase."""

    def __init__(self, supabase_client: Any, table: str = "videos") -> None:
        """
        Initialize the ContentDatabaseService.

        Args:
            supabase_client: Supabase client instance
            table: Table holding catalog items
        """
        self.supabase = supabase_client
        self.table = table

    async def mark_published(self, item_id: int, reference: str) -> None:
        """
        Point an item at its new remote reference and clear the upload tag.

        Args:
            item_id: Catalog row id
            reference: Remote reference returned by the publisher

        Raises:
            PersistenceError: If the row cannot be read or updated
        """
        try:
            result = (
                self.supabase.table(self.table)
                .select("title")
                .eq("id", item_id)
                .limit(1)
                .execute()
            )
            title = ""
            if result.data:
                title = result.data[0].get("title") or ""

            update = (
                self.supabase.table(self.table)
                .update({"url": reference, "title": strip_upload_tag(title)})
                .eq("id", item_id)
                .execute()
            )
        except Exception as e:
            raise PersistenceError(item_id, str(e)) from e

        if not update.data:
            raise PersistenceError(item_id, "update matched no rows")

        logger.info(f"Item {item_id} now points at {reference}")


def create_content_database_service() -> Optional[ContentDatabaseService]:
    """
    Create a ContentDatabaseService using application settings.

    Returns:
        Configured service, or None when Supabase is not configured
    """
    from media_relay.config import get_settings

    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_key:
        return None

    from supabase import create_client

    supabase_client = create_client(settings.supabase_url, settings.supabase_key)
    return ContentDatabaseService(supabase_client=supabase_client)
