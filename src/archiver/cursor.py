"""Per-channel sync cursor bookkeeping."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from archiver.models import Channel

logger = logging.getLogger("archiver.cursor")


class CursorTracker:
    """Reads and advances ``channels.next_page_cursor``.

    The cursor is the time a thread-paging pass *started*; everything
    archived after it is still to be fetched by the next incremental run.
    It only ever moves forward.
    """

    def __init__(self, store: Any) -> None:
        self._store = store

    async def read(self, channel: Channel) -> Optional[datetime]:
        cursor = await self._store.get_channel_cursor(channel.id)
        channel.next_page_cursor = cursor
        return cursor

    async def mark_complete(self, channel: Channel, started_at: datetime) -> None:
        await self._store.advance_channel_cursor(channel.id, started_at)
        if channel.next_page_cursor is None or started_at > channel.next_page_cursor:
            channel.next_page_cursor = started_at
        logger.debug(
            "Channel %s cursor now %s",
            channel.external_channel_id,
            channel.next_page_cursor.isoformat(),
        )

    @staticmethod
    def already_synced(candidate: datetime, stored: Optional[datetime]) -> bool:
        """True when ``candidate`` is not newer than the stored cursor."""
        return stored is not None and candidate <= stored
