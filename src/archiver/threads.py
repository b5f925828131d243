"""
Archived-thread paging for one channel.

Pages run newest to oldest using the ``before`` cursor (the oldest
``archive_timestamp`` seen so far).  Each page is upserted before the next
is requested.  Paging stops when the platform reports no more pages, a
page comes back empty or failed, or (incremental runs only) a page
reaches back to the channel's stored cursor.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from archiver.cursor import CursorTracker
from archiver.models import Channel, Thread
from archiver.naming import create_slug
from archiver.normalizer import parse_timestamp
from archiver.retry import RetryingClient

logger = logging.getLogger("archiver.threads")

DEFAULT_FIRST_PAGE_LIMIT = 2


def oldest_archive_timestamp(threads: Sequence[Dict[str, Any]]) -> Optional[datetime]:
    stamps = [
        parse_timestamp(t["thread_metadata"]["archive_timestamp"])
        for t in threads
        if (t.get("thread_metadata") or {}).get("archive_timestamp")
    ]
    return min(stamps) if stamps else None


async def persist_threads(
    store: Any,
    channel_id: int,
    threads: Sequence[Dict[str, Any]],
) -> List[Thread]:
    """Upsert a page of platform threads.

    ``message_count`` is the platform's count plus one for the root
    message, written on both insert and update.
    """
    rows = [
        {
            "external_thread_id": str(thread["id"]),
            "slug": create_slug(thread.get("name")),
            "message_count": int(thread.get("message_count") or 0) + 1,
        }
        for thread in threads
        if thread.get("id")
    ]
    return await store.upsert_threads(channel_id, rows)


class ThreadPager:
    """Pages a channel's public archived threads into the store.

    Args:
        client: Retry-wrapped platform client.
        store: Archive store.
        cursors: Cursor tracker over the same store.
        first_page_limit: ``limit`` sent with the first, cursor-less request.
        clock: Returns "now"; injectable for tests.
    """

    def __init__(
        self,
        client: RetryingClient,
        store: Any,
        cursors: CursorTracker,
        first_page_limit: int = DEFAULT_FIRST_PAGE_LIMIT,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._client = client
        self._store = store
        self._cursors = cursors
        self._first_page_limit = first_page_limit
        self._clock = clock

    async def page(self, channel: Channel, full_sync: bool) -> List[Thread]:
        """Fetch and persist archived threads; return the threads written."""
        started_at = self._clock()
        stored_cursor = None if full_sync else await self._cursors.read(channel)

        saved: List[Thread] = []
        before: Optional[str] = None
        pages = 0
        while True:
            outcome = await self._client.archived_threads(
                channel.external_channel_id,
                before=before,
                limit=None if before else self._first_page_limit,
            )
            if outcome.is_failure:
                logger.warning(
                    "Thread listing failed for channel %s after %d page(s); "
                    "treating as end of results: %s",
                    channel.external_channel_id,
                    pages,
                    outcome.error,
                )
                break
            if not outcome.items:
                break

            pages += 1
            saved.extend(await persist_threads(self._store, channel.id, outcome.items))

            oldest = oldest_archive_timestamp(outcome.items)
            if not outcome.has_more or oldest is None:
                break
            before = oldest.isoformat()

            if CursorTracker.already_synced(oldest, stored_cursor):
                logger.info(
                    "Channel %s: reached previous sync point %s",
                    channel.external_channel_id,
                    stored_cursor.isoformat(),
                )
                break

        await self._cursors.mark_complete(channel, started_at)
        logger.info(
            "Channel %s: %d threads over %d page(s)",
            channel.external_channel_id,
            len(saved),
            pages,
        )
        return saved
