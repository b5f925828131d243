"""
Message paging for one thread.

The messages endpoint has no ``has_more`` flag: a page as large as the
page size means more may follow, anything smaller is the last page.  The
``after`` cursor advances to the newest message of each processed page.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence

from archiver.authors import IdentityCache
from archiver.models import Thread
from archiver.normalizer import parse_timestamp
from archiver.persistence import PersistenceTransaction
from archiver.retry import MESSAGE_PAGE_SIZE, RetryingClient

logger = logging.getLogger("archiver.messages")


def newest_message_id(messages: Sequence[Dict[str, Any]]) -> Optional[str]:
    if not messages:
        return None
    newest = max(messages, key=lambda m: parse_timestamp(m["timestamp"]))
    return str(newest["id"])


class MessagePager:
    """Pages a thread's messages into the store.

    One pager serves a whole sync run, so it holds the run's identity
    cache and account.

    Args:
        client: Retry-wrapped platform client.
        store: Archive store.
        persistence: Batch writer for message pages.
        identities: The run's identity cache.
        account_id: Account being synchronised.
        page_size: Page ceiling used both as ``limit`` and for the
                   "possibly incomplete" rule.
    """

    def __init__(
        self,
        client: RetryingClient,
        store: Any,
        persistence: PersistenceTransaction,
        identities: IdentityCache,
        account_id: str,
        page_size: int = MESSAGE_PAGE_SIZE,
    ) -> None:
        self._client = client
        self._store = store
        self._persistence = persistence
        self._identities = identities
        self._account_id = account_id
        self._page_size = page_size

    async def _resume_point(self, thread: Thread, full_sync: bool) -> str:
        # Thread ids are snowflakes of the thread's first message, so paging
        # "after" the thread id starts at the beginning of its history.  The
        # endpoint serves the newest page when no cursor is given.
        if full_sync:
            return thread.external_thread_id
        newest = await self._store.get_newest_message_id(thread.id)
        return newest or thread.external_thread_id

    async def page(self, thread: Thread, full_sync: bool) -> int:
        """Fetch and persist messages; return how many were written."""
        after = await self._resume_point(thread, full_sync)
        written = 0
        requests = 0
        while True:
            requests += 1
            outcome = await self._client.thread_messages(
                thread.external_thread_id,
                after=after,
                limit=self._page_size,
            )
            if outcome.is_failure:
                logger.warning(
                    "Message listing failed for thread %s on request %d; "
                    "treating as end of results: %s",
                    thread.external_thread_id,
                    requests,
                    outcome.error,
                )
                break
            if not outcome.items:
                break

            written += await self._persistence.persist(
                outcome.items, self._identities, self._account_id, thread
            )
            if not outcome.has_more:
                break
            after = newest_message_id(outcome.items)

        logger.debug(
            "Thread %s: %d messages in %d request(s)",
            thread.external_thread_id,
            written,
            requests,
        )
        return written
