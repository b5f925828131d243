"""
Batch persistence for thread messages.

For each page handed over by the message pager:

1. resolve every sighted user into the run's identity cache,
2. flatten reference wrappers (see :mod:`archiver.normalizer`),
3. upsert all messages and their mentions in one transaction,
4. delete flagged thread-starter wrappers, best effort.

A failure in step 3 propagates as
:class:`~archiver.errors.PersistenceFailure` and aborts the run; a failure
in step 4 is logged and ignored because the batch content is already
committed.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from archiver.authors import AuthorResolver, IdentityCache
from archiver.errors import CleanupFailure
from archiver.models import MessageRecord, Thread
from archiver.normalizer import normalize_messages, parse_timestamp

logger = logging.getLogger("archiver.persistence")


class PersistenceTransaction:
    """Writes message pages through an :class:`~archiver.store.ArchiveStore`.

    Args:
        store: Archive store.
        resolver: Author resolver; defaults to one over the same store.
    """

    def __init__(self, store: Any, resolver: Optional[AuthorResolver] = None) -> None:
        self._store = store
        self._resolver = resolver or AuthorResolver(store)

    def _to_record(
        self,
        message: Dict[str, Any],
        identities: IdentityCache,
        thread: Thread,
    ) -> Optional[MessageRecord]:
        author_id = str((message.get("author") or {}).get("id", ""))
        author = identities.get(author_id)
        if author is None:
            logger.warning(
                "Skipping message %s in thread %s: author %r unresolved",
                message.get("id"),
                thread.external_thread_id,
                author_id,
            )
            return None

        mention_ids: List[int] = []
        for mention in message.get("mentions") or []:
            mentioned = identities.get(str(mention.get("id", "")))
            if mentioned is not None and mentioned.id not in mention_ids:
                mention_ids.append(mentioned.id)

        return MessageRecord(
            channel_id=thread.channel_id,
            thread_id=thread.id,
            author_id=author.id,
            external_message_id=str(message["id"]),
            body=message.get("content") or "",
            sent_at=parse_timestamp(message["timestamp"]),
            mention_author_ids=mention_ids,
        )

    async def persist(
        self,
        messages: List[Dict[str, Any]],
        identities: IdentityCache,
        account_id: str,
        thread: Thread,
    ) -> int:
        """Persist one page of raw messages for ``thread``.

        Returns:
            Number of messages upserted.

        Raises:
            PersistenceFailure: The batch transaction rolled back.
        """
        if not messages:
            return 0

        await self._resolver.resolve(messages, identities, account_id)

        batch = normalize_messages(messages)
        records = [
            record
            for record in (
                self._to_record(message, identities, thread)
                for message in batch.messages
            )
            if record is not None
        ]
        written = await self._store.upsert_messages(records)

        for external_id in batch.cleanup_ids:
            await self._cleanup(thread.channel_id, external_id)

        logger.debug(
            "Thread %s: %d messages written, %d starters cleaned",
            thread.external_thread_id,
            written,
            len(batch.cleanup_ids),
        )
        return written

    async def _cleanup(self, channel_id: int, external_message_id: str) -> None:
        try:
            await self._store.delete_message(channel_id, external_message_id)
        except Exception as exc:
            failure = CleanupFailure(
                f"Could not delete thread-starter {external_message_id}: {exc}"
            )
            logger.warning("%s", failure, exc_info=True)
