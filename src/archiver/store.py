"""
PostgreSQL archive storage for the sync engine.

Uses ``asyncpg`` for async database access.  All queries use parameterized
placeholders ($1, $2, ...) — **never** string interpolation.

Every write is an upsert keyed on the platform's external ids, so
replaying a page (or a whole run) converges on the same rows:

- channels on ``external_channel_id``
- threads on ``external_thread_id``
- authors on ``(account_id, external_user_id)``
- messages on ``(channel_id, external_message_id)``
- mentions on ``(message_id, author_id)``
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import asyncpg

from archiver.errors import PersistenceFailure
from archiver.models import Account, Author, Channel, MessageRecord, Thread

logger = logging.getLogger("archiver.store")

_UPSERT_CHANNEL_SQL = """
    INSERT INTO channels (account_id, external_channel_id, channel_name)
    VALUES ($1, $2, $3)
    ON CONFLICT (external_channel_id)
    DO UPDATE SET channel_name = EXCLUDED.channel_name
    RETURNING id, account_id, external_channel_id, channel_name, next_page_cursor
"""

_UPSERT_THREAD_SQL = """
    INSERT INTO threads (channel_id, external_thread_id, slug, message_count)
    VALUES ($1, $2, $3, $4)
    ON CONFLICT (external_thread_id)
    DO UPDATE SET message_count = EXCLUDED.message_count
    RETURNING id, channel_id, external_thread_id, slug, message_count
"""

_INSERT_AUTHOR_SQL = """
    INSERT INTO authors (
        account_id, external_user_id, display_name, anonymous_alias,
        is_bot, is_admin, profile_image_url
    )
    VALUES ($1, $2, $3, $4, $5, FALSE, $6)
    ON CONFLICT (account_id, external_user_id)
    DO UPDATE SET profile_image_url =
        COALESCE(authors.profile_image_url, EXCLUDED.profile_image_url)
    RETURNING id, account_id, external_user_id, display_name, anonymous_alias,
              is_bot, is_admin, profile_image_url
"""

_UPSERT_MESSAGE_SQL = """
    INSERT INTO messages (
        channel_id, thread_id, author_id, external_message_id, body, sent_at
    )
    VALUES ($1, $2, $3, $4, $5, $6)
    ON CONFLICT (channel_id, external_message_id)
    DO UPDATE SET
        thread_id = EXCLUDED.thread_id,
        author_id = EXCLUDED.author_id,
        body = EXCLUDED.body
    RETURNING id
"""

_INSERT_MENTION_SQL = """
    INSERT INTO mentions (message_id, author_id)
    VALUES ($1, $2)
    ON CONFLICT (message_id, author_id) DO NOTHING
"""

# GREATEST ignores NULLs, so the first write always lands.
_ADVANCE_CURSOR_SQL = """
    UPDATE channels
    SET next_page_cursor = GREATEST(next_page_cursor, $2)
    WHERE id = $1
"""


class ArchiveStore:
    """Manages archive persistence in PostgreSQL.

    Args:
        pool: An ``asyncpg`` connection pool (created via
              :func:`shared.db.get_connection_pool`).
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_account(self, account_id: str) -> Optional[Account]:
        row = await self._pool.fetchrow(
            "SELECT id, discord_server_id, sync_status FROM accounts WHERE id = $1",
            account_id,
        )
        return Account.from_row(row) if row else None

    async def set_sync_status(self, account_id: str, status: str) -> None:
        await self._pool.execute(
            "UPDATE accounts SET sync_status = $2, updated_at = NOW() WHERE id = $1",
            account_id,
            status,
        )

    # ------------------------------------------------------------------
    # Channels and cursors
    # ------------------------------------------------------------------

    async def upsert_channels(
        self,
        account_id: str,
        channels: Sequence[Dict[str, Any]],
    ) -> List[Channel]:
        """Upsert platform channels and return the stored rows in id order."""
        if not channels:
            return []
        saved: List[Channel] = []
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for channel in channels:
                    row = await conn.fetchrow(
                        _UPSERT_CHANNEL_SQL,
                        account_id,
                        str(channel["id"]),
                        channel.get("name") or str(channel["id"]),
                    )
                    saved.append(Channel.from_row(row))
        saved.sort(key=lambda c: c.id)
        return saved

    async def get_channel_cursor(self, channel_id: int) -> Optional[datetime]:
        return await self._pool.fetchval(
            "SELECT next_page_cursor FROM channels WHERE id = $1",
            channel_id,
        )

    async def advance_channel_cursor(self, channel_id: int, cursor: datetime) -> None:
        """Move ``next_page_cursor`` forward; an older value never overwrites."""
        await self._pool.execute(_ADVANCE_CURSOR_SQL, channel_id, cursor)

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    async def upsert_threads(
        self,
        channel_id: int,
        threads: Sequence[Dict[str, Any]],
    ) -> List[Thread]:
        """Upsert one page of threads in a single transaction.

        Each dict carries ``external_thread_id``, ``slug`` and
        ``message_count``.
        """
        if not threads:
            return []
        saved: List[Thread] = []
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    for thread in threads:
                        row = await conn.fetchrow(
                            _UPSERT_THREAD_SQL,
                            channel_id,
                            thread["external_thread_id"],
                            thread.get("slug"),
                            thread["message_count"],
                        )
                        saved.append(Thread.from_row(row))
        except asyncpg.PostgresError as exc:
            raise PersistenceFailure(
                f"Thread batch for channel {channel_id} failed: {exc}"
            ) from exc
        return saved

    async def list_threads(self, channel_id: int) -> List[Thread]:
        rows = await self._pool.fetch(
            """
            SELECT id, channel_id, external_thread_id, slug, message_count
            FROM threads
            WHERE channel_id = $1
            ORDER BY id
            """,
            channel_id,
        )
        return [Thread.from_row(row) for row in rows]

    async def get_newest_message_id(self, thread_id: int) -> Optional[str]:
        """Return the external id of the latest-sent message in a thread."""
        return await self._pool.fetchval(
            """
            SELECT external_message_id
            FROM messages
            WHERE thread_id = $1
            ORDER BY sent_at DESC
            LIMIT 1
            """,
            thread_id,
        )

    # ------------------------------------------------------------------
    # Authors
    # ------------------------------------------------------------------

    async def load_authors(self, account_id: str) -> List[Author]:
        rows = await self._pool.fetch(
            """
            SELECT id, account_id, external_user_id, display_name, anonymous_alias,
                   is_bot, is_admin, profile_image_url
            FROM authors
            WHERE account_id = $1
            """,
            account_id,
        )
        return [Author.from_row(row) for row in rows]

    async def create_author(
        self,
        account_id: str,
        external_user_id: str,
        display_name: str,
        anonymous_alias: str,
        is_bot: bool,
        profile_image_url: Optional[str],
    ) -> Author:
        """Insert an author, or return the existing row for the same user."""
        row = await self._pool.fetchrow(
            _INSERT_AUTHOR_SQL,
            account_id,
            external_user_id,
            display_name,
            anonymous_alias,
            is_bot,
            profile_image_url,
        )
        return Author.from_row(row)

    async def update_author_avatar(self, author_id: int, profile_image_url: str) -> None:
        await self._pool.execute(
            "UPDATE authors SET profile_image_url = $2 WHERE id = $1",
            author_id,
            profile_image_url,
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def upsert_messages(self, records: Sequence[MessageRecord]) -> int:
        """Upsert a batch of messages and their mentions atomically.

        Returns:
            Number of messages written.

        Raises:
            PersistenceFailure: The transaction rolled back; no row from the
                batch was committed.
        """
        if not records:
            return 0
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    for record in records:
                        message_id = await conn.fetchval(
                            _UPSERT_MESSAGE_SQL,
                            record.channel_id,
                            record.thread_id,
                            record.author_id,
                            record.external_message_id,
                            record.body,
                            record.sent_at,
                        )
                        if record.mention_author_ids:
                            await conn.executemany(
                                _INSERT_MENTION_SQL,
                                [
                                    (message_id, author_id)
                                    for author_id in record.mention_author_ids
                                ],
                            )
        except asyncpg.PostgresError as exc:
            raise PersistenceFailure(
                f"Message batch of {len(records)} failed: {exc}"
            ) from exc
        logger.debug("Upserted %d messages", len(records))
        return len(records)

    async def delete_message(self, channel_id: int, external_message_id: str) -> bool:
        """Delete a message and its mention links.

        Returns:
            ``True`` if a message row was removed.
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                message_id = await conn.fetchval(
                    """
                    SELECT id FROM messages
                    WHERE channel_id = $1 AND external_message_id = $2
                    """,
                    channel_id,
                    external_message_id,
                )
                if message_id is None:
                    return False
                await conn.execute(
                    "DELETE FROM mentions WHERE message_id = $1", message_id
                )
                await conn.execute("DELETE FROM messages WHERE id = $1", message_id)
        return True

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def get_sync_stats(self, account_id: str) -> Dict[str, Any]:
        """Return summary counts for one account."""
        async with self._pool.acquire() as conn:
            total_channels = await conn.fetchval(
                "SELECT COUNT(*) FROM channels WHERE account_id = $1", account_id
            )
            total_threads = await conn.fetchval(
                """
                SELECT COUNT(*) FROM threads t
                JOIN channels c ON c.id = t.channel_id
                WHERE c.account_id = $1
                """,
                account_id,
            )
            total_messages = await conn.fetchval(
                """
                SELECT COUNT(*) FROM messages m
                JOIN channels c ON c.id = m.channel_id
                WHERE c.account_id = $1
                """,
                account_id,
            )
        return {
            "total_channels": total_channels or 0,
            "total_threads": total_threads or 0,
            "total_messages": total_messages or 0,
        }
