"""
Database helpers — connection pool management, schema initialisation,
and health checks.

Uses ``asyncpg`` for async PostgreSQL access.  The archive schema mirrors
the external chat platform's hierarchy:

- **accounts** own **channels**, which own **threads**.
- **messages** belong to a channel and a thread and are keyed by
  ``(channel_id, external_message_id)``.
- **authors** are per-account identities keyed by
  ``(account_id, external_user_id)``; **mentions** link messages to authors.

Every natural key carries a unique constraint so the archiver can upsert
with ``ON CONFLICT`` and re-running a sync never duplicates rows.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import asyncpg

logger = logging.getLogger("shared.db")


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(config: Dict[str, Any]) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        config: Database configuration dict with keys:
                ``host``, ``port``, ``database``, ``user``, ``password``,
                and optionally ``min_size``, ``max_size``.

    Returns:
        An ``asyncpg.Pool`` instance.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
    """
    pool = await asyncpg.create_pool(
        host=config.get("host"),
        port=config.get("port", 5432),
        database=config["database"],
        user=config.get("user"),
        password=config.get("password"),
        min_size=config.get("min_size", 1),
        max_size=config.get("max_size", 5),
    )
    logger.info(
        "Database pool created: %s@%s/%s",
        config.get("user"),
        config.get("host"),
        config["database"],
    )
    return pool


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS accounts (
        id                 TEXT PRIMARY KEY,
        discord_server_id  TEXT,
        sync_status        TEXT NOT NULL DEFAULT 'PENDING',
        updated_at         TIMESTAMPTZ DEFAULT NOW()
    );

    CREATE TABLE IF NOT EXISTS channels (
        id                   BIGSERIAL PRIMARY KEY,
        account_id           TEXT NOT NULL REFERENCES accounts(id),
        external_channel_id  TEXT NOT NULL UNIQUE,
        channel_name         TEXT NOT NULL,
        next_page_cursor     TIMESTAMPTZ
    );

    CREATE TABLE IF NOT EXISTS threads (
        id                  BIGSERIAL PRIMARY KEY,
        channel_id          BIGINT NOT NULL REFERENCES channels(id),
        external_thread_id  TEXT NOT NULL UNIQUE,
        slug                TEXT,
        message_count       INTEGER NOT NULL DEFAULT 1
    );

    CREATE TABLE IF NOT EXISTS authors (
        id                 BIGSERIAL PRIMARY KEY,
        account_id         TEXT NOT NULL REFERENCES accounts(id),
        external_user_id   TEXT NOT NULL,
        display_name       TEXT NOT NULL,
        anonymous_alias    TEXT,
        is_bot             BOOLEAN NOT NULL DEFAULT FALSE,
        is_admin           BOOLEAN NOT NULL DEFAULT FALSE,
        profile_image_url  TEXT,
        UNIQUE (account_id, external_user_id)
    );

    CREATE TABLE IF NOT EXISTS messages (
        id                   BIGSERIAL PRIMARY KEY,
        channel_id           BIGINT NOT NULL REFERENCES channels(id),
        thread_id            BIGINT REFERENCES threads(id),
        author_id            BIGINT REFERENCES authors(id),
        external_message_id  TEXT NOT NULL,
        body                 TEXT NOT NULL DEFAULT '',
        sent_at              TIMESTAMPTZ NOT NULL,
        UNIQUE (channel_id, external_message_id)
    );

    CREATE TABLE IF NOT EXISTS mentions (
        message_id  BIGINT NOT NULL REFERENCES messages(id),
        author_id   BIGINT NOT NULL REFERENCES authors(id),
        PRIMARY KEY (message_id, author_id)
    );

    CREATE TABLE IF NOT EXISTS audit_log (
        id          BIGSERIAL PRIMARY KEY,
        timestamp   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        service     TEXT NOT NULL,
        action      TEXT NOT NULL,
        account_id  TEXT,
        details     JSONB,
        success     BOOLEAN NOT NULL
    );
    ALTER TABLE audit_log ADD COLUMN IF NOT EXISTS account_id TEXT;

    CREATE INDEX IF NOT EXISTS idx_threads_channel ON threads (channel_id);
    CREATE INDEX IF NOT EXISTS idx_messages_thread_sent_at
        ON messages (thread_id, sent_at DESC);
    CREATE INDEX IF NOT EXISTS idx_authors_account ON authors (account_id);
    CREATE INDEX IF NOT EXISTS idx_audit_log_account_time
        ON audit_log (account_id, timestamp DESC);
"""


async def init_database(pool: asyncpg.Pool) -> None:
    """Create tables and indexes if they do not exist.

    Executed once at service startup.  Idempotent (uses IF NOT EXISTS).

    Note:
        ``threads.external_thread_id`` is unique across the whole store,
        not per channel.  The platform's thread ids are global snowflakes,
        so this matches upstream, but it is a modelling choice worth
        revisiting if another platform is ever archived into this schema.
    """
    async with pool.acquire() as conn:
        await conn.execute(_SCHEMA_SQL)
    logger.info("Database schema initialised")


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool) -> bool:
    """Verify the database is reachable and responsive.

    Returns:
        ``True`` if a simple query succeeds, ``False`` otherwise.
    """
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1;")
            return result == 1
    except (asyncpg.PostgresError, OSError):
        logger.exception("Database health check failed")
        return False
