"""Channel discovery: list a server's channels and upsert the threadable ones."""

from __future__ import annotations

import logging
from typing import Any, List

from archiver.discord_client import THREADABLE_CHANNEL_TYPES
from archiver.models import Account, Channel
from archiver.retry import RetryingClient

logger = logging.getLogger("archiver.channels")


async def list_channels_and_persist(
    client: RetryingClient,
    store: Any,
    account: Account,
) -> List[Channel]:
    """Return the account's stored channels after refreshing them upstream."""
    raw_channels = await client.guild_channels(account.discord_server_id)
    eligible = [c for c in raw_channels if c.get("type") in THREADABLE_CHANNEL_TYPES]
    saved = await store.upsert_channels(account.id, eligible)
    logger.info(
        "Server %s: %d channels listed, %d saved",
        account.discord_server_id,
        len(raw_channels),
        len(saved),
    )
    return saved
