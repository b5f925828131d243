"""
DiscordClient — read-only wrapper around the Discord REST API.

Only the listing endpoints the archiver needs are exposed, and every call
is a ``GET``; the client has no way to post, edit or delete anything on
the platform.  Authentication is a bot token passed through unchanged in
the ``Authorization`` header.

Failures are classified, not handled, here:
    - network errors, timeouts, HTTP 429 and 5xx raise
      :class:`~archiver.errors.TransientFetchFailure`;
    - any other non-2xx raises :class:`~archiver.errors.DiscordApiError`,
      as does a 2xx whose body is not JSON or not the expected shape.

Retrying and degrading to "no more pages" is the caller's business
(see :mod:`archiver.retry` and the pagers).
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp

from archiver.errors import DiscordApiError, TransientFetchFailure

logger = logging.getLogger("archiver.discord_client")

DEFAULT_API_BASE = "https://discord.com/api"

# Guild channel types whose archived public threads are listable.
THREADABLE_CHANNEL_TYPES = frozenset({0, 5, 15})  # text, announcement, forum


class DiscordClient:
    """Async, read-only Discord API client.

    Usage::

        async with DiscordClient(token) as client:
            page = await client.list_archived_threads(channel_id)

    Args:
        token: Bot token (without the ``Bot`` prefix).
        api_base: REST API root.
        timeout_seconds: Total timeout per request.
        session: Optional pre-built ``aiohttp.ClientSession`` (tests).
    """

    def __init__(
        self,
        token: str,
        api_base: str = DEFAULT_API_BASE,
        timeout_seconds: float = 25.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

    # ----- async context manager ------------------------------------------

    async def __aenter__(self) -> "DiscordClient":
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={
                    "Authorization": f"Bot {self._token}",
                    "Accept": "application/json",
                    "User-Agent": "DiscordBot (discord-archiver, 1.0)",
                },
            )
        logger.info("DiscordClient session opened.")
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
        logger.info("DiscordClient session closed.")

    # ----- transport -------------------------------------------------------

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if self._session is None:
            raise RuntimeError("DiscordClient used outside of 'async with'")

        query = {k: str(v) for k, v in (params or {}).items() if v is not None}
        started = time.monotonic()
        try:
            async with self._session.get(self._api_base + path, params=query) as resp:
                status = resp.status
                logger.debug(
                    "GET %s params=%s status=%d in %.2fs",
                    path,
                    query,
                    status,
                    time.monotonic() - started,
                )
                if status == 429:
                    retry_after: float | None = None
                    try:
                        data = await resp.json(content_type=None)
                        retry_after = float(data.get("retry_after"))
                    except (aiohttp.ContentTypeError, ValueError, TypeError, AttributeError):
                        retry_after = None
                    raise TransientFetchFailure(
                        f"Rate limited on {path}", retry_after=retry_after
                    )
                if status >= 500:
                    raise TransientFetchFailure(f"HTTP {status} for {path}")
                if status >= 400:
                    raise DiscordApiError(status, path, await resp.text())
                try:
                    return await resp.json(content_type=None)
                except ValueError as exc:
                    raise DiscordApiError(
                        status, path, f"undecodable JSON body: {exc}"
                    ) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientFetchFailure(f"Request to {path} failed: {exc!r}") from exc

    # ----- listing endpoints ----------------------------------------------

    async def list_guild_channels(self, server_id: str) -> List[Dict[str, Any]]:
        """``GET /guilds/{server_id}/channels``."""
        path = f"/guilds/{server_id}/channels"
        return _objects(await self._get(path), path)

    async def list_archived_threads(
        self,
        channel_id: str,
        before: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """``GET /channels/{channel_id}/threads/archived/public``.

        Threads come back ordered by ``archive_timestamp``, newest first.

        Returns:
            ``{"threads": [...], "has_more": bool}``.
        """
        path = f"/channels/{channel_id}/threads/archived/public"
        body = await self._get(path, {"before": before, "limit": limit})
        if body is None:
            body = {}
        if not isinstance(body, dict):
            raise DiscordApiError(200, path, f"expected an object, got {type(body).__name__}")
        return {
            "threads": _objects(body.get("threads"), path),
            "has_more": bool(body.get("has_more", False)),
        }

    async def list_thread_messages(
        self,
        thread_id: str,
        after: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """``GET /channels/{thread_id}/messages``.

        Messages are returned newest first; the platform reports no
        ``has_more`` flag, so callers infer it from the page size.
        """
        path = f"/channels/{thread_id}/messages"
        body = await self._get(path, {"after": after, "limit": limit})
        return _objects(body, path)


def _objects(body: Any, path: str) -> List[Dict[str, Any]]:
    """Check that a decoded body is a list of JSON objects."""
    if body is None:
        return []
    if not isinstance(body, list) or not all(isinstance(item, dict) for item in body):
        raise DiscordApiError(200, path, "expected an array of objects")
    return body
