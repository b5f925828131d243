"""
Bounded retry with backoff around Discord listing calls.

:func:`with_retries` retries :class:`~archiver.errors.TransientFetchFailure`
according to a :class:`RetryPolicy` and re-raises the last failure once
attempts run out.  :class:`RetryingClient` layers that over
:class:`~archiver.discord_client.DiscordClient` and turns every listing
call into a :class:`~archiver.models.FetchOutcome`, so a failed fetch is
an explicit value the pagers can branch on instead of an exception.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from archiver.errors import FetchError, TransientFetchFailure
from archiver.models import FetchOutcome

logger = logging.getLogger("archiver.retry")

T = TypeVar("T")

# The messages endpoint has no has_more flag; a full page implies more.
MESSAGE_PAGE_SIZE = 50


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    jitter_seconds: float = 0.5

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RetryPolicy":
        """Build a policy from the ``[retry]`` table of settings.toml."""
        section = config.get("retry", {})
        return cls(
            attempts=max(1, int(section.get("attempts", cls.attempts))),
            base_delay_seconds=float(
                section.get("base_delay_seconds", cls.base_delay_seconds)
            ),
            max_delay_seconds=float(
                section.get("max_delay_seconds", cls.max_delay_seconds)
            ),
            jitter_seconds=float(section.get("jitter_seconds", cls.jitter_seconds)),
        )

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Seconds to wait after the ``attempt``-th failure (1-based)."""
        if retry_after is not None:
            return min(self.max_delay_seconds, max(0.0, retry_after))
        backoff = self.base_delay_seconds * (2 ** (attempt - 1))
        jitter = random.uniform(0.0, self.jitter_seconds) if self.jitter_seconds > 0 else 0.0
        return min(self.max_delay_seconds, backoff + jitter)


async def with_retries(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    what: str = "request",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``call()`` until it succeeds or the policy gives up.

    Only :class:`TransientFetchFailure` is retried; anything else
    propagates on the first occurrence.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await call()
        except TransientFetchFailure as exc:
            if attempt >= policy.attempts:
                logger.warning(
                    "%s failed after %d attempt(s): %s", what, attempt, exc
                )
                raise
            delay = policy.delay_for(attempt, exc.retry_after)
            logger.info(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                what,
                attempt,
                policy.attempts,
                exc,
                delay,
            )
            await sleep(delay)


class RetryingClient:
    """Retry-wrapped listing calls returning :class:`FetchOutcome` values.

    Args:
        client: A :class:`~archiver.discord_client.DiscordClient` (or any
                object with the same listing coroutines).
        policy: Retry policy applied to every call.
        sleep: Sleep coroutine, injectable for tests.
    """

    def __init__(
        self,
        client: Any,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

    async def guild_channels(self, server_id: str) -> List[Dict[str, Any]]:
        """List guild channels; failures propagate (nothing to page without them)."""
        return await with_retries(
            lambda: self._client.list_guild_channels(server_id),
            self._policy,
            what=f"list channels of server {server_id}",
            sleep=self._sleep,
        )

    async def archived_threads(
        self,
        channel_id: str,
        before: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> FetchOutcome:
        try:
            body = await with_retries(
                lambda: self._client.list_archived_threads(
                    channel_id, before=before, limit=limit
                ),
                self._policy,
                what=f"list archived threads of channel {channel_id}",
                sleep=self._sleep,
            )
        except (FetchError, ValueError) as exc:
            return FetchOutcome.failed(exc)
        threads = [
            t
            for t in body.get("threads") or []
            if isinstance(t, dict) and t.get("id")
        ]
        return FetchOutcome.ok(threads, has_more=bool(body.get("has_more")))

    async def thread_messages(
        self,
        thread_id: str,
        after: Optional[str] = None,
        limit: int = MESSAGE_PAGE_SIZE,
    ) -> FetchOutcome:
        try:
            messages = await with_retries(
                lambda: self._client.list_thread_messages(
                    thread_id, after=after, limit=limit
                ),
                self._policy,
                what=f"list messages of thread {thread_id}",
                sleep=self._sleep,
            )
        except (FetchError, ValueError) as exc:
            return FetchOutcome.failed(exc)
        return FetchOutcome.ok(messages, has_more=len(messages) >= limit)
