"""
Account sync orchestration.

One call to :meth:`SyncOrchestrator.sync` archives one account:

    list + persist channels
    for each channel (store order):
        page archived threads (advances the channel cursor)
        for each stored thread of the channel:
            page messages -> resolve authors -> normalise -> upsert

Everything runs sequentially inside a single task.  Two runs for the same
account must never overlap; the scheduler that invokes this module is
responsible for that.

Status transitions are ``IN_PROGRESS`` on start, then ``DONE`` or
``ERROR``.  Any exception escaping the run flips the status to ``ERROR``
before it is re-raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncContextManager, Callable, Dict, Optional, Protocol

from archiver.authors import IdentityCache
from archiver.channels import list_channels_and_persist
from archiver.cursor import CursorTracker
from archiver.errors import AccountNotFound, MissingCredential
from archiver.messages import MessagePager
from archiver.models import Account
from archiver.persistence import PersistenceTransaction
from archiver.progress import ChannelProgress, RunProgress
from archiver.retry import MESSAGE_PAGE_SIZE, RetryingClient, RetryPolicy
from archiver.status import SyncStatus, SyncStatusNotifier
from archiver.threads import DEFAULT_FIRST_PAGE_LIMIT, ThreadPager

logger = logging.getLogger("archiver.sync")

TOKEN_KEY_NAME = "bot_token"


class StopSignal(Protocol):
    def is_set(self) -> bool: ...


@dataclass(frozen=True)
class SyncSettings:
    first_page_limit: int = DEFAULT_FIRST_PAGE_LIMIT
    message_page_size: int = MESSAGE_PAGE_SIZE
    retry: RetryPolicy = RetryPolicy()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SyncSettings":
        discord = config.get("discord", {})
        return cls(
            first_page_limit=int(discord.get("first_page_limit", DEFAULT_FIRST_PAGE_LIMIT)),
            message_page_size=int(discord.get("message_page_size", MESSAGE_PAGE_SIZE)),
            retry=RetryPolicy.from_config(config),
        )


class SyncOrchestrator:
    """Drives a full or incremental archive run for one account.

    Args:
        store: Archive store.
        client_factory: Builds an async-context-managed platform client from
                        a bot token.
        token_provider: Returns the bot token for an account, or ``None``.
        audit: Observability sink with an async ``log`` method.
        settings: Paging and retry settings.
        stop_event: Optional flag checked between channels and threads.
    """

    def __init__(
        self,
        store: Any,
        client_factory: Callable[[str], AsyncContextManager[Any]],
        token_provider: Callable[[str], Optional[str]],
        audit: Any,
        settings: SyncSettings = SyncSettings(),
        stop_event: Optional[StopSignal] = None,
    ) -> None:
        self._store = store
        self._client_factory = client_factory
        self._token_provider = token_provider
        self._audit = audit
        self._settings = settings
        self._stop_event = stop_event
        self._notifier = SyncStatusNotifier(store, audit)

    def _stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def sync(self, account_id: str, full_sync: bool = False) -> RunProgress:
        """Archive one account.

        Raises:
            AccountNotFound: Unknown account, or one with no server id.
            MissingCredential: No bot token for the account.
            PersistenceFailure: A batch transaction failed.
        """
        logger.info(
            "Starting %s sync for account %s",
            "full" if full_sync else "incremental",
            account_id,
        )

        account = await self._store.get_account(account_id)
        if account is None:
            await self._audit.log(
                "archiver",
                "sync_error",
                {"account_id": account_id, "error": "not_found"},
                success=False,
            )
            raise AccountNotFound(account_id)
        if not account.discord_server_id:
            await self._notifier.update_and_notify(account.id, SyncStatus.ERROR)
            raise AccountNotFound(account_id)

        token = self._token_provider(account.id)
        if not token:
            await self._notifier.update_and_notify(account.id, SyncStatus.ERROR)
            raise MissingCredential(account.id, TOKEN_KEY_NAME)

        try:
            await self._notifier.update_and_notify(account.id, SyncStatus.IN_PROGRESS)
            await self._audit.log(
                "archiver",
                "sync_start",
                {"account_id": account.id, "full_sync": full_sync},
            )
            async with self._client_factory(token) as raw_client:
                client = RetryingClient(raw_client, self._settings.retry)
                progress = await self._run(account, client, full_sync)
            await self._notifier.update_and_notify(account.id, SyncStatus.DONE)
            await self._audit.log(
                "archiver",
                "sync_done",
                {"account_id": account.id, "full_sync": full_sync, **progress.as_details()},
            )
        except Exception as exc:
            logger.exception("Sync failed for account %s", account.id)
            await self._notifier.update_and_notify(account.id, SyncStatus.ERROR)
            await self._audit.log(
                "archiver",
                "sync_error",
                {"account_id": account.id, "error": type(exc).__name__},
                success=False,
            )
            raise
        return progress

    async def _run(
        self,
        account: Account,
        client: RetryingClient,
        full_sync: bool,
    ) -> RunProgress:
        channels = await list_channels_and_persist(client, self._store, account)
        identities = await IdentityCache.load(self._store, account.id)

        thread_pager = ThreadPager(
            client,
            self._store,
            CursorTracker(self._store),
            first_page_limit=self._settings.first_page_limit,
        )
        message_pager = MessagePager(
            client,
            self._store,
            PersistenceTransaction(self._store),
            identities,
            account.id,
            page_size=self._settings.message_page_size,
        )

        run = RunProgress(total_channels=len(channels))
        for index, channel in enumerate(channels, start=1):
            if self._stopping():
                logger.info(
                    "Stop requested; ending run after %d/%d channels",
                    index - 1,
                    len(channels),
                )
                break

            channel_progress = ChannelProgress(index, len(channels), channel.channel_name)
            synced = await thread_pager.page(channel, full_sync)
            channel_progress.threads_synced = len(synced)

            # Every stored thread, not only the ones this pass touched.
            for thread in await self._store.list_threads(channel.id):
                if self._stopping():
                    break
                written = await message_pager.page(thread, full_sync)
                channel_progress.update(written)

            channel_progress.log_complete()
            run.update_from_channel(channel_progress)
            await self._audit.log(
                "archiver",
                "sync_channel",
                {"account_id": account.id, **channel_progress.as_details()},
            )

        run.log_summary()
        return run
