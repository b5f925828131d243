"""Account sync status and its notifier."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger("archiver.status")


class SyncStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    ERROR = "ERROR"


class SyncStatusNotifier:
    """Persists status transitions and publishes them as audit events.

    Both writes are awaited; a failure in either propagates to the caller.
    """

    def __init__(self, store: Any, audit: Optional[Any] = None) -> None:
        self._store = store
        self._audit = audit

    async def update_and_notify(self, account_id: str, status: SyncStatus) -> None:
        await self._store.set_sync_status(account_id, status.value)
        logger.info("Account %s sync status -> %s", account_id, status.value)
        if self._audit is not None:
            await self._audit.log(
                "archiver",
                "sync_status",
                {"account_id": account_id, "status": status.value},
                success=status is not SyncStatus.ERROR,
            )
