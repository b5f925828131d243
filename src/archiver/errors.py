"""
Error taxonomy for archive sync runs.

Terminal errors (:class:`AccountNotFound`, :class:`MissingCredential`,
:class:`PersistenceFailure`) abort a run and leave the account in the
``ERROR`` status.  Fetch errors (:class:`TransientFetchFailure`,
:class:`DiscordApiError`) never leave a pager; they end pagination for the
current channel or thread.  :class:`CleanupFailure` is only ever logged.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""


class AccountNotFound(SyncError):
    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class MissingCredential(SyncError):
    def __init__(self, account_id: str, key_name: str) -> None:
        super().__init__(
            f"No API credential '{key_name}' configured for account {account_id}"
        )
        self.account_id = account_id
        self.key_name = key_name


class FetchError(SyncError):
    """A listing call against the chat platform did not produce data."""


class TransientFetchFailure(FetchError):
    """Network error, timeout, rate limit or 5xx; worth retrying.

    Args:
        retry_after: Server-suggested delay in seconds, when provided.
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class DiscordApiError(FetchError):
    """Non-retryable API response (4xx other than 429)."""

    def __init__(self, status: int, path: str, body: str = "") -> None:
        super().__init__(f"HTTP {status} for {path}: {body[:200]}")
        self.status = status
        self.path = path


class PersistenceFailure(SyncError):
    """A batch transaction failed; nothing from the batch was committed."""


class CleanupFailure(SyncError):
    """Deleting a thread-starter wrapper message failed after commit."""
