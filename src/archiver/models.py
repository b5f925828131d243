"""
Row types for the archive store and the outcome type returned by the
platform listing calls.

Raw platform payloads (threads, messages, users) are kept as plain dicts,
exactly as decoded from the API's JSON; only rows that the engine reads
back from PostgreSQL get a dataclass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


def _from_row(cls, row: Mapping[str, Any]):
    names = cls.__dataclass_fields__.keys()
    return cls(**{name: row[name] for name in names if name in row})


@dataclass(slots=True)
class Account:
    id: str
    discord_server_id: Optional[str]
    sync_status: str = "PENDING"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Account":
        return _from_row(cls, row)


@dataclass(slots=True)
class Channel:
    id: int
    account_id: str
    external_channel_id: str
    channel_name: str
    # Resume point for incremental thread paging; advanced after each pass.
    next_page_cursor: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Channel":
        return _from_row(cls, row)


@dataclass(slots=True)
class Thread:
    id: int
    channel_id: int
    external_thread_id: str
    slug: Optional[str] = None
    message_count: int = 1

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Thread":
        return _from_row(cls, row)


@dataclass(slots=True)
class Author:
    id: int
    account_id: str
    external_user_id: str
    display_name: str
    anonymous_alias: Optional[str] = None
    is_bot: bool = False
    is_admin: bool = False
    profile_image_url: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Author":
        return _from_row(cls, row)


class FetchStatus(str, Enum):
    OK = "ok"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


@dataclass(slots=True)
class FetchOutcome:
    """Result of one listing call.

    ``OK`` carries a non-empty page, ``EXHAUSTED`` means the platform had
    nothing left, ``FAILED`` means the call gave up after retries.  Pagers
    treat ``FAILED`` like ``EXHAUSTED`` but can still tell them apart.
    """

    status: FetchStatus
    items: List[Dict[str, Any]] = field(default_factory=list)
    has_more: bool = False
    error: Optional[BaseException] = None

    @classmethod
    def ok(cls, items: List[Dict[str, Any]], has_more: bool) -> "FetchOutcome":
        if not items:
            return cls.exhausted()
        return cls(FetchStatus.OK, list(items), has_more)

    @classmethod
    def exhausted(cls) -> "FetchOutcome":
        return cls(FetchStatus.EXHAUSTED)

    @classmethod
    def failed(cls, error: BaseException) -> "FetchOutcome":
        return cls(FetchStatus.FAILED, error=error)

    @property
    def is_failure(self) -> bool:
        return self.status is FetchStatus.FAILED


@dataclass(slots=True)
class MessageRecord:
    """One message ready for upsert, with every reference resolved."""

    channel_id: int
    thread_id: int
    author_id: int
    external_message_id: str
    body: str
    sent_at: datetime
    mention_author_ids: List[int] = field(default_factory=list)
