"""
Shared fixtures: an in-memory archive store and a fake Discord API.

``FakeArchiveStore`` mirrors ``ArchiveStore``'s coroutine surface and its
unique keys, so idempotence and uniqueness can be checked on plain dicts.
``FakeDiscord`` answers listing calls from a static upstream dataset the
way the real endpoints page it (``before``/``after`` cursors, limits,
newest-first ordering).
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from archiver.errors import PersistenceFailure, TransientFetchFailure
from archiver.models import Account, Author, Channel, MessageRecord, Thread
from archiver.retry import RetryPolicy
from archiver.sync import SyncSettings

NO_WAIT_POLICY = RetryPolicy(
    attempts=2, base_delay_seconds=0.0, max_delay_seconds=0.0, jitter_seconds=0.0
)
BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def iso(dt: datetime) -> str:
    return dt.isoformat()


def user(user_id: str, username: Optional[str] = None, avatar: Optional[str] = None,
         bot: bool = False) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"id": user_id, "username": username or f"user{user_id}"}
    if avatar:
        payload["avatar"] = avatar
    if bot:
        payload["bot"] = True
    return payload


def message(message_id: int, author: Dict[str, Any], content: str = "hello",
            minutes: int = 0, mentions: Optional[List[Dict[str, Any]]] = None,
            msg_type: int = 0, referenced: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": str(message_id),
        "type": msg_type,
        "content": content,
        "author": author,
        "mentions": mentions or [],
        "timestamp": iso(BASE_TIME + timedelta(minutes=minutes)),
    }
    if referenced is not None:
        payload["referenced_message"] = referenced
    return payload


def thread(thread_id: int, name: str = "A thread", archived_minutes: int = 0,
           message_count: int = 0) -> Dict[str, Any]:
    return {
        "id": str(thread_id),
        "name": name,
        "message_count": message_count,
        "thread_metadata": {
            "archive_timestamp": iso(BASE_TIME + timedelta(minutes=archived_minutes)),
        },
    }


class FakeArchiveStore:
    def __init__(self) -> None:
        self.accounts: Dict[str, Account] = {}
        self.channels: Dict[int, Channel] = {}
        self.threads: Dict[int, Thread] = {}
        self.authors: Dict[int, Author] = {}
        self.messages: Dict[int, Dict[str, Any]] = {}
        self.mentions: set[tuple[int, int]] = set()
        self.status_history: List[tuple[str, str]] = []
        self.fail_message_batches = False
        self.fail_deletes = False
        self.deleted: List[str] = []
        self._next_id = 1

    def _id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    def snapshot(self) -> Dict[str, Any]:
        return {
            "channels": len(self.channels),
            "threads": {t.external_thread_id: t.message_count for t in self.threads.values()},
            "authors": len(self.authors),
            "messages": {
                (m["channel_id"], m["external_message_id"]): (m["body"], m["author_id"])
                for m in self.messages.values()
            },
            "mentions": set(self.mentions),
        }

    # accounts
    async def get_account(self, account_id: str) -> Optional[Account]:
        return self.accounts.get(account_id)

    async def set_sync_status(self, account_id: str, status: str) -> None:
        self.status_history.append((account_id, status))
        if account_id in self.accounts:
            self.accounts[account_id].sync_status = status

    # channels
    async def upsert_channels(self, account_id: str, channels: List[Dict[str, Any]]) -> List[Channel]:
        saved = []
        for raw in channels:
            existing = next(
                (c for c in self.channels.values() if c.external_channel_id == str(raw["id"])),
                None,
            )
            if existing is None:
                existing = Channel(self._id(), account_id, str(raw["id"]), raw.get("name", ""))
                self.channels[existing.id] = existing
            else:
                existing.channel_name = raw.get("name", existing.channel_name)
            saved.append(replace(existing))
        return sorted(saved, key=lambda c: c.id)

    async def get_channel_cursor(self, channel_id: int) -> Optional[datetime]:
        return self.channels[channel_id].next_page_cursor

    async def advance_channel_cursor(self, channel_id: int, cursor: datetime) -> None:
        current = self.channels[channel_id].next_page_cursor
        if current is None or cursor > current:
            self.channels[channel_id].next_page_cursor = cursor

    # threads
    async def upsert_threads(self, channel_id: int, threads: List[Dict[str, Any]]) -> List[Thread]:
        saved = []
        for row in threads:
            existing = next(
                (t for t in self.threads.values()
                 if t.external_thread_id == row["external_thread_id"]),
                None,
            )
            if existing is None:
                existing = Thread(
                    self._id(), channel_id, row["external_thread_id"],
                    row.get("slug"), row["message_count"],
                )
                self.threads[existing.id] = existing
            else:
                existing.message_count = row["message_count"]
            saved.append(replace(existing))
        return saved

    async def list_threads(self, channel_id: int) -> List[Thread]:
        return [replace(t) for t in sorted(self.threads.values(), key=lambda t: t.id)
                if t.channel_id == channel_id]

    async def get_newest_message_id(self, thread_id: int) -> Optional[str]:
        rows = [m for m in self.messages.values() if m["thread_id"] == thread_id]
        if not rows:
            return None
        return max(rows, key=lambda m: m["sent_at"])["external_message_id"]

    # authors
    async def load_authors(self, account_id: str) -> List[Author]:
        return [replace(a) for a in self.authors.values() if a.account_id == account_id]

    async def create_author(self, account_id: str, external_user_id: str, display_name: str,
                            anonymous_alias: str, is_bot: bool,
                            profile_image_url: Optional[str]) -> Author:
        for author in self.authors.values():
            if author.account_id == account_id and author.external_user_id == external_user_id:
                return replace(author)
        author = Author(self._id(), account_id, external_user_id, display_name,
                        anonymous_alias, is_bot, False, profile_image_url)
        self.authors[author.id] = author
        return replace(author)

    async def update_author_avatar(self, author_id: int, profile_image_url: str) -> None:
        self.authors[author_id].profile_image_url = profile_image_url

    # messages
    async def upsert_messages(self, records: List[MessageRecord]) -> int:
        if self.fail_message_batches:
            raise PersistenceFailure("simulated transaction failure")
        for record in records:
            key = (record.channel_id, record.external_message_id)
            existing = next(
                (m for m in self.messages.values()
                 if (m["channel_id"], m["external_message_id"]) == key),
                None,
            )
            if existing is None:
                existing = {
                    "id": self._id(),
                    "channel_id": record.channel_id,
                    "external_message_id": record.external_message_id,
                    "sent_at": record.sent_at,
                }
                self.messages[existing["id"]] = existing
            existing.update(
                thread_id=record.thread_id, author_id=record.author_id, body=record.body
            )
            for author_id in record.mention_author_ids:
                self.mentions.add((existing["id"], author_id))
        return len(records)

    async def delete_message(self, channel_id: int, external_message_id: str) -> bool:
        if self.fail_deletes:
            raise RuntimeError("simulated delete failure")
        self.deleted.append(external_message_id)
        for row in list(self.messages.values()):
            if (row["channel_id"], row["external_message_id"]) == (channel_id, external_message_id):
                self.mentions = {m for m in self.mentions if m[0] != row["id"]}
                del self.messages[row["id"]]
                return True
        return False

    def message_by_external_id(self, external_id: str) -> Optional[Dict[str, Any]]:
        return next(
            (m for m in self.messages.values() if m["external_message_id"] == external_id),
            None,
        )


class FakeDiscord:
    """Static upstream dataset served through the DiscordClient surface."""

    def __init__(self) -> None:
        self.guild_channels: List[Dict[str, Any]] = []
        self.threads_by_channel: Dict[str, List[Dict[str, Any]]] = {}
        self.messages_by_thread: Dict[str, List[Dict[str, Any]]] = {}
        self.failing_channels: set[str] = set()
        self.failing_threads: set[str] = set()
        self.malformed_threads: set[str] = set()
        self.thread_calls: List[tuple[str, Optional[str], Optional[int]]] = []
        self.message_calls: List[tuple[str, Optional[str], Optional[int]]] = []

    async def __aenter__(self) -> "FakeDiscord":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None

    def add_channel(self, channel_id: str, name: str, channel_type: int = 0) -> None:
        self.guild_channels.append({"id": channel_id, "name": name, "type": channel_type})
        self.threads_by_channel.setdefault(channel_id, [])

    async def list_guild_channels(self, server_id: str) -> List[Dict[str, Any]]:
        return list(self.guild_channels)

    async def list_archived_threads(self, channel_id: str, before: Optional[str] = None,
                                    limit: Optional[int] = None) -> Dict[str, Any]:
        self.thread_calls.append((channel_id, before, limit))
        if channel_id in self.failing_channels:
            raise TransientFetchFailure(f"channel {channel_id} unavailable")
        threads = sorted(
            self.threads_by_channel.get(channel_id, []),
            key=lambda t: t["thread_metadata"]["archive_timestamp"],
            reverse=True,
        )
        if before is not None:
            cutoff = datetime.fromisoformat(before)
            threads = [
                t for t in threads
                if datetime.fromisoformat(t["thread_metadata"]["archive_timestamp"]) < cutoff
            ]
        page_size = limit or 50
        return {"threads": threads[:page_size], "has_more": len(threads) > page_size}

    async def list_thread_messages(self, thread_id: str, after: Optional[str] = None,
                                   limit: Optional[int] = None) -> List[Dict[str, Any]]:
        self.message_calls.append((thread_id, after, limit))
        if thread_id in self.failing_threads:
            raise TransientFetchFailure(f"thread {thread_id} unavailable")
        if thread_id in self.malformed_threads:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        messages = sorted(self.messages_by_thread.get(thread_id, []), key=lambda m: int(m["id"]))
        page_size = limit or 50
        if after is None:
            # No cursor: the endpoint answers with the most recent page.
            page = messages[-page_size:]
        else:
            page = [m for m in messages if int(m["id"]) > int(after)][:page_size]
        return list(reversed(page))


@pytest.fixture
def store() -> FakeArchiveStore:
    fake = FakeArchiveStore()
    fake.accounts["acct-1"] = Account("acct-1", "guild-1")
    return fake


@pytest.fixture
def discord() -> FakeDiscord:
    return FakeDiscord()


@pytest.fixture
def settings() -> SyncSettings:
    return SyncSettings(first_page_limit=2, message_page_size=50, retry=NO_WAIT_POLICY)
