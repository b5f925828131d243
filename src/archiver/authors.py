"""
Author resolution — make sure every user sighted in a message batch has an
``authors`` row before the batch is written.

A user is "sighted" as a message author, as a mention target, or as the
author or a mention of the message's ``referenced_message``.  New users are
created; known users that still lack an avatar get one as soon as a
sighting carries avatar information.  Resolved rows are kept in an
:class:`IdentityCache` owned by the sync run.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from archiver.models import Author
from archiver.naming import generate_anonymous_alias

logger = logging.getLogger("archiver.authors")

AVATAR_CDN_BASE = "https://cdn.discordapp.com/avatars"


def build_user_avatar(user_id: str, avatar_id: str) -> str:
    return f"{AVATAR_CDN_BASE}/{user_id}/{avatar_id}.png"


class IdentityCache:
    """Per-run cache of resolved authors, keyed by external user id.

    The database enforces ``UNIQUE (account_id, external_user_id)`` and
    author creation is an upsert, so the cache only saves round trips; it
    is never the sole guard against duplicates.
    """

    def __init__(self, authors: Iterable[Author] = ()) -> None:
        self._by_external_id: Dict[str, Author] = {
            author.external_user_id: author for author in authors
        }

    @classmethod
    async def load(cls, store: Any, account_id: str) -> "IdentityCache":
        """Preload every known author of an account."""
        cache = cls(await store.load_authors(account_id))
        logger.info("Loaded %d known authors for account %s", len(cache), account_id)
        return cache

    def get(self, external_user_id: str) -> Optional[Author]:
        return self._by_external_id.get(external_user_id)

    def put(self, author: Author) -> None:
        self._by_external_id[author.external_user_id] = author

    def __contains__(self, external_user_id: object) -> bool:
        return external_user_id in self._by_external_id

    def __len__(self) -> int:
        return len(self._by_external_id)


def _users_in(message: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    author = message.get("author")
    if author and author.get("id"):
        yield author
    for mention in message.get("mentions") or []:
        if mention.get("id"):
            yield mention


def collect_sighted_users(messages: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Return distinct users sighted in a batch, keyed by external id.

    When a user is sighted more than once, a sighting with an avatar wins
    over one without, so the result does not depend on message order.
    """
    sighted: Dict[str, Dict[str, Any]] = {}
    for message in messages:
        users: List[Dict[str, Any]] = list(_users_in(message))
        referenced = message.get("referenced_message")
        if referenced:
            users.extend(_users_in(referenced))
        for user in users:
            user_id = str(user["id"])
            known = sighted.get(user_id)
            if known is None or (not known.get("avatar") and user.get("avatar")):
                sighted[user_id] = user
    return sighted


class AuthorResolver:
    """Creates or backfills ``authors`` rows for a batch of raw messages.

    Args:
        store: An :class:`~archiver.store.ArchiveStore`.
        alias_factory: Produces the anonymous alias for new authors.
    """

    def __init__(
        self,
        store: Any,
        alias_factory: Callable[[], str] = generate_anonymous_alias,
    ) -> None:
        self._store = store
        self._alias_factory = alias_factory

    async def resolve(
        self,
        messages: List[Dict[str, Any]],
        identities: IdentityCache,
        account_id: str,
    ) -> int:
        """Resolve every sighted user into ``identities``.

        Returns:
            Number of authors created.
        """
        created = 0
        for user_id, user in collect_sighted_users(messages).items():
            avatar_id = user.get("avatar")
            author = identities.get(user_id)
            if author is None:
                author = await self._store.create_author(
                    account_id=account_id,
                    external_user_id=user_id,
                    display_name=user.get("username") or user_id,
                    anonymous_alias=self._alias_factory(),
                    is_bot=bool(user.get("bot", False)),
                    profile_image_url=(
                        build_user_avatar(user_id, avatar_id) if avatar_id else None
                    ),
                )
                identities.put(author)
                created += 1
            elif not author.profile_image_url and avatar_id:
                url = build_user_avatar(user_id, avatar_id)
                await self._store.update_author_avatar(author.id, url)
                author.profile_image_url = url
                logger.debug("Backfilled avatar for author %s", user_id)
        if created:
            logger.debug("Created %d new authors", created)
        return created
