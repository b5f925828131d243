"""Slug and alias generators for archived threads and authors."""

from __future__ import annotations

import re

from faker import Faker

_faker = Faker()

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9]+")
_MAX_SLUG_LENGTH = 60


def create_slug(name: str | None) -> str:
    """Turn a thread name into a URL slug, e.g. ``"How do I…?"`` -> ``"how-do-i"``."""
    slug = _NON_SLUG_CHARS.sub("-", (name or "").lower()).strip("-")
    slug = slug[:_MAX_SLUG_LENGTH].rstrip("-")
    return slug or "conversation"


def generate_anonymous_alias(word_count: int = 3) -> str:
    """Random ``word-word-word`` alias shown instead of a real display name."""
    return "-".join(_faker.words(nb=word_count))
