"""
Message normalisation — flatten reference wrappers before persistence.

A message whose ``referenced_message`` has content is stored as that
referenced message: its id, author, body, mentions and timestamp.  When
the wrapper is a thread-starter (type 21) it is a synthetic pointer with
no content of its own, so its id is also queued for deletion once the
batch has been committed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

# https://discord.com/developers/docs/resources/message#message-object-message-types
THREAD_STARTER_MESSAGE_TYPE = 21


@dataclass(slots=True)
class NormalizedBatch:
    messages: List[Dict[str, Any]] = field(default_factory=list)
    # External ids of thread-starter wrappers to delete after commit.
    cleanup_ids: List[str] = field(default_factory=list)


def normalize_messages(messages: List[Dict[str, Any]]) -> NormalizedBatch:
    batch = NormalizedBatch()
    for message in messages:
        referenced = message.get("referenced_message")
        if referenced and referenced.get("content"):
            if message.get("type") == THREAD_STARTER_MESSAGE_TYPE:
                batch.cleanup_ids.append(str(message["id"]))
            batch.messages.append(referenced)
        else:
            batch.messages.append(message)
    return batch


def parse_timestamp(value: str) -> datetime:
    """Parse the platform's ISO-8601 timestamps into aware datetimes."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
