"""
Sync progress tracking for journalctl output.

Provides ``ChannelProgress`` (per-channel) and ``RunProgress`` (whole
account run) counters that log human-readable progress lines with thread
and message totals and message rates.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict

logger = logging.getLogger("archiver.progress")


def _format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples: ``"45s"``, ``"2m 30s"``, ``"1h 15m"``.
    """
    total = max(0, int(seconds))
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if mins else f"{hours}h"


class ChannelProgress:
    """Tracks progress for a single channel.

    Args:
        channel_index: 1-based index of this channel in the run.
        total_channels: Number of channels in the run.
        channel_name: Display name for the channel.
    """

    def __init__(self, channel_index: int, total_channels: int, channel_name: str) -> None:
        self.channel_index = channel_index
        self.total_channels = total_channels
        self.channel_name = channel_name
        self.threads_synced = 0
        self.threads_paged = 0
        self.messages = 0
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    @property
    def rate(self) -> float:
        """Messages written per second."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.messages / elapsed

    def update(self, messages_written: int) -> None:
        """Record one thread's message pass."""
        self.threads_paged += 1
        self.messages += messages_written

    def log_complete(self) -> None:
        logger.info(
            '  [Channel %d/%d] "%s" | %d new/updated threads, %d threads paged, '
            "%d messages in %s (%.1f msg/s)",
            self.channel_index,
            self.total_channels,
            self.channel_name,
            self.threads_synced,
            self.threads_paged,
            self.messages,
            _format_duration(self.elapsed_seconds),
            self.rate,
        )

    def as_details(self) -> Dict[str, Any]:
        return {
            "channel_name": self.channel_name,
            "channel_index": self.channel_index,
            "total_channels": self.total_channels,
            "threads_synced": self.threads_synced,
            "threads_paged": self.threads_paged,
            "messages": self.messages,
            "elapsed_seconds": round(self.elapsed_seconds, 1),
        }


class RunProgress:
    """Accumulates totals across every channel of an account run."""

    def __init__(self, total_channels: int) -> None:
        self.total_channels = total_channels
        self.channels_completed = 0
        self.threads_synced = 0
        self.messages = 0
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    def update_from_channel(self, channel: ChannelProgress) -> None:
        self.channels_completed += 1
        self.threads_synced += channel.threads_synced
        self.messages += channel.messages

    def log_summary(self) -> None:
        logger.info(
            "  Run: %d/%d channels, %d threads, %d messages in %s",
            self.channels_completed,
            self.total_channels,
            self.threads_synced,
            self.messages,
            _format_duration(self.elapsed_seconds),
        )

    def as_details(self) -> Dict[str, Any]:
        return {
            "channels_completed": self.channels_completed,
            "total_channels": self.total_channels,
            "threads_synced": self.threads_synced,
            "messages": self.messages,
            "elapsed_seconds": round(self.elapsed_seconds, 1),
        }
