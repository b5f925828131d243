"""
Audit trail for archive runs.

Each event lands in two places: a JSON Lines file (always readable, even
when the database is the thing that broke) and the ``audit_log`` table,
keyed by ``account_id`` so one account's run history is a single indexed
query::

    SELECT timestamp, action, details, success
      FROM audit_log
     WHERE account_id = $1
     ORDER BY timestamp DESC;

The sync engine only needs an async ``log(service, action, details,
success)`` method from its sink, so tests pass an ``AsyncMock`` instead.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import asyncpg

logger = logging.getLogger("shared.audit")

_DEFAULT_LOG_PATH = Path("/var/log/discord-archiver/audit.log")
_INSERT_AUDIT_SQL = (
    "INSERT INTO audit_log (timestamp, service, action, account_id, details, success) "
    "VALUES ($1, $2, $3, $4, $5::jsonb, $6)"
)


@dataclass
class AuditEvent:
    """One audited step of a run.

    ``account_id`` is lifted out of the details so it can be stored in its
    own column; the remaining keys stay in ``details``.
    """

    service: str
    action: str
    account_id: Optional[str]
    details: Dict[str, Any]
    success: bool = True
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_details(
        cls,
        service: str,
        action: str,
        details: Optional[Dict[str, Any]],
        success: bool,
    ) -> "AuditEvent":
        rest = dict(details or {})
        account_id = rest.pop("account_id", None)
        return cls(
            service=service,
            action=action,
            account_id=None if account_id is None else str(account_id),
            details=rest,
            success=success,
        )

    def as_json_line(self) -> str:
        return json.dumps(
            {
                "timestamp": self.timestamp.isoformat(),
                "service": self.service,
                "action": self.action,
                "account_id": self.account_id,
                "details": self.details,
                "success": self.success,
            },
            default=str,
        ) + "\n"

    def as_row(self) -> Tuple[Any, ...]:
        return (
            self.timestamp,
            self.service,
            self.action,
            self.account_id,
            json.dumps(self.details, default=str),
            self.success,
        )


class AuditLogger:
    """Buffers run events and writes them to file and database in batches.

    A run produces a handful of events per channel, so they are held in
    memory and written when ``flush_every`` are pending, when a failure is
    recorded, or on :meth:`close`.  Write errors are logged, never raised:
    a broken audit sink must not fail an archive run.

    Args:
        pool: ``asyncpg`` connection pool (needs INSERT on ``audit_log``).
        log_path: Path to the JSON Lines audit log file.
        flush_every: Pending events that trigger a write.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        log_path: Path = _DEFAULT_LOG_PATH,
        flush_every: int = 32,
    ) -> None:
        self._pool = pool
        self._log_path = log_path
        self._flush_every = max(1, flush_every)
        self._pending: List[AuditEvent] = []
        self._closed = False

    async def log(
        self,
        service: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Record an audit event.

        Args:
            service: Originating service (``"archiver"``).
            action: Action identifier (e.g. ``"sync_start"``,
                    ``"sync_channel"``, ``"sync_status"``, ``"sync_error"``).
            details: JSON-serialisable metadata; an ``account_id`` key is
                     stored in its own column.
            success: Whether the action succeeded.
        """
        if self._closed:
            logger.debug("Dropping audit event after close: %s/%s", service, action)
            return
        self._pending.append(AuditEvent.from_details(service, action, details, success))
        if not success or len(self._pending) >= self._flush_every:
            await self.flush()

    async def flush(self) -> None:
        """Write pending events to the file, then the table."""
        batch, self._pending = self._pending, []
        if not batch:
            return

        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as handle:
                handle.write("".join(event.as_json_line() for event in batch))
        except OSError:
            logger.exception("Failed to write audit log file %s", self._log_path)

        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(_INSERT_AUDIT_SQL, [event.as_row() for event in batch])
        except (asyncpg.PostgresError, OSError):
            logger.exception("Failed to write %d audit events to database", len(batch))

    async def close(self) -> None:
        """Flush what is pending; later events are dropped."""
        if self._closed:
            return
        await self.flush()
        self._closed = True
