"""
Archiver entry point — runs one sync for one account and exits.

Invoked by the job scheduler as::

    python -m archiver.main <account_id> [--full-sync]

Key behaviours:
    - Loads configuration from ``/etc/discord-archiver/settings.toml``
      (override with ``ARCHIVER_CONFIG``).
    - Reads the bot token from the system keychain (env var fallback).
    - Handles SIGTERM / SIGINT by stopping between channels and threads.
    - Records the run in the audit log.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml

from archiver.discord_client import DEFAULT_API_BASE, DiscordClient
from archiver.errors import PersistenceFailure, SyncError
from archiver.store import ArchiveStore
from archiver.sync import TOKEN_KEY_NAME, SyncOrchestrator, SyncSettings
from shared.audit import AuditLogger
from shared.db import get_connection_pool, health_check, init_database
from shared.secrets import find_secret

logger = logging.getLogger("archiver.main")

_DEFAULT_CONFIG_PATH = Path(
    os.environ.get("ARCHIVER_CONFIG", "/etc/discord-archiver/settings.toml")
)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def load_config(path: Path = _DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load and validate settings from a TOML file.

    Returns:
        Parsed configuration dictionary.

    Raises:
        FileNotFoundError: If the config file does not exist.
        KeyError: If required keys are missing.
    """
    config = toml.load(path)

    required = [
        ("database",),
        ("database", "database"),
    ]
    for keys in required:
        obj = config
        for k in keys:
            if k not in obj:
                raise KeyError(f"Missing required config key: {'.'.join(keys)}")
            obj = obj[k]

    return config


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------

_shutdown_event: threading.Event = threading.Event()


def _handle_signal(sig: int, frame: Any) -> None:
    """Signal handler — sets the shutdown event so the run stops between steps."""
    logger.info("Received signal %s, stopping after the current thread...", sig)
    _shutdown_event.set()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def main(account_id: str, full_sync: bool, config: Dict[str, Any]) -> None:
    """Top-level async entry point for one account sync."""
    discord_config = config.get("discord", {})
    archiver_config = config.get("archiver", {})

    def client_factory(token: str) -> DiscordClient:
        return DiscordClient(
            token,
            api_base=discord_config.get("api_base", DEFAULT_API_BASE),
            timeout_seconds=float(discord_config.get("request_timeout_seconds", 25)),
        )

    def token_provider(_account_id: str) -> Optional[str]:
        return find_secret(TOKEN_KEY_NAME)

    db_config = dict(config["database"])
    if "db_user" in archiver_config:
        db_config["user"] = archiver_config["db_user"]

    pool = await get_connection_pool(db_config)
    audit: AuditLogger | None = None
    try:
        if not await health_check(pool):
            raise PersistenceFailure("Database is not reachable")
        await init_database(pool)
        audit_kwargs = {}
        if "audit_log_path" in archiver_config:
            audit_kwargs["log_path"] = Path(archiver_config["audit_log_path"])
        audit = AuditLogger(pool, **audit_kwargs)

        store = ArchiveStore(pool)
        orchestrator = SyncOrchestrator(
            store,
            client_factory=client_factory,
            token_provider=token_provider,
            audit=audit,
            settings=SyncSettings.from_config(config),
            stop_event=_shutdown_event,
        )
        progress = await orchestrator.sync(account_id, full_sync=full_sync)
        logger.info(
            "Account %s synced: %d channels, %d threads, %d messages",
            account_id,
            progress.channels_completed,
            progress.threads_synced,
            progress.messages,
        )
        stats = await store.get_sync_stats(account_id)
        logger.info(
            "Archive totals for %s: %d channels, %d threads, %d messages",
            account_id,
            stats["total_channels"],
            stats["total_threads"],
            stats["total_messages"],
        )
    finally:
        if audit is not None:
            try:
                await audit.close()
            except Exception:
                logger.exception("Failed to flush/close audit logger")
        try:
            await pool.close()
        except Exception:
            logger.exception("Failed to close database pool")


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="archiver",
        description="Archive a Discord server's threads and messages into PostgreSQL.",
    )
    parser.add_argument("account_id", help="Internal id of the account to sync")
    parser.add_argument(
        "--full-sync",
        action="store_true",
        help="Ignore stored cursors and re-fetch the entire history",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=_DEFAULT_CONFIG_PATH,
        help="Path to settings.toml",
    )
    return parser.parse_args(argv)


def run(argv: Optional[List[str]] = None) -> int:
    """Synchronous entry point (called from ``__main__`` or the job runner)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    args = _parse_args(argv)

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    config = load_config(args.config)
    try:
        asyncio.run(main(args.account_id, args.full_sync, config))
    except SyncError as exc:
        logger.error("Sync failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(run())
