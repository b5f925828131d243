"""
Archiver package — pulls channels, archived threads and thread messages
from Discord's REST API and stores them in PostgreSQL.

All platform access goes through ``DiscordClient`` (read-only, GET only),
wrapped by ``RetryingClient``.  Persistence is idempotent: every row is
upserted on the platform's external id, so runs can be repeated freely.
"""
