"""
End-to-end tests for SyncOrchestrator over the in-memory store and the
fake Discord API: status transitions, terminal errors, partial failures,
idempotence and cursor monotonicity.
"""

import threading
from unittest.mock import AsyncMock

import pytest

from conftest import message, thread, user
from archiver.errors import AccountNotFound, MissingCredential, PersistenceFailure
from archiver.models import Account
from archiver.sync import SyncOrchestrator

def _orchestrator(store, discord, settings, token="bot-token", audit=None, stop_event=None):
    return SyncOrchestrator(
        store,
        client_factory=lambda _token: discord,
        token_provider=lambda _account_id: token,
        audit=audit or AsyncMock(),
        settings=settings,
        stop_event=stop_event,
    )

def _statuses(store, account_id="acct-1"):
    return [status for acct, status in store.status_history if acct == account_id]

def _seed_two_channels(discord):
    alice, bob = user("u1", username="alice"), user("u2", username="bob", avatar="av")
    discord.add_channel("chan-a", "help")
    discord.add_channel("chan-b", "general")
    discord.add_channel("voice", "lounge", channel_type=2)
    discord.threads_by_channel["chan-a"] = [
        thread(1000, name="First question", archived_minutes=10, message_count=2),
        thread(2000, name="Second question", archived_minutes=20, message_count=1),
    ]
    discord.threads_by_channel["chan-b"] = [thread(3000, name="Chatter", archived_minutes=5)]
    discord.messages_by_thread["1000"] = [
        message(1001, alice, content="q1", minutes=1),
        message(1002, bob, content="a1", minutes=2, mentions=[alice]),
    ]
    discord.messages_by_thread["2000"] = [message(2001, bob, content="q2", minutes=3)]
    discord.messages_by_thread["3000"] = [message(3001, alice, content="hi", minutes=4)]

def _fail_on(action):
    """Audit ``log`` side effect raising for one action."""

    def log(service, name, details, success=True):
        if name == action:
            raise RuntimeError(f"audit sink rejected {name}")

    return log

class TestSyncStatus:
    @pytest.mark.asyncio
    async def test_successful_run_goes_in_progress_then_done(self, store, discord, settings):
        _seed_two_channels(discord)
        audit = AsyncMock()

        progress = await _orchestrator(store, discord, settings, audit=audit).sync("acct-1")

        assert _statuses(store) == ["IN_PROGRESS", "DONE"]
        assert store.accounts["acct-1"].sync_status == "DONE"
        assert progress.channels_completed == 2
        assert progress.messages == 4
        actions = [call.args[1] for call in audit.log.await_args_list]
        assert actions[0] == "sync_status"
        assert "sync_start" in actions
        assert actions.count("sync_channel") == 2
        assert actions[-1] == "sync_done"

    @pytest.mark.asyncio
    async def test_unknown_account(self, store, discord, settings):
        with pytest.raises(AccountNotFound):
            await _orchestrator(store, discord, settings).sync("nope")
        assert store.status_history == []

    @pytest.mark.asyncio
    async def test_account_without_server_is_not_found(self, store, discord, settings):
        store.accounts["acct-2"] = Account("acct-2", None)
        with pytest.raises(AccountNotFound):
            await _orchestrator(store, discord, settings).sync("acct-2")
        assert _statuses(store, "acct-2") == ["ERROR"]

    @pytest.mark.asyncio
    async def test_missing_token(self, store, discord, settings):
        with pytest.raises(MissingCredential):
            await _orchestrator(store, discord, settings, token=None).sync("acct-1")
        assert _statuses(store) == ["ERROR"]
        assert discord.thread_calls == []

    @pytest.mark.asyncio
    async def test_persistence_failure_marks_error_and_raises(self, store, discord, settings):
        _seed_two_channels(discord)
        store.fail_message_batches = True

        with pytest.raises(PersistenceFailure):
            await _orchestrator(store, discord, settings).sync("acct-1")

        assert _statuses(store) == ["IN_PROGRESS", "ERROR"]

    @pytest.mark.asyncio
    async def test_start_audit_failure_still_ends_in_error(self, store, discord, settings):
        _seed_two_channels(discord)
        audit = AsyncMock()
        audit.log.side_effect = _fail_on("sync_start")

        with pytest.raises(RuntimeError):
            await _orchestrator(store, discord, settings, audit=audit).sync("acct-1")

        assert _statuses(store) == ["IN_PROGRESS", "ERROR"]
        assert store.accounts["acct-1"].sync_status == "ERROR"

    @pytest.mark.asyncio
    async def test_done_audit_failure_still_ends_in_error(self, store, discord, settings):
        _seed_two_channels(discord)
        audit = AsyncMock()
        audit.log.side_effect = _fail_on("sync_done")

        with pytest.raises(RuntimeError):
            await _orchestrator(store, discord, settings, audit=audit).sync("acct-1")

        assert _statuses(store)[-1] == "ERROR"
        assert store.accounts["acct-1"].sync_status == "ERROR"

class TestSyncBehaviour:
    @pytest.mark.asyncio
    async def test_only_threadable_channels_are_synced(self, store, discord, settings):
        _seed_two_channels(discord)
        await _orchestrator(store, discord, settings).sync("acct-1")
        assert sorted(c.external_channel_id for c in store.channels.values()) == [
            "chan-a",
            "chan-b",
        ]

    @pytest.mark.asyncio
    async def test_partial_failure_isolation(self, store, discord, settings):
        """Channel B's thread listing failing does not undo channel A or fail the run."""
        _seed_two_channels(discord)
        discord.failing_channels.add("chan-b")

        await _orchestrator(store, discord, settings).sync("acct-1")

        assert _statuses(store) == ["IN_PROGRESS", "DONE"]
        assert store.message_by_external_id("1002")["body"] == "a1"
        assert store.message_by_external_id("2001") is not None
        assert store.message_by_external_id("3001") is None

    @pytest.mark.asyncio
    async def test_undecodable_message_page_is_not_fatal(self, store, discord, settings):
        """A thread whose listing cannot be decoded is skipped, the run finishes."""
        _seed_two_channels(discord)
        discord.malformed_threads.add("2000")

        await _orchestrator(store, discord, settings).sync("acct-1")

        assert _statuses(store) == ["IN_PROGRESS", "DONE"]
        assert store.message_by_external_id("2001") is None
        assert store.message_by_external_id("1002") is not None
        assert store.message_by_external_id("3001") is not None

    @pytest.mark.asyncio
    async def test_author_dedup_across_run(self, store, discord, settings):
        _seed_two_channels(discord)
        await _orchestrator(store, discord, settings).sync("acct-1")
        assert sorted(a.external_user_id for a in store.authors.values()) == ["u1", "u2"]

    @pytest.mark.asyncio
    async def test_second_incremental_run_changes_nothing(self, store, discord, settings):
        _seed_two_channels(discord)
        orchestrator = _orchestrator(store, discord, settings)

        await orchestrator.sync("acct-1")
        after_first = store.snapshot()
        await orchestrator.sync("acct-1")

        assert store.snapshot() == after_first

    @pytest.mark.asyncio
    async def test_full_sync_rerun_does_not_duplicate(self, store, discord, settings):
        _seed_two_channels(discord)
        orchestrator = _orchestrator(store, discord, settings)

        await orchestrator.sync("acct-1", full_sync=True)
        after_first = store.snapshot()
        await orchestrator.sync("acct-1", full_sync=True)

        assert store.snapshot() == after_first
        keys = [(m["channel_id"], m["external_message_id"]) for m in store.messages.values()]
        assert len(keys) == len(set(keys)) == 4

    @pytest.mark.asyncio
    async def test_new_upstream_messages_are_picked_up(self, store, discord, settings):
        _seed_two_channels(discord)
        orchestrator = _orchestrator(store, discord, settings)
        await orchestrator.sync("acct-1")

        discord.messages_by_thread["1000"].append(
            message(1003, user("u3"), content="late answer", minutes=30)
        )
        await orchestrator.sync("acct-1")

        assert store.message_by_external_id("1003")["body"] == "late answer"
        assert len(store.authors) == 3

    @pytest.mark.asyncio
    async def test_cursor_is_monotonic_across_runs(self, store, discord, settings):
        _seed_two_channels(discord)
        orchestrator = _orchestrator(store, discord, settings)

        await orchestrator.sync("acct-1")
        first = {c.id: c.next_page_cursor for c in store.channels.values()}
        await orchestrator.sync("acct-1")
        second = {c.id: c.next_page_cursor for c in store.channels.values()}

        for channel_id, cursor in first.items():
            assert cursor is not None
            assert second[channel_id] >= cursor

    @pytest.mark.asyncio
    async def test_stop_event_ends_run_early_but_done(self, store, discord, settings):
        _seed_two_channels(discord)
        stop = threading.Event()
        stop.set()

        progress = await _orchestrator(store, discord, settings, stop_event=stop).sync("acct-1")

        assert progress.channels_completed == 0
        assert discord.thread_calls == []
        assert _statuses(store) == ["IN_PROGRESS", "DONE"]
