"""Tests for session resolution, history compaction, checkpoints and reset policies."""

import asyncio
from datetime import datetime, timedelta

import pytest

from chatgate.config.schema import CleanupConfig, ResetConfig, SessionConfig
from chatgate.session import JsonlSessionStore, MemorySessionStore, Session, SessionManager, build_session_key
from chatgate.session.models import ConversationTurn


def make_manager(store, clock, **overrides) -> SessionManager:
    return SessionManager(store, SessionConfig(**overrides), scheduler=clock)


class TestSessionKeys:
    def test_per_peer_ignores_chat_id(self, make_message):
        a = make_message(chat_id="room-1", sender_id="u7")
        b = make_message(chat_id="room-2", sender_id="u7")

        assert build_session_key(a, "per-peer") == build_session_key(b, "per-peer")
        assert build_session_key(a, "per-peer") == "agent:peer:telegram:dm:u7"

    def test_per_channel_peer_separates_chats(self, make_message):
        a = make_message(chat_id="room-1", sender_id="u7")
        b = make_message(chat_id="room-2", sender_id="u7")

        assert build_session_key(a, "per-channel-peer") != build_session_key(b, "per-channel-peer")
        assert build_session_key(a, "per-channel-peer") == "agent:channel:telegram:dm:room-1:u7"

    def test_main_scope_shares_across_users(self, make_message):
        a = make_message(sender_id="u1", chat_id="x")
        b = make_message(sender_id="u2", chat_id="y")

        assert build_session_key(a, "main", "bot") == build_session_key(b, "main", "bot") == "bot:main:telegram:dm"

    def test_chat_type_is_part_of_key(self, make_message):
        dm = make_message(chat_type="dm")
        group = make_message(chat_type="group")

        assert build_session_key(dm, "main") != build_session_key(group, "main")


class TestGetOrCreate:
    async def test_concurrent_calls_create_one_session(self, store, clock, make_message):
        manager = make_manager(store, clock)
        msg = make_message()

        results = await asyncio.gather(*(manager.get_or_create_session(msg) for _ in range(10)))

        assert len({s.id for s in results}) == 1
        assert all(s is results[0] for s in results)
        assert store.count("create") == 1
        assert store.count("get") == 1
        assert manager._pending == {}

    async def test_per_peer_messages_share_session(self, store, clock, make_message):
        manager = make_manager(store, clock, dm_scope="per-peer")

        first = await manager.get_or_create_session(make_message(chat_id="a"))
        second = await manager.get_or_create_session(make_message(chat_id="b"))

        assert first is second

    async def test_existing_session_is_touched(self, store, clock, make_message):
        manager = make_manager(store, clock)
        session = await manager.get_or_create_session(make_message())

        await clock.advance(30)
        again = await manager.get_or_create_session(make_message())

        assert again is session
        assert session.last_activity == clock.now()

    async def test_new_session_fields(self, store, clock, make_message):
        manager = make_manager(store, clock)

        session = await manager.get_or_create_session(make_message(chat_id="42", sender_id="7"))

        assert session.id.startswith("session_")
        assert session.key == "agent:channel:telegram:dm:42:7"
        assert session.user_id == "7"
        assert session.chat_id == "42"
        assert session.history == []
        assert session.created_at == clock.now()
        assert manager.get_session(session.key) is session
        assert manager.get_session_by_id(session.id) is session
        assert session.key in store

    async def test_restores_persisted_session(self, store, clock, make_message):
        first = make_manager(store, clock)
        session = await first.get_or_create_session(make_message())
        await first.add_to_history(session, "user", "Where is my parcel?")
        await first.save_checkpoint(session, summary="before tracking")

        second = make_manager(store, clock)
        restored = await second.get_or_create_session(make_message())

        assert restored.id == session.id
        assert restored is not session
        assert [t.content for t in restored.history] == ["Where is my parcel?"]
        assert isinstance(restored.history[0].timestamp, datetime)
        assert isinstance(restored.created_at, datetime)
        assert isinstance(restored.checkpoint.saved_at, datetime)
        assert restored.checkpoint.summary == "before tracking"
        assert store.count("create") == 1

    async def test_persistence_outage_degrades_to_memory(self, failing_store, clock, make_message):
        manager = make_manager(failing_store, clock)

        session = await manager.get_or_create_session(make_message())
        await manager.add_to_history(session, "user", "still works")

        assert manager.get_session(session.key) is session
        assert [t.content for t in session.history] == ["still works"]
        assert manager._pending == {}

    async def test_delete_session(self, store, clock, make_message):
        manager = make_manager(store, clock)
        session = await manager.get_or_create_session(make_message())

        await manager.delete_session(session.key)

        assert manager.get_session(session.key) is None
        assert manager.get_session_by_id(session.id) is None
        assert session.key not in store


class TestHistory:
    async def test_append_is_written_through(self, store, clock, make_message):
        manager = make_manager(store, clock)
        session = await manager.get_or_create_session(make_message())

        await manager.add_to_history(session, "user", "hi")
        await manager.add_to_history(session, "assistant", "hello!")

        record = await store.get(session.key)
        assert [t["content"] for t in record["history"]] == ["hi", "hello!"]
        assert record["messageCount"] == 2
        assert session.message_count == 2

    async def test_compaction_keeps_ceiling_and_summarizes_each_removed_turn(self, store, clock, make_message):
        manager = make_manager(store, clock, max_history=4, keep_recent=4)
        session = await manager.get_or_create_session(make_message())

        for i in range(7):
            await manager.add_to_history(session, "user", f"Turn number {i} is here. More text follows")

        assert len(session.history) == 4
        assert [t.content.split(".")[0] for t in session.history] == [
            f"Turn number {i} is here" for i in range(3, 7)
        ]
        assert session.context_summary
        lines = session.context_summary.split("\n")
        assert lines == [f"User: Turn number {i} is here." for i in range(3)]
        assert session.message_count == 7

    async def test_default_compaction_keeps_recent_window(self, store, clock, make_message):
        manager = make_manager(store, clock)
        session = await manager.get_or_create_session(make_message())

        for i in range(21):
            role = "user" if i % 2 == 0 else "assistant"
            await manager.add_to_history(session, role, f"Message {i:02d}\nsecond line")

        assert len(session.history) == 10
        summary = session.context_summary.split("\n")
        assert len(summary) == 11
        assert summary[0] == "User: Message 00"
        assert summary[1] == "Assistant: Message 01"

    async def test_summary_is_append_only(self, store, clock, make_message):
        manager = make_manager(store, clock, max_history=2, keep_recent=1)
        session = await manager.get_or_create_session(make_message())

        for text in ("alpha one here", "beta two here", "gamma three here", "delta four here", "epsilon five"):
            await manager.add_to_history(session, "user", text)

        assert session.context_summary.split("\n") == [
            "User: alpha one here",
            "User: beta two here",
            "User: gamma three here",
            "User: delta four here",
        ]
        assert [t.content for t in session.history] == ["epsilon five"]

    async def test_clear_history(self, store, clock, make_message):
        manager = make_manager(store, clock, max_history=2, keep_recent=1)
        session = await manager.get_or_create_session(make_message())
        for text in ("one", "two", "three"):
            await manager.add_to_history(session, "user", text)

        await manager.clear_history(session)

        assert manager.get_history(session) == []
        assert session.context_summary is None
        assert session.message_count == 0
        assert (await store.get(session.key))["history"] == []


class TestCheckpoints:
    async def test_restore_discards_later_turns(self, store, clock, make_message):
        manager = make_manager(store, clock)
        session = await manager.get_or_create_session(make_message())
        await manager.add_to_history(session, "user", "t1")
        await manager.add_to_history(session, "assistant", "t2")
        await manager.save_checkpoint(session)

        await manager.add_to_history(session, "user", "t3")
        await manager.add_to_history(session, "assistant", "t4")
        assert await manager.restore_checkpoint(session) is True

        assert [t.content for t in session.history] == ["t1", "t2"]
        assert session.checkpoint_restored_at == clock.now()
        assert [t["content"] for t in (await store.get(session.key))["history"]] == ["t1", "t2"]

    async def test_checkpoint_is_a_copy(self, store, clock, make_message):
        manager = make_manager(store, clock)
        session = await manager.get_or_create_session(make_message())
        await manager.add_to_history(session, "user", "t1")
        await manager.save_checkpoint(session, summary="sum")
        await manager.add_to_history(session, "user", "t2")

        assert [t.content for t in session.checkpoint.history] == ["t1"]
        await manager.restore_checkpoint(session)
        assert session.context_summary == "sum"

    async def test_restore_without_checkpoint_signals_absence(self, store, clock, make_message):
        manager = make_manager(store, clock)
        session = await manager.get_or_create_session(make_message())
        writes = store.count("update")

        assert await manager.restore_checkpoint(session) is False
        assert store.count("update") == writes


class TestResets:
    async def test_manual_reset_keeps_identity(self, store, clock, make_message):
        manager = make_manager(store, clock)
        session = await manager.get_or_create_session(make_message())
        created = session.created_at
        await manager.add_to_history(session, "user", "hello")
        await manager.save_checkpoint(session)

        assert await manager.reset(session.id) is True

        assert session.history == []
        assert session.checkpoint is None
        assert session.message_count == 0
        assert session.created_at == created
        assert manager.get_session(session.key) is session

    async def test_reset_unknown_id_is_noop(self, store, clock):
        manager = make_manager(store, clock)
        assert await manager.reset("session_missing") is False
        assert store.count("update") == 0

    def test_reset_triggers(self, store, clock):
        manager = make_manager(store, clock, reset_triggers=["/new", "/Reset"])

        assert manager.is_reset_trigger("/new")
        assert manager.is_reset_trigger("  /RESET \n")
        assert not manager.is_reset_trigger("/new please")

    async def test_idle_reset_on_sweep(self, store, clock, make_message):
        manager = make_manager(store, clock, reset=ResetConfig(mode="idle", idle_minutes=30))
        manager.start()
        session = await manager.get_or_create_session(make_message())
        await manager.add_to_history(session, "user", "remember me")
        session_id = session.id

        await clock.advance(29 * 60)
        assert len(session.history) == 1

        await clock.advance(2 * 60)
        assert session.history == []
        assert session.id == session_id
        assert manager.get_session_by_id(session_id) is session

    async def test_manual_mode_never_resets(self, store, clock, make_message):
        manager = make_manager(store, clock)
        manager.start()
        session = await manager.get_or_create_session(make_message())
        await manager.add_to_history(session, "user", "keep")

        await clock.advance(3 * 3600)

        assert await manager.check_scheduled_resets() == 0
        assert len(session.history) == 1

    async def test_daily_reset_at_configured_hour(self, store, clock, make_message):
        manager = make_manager(store, clock, reset=ResetConfig(mode="daily", at_hour=4))
        session = await manager.get_or_create_session(make_message())
        await manager.add_to_history(session, "user", "yesterday")

        clock.set_time(datetime(2026, 3, 3, 4, 5))
        assert await manager.check_scheduled_resets() == 0  # less than a full day

        clock.set_time(datetime(2026, 3, 4, 3, 59))
        assert await manager.check_scheduled_resets() == 0  # wrong hour

        clock.set_time(datetime(2026, 3, 4, 4, 1))
        assert await manager.check_scheduled_resets() == 1
        assert session.history == []
        assert session.created_at == clock.now()

        clock.set_time(datetime(2026, 3, 4, 4, 30))
        assert await manager.check_scheduled_resets() == 0

    async def test_sweep_survives_failing_session(self, store, clock, make_message):
        manager = make_manager(store, clock, reset=ResetConfig(mode="idle", idle_minutes=1))
        good = await manager.get_or_create_session(make_message(chat_id="good"))
        bad = await manager.get_or_create_session(make_message(chat_id="bad"))
        await manager.add_to_history(good, "user", "x")
        await manager.add_to_history(bad, "user", "y")
        bad.last_activity = None  # corrupt: subtraction raises TypeError

        await clock.advance(120)
        assert await manager.check_scheduled_resets() == 1
        assert good.history == []


class TestCleanup:
    async def test_idle_sessions_are_evicted(self, store, clock, make_message):
        manager = make_manager(store, clock, cleanup=CleanupConfig(max_age_days=30, idle_days=14))
        stale = await manager.get_or_create_session(make_message(chat_id="old"))
        clock.set_time(clock.now() + timedelta(days=10))
        fresh = await manager.get_or_create_session(make_message(chat_id="new"))

        clock.set_time(clock.now() + timedelta(days=5))
        assert await manager.run_cleanup() == 1

        assert manager.get_session(stale.key) is None
        assert stale.key not in store
        assert manager.get_session(fresh.key) is fresh

    async def test_old_sessions_are_evicted_even_if_active(self, store, clock, make_message):
        manager = make_manager(store, clock, cleanup=CleanupConfig(max_age_days=2, idle_days=14))
        session = await manager.get_or_create_session(make_message())

        clock.set_time(clock.now() + timedelta(days=3))
        await manager.add_to_history(session, "user", "still chatting")

        assert await manager.run_cleanup() == 1
        assert manager.sessions == []

    async def test_cleanup_runs_on_its_own_interval(self, store, clock, make_message):
        manager = make_manager(
            store, clock, cleanup=CleanupConfig(idle_days=0.01), cleanup_interval_s=600
        )
        manager.start()
        session = await manager.get_or_create_session(make_message())

        await clock.advance(1200)

        assert manager.get_session(session.key) is None

    async def test_disabled_cleanup(self, store, clock, make_message):
        manager = make_manager(store, clock, cleanup=CleanupConfig(enabled=False))
        await manager.get_or_create_session(make_message())
        clock.set_time(clock.now() + timedelta(days=365))

        assert await manager.run_cleanup() == 0


class TestDispose:
    async def test_dispose_is_idempotent(self, store, clock, make_message):
        manager = make_manager(store, clock, reset=ResetConfig(mode="both"))
        manager.start()
        await manager.get_or_create_session(make_message(chat_id="a"))
        await manager.get_or_create_session(make_message(chat_id="b"))
        updates = store.count("update")

        await manager.dispose()
        assert store.count("update") == updates + 2
        assert clock.pending == 0

        await manager.dispose()
        assert store.count("update") == updates + 2
        assert manager.sessions == []
        assert manager.disposed

        with pytest.raises(RuntimeError):
            await manager.get_or_create_session(make_message())

    async def test_dispose_waits_for_pending_creation(self, store, clock, make_message):
        manager = make_manager(store, clock)
        task = asyncio.ensure_future(manager.get_or_create_session(make_message()))
        await asyncio.sleep(0)

        await manager.dispose()
        session = await task

        assert session.key in store
        assert manager._pending == {}


class TestSessionRecord:
    def test_missing_optional_fields_get_defaults(self):
        session = Session.from_record({"key": "agent:main:web:dm", "id": "session_x"})

        assert session.history == []
        assert session.checkpoint is None
        assert session.message_count == 0
        assert isinstance(session.created_at, datetime)

    def test_newer_schema_version_loads_known_fields(self):
        record = Session(key="k", history=[ConversationTurn("user", "hi")]).to_record()
        record["version"] = 99
        record["somethingNew"] = {"x": 1}

        session = Session.from_record(record)

        assert session.key == "k"
        assert session.history[0].content == "hi"

    def test_history_for_downstream_includes_summary(self):
        session = Session(key="k", context_summary="User: earlier question")
        session.history.append(ConversationTurn("user", "now"))

        messages = session.get_history()

        assert messages[0]["role"] == "system"
        assert "User: earlier question" in messages[0]["content"]
        assert messages[1] == {"role": "user", "content": "now"}


class TestUpdateSession:
    async def test_update_persists_preferences(self, store, clock, make_message):
        manager = make_manager(store, clock, agent_id="support")
        msg = make_message()
        session = await manager.get_or_create_session(msg)

        await clock.advance(5)
        session.preferences["language"] = "de"
        await manager.update_session(session)

        record = await store.get(manager.session_key_for(msg))
        assert record["preferences"] == {"language": "de"}
        assert session.updated_at == clock.now()
        assert manager.session_key_for(msg).startswith("support:channel:")


class TestStoreKeyIsolation:
    async def test_similar_chat_ids_get_separate_sessions(self, tmp_path, clock, make_message):
        manager = make_manager(JsonlSessionStore(tmp_path), clock)
        colon = make_message(chat_id="room:1", sender_id="u7")
        underscore = make_message(chat_id="room_1", sender_id="u7")

        first = await manager.get_or_create_session(colon)
        await manager.add_to_history(first, "user", "only for room:1")
        second = await manager.get_or_create_session(underscore)

        assert second.id != first.id
        assert second.key == "agent:channel:telegram:dm:room_1:u7"
        assert second.history == []
        assert await manager.get_or_create_session(underscore) is second

        restarted = make_manager(JsonlSessionStore(tmp_path), clock)
        assert (await restarted.get_or_create_session(colon)).id == first.id
        assert (await restarted.get_or_create_session(underscore)).id == second.id

    async def test_record_for_another_key_is_not_restored(self, clock, make_message):
        class MisroutingStore(MemorySessionStore):
            async def get(self, key):
                return Session(key="agent:channel:telegram:dm:other:u1").to_record()

        manager = make_manager(MisroutingStore(), clock)
        msg = make_message()

        session = await manager.get_or_create_session(msg)

        assert session.key == manager.session_key_for(msg)
        assert manager.get_session(session.key) is session
        assert await manager.get_or_create_session(msg) is session


class TestResetEdgeCases:
    async def test_idle_reset_clears_preferences(self, store, clock, make_message):
        manager = make_manager(store, clock, reset=ResetConfig(mode="idle", idle_minutes=30))
        session = await manager.get_or_create_session(make_message())
        session.preferences["tone"] = "formal"
        await manager.update_session(session)

        await clock.advance(31 * 60)

        assert await manager.check_scheduled_resets() == 1
        assert session.preferences == {}
        assert await manager.check_scheduled_resets() == 0

    async def test_offset_aware_stored_timestamps_still_reset(self, store, clock, make_message):
        msg = make_message()
        manager = make_manager(store, clock, reset=ResetConfig(mode="daily", at_hour=4))
        record = Session(key=manager.session_key_for(msg)).to_record()
        record["history"] = [{"role": "user", "content": "hi", "timestamp": "2026-03-01T00:00:00+00:00"}]
        record["createdAt"] = "2026-03-01T00:00:00+00:00"
        record["lastActivity"] = "2026-03-01T00:00:00+00:00"
        await store.create(record)

        session = await manager.get_or_create_session(msg)
        assert session.created_at.tzinfo is None

        clock.set_time(datetime(2026, 3, 4, 4, 10))
        assert await manager.check_scheduled_resets() == 1
        assert session.history == []
