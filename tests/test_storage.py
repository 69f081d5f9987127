import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from optimat.errors import PersistenceError
from optimat.models import ChatExample, ReplayConfig, ReplayMessage, ReplayState, ToolName
from optimat.storage import SCHEMA_VERSION, Storage
from tests.factories import make_provider


class TestConversations:
    def test_ensure_creates_once(self, storage):
        first = storage.ensure_conversation("conv-1")
        second = storage.ensure_conversation("conv-1")
        assert first.id == second.id == "conv-1"

    def test_duplicate_create_fails(self, storage):
        storage.create_conversation("conv-1")
        with pytest.raises(PersistenceError):
            storage.create_conversation("conv-1")

    def test_touch_sets_title(self, storage):
        storage.create_conversation("conv-1")
        storage.touch_conversation("conv-1", title="Trip to Kaiser")
        assert storage.get_conversation("conv-1").title == "Trip to Kaiser"

    def test_delete_cascades(self, storage):
        storage.create_conversation("conv-1")
        storage.add_message("conv-1", "user", "hi")
        storage.save_tool_call("conv-1", ToolName.SEARCH_ADDRESSES, {"user_query": "x"}, {"places": []})

        assert storage.delete_conversation("conv-1")
        assert storage.list_messages("conv-1") == []
        assert storage.count_tool_calls("conv-1") == 0
        assert not storage.delete_conversation("conv-1")

    def test_message_needs_conversation(self, storage):
        with pytest.raises(PersistenceError):
            storage.add_message("missing", "user", "hi")


class TestTimeline:
    def test_timestamps_never_go_backwards(self, storage):
        storage.create_conversation("conv-1")
        later = datetime(2030, 1, 1, tzinfo=timezone.utc)
        storage.add_message("conv-1", "user", "first", created_at=later)

        record = storage.save_tool_call(
            "conv-1",
            ToolName.FIND_PROVIDERS,
            {},
            {"providers": []},
            created_at=later - timedelta(hours=1),
        )
        reply = storage.add_message("conv-1", "assistant", "second")

        assert record.created_at >= later
        assert reply.created_at >= record.created_at
        assert [m.content for m in storage.list_messages("conv-1")] == ["first", "second"]

    def test_tool_calls_grouped_by_name(self, storage):
        storage.create_conversation("conv-1")
        storage.save_tool_call("conv-1", "get_provider_info", {"provider_name": "x"}, {"id": 1})

        calls = storage.list_tool_calls("conv-1")

        assert set(calls) == {name.value for name in ToolName}
        row = calls["get_provider_info"][0]
        assert row["input"] == {"provider_name": "x"}
        assert row["output"] == {"id": 1}
        assert row["conversation_id"] == "conv-1"


class TestProviders:
    def test_roundtrip_keeps_hours_and_zone(self, storage):
        storage.upsert_provider(make_provider(1, "East Bay Paratransit"))
        [loaded] = storage.list_providers()
        assert loaded.name == "East Bay Paratransit"
        assert loaded.has_zone
        assert loaded.service_hours[0].days == 0b0011111
        assert loaded.service_hours[0].start_minute == 360

    def test_upsert_replaces(self, storage):
        storage.upsert_provider(make_provider(1, "Old Name"))
        storage.upsert_provider(make_provider(1, "New Name"))
        assert [p.name for p in storage.list_providers()] == ["New Name"]

    def test_find_by_name_is_case_insensitive_substring(self, storage):
        storage.upsert_provider(make_provider(1, "East Bay Paratransit"))
        storage.upsert_provider(make_provider(2, "County Connection"))
        assert [p.id for p in storage.find_providers_by_name("bay")] == [1]
        assert storage.find_providers_by_name("Uber") == []

    def test_like_wildcards_are_literal(self, storage):
        storage.upsert_provider(make_provider(1, "East Bay Paratransit"))
        assert storage.find_providers_by_name("%") == []
        assert storage.find_providers_by_name("_") == []

    def test_malformed_rows_are_skipped(self, storage):
        storage.upsert_provider(make_provider(1, "Good"))
        storage.conn.execute("INSERT INTO providers (id, name, data) VALUES (2, 'Bad', '{}')")
        storage.conn.commit()
        assert [p.id for p in storage.list_providers()] == [1]


def _state(sequence_number: int, message_id: str) -> ReplayState:
    return ReplayState(
        sequence_number=sequence_number,
        message=ReplayMessage(
            id=message_id,
            role="user",
            content="hi",
            created_at=datetime(2026, 10, 18, tzinfo=timezone.utc),
        ),
    )


class TestReplayStates:
    def test_replace_is_atomic(self, storage):
        storage.create_conversation("conv-1")
        storage.replace_replay_states("conv-1", [_state(1, "m1"), _state(2, "m2")])

        duplicate = [_state(1, "m1"), _state(1, "m1-again")]
        with pytest.raises(PersistenceError):
            storage.replace_replay_states("conv-1", duplicate)

        assert [s.message.id for s in storage.get_replay_states("conv-1")] == ["m1", "m2"]


def test_in_memory_database():
    store = Storage(":memory:")
    try:
        store.create_conversation("c")
        assert store.get_conversation("c") is not None
    finally:
        store.close()


class TestChatExamples:
    def test_create_and_get(self, storage):
        storage.create_conversation("conv-1")
        example = ChatExample(
            conversation_id="conv-1",
            title="Kaiser trip",
            tags=["ada", "oakland"],
            replay_config=ReplayConfig(auto_advance=True, delay_ms=500),
        )
        storage.create_example(example)

        loaded = storage.get_example(example.id)

        assert loaded.title == "Kaiser trip"
        assert loaded.tags == ["ada", "oakland"]
        assert loaded.category == "general"
        assert loaded.is_active
        assert loaded.replay_config == ReplayConfig(auto_advance=True, delay_ms=500)
        assert storage.get_example("missing") is None

    def test_list_newest_first_and_filter_active(self, storage):
        storage.create_conversation("conv-1")
        base = datetime(2026, 10, 18, tzinfo=timezone.utc)
        for n in range(3):
            storage.create_example(
                ChatExample(
                    id=f"ex-{n}",
                    conversation_id="conv-1",
                    title=f"Example {n}",
                    created_at=base + timedelta(minutes=n),
                )
            )
        assert storage.set_example_active("ex-1", False)
        assert not storage.set_example_active("missing", False)

        assert [e.id for e in storage.list_examples()] == ["ex-2", "ex-1", "ex-0"]
        assert [e.id for e in storage.list_examples(is_active=True)] == ["ex-2", "ex-0"]
        assert [e.id for e in storage.list_examples(is_active=False)] == ["ex-1"]
        assert [e.id for e in storage.list_examples(limit=1, offset=1)] == ["ex-1"]

    def test_example_states_are_separate_from_conversation_states(self, storage):
        storage.create_conversation("conv-1")
        example = storage.create_example(ChatExample(conversation_id="conv-1", title="t"))
        storage.replace_replay_states("conv-1", [_state(1, "m1")])
        storage.replace_example_states(example.id, [_state(1, "m1"), _state(2, "m2")])

        assert len(storage.get_replay_states("conv-1")) == 1
        assert [s.message.id for s in storage.get_example_states(example.id)] == ["m1", "m2"]

    def test_delete_cascades_to_states(self, storage):
        storage.create_conversation("conv-1")
        example = storage.create_example(ChatExample(conversation_id="conv-1", title="t"))
        storage.replace_example_states(example.id, [_state(1, "m1")])

        assert storage.delete_example(example.id)
        assert not storage.delete_example(example.id)
        assert storage.get_example_states(example.id) == []

    def test_deleting_conversation_removes_examples(self, storage):
        storage.create_conversation("conv-1")
        example = storage.create_example(ChatExample(conversation_id="conv-1", title="t"))
        storage.delete_conversation("conv-1")
        assert storage.get_example(example.id) is None


def test_old_schema_is_upgraded(tmp_path):
    path = tmp_path / "old.db"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE schema_version (version INTEGER PRIMARY KEY);
        INSERT INTO schema_version (version) VALUES (1);
        CREATE TABLE conversations (
            id TEXT PRIMARY KEY, title TEXT, created_at TEXT NOT NULL, updated_at TEXT NOT NULL
        );
        """
    )
    conn.commit()
    conn.close()

    store = Storage(path)
    try:
        store.create_conversation("c")
        store.create_example(ChatExample(conversation_id="c", title="t"))
        assert len(store.list_examples()) == 1
        version = store.conn.execute("SELECT version FROM schema_version").fetchone()[0]
        assert version == SCHEMA_VERSION
    finally:
        store.close()
