import copy
from datetime import datetime, timezone

import pytest

from optimat.errors import ConversationNotFound, ExampleNotFound
from optimat.models import ReplayConfig, ToolName
from optimat.replay import ReplayService, build_replay, build_states, states_to_json


def _at(minute: int, second: int) -> str:
    return f"2026-10-18T10:{minute:02d}:{second:02d}+00:00"


def _message(message_id: str, role: str, content: str, created_at: str) -> dict:
    return {"id": message_id, "role": role, "content": content, "created_at": created_at}


PROVIDER_SEARCH_OUTPUT = {
    "providers": [{"id": 1, "name": "East Bay Paratransit"}],
    "source_address": "1 Main St, Walnut Creek, CA 94596",
    "destination_address": "3600 Broadway, Oakland, CA 94611",
    "source_coordinates": {"lat": 37.9, "lng": -122.06},
    "destination_coordinates": {"lat": 37.82, "lng": -122.26},
    "total_found": 1,
    "filtered_out_count": 0,
    "public_transit": None,
}


def _conversation() -> tuple[list[dict], dict]:
    messages = [
        _message("m1", "user", "Rides from home to Kaiser?", _at(0, 0)),
        _message("m2", "assistant", "East Bay Paratransit can take you.", _at(0, 6)),
        _message("m3", "user", "Where is the BART station?", _at(1, 0)),
        _message("m4", "assistant", "Walnut Creek BART is nearby.", _at(1, 3)),
    ]
    tool_calls = {
        "find_providers": [
            {
                "id": "t1",
                "input": {"source_address": "home", "destination_address": "Kaiser"},
                "output": PROVIDER_SEARCH_OUTPUT,
                "created_at": _at(0, 5),
            }
        ],
        "search_addresses_from_user_query": [
            {
                "id": "t2",
                "input": {"user_query": "bart"},
                "output": {
                    "places": [
                        {
                            "name": "Walnut Creek BART",
                            "address": "200 Ygnacio Valley Rd",
                            "location": {"lat": 37.905, "lng": -122.067},
                        }
                    ],
                    "query": "bart",
                },
                "created_at": _at(1, 2),
            }
        ],
    }
    return messages, tool_calls


class TestReconstruction:
    def test_one_state_per_message(self):
        messages, tool_calls = _conversation()
        states = build_states(messages, tool_calls)
        assert [s.sequence_number for s in states] == [1, 2, 3, 4]
        assert [s.message.id for s in states] == ["m1", "m2", "m3", "m4"]

    def test_user_messages_get_default_hints(self):
        messages, tool_calls = _conversation()
        first = build_states(messages, tool_calls)[0]
        assert first.state_snapshot.providers == []
        assert not first.ui_hints.show_providers
        assert first.ui_hints.map_action is None
        assert first.ui_hints.highlight_tool is None

    def test_provider_search_surfaces_on_next_assistant_message(self):
        messages, tool_calls = _conversation()
        state = build_states(messages, tool_calls)[1]

        assert state.state_snapshot.providers == PROVIDER_SEARCH_OUTPUT["providers"]
        assert state.state_snapshot.origin == {"lat": 37.9, "lng": -122.06}
        assert state.state_snapshot.destination_address == "3600 Broadway, Oakland, CA 94611"
        assert state.ui_hints.show_providers
        assert state.ui_hints.map_action == "showServiceZones"
        assert state.ui_hints.highlight_tool == ToolName.FIND_PROVIDERS
        assert state.ui_hints.new_data["providers"] == PROVIDER_SEARCH_OUTPUT["providers"]

    def test_snapshots_are_cumulative(self):
        messages, tool_calls = _conversation()
        states = build_states(messages, tool_calls)

        # The follow-up user message still sees the earlier providers.
        assert states[2].state_snapshot.providers == PROVIDER_SEARCH_OUTPUT["providers"]
        assert states[2].ui_hints.show_providers is False

        last = states[3]
        assert last.state_snapshot.providers == PROVIDER_SEARCH_OUTPUT["providers"]
        assert [a["name"] for a in last.state_snapshot.addresses] == ["Walnut Creek BART"]
        assert last.ui_hints.show_addresses
        assert last.ui_hints.map_action == "addPings"
        assert last.ui_hints.highlight_tool == ToolName.SEARCH_ADDRESSES

    def test_deterministic_and_pure(self):
        messages, tool_calls = _conversation()
        before = (copy.deepcopy(messages), copy.deepcopy(tool_calls))

        first = states_to_json(build_states(messages, tool_calls))
        second = states_to_json(build_states(messages, tool_calls))

        assert first == second
        assert (messages, tool_calls) == before

    def test_input_order_does_not_matter(self):
        messages, tool_calls = _conversation()
        shuffled = list(reversed(messages))
        assert states_to_json(build_states(shuffled, tool_calls)) == states_to_json(
            build_states(messages, tool_calls)
        )

    def test_no_tool_calls(self):
        messages, _ = _conversation()
        states = build_states(messages, {})
        assert len(states) == 4
        for state in states:
            assert state.state_snapshot.providers == []
            assert state.ui_hints.map_action is None
            assert state.ui_hints.new_data == {}

    def test_system_and_empty_messages_are_skipped(self):
        messages, tool_calls = _conversation()
        messages.append(_message("s1", "system", "prompt", _at(0, 1)))
        messages.append(_message("m5", "assistant", "   ", _at(2, 0)))
        states = build_states(messages, tool_calls)
        assert [s.message.id for s in states] == ["m1", "m2", "m3", "m4"]

    def test_tool_call_at_message_timestamp_is_applied(self):
        messages = [_message("m1", "assistant", "done", _at(0, 5))]
        tool_calls = {"find_providers": [
            {"id": "t1", "input": {}, "output": PROVIDER_SEARCH_OUTPUT, "created_at": _at(0, 5)}
        ]}
        state = build_states(messages, tool_calls)[0]
        assert state.ui_hints.show_providers

    def test_provider_info_and_focus(self):
        messages, tool_calls = _conversation()
        messages.append(_message("m5", "user", "Tell me about East Bay", _at(2, 0)))
        messages.append(_message("m6", "assistant", "Here are the details.", _at(2, 5)))
        tool_calls["get_provider_info"] = [
            {
                "id": "t3",
                "input": {"provider_name": "East Bay"},
                "output": {"id": 1, "name": "East Bay Paratransit", "phone": "555-0100"},
                "created_at": _at(2, 3),
            }
        ]
        state = build_states(messages, tool_calls)[-1]

        assert state.state_snapshot.provider_details["1"]["phone"] == "555-0100"
        assert state.ui_hints.highlight_tool == ToolName.GET_PROVIDER_INFO
        assert state.ui_hints.map_action == "focus"
        assert state.ui_hints.new_data["provider_info"]["name"] == "East Bay Paratransit"

    def test_duplicate_addresses_are_not_repeated(self):
        messages, tool_calls = _conversation()
        repeat = copy.deepcopy(tool_calls["search_addresses_from_user_query"][0])
        repeat["id"] = "t2b"
        repeat["created_at"] = _at(1, 2)
        tool_calls["search_addresses_from_user_query"].append(repeat)

        last = build_states(messages, tool_calls)[-1]
        assert len(last.state_snapshot.addresses) == 1


class TestMalformedInput:
    def test_bad_entries_become_warnings(self):
        messages, tool_calls = _conversation()
        messages.append(42)
        tool_calls["find_providers"].append({"id": "broken", "output": {}})
        tool_calls["find_providers"].append(
            {"id": "t9", "input": {}, "output": {"nothing": True}, "created_at": _at(0, 5)}
        )
        tool_calls["book_ride"] = [{"id": "x", "created_at": _at(0, 1)}]

        build = build_replay(messages, tool_calls)

        assert len(build.states) == 4
        assert any("position 4" in w for w in build.warnings)
        assert any("'broken'" in w for w in build.warnings)
        assert any("t9" in w for w in build.warnings)
        assert any("book_ride" in w for w in build.warnings)
        # The good provider search still lands.
        assert build.states[1].state_snapshot.providers == PROVIDER_SEARCH_OUTPUT["providers"]

    @pytest.mark.parametrize(
        "output",
        [
            {"providers": ["oops"]},
            {"providers": [], "public_transit": "unavailable"},
            {"providers": [], "source_address": ["not", "text"]},
        ],
    )
    def test_bad_provider_payload_leaves_state_untouched(self, output):
        messages, tool_calls = _conversation()
        tool_calls["find_providers"].append(
            {"id": "t8", "input": {}, "output": output, "created_at": _at(1, 1)}
        )

        build = build_replay(messages, tool_calls)

        assert len(build.states) == 4
        assert any("t8" in w for w in build.warnings)
        last = build.states[3].state_snapshot
        assert last.providers == PROVIDER_SEARCH_OUTPUT["providers"]
        assert last.source_address == PROVIDER_SEARCH_OUTPUT["source_address"]
        assert last.public_transit is None
        assert build.states[3].ui_hints.show_addresses
        assert not build.states[3].ui_hints.show_providers

    def test_message_without_id_or_timestamp_is_skipped(self):
        messages, tool_calls = _conversation()
        messages.append({"conversation_id": "c", "role": "user", "content": "no id"})
        messages.append({"id": "m9", "role": "user", "content": "no time"})
        messages.append({"id": "m10", "role": "user", "content": "bad time", "created_at": "soon"})

        first = build_replay(messages, tool_calls)
        second = build_replay(copy.deepcopy(messages), copy.deepcopy(tool_calls))

        assert [s.message.id for s in first.states] == ["m1", "m2", "m3", "m4"]
        assert states_to_json(first.states) == states_to_json(second.states)
        assert any("position 4" in w and "missing id" in w for w in first.warnings)
        assert any("position 5" in w and "created_at" in w for w in first.warnings)
        assert any("position 6" in w and "'soon'" in w for w in first.warnings)


def _seed(storage) -> None:
    base = datetime(2026, 10, 18, 10, 0, tzinfo=timezone.utc)
    storage.create_conversation("conv-1", title="Kaiser trip")
    storage.add_message("conv-1", "user", "Rides to Kaiser?", created_at=base)
    storage.save_tool_call(
        "conv-1",
        ToolName.FIND_PROVIDERS,
        {"source_address": "home"},
        PROVIDER_SEARCH_OUTPUT,
        created_at=base.replace(second=5),
    )
    storage.add_message(
        "conv-1", "assistant", "East Bay Paratransit.", created_at=base.replace(second=6)
    )


class TestReplayService:
    def test_regenerate_stores_states(self, storage):
        _seed(storage)
        service = ReplayService(storage)

        states = service.regenerate("conv-1")

        assert len(states) == 2
        stored = storage.get_replay_states("conv-1")
        assert states_to_json(stored) == states_to_json(states)

    def test_regenerate_replaces_previous_states(self, storage):
        _seed(storage)
        service = ReplayService(storage)
        service.regenerate("conv-1")
        storage.add_message("conv-1", "user", "thanks")
        service.regenerate("conv-1")
        assert len(storage.get_replay_states("conv-1")) == 3

    def test_get_replay(self, storage):
        _seed(storage)
        replay = ReplayService(storage).get_replay("conv-1")

        assert replay.conversation_id == "conv-1"
        assert replay.title == "Kaiser trip"
        assert replay.replay_config.delay_ms == 2000
        assert replay.states[1].ui_hints.show_providers
        assert replay.warnings == []

    def test_unknown_conversation(self, storage):
        with pytest.raises(ConversationNotFound):
            ReplayService(storage).regenerate("missing")
        with pytest.raises(ConversationNotFound):
            ReplayService(storage).get_replay("missing")


class TestChatExamples:
    def test_save_as_example_stores_states(self, storage):
        _seed(storage)
        service = ReplayService(storage)

        example, states = service.save_as_example(
            "conv-1", "  Kaiser demo ", description="ADA trip", tags=["ada"], category="medical"
        )

        assert example.title == "Kaiser demo"
        assert storage.get_example(example.id).category == "medical"
        assert len(states) == 2
        assert states_to_json(storage.get_example_states(example.id)) == states_to_json(states)
        # The conversation's own replay rows are untouched.
        assert storage.get_replay_states("conv-1") == []

    def test_save_as_example_needs_title_and_conversation(self, storage):
        _seed(storage)
        service = ReplayService(storage)
        with pytest.raises(ValueError):
            service.save_as_example("conv-1", "  ")
        with pytest.raises(ConversationNotFound):
            service.save_as_example("missing", "t")
        assert storage.list_examples() == []

    def test_save_uses_given_replay_config(self, storage):
        _seed(storage)
        config = ReplayConfig(auto_advance=True, delay_ms=750)
        example, _ = ReplayService(storage).save_as_example("conv-1", "t", replay_config=config)
        assert storage.get_example(example.id).replay_config == config

    def test_regenerate_example_picks_up_new_messages(self, storage):
        _seed(storage)
        service = ReplayService(storage)
        example, _ = service.save_as_example("conv-1", "Kaiser demo")
        storage.add_message("conv-1", "user", "thanks")

        states = service.regenerate_example(example.id)

        assert len(states) == 3
        assert len(storage.get_example_states(example.id)) == 3

    def test_regenerate_unknown_example(self, storage):
        with pytest.raises(ExampleNotFound):
            ReplayService(storage).regenerate_example("missing")

    def test_example_replay_is_frozen_until_regenerated(self, storage):
        _seed(storage)
        service = ReplayService(storage)
        example, _ = service.save_as_example("conv-1", "Kaiser demo", description="ADA trip")
        storage.add_message("conv-1", "user", "thanks")

        replay = service.get_example_replay(example.id)

        assert replay.example_id == example.id
        assert replay.title == "Kaiser demo"
        assert replay.description == "ADA trip"
        assert len(replay.states) == 2
        assert replay.states[1].ui_hints.show_providers
