import json

import pytest

from optimat.errors import ExternalServiceError, PersistenceError
from optimat.models import AttachmentType, ToolName
from optimat.tools import TOOL_HANDLERS, ToolContext, ToolDispatcher
from optimat.tools.handlers import PROVIDER_SUGGESTION
from tests.factories import FakeDirections, FakeGeocoder, FakePlaces, make_provider


def _context(providers=None, web_searcher=None, **overrides) -> ToolContext:
    providers = providers if providers is not None else [make_provider(1, "East Bay Paratransit")]

    def by_name(name: str, limit: int):
        return [p for p in providers if name.lower() in p.name.lower()][:limit]

    data = {
        "conversation_id": "conv-1",
        "geocoder": FakeGeocoder(),
        "places": FakePlaces(),
        "load_providers": lambda: list(providers),
        "find_providers_by_name": by_name,
        "directions": FakeDirections(),
        "web_searcher": web_searcher,
    }
    data.update(overrides)
    return ToolContext(**data)


def _find_args(**overrides) -> str:
    args = {
        "source_address": "1 Main St, Walnut Creek",
        "destination_address": "Kaiser Oakland",
        "departure_time": "9:00 AM",
        "return_time": "5:00 PM",
        "travel_date": "2026-10-19",
    }
    args.update(overrides)
    return json.dumps(args)


class TestCatalog:
    def test_every_tool_has_a_handler(self):
        assert set(TOOL_HANDLERS) == set(ToolName)

    def test_schemas_in_function_format(self):
        schemas = ToolDispatcher().get_tool_schemas()
        assert [s["function"]["name"] for s in schemas] == [n.value for n in ToolName]
        for schema in schemas:
            assert schema["type"] == "function"
            assert schema["function"]["parameters"]["type"] == "object"
            assert schema["function"]["description"]

    def test_find_providers_required_fields(self):
        schema = TOOL_HANDLERS[ToolName.FIND_PROVIDERS].schema()
        assert schema["function"]["parameters"]["required"] == [
            "source_address",
            "destination_address",
            "departure_time",
            "return_time",
        ]


class TestDispatch:
    def test_find_providers_success(self):
        result = ToolDispatcher().dispatch("call-1", "find_providers", _find_args(), _context())

        assert result.success
        assert result.data["total_found"] == 1
        assert result.attachment.type == AttachmentType.PROVIDER_SEARCH
        assert result.attachment.metadata == {
            "tool_name": "find_providers",
            "tool_use_id": "call-1",
            "conversation_id": "conv-1",
        }
        assert result.arguments["departure_time"] == "9:00 AM"

    def test_unparsable_travel_date_disables_day_filter(self):
        weekend = make_provider(
            2,
            "Weekend Shuttle",
            service_hours={"hours": [{"day": "0000011", "start": "0600", "end": "2000"}]},
        )
        context = _context(providers=[weekend])
        result = ToolDispatcher().dispatch(
            "call-1", "find_providers", _find_args(travel_date="someday"), context
        )
        assert result.success
        assert result.data["total_found"] == 1

    def test_bad_time_is_validation_failure(self):
        result = ToolDispatcher().dispatch(
            "call-1", "find_providers", _find_args(departure_time="after lunch"), _context()
        )
        assert not result.success
        assert "departure_time" in result.error
        assert result.attachment is None

    def test_missing_required_argument(self):
        args = json.loads(_find_args())
        del args["return_time"]
        result = ToolDispatcher().dispatch("call-1", "find_providers", json.dumps(args), _context())
        assert not result.success
        assert "return_time" in result.error

    def test_ungeocodable_address(self):
        result = ToolDispatcher().dispatch(
            "call-1", "find_providers", _find_args(source_address="Atlantis"), _context()
        )
        assert not result.success
        assert "Could not geocode source address" in result.error

    def test_invalid_json_arguments(self):
        result = ToolDispatcher().dispatch("call-1", "find_providers", "{not json", _context())
        assert not result.success
        assert "not valid JSON" in result.error

    def test_unknown_tool(self):
        result = ToolDispatcher().dispatch("call-1", "book_ride", "{}", _context())
        assert not result.success
        assert "not found" in result.error

    def test_failure_content_for_model(self):
        result = ToolDispatcher().dispatch("call-1", "book_ride", "{}", _context())
        message = result.to_message()
        assert message["role"] == "tool"
        assert message["tool_call_id"] == "call-1"
        assert json.loads(message["content"])["error"] == result.error

    def test_search_addresses(self):
        places = FakePlaces()
        result = ToolDispatcher().dispatch(
            "call-2",
            "search_addresses_from_user_query",
            {"user_query": "walnut creek bart"},
            _context(places=places),
        )
        assert result.success
        assert result.data["query"] == "walnut creek bart"
        assert result.data["places"][0]["name"] == "Walnut Creek BART"
        assert result.data["places"][0]["location"] == {"lat": 37.905, "lng": -122.067}
        assert result.attachment.type == AttachmentType.ADDRESS_SEARCH
        assert places.queries == ["walnut creek bart"]

    def test_provider_info_single_match(self):
        result = ToolDispatcher().dispatch(
            "call-3", "get_provider_info", {"provider_name": "east bay"}, _context()
        )
        assert result.success
        assert result.data["id"] == 1
        assert "service_zone" not in result.data
        assert result.data["has_zone"] is True

    def test_provider_info_multiple_matches(self):
        providers = [make_provider(1, "County Connection"), make_provider(2, "County Connection LINK")]
        result = ToolDispatcher().dispatch(
            "call-3", "get_provider_info", {"provider_name": "County"}, _context(providers=providers)
        )
        assert result.success
        assert [p["id"] for p in result.data] == [1, 2]

    def test_provider_info_not_found_carries_suggestion(self):
        result = ToolDispatcher().dispatch(
            "call-3", "get_provider_info", {"provider_name": "Uber"}, _context()
        )
        assert not result.success
        assert result.data == {"suggestion": PROVIDER_SUGGESTION}
        assert json.loads(result.to_model_content())["suggestion"] == PROVIDER_SUGGESTION

    def test_general_question_without_search_configured(self):
        result = ToolDispatcher().dispatch(
            "call-4", "general_provider_question", {"question": "What is ADA?"}, _context()
        )
        assert not result.success
        assert result.error == "Web search is not configured. Please contact support."

    def test_general_question(self):
        class FakeSearcher:
            def answer(self, question):
                return {"query": question, "answer": "42", "sources": []}

        result = ToolDispatcher().dispatch(
            "call-4",
            "general_provider_question",
            {"question": "What is ADA?"},
            _context(web_searcher=FakeSearcher()),
        )
        assert result.success
        assert result.data["answer"] == "42"
        assert result.attachment.type == AttachmentType.WEB_SEARCH

    def test_external_failure_becomes_tool_failure(self):
        class DownPlaces:
            def search_places(self, query):
                raise ExternalServiceError("Places search failed: 503")

        result = ToolDispatcher().dispatch(
            "call-2",
            "search_addresses_from_user_query",
            {"user_query": "x"},
            _context(places=DownPlaces()),
        )
        assert not result.success
        assert "503" in result.error

    def test_persistence_error_propagates(self):
        def broken_loader():
            raise PersistenceError("disk gone")

        with pytest.raises(PersistenceError):
            ToolDispatcher().dispatch(
                "call-1", "find_providers", _find_args(), _context(load_providers=broken_loader)
            )
