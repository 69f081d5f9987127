from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from optimat.errors import ToolValidationError
from optimat.matching.engine import ProviderMatcher, TripQuery
from optimat.matching.timeutil import parse_time, parse_travel_date
from optimat.models import AttachmentType, ToolName
from optimat.tools.base import ToolContext, ToolOutcome

logger = logging.getLogger(__name__)

PROVIDER_LOOKUP_LIMIT = 5
PROVIDER_SUGGESTION = (
    "Please check the provider name. Available providers include: "
    "AC Transit, BART, East Bay Paratransit, WestCAT, and others."
)


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "input"
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)


class _ToolInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")


class FindProvidersInput(_ToolInput):
    source_address: str = Field(min_length=1)
    destination_address: str = Field(min_length=1)
    departure_time: str
    return_time: str
    travel_date: str | None = None
    eligibility_type: str | None = None
    schedule_type: str | None = None
    provider_type: str | None = None

    @field_validator("departure_time", "return_time")
    @classmethod
    def _parseable_time(cls, value: str) -> str:
        parse_time(value)
        return value

    @field_validator("travel_date", "eligibility_type", "schedule_type", "provider_type")
    @classmethod
    def _blank_is_none(cls, value: str | None) -> str | None:
        return value or None


class SearchAddressesInput(_ToolInput):
    user_query: str = Field(min_length=1)


class ProviderInfoInput(_ToolInput):
    provider_name: str = Field(min_length=1)


class GeneralQuestionInput(_ToolInput):
    question: str = Field(min_length=1)


class _Tool:
    name: ToolName
    attachment_type: AttachmentType
    description: str
    parameters: dict
    input_model: type[_ToolInput]

    def validate(self, raw: dict) -> Any:
        if not isinstance(raw, dict):
            raise ToolValidationError("Tool arguments must be a JSON object")
        try:
            return self.input_model.model_validate(raw)
        except ValidationError as e:
            raise ToolValidationError(f"Invalid arguments for {self.name.value}: {_describe(e)}") from e

    def schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name.value,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class FindProvidersTool(_Tool):
    name = ToolName.FIND_PROVIDERS
    attachment_type = AttachmentType.PROVIDER_SEARCH
    input_model = FindProvidersInput
    description = (
        "Find paratransit providers that can serve a round trip between an origin and a "
        "destination. Only providers whose service zone contains both addresses and who "
        "operate at both the departure and the return time are returned.\n\n"
        "Before calling this tool, ask the user for:\n"
        "1. Their eligibility category (Senior 60+, Disabled/ADA, Veteran, Area Resident, or none)\n"
        "2. What time they want to be picked up (departure_time)\n"
        "3. What time they want to return (return_time)"
    )
    parameters = {
        "type": "object",
        "properties": {
            "source_address": {
                "type": "string",
                "description": "The pickup/origin address where the trip starts (usually home)",
            },
            "destination_address": {
                "type": "string",
                "description": "The drop-off/destination address",
            },
            "departure_time": {
                "type": "string",
                "description": 'Pickup time, e.g. "9:00 AM" or "14:30"',
            },
            "return_time": {
                "type": "string",
                "description": 'Time of the return trip home, e.g. "5:00 PM" or "17:00"',
            },
            "travel_date": {
                "type": "string",
                "description": 'Optional travel date for day-of-week availability, e.g. "2024-12-05"',
            },
            "eligibility_type": {
                "type": "string",
                "description": 'Optional eligibility category: "Senior", "Disabled", "Veteran" or "Resident"',
            },
            "schedule_type": {
                "type": "string",
                "description": 'Optional schedule type: "fixed-schedules", "in-advance-book" or "real-time-book"',
            },
            "provider_type": {
                "type": "string",
                "description": (
                    'Optional provider type: "ADA-para", "para", "volunteer-driver", "city", '
                    '"community", "fix-route", "discount-program" or "special-TNC"'
                ),
            },
        },
        "required": ["source_address", "destination_address", "departure_time", "return_time"],
    }

    def execute(self, args: FindProvidersInput, context: ToolContext) -> ToolOutcome:
        matcher = ProviderMatcher(
            geocoder=context.geocoder,
            load_providers=context.load_providers,
            directions=context.directions,
            config=context.matching,
        )
        travel_day = None
        if args.travel_date:
            parsed = parse_travel_date(args.travel_date)
            if parsed is None:
                logger.warning(f"Ignoring unparsable travel_date {args.travel_date!r}")
            else:
                travel_day = parsed.weekday()
        else:
            travel_day = matcher.resolve_travel_day(None)

        query = TripQuery(
            source_address=args.source_address,
            destination_address=args.destination_address,
            departure_minute=parse_time(args.departure_time),
            return_minute=parse_time(args.return_time),
            travel_day=travel_day,
            eligibility_type=args.eligibility_type,
            schedule_type=args.schedule_type,
            provider_type=args.provider_type,
        )
        result = matcher.find(query)
        return ToolOutcome(data=result.model_dump(mode="json"))


class SearchAddressesTool(_Tool):
    name = ToolName.SEARCH_ADDRESSES
    attachment_type = AttachmentType.ADDRESS_SEARCH
    input_model = SearchAddressesInput
    description = (
        "Find addresses from a free-text description using Google Places. "
        "Use this when the user does not know the exact address."
    )
    parameters = {
        "type": "object",
        "properties": {
            "user_query": {
                "type": "string",
                "description": "Search text, e.g. 'Walnut Creek BART station'",
            },
        },
        "required": ["user_query"],
    }

    def execute(self, args: SearchAddressesInput, context: ToolContext) -> ToolOutcome:
        places = context.places.search_places(args.user_query)
        return ToolOutcome(
            data={
                "places": [
                    {
                        "name": place.name,
                        "address": place.address,
                        "location": place.location.model_dump() if place.location else None,
                    }
                    for place in places
                ],
                "query": args.user_query,
            }
        )


class ProviderInfoTool(_Tool):
    name = ToolName.GET_PROVIDER_INFO
    attachment_type = AttachmentType.PROVIDER_INFO
    input_model = ProviderInfoInput
    description = (
        "Get detailed information about a specific transportation provider. "
        "The name must match one of the providers known to the system."
    )
    parameters = {
        "type": "object",
        "properties": {
            "provider_name": {
                "type": "string",
                "description": "The name of the provider to look up",
            },
        },
        "required": ["provider_name"],
    }

    def execute(self, args: ProviderInfoInput, context: ToolContext) -> ToolOutcome:
        providers = context.find_providers_by_name(args.provider_name, PROVIDER_LOOKUP_LIMIT)
        if not providers:
            raise ToolValidationError(
                f"Provider '{args.provider_name}' not found",
                details={"suggestion": PROVIDER_SUGGESTION},
            )
        records = [p.public_record() for p in providers]
        return ToolOutcome(data=records[0] if len(records) == 1 else records)


class GeneralQuestionTool(_Tool):
    name = ToolName.GENERAL_QUESTION
    attachment_type = AttachmentType.WEB_SEARCH
    input_model = GeneralQuestionInput
    description = (
        "Search the web to answer general questions about transportation providers, "
        "paratransit services, accessibility, eligibility requirements, or other "
        "transportation topics that the internal data does not cover."
    )
    parameters = {
        "type": "object",
        "properties": {
            "question": {
                "type": "string",
                "description": "The transportation-related question to search for",
            },
        },
        "required": ["question"],
    }

    def execute(self, args: GeneralQuestionInput, context: ToolContext) -> ToolOutcome:
        if context.web_searcher is None:
            raise ToolValidationError("Web search is not configured. Please contact support.")
        return ToolOutcome(data=context.web_searcher.answer(args.question))
