import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from optimat.matching.geometry import is_polygonal
from optimat.matching.timeutil import (
    ALL_DAYS,
    LAST_MINUTE,
    parse_day_pattern,
    parse_window_bound,
)


def generate_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


Role = Literal["user", "assistant", "system"]
MapAction = Literal["showServiceZones", "addPings", "focus"]


class ToolName(str, Enum):
    FIND_PROVIDERS = "find_providers"
    SEARCH_ADDRESSES = "search_addresses_from_user_query"
    GET_PROVIDER_INFO = "get_provider_info"
    GENERAL_QUESTION = "general_provider_question"


class AttachmentType(str, Enum):
    PROVIDER_SEARCH = "provider_search"
    ADDRESS_SEARCH = "address_search"
    PROVIDER_INFO = "provider_info"
    WEB_SEARCH = "web_search"


# Tie-break order for tool calls sharing a timestamp.
TOOL_ORDER: tuple[ToolName, ...] = tuple(ToolName)


def _decode_json(value: Any) -> Any:
    if isinstance(value, str) and value.strip()[:1] in ("{", "["):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


class Conversation(BaseModel):
    id: str = Field(default_factory=generate_id)
    title: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Message(BaseModel):
    id: str = Field(default_factory=generate_id)
    conversation_id: str
    role: Role
    content: str
    created_at: datetime = Field(default_factory=utc_now)


class ToolCallRecord(BaseModel):
    id: str = Field(default_factory=generate_id)
    conversation_id: str
    tool_name: ToolName
    input: dict = Field(default_factory=dict)
    output: Any = None
    created_at: datetime = Field(default_factory=utc_now)


class ServiceWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    days: int = Field(default=ALL_DAYS, ge=0, le=ALL_DAYS)
    start_minute: int = Field(default=0, ge=0, le=LAST_MINUTE)
    end_minute: int = Field(default=LAST_MINUTE, ge=0, le=LAST_MINUTE)

    @model_validator(mode="before")
    @classmethod
    def _accept_stored_shape(cls, data: Any) -> Any:
        # {"day": "1111100", "start": "0600", "end": "2000"}
        if isinstance(data, dict) and {"day", "start", "end"} & data.keys():
            return {
                "days": parse_day_pattern(data.get("day") or "1111111"),
                "start_minute": parse_window_bound(data.get("start") or "0000"),
                "end_minute": parse_window_bound(data.get("end") or "2400"),
            }
        return data


class Provider(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    name: str
    provider_type: str | None = None
    routing_type: str | None = None
    schedule_type: list[Any] = Field(default_factory=list)
    eligibility_requirements: list[Any] = Field(default_factory=list)
    service_zone: dict | None = None
    service_hours: list[ServiceWindow] = Field(default_factory=list)
    website: str | None = None
    phone: str | None = None
    description: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_columns(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for legacy, current in (
            ("provider_id", "id"),
            ("provider_name", "name"),
            ("eligibility_reqs", "eligibility_requirements"),
        ):
            if current not in data and legacy in data:
                data[current] = data.pop(legacy)
        return data

    @field_validator("schedule_type", "eligibility_requirements", mode="before")
    @classmethod
    def _as_list(cls, value: Any) -> Any:
        value = _decode_json(value)
        if value is None or value == "":
            return []
        if isinstance(value, (list, tuple)):
            return list(value)
        return [value]

    @field_validator("service_zone", mode="before")
    @classmethod
    def _decode_zone(cls, value: Any) -> Any:
        value = _decode_json(value)
        if value is None or value == "" or value == {}:
            return None
        return value

    @field_validator("service_hours", mode="before")
    @classmethod
    def _unwrap_hours(cls, value: Any) -> Any:
        value = _decode_json(value)
        if value is None or value == "":
            return []
        if isinstance(value, dict):
            return value.get("hours") or []
        return value

    @property
    def has_zone(self) -> bool:
        return is_polygonal(self.service_zone)

    def public_record(self) -> dict:
        record = self.model_dump(mode="json", exclude={"service_zone"})
        record["has_zone"] = self.has_zone
        return record


class Coordinates(BaseModel):
    lat: float
    lng: float


class GeocodedLocation(BaseModel):
    lat: float
    lng: float
    formatted_address: str

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(lat=self.lat, lng=self.lng)


class Place(BaseModel):
    name: str
    address: str
    location: Coordinates | None = None
    place_id: str | None = None


class ProviderSearchResult(BaseModel):
    providers: list[dict] = Field(default_factory=list)
    source_address: str
    destination_address: str
    source_coordinates: Coordinates
    destination_coordinates: Coordinates
    total_found: int = 0
    filtered_out_count: int = 0
    public_transit: dict | None = None


class Attachment(BaseModel):
    type: AttachmentType
    data: Any = None
    metadata: dict = Field(default_factory=dict)


class StateSnapshot(BaseModel):
    providers: list[dict] = Field(default_factory=list)
    addresses: list[dict] = Field(default_factory=list)
    source_address: str | None = None
    destination_address: str | None = None
    origin: dict | None = None
    destination: dict | None = None
    public_transit: dict | None = None
    provider_details: dict[str, Any] = Field(default_factory=dict)


class UIHints(BaseModel):
    show_providers: bool = False
    show_addresses: bool = False
    map_action: MapAction | None = None
    highlight_tool: ToolName | None = None
    new_data: dict = Field(default_factory=dict)


class ReplayMessage(BaseModel):
    id: str
    role: Role
    content: str
    created_at: datetime


class ReplayState(BaseModel):
    sequence_number: int = Field(ge=1)
    message: ReplayMessage
    state_snapshot: StateSnapshot = Field(default_factory=StateSnapshot)
    ui_hints: UIHints = Field(default_factory=UIHints)


class ReplayConfig(BaseModel):
    auto_advance: bool = False
    delay_ms: int = 2000
    show_typewriter: bool = True
    highlight_tool_calls: bool = True


class ConversationReplay(BaseModel):
    conversation_id: str
    title: str | None = None
    description: str | None = None
    example_id: str | None = None
    created_at: datetime | None = None
    replay_config: ReplayConfig = Field(default_factory=ReplayConfig)
    states: list[ReplayState] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ChatExample(BaseModel):
    """A conversation curated for demo playback, with its own stored replay states."""

    id: str = Field(default_factory=generate_id)
    conversation_id: str
    title: str = Field(min_length=1)
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    category: str = "general"
    is_active: bool = True
    replay_config: ReplayConfig = Field(default_factory=ReplayConfig)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
