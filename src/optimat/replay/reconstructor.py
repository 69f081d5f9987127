"""Rebuild per-message UI snapshots from stored messages and tool-call logs.

Everything here is pure: the same messages and tool calls always produce the
same states, and inputs are never mutated.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from common.jsonio import canonical_dumps
from optimat.errors import ReplayInconsistency
from optimat.models import (
    TOOL_ORDER,
    Message,
    ReplayMessage,
    ReplayState,
    StateSnapshot,
    ToolName,
    UIHints,
)

logger = logging.getLogger(__name__)

_TOOL_RANK = {name: rank for rank, name in enumerate(TOOL_ORDER)}


@dataclass(frozen=True, slots=True)
class _ToolEntry:
    tool_name: ToolName
    id: str
    created_at: datetime
    input: dict
    output: Any

    @property
    def key(self) -> tuple[str, str]:
        return self.tool_name.value, self.id

    def sort_key(self) -> tuple:
        return self.created_at, _TOOL_RANK[self.tool_name], self.id


@dataclass
class ReplayBuild:
    states: list[ReplayState] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_message(raw: Message | Mapping) -> Message:
    if isinstance(raw, Message):
        return raw
    data = dict(raw)
    # No defaulted ids or timestamps: the same input must give the same replay.
    if not data.get("id"):
        raise ValueError("missing id")
    created_at = _as_datetime(data.get("created_at"))
    if created_at is None:
        raise ValueError(f"missing or unparsable created_at {data.get('created_at')!r}")
    data["created_at"] = created_at
    data.setdefault("conversation_id", "")
    return Message.model_validate(data)


def _ordered_messages(messages: Iterable[Message | Mapping], warnings: list[str]) -> list[Message]:
    indexed: list[tuple[datetime, int, Message]] = []
    for position, raw in enumerate(messages):
        try:
            message = _as_message(raw)
        except (TypeError, ValueError) as e:
            warnings.append(f"Skipping malformed message at position {position}: {e}")
            continue
        if message.role == "system" or not message.content.strip():
            continue
        created_at = _as_datetime(message.created_at)
        indexed.append((created_at, position, message))
    indexed.sort(key=lambda item: (item[0], item[1]))
    return [message for _, _, message in indexed]


def _timeline(tool_calls_by_type: Mapping[str, Iterable[Any]], warnings: list[str]) -> list[_ToolEntry]:
    entries: list[_ToolEntry] = []
    for raw_name in sorted(tool_calls_by_type):
        try:
            tool_name = ToolName(raw_name)
        except ValueError:
            warnings.append(f"Skipping tool calls for unknown tool {raw_name!r}")
            continue
        for raw in tool_calls_by_type[raw_name] or []:
            if hasattr(raw, "model_dump"):
                raw = raw.model_dump()
            if not isinstance(raw, Mapping):
                warnings.append(f"Skipping malformed {tool_name.value} call: not an object")
                continue
            call_id = raw.get("id")
            created_at = _as_datetime(raw.get("created_at"))
            if not call_id or created_at is None:
                warnings.append(
                    f"Skipping malformed {tool_name.value} call {call_id!r}: missing id or timestamp"
                )
                continue
            payload = raw.get("input")
            entries.append(
                _ToolEntry(
                    tool_name=tool_name,
                    id=str(call_id),
                    created_at=created_at,
                    input=payload if isinstance(payload, dict) else {},
                    output=raw.get("output"),
                )
            )
    entries.sort(key=_ToolEntry.sort_key)
    return entries


def _coordinates(value: Any) -> dict | None:
    if isinstance(value, Mapping) and "lat" in value and "lng" in value:
        return {"lat": value["lat"], "lng": value["lng"]}
    return None


def _apply_find_providers(state: dict, entry: _ToolEntry) -> dict:
    output = entry.output
    if not isinstance(output, Mapping):
        raise ReplayInconsistency(f"find_providers call {entry.id} has a non-object output")
    providers = output.get("providers", output.get("data"))
    if not isinstance(providers, list):
        raise ReplayInconsistency(f"find_providers call {entry.id} has no provider list")
    if not all(isinstance(provider, Mapping) for provider in providers):
        raise ReplayInconsistency(f"find_providers call {entry.id} has a non-object provider")
    transit = output.get("public_transit")
    if transit is not None and not isinstance(transit, Mapping):
        raise ReplayInconsistency(f"find_providers call {entry.id} has a non-object public_transit")
    source = output.get("source_address") or entry.input.get("source_address")
    destination = output.get("destination_address") or entry.input.get("destination_address")
    for label, value in (("source_address", source), ("destination_address", destination)):
        if value and not isinstance(value, str):
            raise ReplayInconsistency(f"find_providers call {entry.id} has a non-text {label}")

    # The payload is fully checked before any state changes.
    state["providers"] = [copy.deepcopy(dict(provider)) for provider in providers]
    if source:
        state["source_address"] = source
    if destination:
        state["destination_address"] = destination
    origin = _coordinates(output.get("source_coordinates") or output.get("origin"))
    if origin:
        state["origin"] = origin
    end = _coordinates(output.get("destination_coordinates") or output.get("destination"))
    if end:
        state["destination"] = end
    if transit:
        state["public_transit"] = copy.deepcopy(dict(transit))

    return {
        "providers": copy.deepcopy(state["providers"]),
        "source_address": state["source_address"],
        "destination_address": state["destination_address"],
        "origin": copy.deepcopy(state["origin"]),
        "destination": copy.deepcopy(state["destination"]),
        "public_transit": copy.deepcopy(dict(transit)) if transit else None,
    }


def _apply_search_addresses(state: dict, entry: _ToolEntry) -> list[dict]:
    output = entry.output
    places = output.get("places") if isinstance(output, Mapping) else output
    if not isinstance(places, list):
        raise ReplayInconsistency(f"search_addresses call {entry.id} has no place list")

    seen = {canonical_dumps(address) for address in state["addresses"]}
    added = []
    for place in places:
        if not isinstance(place, Mapping):
            continue
        marker = canonical_dumps(place)
        if marker in seen:
            continue
        seen.add(marker)
        state["addresses"].append(copy.deepcopy(dict(place)))
        added.append(copy.deepcopy(dict(place)))
    return added


def _apply_provider_info(state: dict, entry: _ToolEntry) -> Any:
    output = entry.output
    records = output if isinstance(output, list) else [output]
    stored = 0
    for record in records:
        if isinstance(record, Mapping) and record.get("id") is not None:
            state["provider_details"][str(record["id"])] = copy.deepcopy(dict(record))
            stored += 1
    if not stored:
        raise ReplayInconsistency(f"get_provider_info call {entry.id} has no provider record")
    return copy.deepcopy(output)


def _apply_general_question(state: dict, entry: _ToolEntry) -> None:
    if not isinstance(entry.output, Mapping):
        raise ReplayInconsistency(f"general_provider_question call {entry.id} has a non-object output")


def _hints(role: str, applied: list[tuple[_ToolEntry, Any]], state: dict) -> UIHints:
    hints = UIHints()
    if role != "assistant" or not applied:
        return hints

    new_data: dict[str, Any] = {}
    for entry, delta in applied:
        if entry.tool_name == ToolName.FIND_PROVIDERS:
            hints.show_providers = True
            hints.highlight_tool = ToolName.FIND_PROVIDERS
            hints.map_action = "showServiceZones"
            new_data.update(delta)

    for entry, delta in applied:
        if entry.tool_name == ToolName.SEARCH_ADDRESSES:
            hints.show_addresses = True
            hints.highlight_tool = hints.highlight_tool or ToolName.SEARCH_ADDRESSES
            hints.map_action = hints.map_action or "addPings"
            new_data.setdefault("addresses", []).extend(delta)
        elif entry.tool_name == ToolName.GET_PROVIDER_INFO:
            hints.highlight_tool = hints.highlight_tool or ToolName.GET_PROVIDER_INFO
            new_data["provider_info"] = delta
        elif entry.tool_name == ToolName.GENERAL_QUESTION:
            hints.highlight_tool = hints.highlight_tool or ToolName.GENERAL_QUESTION

    if hints.map_action is None and state["source_address"] and state["destination_address"]:
        hints.map_action = "focus"
    hints.new_data = new_data
    return hints


_APPLIERS = {
    ToolName.FIND_PROVIDERS: _apply_find_providers,
    ToolName.SEARCH_ADDRESSES: _apply_search_addresses,
    ToolName.GET_PROVIDER_INFO: _apply_provider_info,
    ToolName.GENERAL_QUESTION: _apply_general_question,
}


def build_replay(
    messages: Iterable[Message | Mapping],
    tool_calls_by_type: Mapping[str, Iterable[Any]],
) -> ReplayBuild:
    warnings: list[str] = []
    ordered = _ordered_messages(messages, warnings)
    timeline = _timeline(tool_calls_by_type, warnings)

    state = StateSnapshot().model_dump()
    consumed: set[tuple[str, str]] = set()
    states: list[ReplayState] = []

    for sequence_number, message in enumerate(ordered, start=1):
        cutoff = _as_datetime(message.created_at)
        applied: list[tuple[_ToolEntry, Any]] = []
        for entry in timeline:
            if entry.key in consumed or entry.created_at > cutoff:
                continue
            consumed.add(entry.key)
            try:
                delta = _APPLIERS[entry.tool_name](state, entry)
            except ReplayInconsistency as e:
                warnings.append(str(e))
                continue
            applied.append((entry, delta))

        states.append(
            ReplayState(
                sequence_number=sequence_number,
                message=ReplayMessage(
                    id=message.id,
                    role=message.role,
                    content=message.content,
                    created_at=cutoff,
                ),
                state_snapshot=StateSnapshot.model_validate(copy.deepcopy(state)),
                ui_hints=_hints(message.role, applied, state),
            )
        )

    for warning in warnings:
        logger.warning(f"Replay: {warning}")
    return ReplayBuild(states=states, warnings=warnings)


def build_states(
    messages: Iterable[Message | Mapping],
    tool_calls_by_type: Mapping[str, Iterable[Any]],
) -> list[ReplayState]:
    return build_replay(messages, tool_calls_by_type).states


def states_to_json(states: list[ReplayState]) -> str:
    return canonical_dumps([state.model_dump(mode="json") for state in states])
