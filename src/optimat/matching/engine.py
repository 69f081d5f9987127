import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Iterable

from optimat.config import MatchingConfig
from optimat.errors import ExternalServiceError, ToolValidationError
from optimat.matching.geometry import contains
from optimat.matching.timeutil import serves_day, window_covers
from optimat.models import GeocodedLocation, Provider, ProviderSearchResult
from optimat.services.base import DirectionsProvider, Geocoder

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TripQuery:
    source_address: str
    destination_address: str
    departure_minute: int
    return_minute: int
    travel_day: int | None = None
    eligibility_type: str | None = None
    schedule_type: str | None = None
    provider_type: str | None = None


def _normalize(value: Any) -> str:
    return " ".join(str(value).replace("-", " ").replace("_", " ").lower().split())


def _labels(items: Iterable[Any]) -> list[str]:
    labels = []
    for item in items:
        if isinstance(item, dict):
            item = item.get("type") or item.get("name") or item.get("label")
        if item:
            labels.append(_normalize(item))
    return labels


def _label_matches(wanted: str, labels: list[str]) -> bool:
    wanted = _normalize(wanted)
    return any(wanted == label or wanted in label for label in labels)


def in_service_zone(provider: Provider, origin: GeocodedLocation, destination: GeocodedLocation) -> bool:
    return contains(provider.service_zone, origin.lat, origin.lng) and contains(
        provider.service_zone, destination.lat, destination.lng
    )


def matches_schedule(provider: Provider, departure: int, return_: int, travel_day: int | None) -> bool:
    if not provider.service_hours:
        return True
    windows = [
        w for w in provider.service_hours if travel_day is None or serves_day(w.days, travel_day)
    ]
    departs = any(window_covers(w.start_minute, w.end_minute, departure) for w in windows)
    returns = any(window_covers(w.start_minute, w.end_minute, return_) for w in windows)
    return departs and returns


def matches_filters(provider: Provider, query: TripQuery) -> bool:
    # Provider types are a closed set, so no partial matches.
    if query.provider_type and provider.provider_type:
        if _normalize(query.provider_type) != _normalize(provider.provider_type):
            return False
    if query.eligibility_type:
        requirements = _labels(provider.eligibility_requirements)
        if requirements and not _label_matches(query.eligibility_type, requirements):
            return False
    if query.schedule_type:
        schedules = _labels(provider.schedule_type)
        if schedules and not _label_matches(query.schedule_type, schedules):
            return False
    return True


def filter_providers(
    providers: Iterable[Provider],
    origin: GeocodedLocation,
    destination: GeocodedLocation,
    query: TripQuery,
    config: MatchingConfig | None = None,
) -> tuple[list[Provider], int]:
    """Return providers serving the trip and how many zone matches were dropped."""
    config = config or MatchingConfig()
    zone_matches = []
    for provider in sorted(providers, key=lambda p: p.id):
        if provider.has_zone:
            if in_service_zone(provider, origin, destination):
                zone_matches.append(provider)
        elif config.include_providers_without_zone:
            zone_matches.append(provider)

    matched = [
        p
        for p in zone_matches
        if matches_schedule(p, query.departure_minute, query.return_minute, query.travel_day)
        and matches_filters(p, query)
    ]
    return matched, len(zone_matches) - len(matched)


class ProviderMatcher:
    def __init__(
        self,
        geocoder: Geocoder,
        load_providers: Callable[[], list[Provider]],
        directions: DirectionsProvider | None = None,
        config: MatchingConfig | None = None,
    ):
        self.geocoder = geocoder
        self.load_providers = load_providers
        self.directions = directions
        self.config = config or MatchingConfig()

    def _geocode(self, address: str, label: str) -> GeocodedLocation:
        location = self.geocoder.geocode(address)
        if location is None:
            raise ToolValidationError(f"Could not geocode {label} address: {address}")
        return location

    def resolve_travel_day(self, travel_date: date | None) -> int | None:
        if travel_date is not None:
            return travel_date.weekday()
        if self.config.undated_day_policy == "today":
            return date.today().weekday()
        return None

    def find(self, query: TripQuery) -> ProviderSearchResult:
        origin = self._geocode(query.source_address, "source")
        destination = self._geocode(query.destination_address, "destination")

        providers = self.load_providers()
        matched, filtered_out = filter_providers(
            providers, origin, destination, query, self.config
        )
        logger.info(
            f"Matched {len(matched)} of {len(providers)} providers ({filtered_out} zone matches filtered out)"
        )

        return ProviderSearchResult(
            providers=[p.public_record() for p in matched],
            source_address=origin.formatted_address,
            destination_address=destination.formatted_address,
            source_coordinates=origin.coordinates,
            destination_coordinates=destination.coordinates,
            total_found=len(matched),
            filtered_out_count=filtered_out,
            public_transit=self._transit(origin, destination),
        )

    def _transit(self, origin: GeocodedLocation, destination: GeocodedLocation) -> dict | None:
        if self.directions is None:
            return None
        try:
            return self.directions.transit_directions(
                origin.formatted_address, destination.formatted_address
            )
        except ExternalServiceError as e:
            logger.warning(f"Public transit lookup degraded: {e}")
            return None
