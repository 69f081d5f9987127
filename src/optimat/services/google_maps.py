import logging
import threading
from typing import Any

import httpx

from common.rate_limiter import RateLimiter
from common.retry import RetryConfig, with_retry
from optimat.config import GoogleMapsConfig
from optimat.errors import ExternalServiceError
from optimat.models import Coordinates, GeocodedLocation, Place

logger = logging.getLogger(__name__)

PLACES_SEARCH_URL = "https://places.googleapis.com/v1/places:searchText"
PLACES_FIELD_MASK = "places.id,places.displayName,places.formattedAddress,places.location"
DIRECTIONS_URL = "https://maps.googleapis.com/maps/api/directions/json"


def _text(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("text") or None
    return None


def _value(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("value")
    return None


def _place_from_payload(payload: dict) -> Place | None:
    address = payload.get("formattedAddress")
    if not address:
        return None
    display = payload.get("displayName") or {}
    location = payload.get("location") or {}
    coordinates = None
    if "latitude" in location and "longitude" in location:
        coordinates = Coordinates(lat=location["latitude"], lng=location["longitude"])
    return Place(
        name=display.get("text") or address,
        address=address,
        location=coordinates,
        place_id=payload.get("id"),
    )


def summarize_route(data: dict) -> dict | None:
    if data.get("status") != "OK" or not data.get("routes"):
        logger.warning(f"Transit directions status: {data.get('status')}")
        return None
    route = data["routes"][0]
    legs = route.get("legs") or []
    if not legs:
        return None
    leg = legs[0]

    steps = []
    for step in leg.get("steps") or []:
        transit = step.get("transit_details")
        details = None
        if transit:
            line = transit.get("line") or {}
            details = {
                "line_name": line.get("name") or line.get("short_name"),
                "vehicle_type": (line.get("vehicle") or {}).get("type"),
                "departure_stop": (transit.get("departure_stop") or {}).get("name"),
                "arrival_stop": (transit.get("arrival_stop") or {}).get("name"),
                "num_stops": transit.get("num_stops"),
            }
        steps.append(
            {
                "instruction": step.get("html_instructions"),
                "distance_text": _text(step.get("distance")),
                "distance_meters": _value(step.get("distance")),
                "duration_text": _text(step.get("duration")),
                "duration_seconds": _value(step.get("duration")),
                "travel_mode": step.get("travel_mode"),
                "transit_details": details,
            }
        )

    return {
        "summary": route.get("summary") or None,
        "distance_text": _text(leg.get("distance")),
        "distance_meters": _value(leg.get("distance")),
        "duration_text": _text(leg.get("duration")),
        "duration_seconds": _value(leg.get("duration")),
        "departure_time": _text(leg.get("departure_time")),
        "arrival_time": _text(leg.get("arrival_time")),
        "start_address": leg.get("start_address"),
        "end_address": leg.get("end_address"),
        "steps": steps,
        "warnings": route.get("warnings") or [],
    }


class GoogleMapsClient:
    name = "google_maps"

    def __init__(self, config: GoogleMapsConfig | None = None):
        self.config = config or GoogleMapsConfig()
        self.retry_config = RetryConfig(
            max_retries=self.config.max_retries,
            base_delay=self.config.retry_base_delay,
        )
        self.rate_limiter = RateLimiter(
            requests_per_minute=self.config.rate_limit_per_minute,
        )
        self._client: httpx.Client | None = None
        self._client_lock = threading.Lock()

    @property
    def client(self) -> httpx.Client:
        # Tool workers share this instance.
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    self._client = httpx.Client(timeout=self.config.timeout_s)
        return self._client

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    def _require_key(self) -> str:
        if not self.config.api_key:
            raise ExternalServiceError("GOOGLE_MAPS_API_KEY is not set")
        return self.config.api_key

    @with_retry
    def _search_text(self, query: str, max_results: int) -> dict:
        self.rate_limiter.wait()
        response = self.client.post(
            PLACES_SEARCH_URL,
            headers={
                "Content-Type": "application/json",
                "X-Goog-Api-Key": self._require_key(),
                "X-Goog-FieldMask": PLACES_FIELD_MASK,
            },
            json={"textQuery": query, "maxResultCount": max_results},
        )
        response.raise_for_status()
        return response.json()

    @with_retry
    def _get_directions(self, params: dict) -> dict:
        self.rate_limiter.wait()
        response = self.client.get(DIRECTIONS_URL, params=params)
        response.raise_for_status()
        return response.json()

    def search_places(self, query: str) -> list[Place]:
        query = (query or "").strip()
        if not query:
            return []
        try:
            data = self._search_text(query, self.config.max_places)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Places search failed for {query!r}: {e}")
            raise ExternalServiceError(f"Places search failed: {e}") from e

        places = [_place_from_payload(raw) for raw in data.get("places") or []]
        return [place for place in places if place is not None]

    def geocode(self, address: str) -> GeocodedLocation | None:
        address = (address or "").strip()
        if not address:
            return None
        try:
            data = self._search_text(address, 1)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Geocoding failed for {address!r}: {e}")
            raise ExternalServiceError(f"Geocoding failed: {e}") from e

        for raw in data.get("places") or []:
            place = _place_from_payload(raw)
            if place is not None and place.location is not None:
                return GeocodedLocation(
                    lat=place.location.lat,
                    lng=place.location.lng,
                    formatted_address=place.address,
                )
        logger.info(f"No geocoding result for {address!r}")
        return None

    def transit_directions(self, origin: str, destination: str) -> dict | None:
        params = {
            "origin": origin,
            "destination": destination,
            "mode": "transit",
            "transit_routing_preference": "less_walking",
            "key": self._require_key(),
        }
        try:
            data = self._get_directions(params)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Transit directions failed: {e}")
            raise ExternalServiceError(f"Transit directions failed: {e}") from e
        return summarize_route(data)
