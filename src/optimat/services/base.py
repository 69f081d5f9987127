from typing import Protocol, runtime_checkable

from optimat.models import GeocodedLocation, Place


@runtime_checkable
class Geocoder(Protocol):
    def geocode(self, address: str) -> GeocodedLocation | None: ...


@runtime_checkable
class PlaceSearcher(Protocol):
    def search_places(self, query: str) -> list[Place]: ...


@runtime_checkable
class DirectionsProvider(Protocol):
    def transit_directions(self, origin: str, destination: str) -> dict | None:
        """Summary of the first transit route, or None when no route exists."""
        ...


@runtime_checkable
class WebSearcher(Protocol):
    def answer(self, question: str) -> dict: ...
