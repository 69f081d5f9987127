from optimat.services.base import DirectionsProvider, Geocoder, PlaceSearcher, WebSearcher

__all__ = ["DirectionsProvider", "Geocoder", "PlaceSearcher", "WebSearcher"]
