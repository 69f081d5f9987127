from typing import Any, Iterator

POLYGON_TYPES = ("Polygon", "MultiPolygon")

Ring = list[tuple[float, float]]


def _ring(raw: Any) -> Ring | None:
    if not isinstance(raw, (list, tuple)):
        return None
    points: Ring = []
    for vertex in raw:
        if not isinstance(vertex, (list, tuple)) or len(vertex) < 2:
            return None
        lng, lat = vertex[0], vertex[1]
        if isinstance(lng, bool) or isinstance(lat, bool):
            return None
        if not isinstance(lng, (int, float)) or not isinstance(lat, (int, float)):
            return None
        points.append((float(lng), float(lat)))
    if len(points) < 3:
        return None
    return points


def _polygons(geometry: Any) -> Iterator[list[Ring]]:
    if isinstance(geometry, dict) and geometry.get("type") == "Feature":
        geometry = geometry.get("geometry")
    if not isinstance(geometry, dict):
        return
    kind = geometry.get("type")
    coordinates = geometry.get("coordinates")
    if kind not in POLYGON_TYPES or not isinstance(coordinates, list):
        return
    polygons = [coordinates] if kind == "Polygon" else coordinates
    for polygon in polygons:
        if not isinstance(polygon, list) or not polygon:
            continue
        rings = [_ring(raw) for raw in polygon]
        # A broken ring invalidates the whole polygon, holes included.
        if all(ring is not None for ring in rings):
            yield rings


def is_polygonal(geometry: Any) -> bool:
    return any(True for _ in _polygons(geometry))


def _crosses(ring: Ring, x: float, y: float) -> bool:
    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        xi, yi = ring[i]
        xj, yj = ring[j]
        if (yi > y) != (yj > y) and x < (xj - xi) * (y - yi) / (yj - yi) + xi:
            inside = not inside
        j = i
    return inside


def polygon_contains(rings: list[Ring], lat: float, lng: float) -> bool:
    # Even-odd across every ring, so holes subtract from the outer ring.
    inside = False
    for ring in rings:
        if _crosses(ring, lng, lat):
            inside = not inside
    return inside


def contains(geometry: Any, lat: float, lng: float) -> bool:
    """True when the GeoJSON Polygon/MultiPolygon ``geometry`` contains the point."""
    return any(polygon_contains(rings, lat, lng) for rings in _polygons(geometry))
