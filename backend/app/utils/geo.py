"""Shared geodesic, polyline and geometry-column utilities.

Canonical implementations of haversine distance, bearing, cross-track
distance and polyline codecs used by the route overlay, navigation,
traffic cache and occurrence ingestion.

Coordinates are plain ``(lat, lon)`` tuples here so the helpers stay usable
from both value objects and ORM rows. Geometry columns hold PostGIS values
on PostgreSQL and EWKT text elsewhere; ``load_geometry`` reads either.
"""
from __future__ import annotations

import math
from functools import lru_cache

from geoalchemy2.elements import WKTElement
from geoalchemy2.shape import to_shape
from shapely.geometry.base import BaseGeometry

_EARTH_RADIUS_M: float = 6_371_000.0  # Earth mean radius in metres

SRID = 4326

LatLon = tuple[float, float]

# HERE flexible polyline alphabet (URL-safe base64 ordering)
_FLEX_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
_FLEX_DECODING = {ch: i for i, ch in enumerate(_FLEX_ALPHABET)}


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres between two WGS-84 coordinates."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlam = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    )
    return _EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def initial_bearing(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial great-circle bearing in degrees [0, 360) from point 1 to point 2."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dlam = math.radians(lon2 - lon1)
    y = math.sin(dlam) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlam)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def cross_track_meters(point: LatLon, start: LatLon, end: LatLon) -> float:
    """Absolute distance from ``point`` to the great circle through start→end."""
    d13 = haversine_meters(start[0], start[1], point[0], point[1]) / _EARTH_RADIUS_M
    theta13 = math.radians(initial_bearing(start[0], start[1], point[0], point[1]))
    theta12 = math.radians(initial_bearing(start[0], start[1], end[0], end[1]))
    return abs(math.asin(math.sin(d13) * math.sin(theta13 - theta12)) * _EARTH_RADIUS_M)


def along_track_meters(point: LatLon, start: LatLon, end: LatLon) -> float:
    """Distance from ``start`` to the foot of the perpendicular from ``point``."""
    d13 = haversine_meters(start[0], start[1], point[0], point[1]) / _EARTH_RADIUS_M
    dxt = cross_track_meters(point, start, end) / _EARTH_RADIUS_M
    if math.cos(dxt) == 0:
        return 0.0
    ratio = max(-1.0, min(1.0, math.cos(d13) / math.cos(dxt)))
    dat = math.acos(ratio) * _EARTH_RADIUS_M
    # Foot falls behind start when the point is more than 90° off the track.
    theta13 = math.radians(initial_bearing(start[0], start[1], point[0], point[1]))
    theta12 = math.radians(initial_bearing(start[0], start[1], end[0], end[1]))
    if math.cos(theta13 - theta12) < 0:
        return -dat
    return dat


def distance_to_segment_meters(point: LatLon, start: LatLon, end: LatLon) -> float:
    """Shortest distance from ``point`` to the segment start→end."""
    seg_len = haversine_meters(start[0], start[1], end[0], end[1])
    if seg_len < 1e-6:
        return haversine_meters(point[0], point[1], start[0], start[1])
    along = along_track_meters(point, start, end)
    if along <= 0:
        return haversine_meters(point[0], point[1], start[0], start[1])
    if along >= seg_len:
        return haversine_meters(point[0], point[1], end[0], end[1])
    return cross_track_meters(point, start, end)


def distance_to_polyline_meters(point: LatLon, path: list[LatLon]) -> tuple[float, int]:
    """Minimum distance from ``point`` to ``path`` and the index of the closest segment.

    Returns ``(inf, -1)`` for an empty path.
    """
    if not path:
        return math.inf, -1
    if len(path) == 1:
        return haversine_meters(point[0], point[1], path[0][0], path[0][1]), 0
    best, best_idx = math.inf, 0
    for i in range(len(path) - 1):
        d = distance_to_segment_meters(point, path[i], path[i + 1])
        if d < best:
            best, best_idx = d, i
    return best, best_idx


def path_length_meters(path: list[LatLon]) -> float:
    return sum(
        haversine_meters(a[0], a[1], b[0], b[1]) for a, b in zip(path, path[1:])
    )


def densify(path: list[LatLon], max_step_meters: float) -> list[LatLon]:
    """Insert linearly interpolated points so no step exceeds ``max_step_meters``."""
    if len(path) < 2:
        return list(path)
    out: list[LatLon] = [path[0]]
    for a, b in zip(path, path[1:]):
        d = haversine_meters(a[0], a[1], b[0], b[1])
        steps = max(1, math.ceil(d / max_step_meters))
        for k in range(1, steps + 1):
            t = k / steps
            out.append((a[0] + (b[0] - a[0]) * t, a[1] + (b[1] - a[1]) * t))
    return out


def decode_polyline(encoded: str, precision: int = 5) -> list[LatLon]:
    """Decode a Google encoded polyline (also used by OSRM and Mapbox)."""
    factor = 10 ** precision
    coords: list[LatLon] = []
    index = lat = lon = 0
    length = len(encoded)
    while index < length:
        deltas = []
        for _ in range(2):
            shift = result = 0
            while True:
                if index >= length:
                    raise ValueError("Truncated polyline")
                b = ord(encoded[index]) - 63
                index += 1
                result |= (b & 0x1F) << shift
                shift += 5
                if b < 0x20:
                    break
            deltas.append(~(result >> 1) if result & 1 else result >> 1)
        lat += deltas[0]
        lon += deltas[1]
        coords.append((lat / factor, lon / factor))
    return coords


def encode_polyline(path: list[LatLon], precision: int = 5) -> str:
    """Encode ``path`` into the Google polyline format."""
    factor = 10 ** precision
    out: list[str] = []
    prev_lat = prev_lon = 0
    for lat, lon in path:
        ilat, ilon = round(lat * factor), round(lon * factor)
        for delta in (ilat - prev_lat, ilon - prev_lon):
            value = ~(delta << 1) if delta < 0 else delta << 1
            while value >= 0x20:
                out.append(chr((0x20 | (value & 0x1F)) + 63))
                value >>= 5
            out.append(chr(value + 63))
        prev_lat, prev_lon = ilat, ilon
    return "".join(out)


def decode_flexible_polyline(encoded: str) -> list[LatLon]:
    """Decode a HERE flexible polyline, dropping any third dimension."""
    values: list[int] = []
    shift = result = 0
    for ch in encoded:
        try:
            chunk = _FLEX_DECODING[ch]
        except KeyError:
            raise ValueError(f"Invalid flexible polyline character {ch!r}") from None
        result |= (chunk & 0x1F) << shift
        if chunk & 0x20:
            shift += 5
        else:
            values.append(result)
            shift = result = 0
    if shift:
        raise ValueError("Truncated flexible polyline")
    if len(values) < 2:
        raise ValueError("Flexible polyline header missing")
    version, header = values[0], values[1]
    if version != 1:
        raise ValueError(f"Unsupported flexible polyline version {version}")
    factor = 10 ** (header & 0x0F)
    dims = 3 if (header >> 4) & 0x07 else 2

    coords: list[LatLon] = []
    acc = [0] * dims
    body = values[2:]
    for i in range(0, len(body) - dims + 1, dims):
        for d in range(dims):
            raw = body[i + d]
            acc[d] += ~(raw >> 1) if raw & 1 else raw >> 1
        coords.append((acc[0] / factor, acc[1] / factor))
    return coords


def thin(path: list[LatLon], min_spacing_meters: float) -> list[LatLon]:
    """Keep the endpoints and points at least ``min_spacing_meters`` from the last kept one."""
    if len(path) < 3:
        return list(path)
    kept = [path[0]]
    for pt in path[1:-1]:
        last = kept[-1]
        if haversine_meters(last[0], last[1], pt[0], pt[1]) >= min_spacing_meters:
            kept.append(pt)
    kept.append(path[-1])
    return kept


# ── Geometry column values ───────────────────────────────────────────────────

def to_ewkt(geometry: str | BaseGeometry) -> str:
    """``SRID=4326;...`` text for a WKT string or shapely geometry."""
    text = geometry if isinstance(geometry, str) else geometry.wkt
    if text.upper().startswith("SRID="):
        return text
    return f"SRID={SRID};{text}"


def load_geometry(value: object) -> BaseGeometry | None:
    """Shapely geometry from a geometry column value (WKBElement, WKTElement or EWKT text)."""
    if value is None:
        return None
    if isinstance(value, str):
        return _geometry_from_text(value)
    return to_shape(value)


@lru_cache(maxsize=4096)
def _geometry_from_text(text: str) -> BaseGeometry:
    wkt = text.rpartition(";")[2]
    return to_shape(WKTElement(wkt, srid=SRID))
