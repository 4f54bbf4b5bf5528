"""OpenStreetMap adapter — Nominatim geocoding + OSRM routing.

Free and keyless, which makes it the default primary and the first fallback.
Nominatim's usage policy requires an identifying User-Agent. OSRM has no
live traffic feed, so traffic data mirrors the route duration.
"""
from __future__ import annotations

import logging
from typing import Any

from app.config import settings
from app.errors import ProviderError
from app.modules.map_provider import MAX_GEOCODE_RESULTS, MapProvider
from app.utils.geo import decode_polyline
from app.values import Address, Coordinates, Route, RouteOptions, TrafficData

logger = logging.getLogger(__name__)

_OSRM_PROFILES = {"driving": "driving", "walking": "foot", "cycling": "bike"}


class NominatimClient(MapProvider):
    name = "nominatim"
    costs = {"route": 0.0, "geocode": 0.0, "traffic": 0.0}

    def _headers(self) -> dict[str, str]:
        return {"User-Agent": settings.NOMINATIM_USER_AGENT}

    def _osrm(self, profile: str, origin: Coordinates, destination: Coordinates, **extra: Any) -> list[dict]:
        coords = f"{origin.longitude},{origin.latitude};{destination.longitude},{destination.latitude}"
        url = f"{settings.OSRM_BASE_URL.rstrip('/')}/route/v1/{profile}/{coords}"
        params = {"overview": "full", "geometries": "polyline", "steps": "true", **extra}
        data = self._get(url, params=params)
        if data.get("code") not in (None, "Ok"):
            if data.get("code") in ("NoRoute", "NoSegment"):
                raise ProviderError.no_route(self.name)
            raise ProviderError.invalid_response(self.name, f"{data.get('code')}: {data.get('message', '')}")
        routes = data.get("routes") or []
        if not routes:
            raise ProviderError.no_route(self.name)
        return routes

    def _fetch_route(self, origin: Coordinates, destination: Coordinates, options: RouteOptions) -> Route:
        profile = _OSRM_PROFILES.get(options.mode, "driving")
        return self._parse_route(self._osrm(profile, origin, destination)[0], origin, destination)

    def _fetch_alternatives(self, origin: Coordinates, destination: Coordinates, count: int) -> list[Route]:
        routes = self._osrm("driving", origin, destination, alternatives=str(max(1, count)))
        return [self._parse_route(r, origin, destination) for r in routes[:count]]

    def _fetch_geocode(self, query: str) -> list[Address]:
        data = self._get(
            f"{settings.NOMINATIM_BASE_URL.rstrip('/')}/search",
            params={"q": query, "format": "json", "addressdetails": 1, "limit": MAX_GEOCODE_RESULTS},
            headers=self._headers(),
        )
        if not isinstance(data, list):
            raise ProviderError.invalid_response(self.name, "search did not return a list")
        return [self._parse_address(item) for item in data]

    def _fetch_reverse_geocode(self, point: Coordinates) -> Address:
        data = self._get(
            f"{settings.NOMINATIM_BASE_URL.rstrip('/')}/reverse",
            params={"lat": point.latitude, "lon": point.longitude, "format": "json", "addressdetails": 1},
            headers=self._headers(),
        )
        if not data or "error" in data:
            raise ProviderError.geocode_not_found(self.name, f"{point.latitude},{point.longitude}")
        return self._parse_address(data)

    def _fetch_traffic(self, route: Route) -> TrafficData:
        return TrafficData(current_duration=route.duration, typical_duration=route.duration)

    def _health_check(self) -> bool:
        data = self._get(
            f"{settings.NOMINATIM_BASE_URL.rstrip('/')}/search",
            params={"q": "São Paulo, Brazil", "format": "json", "limit": 1},
            headers=self._headers(),
        )
        return isinstance(data, list) and bool(data)

    def _parse_route(self, data: dict[str, Any], origin: Coordinates, destination: Coordinates) -> Route:
        geometry = data.get("geometry") or ""
        if geometry:
            try:
                decode_polyline(geometry)
            except ValueError as exc:
                raise ProviderError.invalid_response(self.name, f"bad polyline: {exc}") from exc
        waypoints = []
        for leg in data.get("legs", []):
            for step in leg.get("steps", []):
                loc = step.get("maneuver", {}).get("location")
                if loc:
                    # OSRM locations are [lon, lat]
                    waypoints.append(Coordinates(loc[1], loc[0]))
        return Route(
            origin=origin,
            destination=destination,
            distance=float(data.get("distance", 0)),
            duration=float(data.get("duration", 0)),
            polyline=geometry,
            waypoints=tuple(waypoints),
            provider=self.name,
        )

    def _parse_address(self, item: dict[str, Any]) -> Address:
        addr = item.get("address", {})
        return Address(
            formatted_address=item.get("display_name", ""),
            coordinates=Coordinates(float(item.get("lat", 0)), float(item.get("lon", 0))),
            street=addr.get("road") or addr.get("pedestrian"),
            number=addr.get("house_number"),
            neighborhood=addr.get("suburb") or addr.get("neighbourhood"),
            city=addr.get("city") or addr.get("town") or addr.get("municipality"),
            state=addr.get("state"),
            country=addr.get("country"),
            postal_code=addr.get("postcode"),
        )
