"""Mapbox adapter — Directions v5 and Geocoding v5 (mapbox.places).

Traffic is derived by comparing the ``driving-traffic`` profile (current
conditions) against the plain ``driving`` profile (typical duration).
"""
from __future__ import annotations

import logging
from typing import Any

from app.config import settings
from app.errors import ProviderError
from app.modules.map_provider import MAX_GEOCODE_RESULTS, MapProvider, require_key
from app.values import Address, Coordinates, Route, RouteOptions, TrafficData

logger = logging.getLogger(__name__)

DIRECTIONS_URL = "https://api.mapbox.com/directions/v5/mapbox"
GEOCODING_URL = "https://api.mapbox.com/geocoding/v5/mapbox.places"

_PROFILES = {"driving": "driving-traffic", "walking": "walking", "cycling": "cycling"}


class MapboxClient(MapProvider):
    name = "mapbox"
    costs = {"route": 0.0005, "geocode": 0.0005, "traffic": 0.001}

    def _key(self) -> str:
        return require_key(self.name, settings.MAPBOX_ACCESS_TOKEN)

    def _directions(
        self, profile: str, origin: Coordinates, destination: Coordinates, **extra: Any
    ) -> list[dict[str, Any]]:
        coords = f"{origin.longitude},{origin.latitude};{destination.longitude},{destination.latitude}"
        params = {
            "access_token": self._key(),
            "geometries": "polyline",
            "overview": "full",
            "steps": "true",
            **extra,
        }
        data = self._get(f"{DIRECTIONS_URL}/{profile}/{coords}", params=params)
        routes = data.get("routes") or []
        if routes:
            return routes
        code = data.get("code", "Unknown")
        if code in ("NoRoute", "NoSegment"):
            raise ProviderError.no_route(self.name)
        if code in ("InvalidToken", "NotAuthorized"):
            raise ProviderError.auth_failed(self.name)
        if code == "ProfileNotFound" or code == "InvalidInput":
            raise ProviderError.invalid_response(self.name, f"{code}: {data.get('message', '')}")
        raise ProviderError.no_route(self.name)

    def _fetch_route(self, origin: Coordinates, destination: Coordinates, options: RouteOptions) -> Route:
        extra: dict[str, Any] = {}
        exclude = []
        if options.avoid_tolls:
            exclude.append("toll")
        if options.avoid_highways:
            exclude.append("motorway")
        if exclude:
            extra["exclude"] = ",".join(exclude)
        if options.departure_time:
            extra["depart_at"] = options.departure_time
        profile = _PROFILES.get(options.mode, "driving-traffic")
        return self._parse_route(self._directions(profile, origin, destination, **extra)[0], origin, destination)

    def _fetch_alternatives(self, origin: Coordinates, destination: Coordinates, count: int) -> list[Route]:
        routes = self._directions("driving-traffic", origin, destination, alternatives="true")
        return [self._parse_route(r, origin, destination) for r in routes[:count]]

    def _fetch_geocode(self, query: str) -> list[Address]:
        data = self._get(
            f"{GEOCODING_URL}/{query}.json",
            params={"access_token": self._key(), "limit": MAX_GEOCODE_RESULTS},
        )
        return [self._parse_address(f) for f in data.get("features", [])]

    def _fetch_reverse_geocode(self, point: Coordinates) -> Address:
        data = self._get(
            f"{GEOCODING_URL}/{point.longitude},{point.latitude}.json",
            params={"access_token": self._key(), "limit": 1},
        )
        features = data.get("features") or []
        if not features:
            raise ProviderError.geocode_not_found(self.name, f"{point.latitude},{point.longitude}")
        return self._parse_address(features[0])

    def _fetch_traffic(self, route: Route) -> TrafficData:
        current_routes = self._directions("driving-traffic", route.origin, route.destination, overview="false")
        current = float(current_routes[0].get("duration", 0))
        typical_routes = self._directions("driving", route.origin, route.destination, overview="false")
        typical = float(typical_routes[0].get("duration", current))
        return TrafficData(current_duration=current, typical_duration=typical)

    def _health_check(self) -> bool:
        data = self._get(f"{GEOCODING_URL}/São Paulo.json", params={"access_token": self._key(), "limit": 1})
        return "features" in data

    def _parse_route(self, data: dict[str, Any], origin: Coordinates, destination: Coordinates) -> Route:
        waypoints = []
        for leg in data.get("legs", []):
            for step in leg.get("steps", []):
                loc = step.get("maneuver", {}).get("location")
                if loc:
                    # Mapbox locations are [lon, lat]
                    waypoints.append(Coordinates(loc[1], loc[0]))
        return Route(
            origin=origin,
            destination=destination,
            distance=float(data.get("distance", 0)),
            duration=float(data.get("duration", 0)),
            polyline=data.get("geometry") or "",
            waypoints=tuple(waypoints),
            provider=self.name,
        )

    def _parse_address(self, feature: dict[str, Any]) -> Address:
        context: dict[str, str] = {}
        for entry in feature.get("context", []):
            kind = entry.get("id", "").split(".")[0]
            context.setdefault(kind, entry.get("text", ""))
        center = feature.get("center") or [0.0, 0.0]
        return Address(
            formatted_address=feature.get("place_name", ""),
            coordinates=Coordinates(center[1], center[0]),
            street=feature.get("text"),
            number=feature.get("address"),
            neighborhood=context.get("neighborhood") or context.get("locality"),
            city=context.get("place"),
            state=context.get("region"),
            country=context.get("country"),
            postal_code=context.get("postcode"),
        )
