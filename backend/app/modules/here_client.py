"""HERE adapter — Routing v8, Geocoding & Search v7.

Routes come back as flexible polylines, which are decoded for waypoints and
re-encoded in the Google format so every provider exposes the same
``Route.polyline`` encoding.
"""
from __future__ import annotations

import logging
from typing import Any

from app.config import settings
from app.errors import ProviderError
from app.modules.map_provider import MAX_GEOCODE_RESULTS, MapProvider, require_key
from app.utils.geo import decode_flexible_polyline, encode_polyline, thin
from app.values import Address, Coordinates, Route, RouteOptions, TrafficData

logger = logging.getLogger(__name__)

ROUTING_URL = "https://router.hereapi.com/v8/routes"
GEOCODING_URL = "https://geocode.search.hereapi.com/v1/geocode"
REVERSE_GEOCODING_URL = "https://revgeocode.search.hereapi.com/v1/revgeocode"

_TRANSPORT_MODES = {"driving": "car", "walking": "pedestrian", "cycling": "bicycle"}
# HERE returns no maneuvers with this request; waypoints are sampled from the path
_WAYPOINT_SPACING_M = 100.0


class HereClient(MapProvider):
    name = "here"
    costs = {"route": 0.004, "geocode": 0.004, "traffic": 0.004}

    def _key(self) -> str:
        return require_key(self.name, settings.HERE_API_KEY)

    def _routes(self, origin: Coordinates, destination: Coordinates, **extra: Any) -> list[dict[str, Any]]:
        params = {
            "origin": f"{origin.latitude},{origin.longitude}",
            "destination": f"{destination.latitude},{destination.longitude}",
            "apiKey": self._key(),
            "return": "polyline,summary,travelSummary",
            "departureTime": "any",
            **extra,
        }
        data = self._get(ROUTING_URL, params=params)
        routes = data.get("routes") or []
        if not routes:
            notices = data.get("notices") or []
            if notices or data.get("error"):
                code = (notices[0].get("code") if notices else data.get("error")) or "unknown"
                logger.info("HERE returned no route: %s", code)
            raise ProviderError.no_route(self.name)
        return routes

    def _fetch_route(self, origin: Coordinates, destination: Coordinates, options: RouteOptions) -> Route:
        extra: dict[str, Any] = {"transportMode": _TRANSPORT_MODES.get(options.mode, "car")}
        avoid = []
        if options.avoid_tolls:
            avoid.append("tollRoad")
        if options.avoid_highways:
            avoid.append("controlledAccessHighway")
        if avoid:
            extra["avoid[features]"] = ",".join(avoid)
        if options.departure_time:
            extra["departureTime"] = options.departure_time
        return self._parse_route(self._routes(origin, destination, **extra)[0], origin, destination)

    def _fetch_alternatives(self, origin: Coordinates, destination: Coordinates, count: int) -> list[Route]:
        routes = self._routes(origin, destination, transportMode="car", alternatives=max(0, count - 1))
        return [self._parse_route(r, origin, destination) for r in routes[:count]]

    def _fetch_geocode(self, query: str) -> list[Address]:
        data = self._get(GEOCODING_URL, params={"q": query, "apiKey": self._key(), "limit": MAX_GEOCODE_RESULTS})
        return [self._parse_address(item) for item in data.get("items", [])]

    def _fetch_reverse_geocode(self, point: Coordinates) -> Address:
        data = self._get(
            REVERSE_GEOCODING_URL,
            params={"at": f"{point.latitude},{point.longitude}", "apiKey": self._key(), "limit": 1},
        )
        items = data.get("items") or []
        if not items:
            raise ProviderError.geocode_not_found(self.name, f"{point.latitude},{point.longitude}")
        return self._parse_address(items[0])

    def _fetch_traffic(self, route: Route) -> TrafficData:
        section = self._routes(route.origin, route.destination, transportMode="car", departureTime="now")[0]
        section = (section.get("sections") or [{}])[0]
        current = section.get("summary", {}).get("duration", 0)
        typical = section.get("travelSummary", {}).get("typicalDuration", current)
        return TrafficData(current_duration=float(current), typical_duration=float(typical))

    def _health_check(self) -> bool:
        data = self._get(GEOCODING_URL, params={"q": "São Paulo", "apiKey": self._key(), "limit": 1})
        return "items" in data

    def _parse_route(self, data: dict[str, Any], origin: Coordinates, destination: Coordinates) -> Route:
        sections = data.get("sections") or [{}]
        path: list[tuple[float, float]] = []
        distance = duration = 0.0
        for section in sections:
            summary = section.get("summary", {})
            distance += summary.get("length", 0)
            duration += summary.get("duration", 0)
            if section.get("polyline"):
                try:
                    path.extend(decode_flexible_polyline(section["polyline"]))
                except ValueError as exc:
                    raise ProviderError.invalid_response(self.name, f"bad polyline: {exc}") from exc
        return Route(
            origin=origin,
            destination=destination,
            distance=float(distance),
            duration=float(duration),
            polyline=encode_polyline(path) if path else "",
            waypoints=tuple(Coordinates(lat, lon) for lat, lon in thin(path, _WAYPOINT_SPACING_M)[1:-1]),
            provider=self.name,
        )

    def _parse_address(self, item: dict[str, Any]) -> Address:
        address = item.get("address", {})
        position = item.get("position", {})
        return Address(
            formatted_address=item.get("title") or address.get("label", ""),
            coordinates=Coordinates(position.get("lat", 0.0), position.get("lng", 0.0)),
            street=address.get("street"),
            number=address.get("houseNumber"),
            neighborhood=address.get("district"),
            city=address.get("city"),
            state=address.get("state") or address.get("stateCode"),
            country=address.get("countryName") or address.get("countryCode"),
            postal_code=address.get("postalCode"),
        )
