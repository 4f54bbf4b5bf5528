"""Google Maps Platform adapter — Directions and Geocoding JSON APIs.

API docs: https://developers.google.com/maps/documentation/directions
Google reports errors in-band via ``status`` even on HTTP 200, so every
response is checked before parsing.
"""
from __future__ import annotations

import logging
from typing import Any

from app.config import settings
from app.errors import ProviderError
from app.modules.map_provider import MAX_GEOCODE_RESULTS, MapProvider, require_key
from app.values import Address, Coordinates, Route, RouteOptions, TrafficData

logger = logging.getLogger(__name__)

DIRECTIONS_URL = "https://maps.googleapis.com/maps/api/directions/json"
GEOCODING_URL = "https://maps.googleapis.com/maps/api/geocode/json"


class GoogleMapsClient(MapProvider):
    name = "google"
    costs = {"route": 0.005, "geocode": 0.005, "traffic": 0.01}

    def _key(self) -> str:
        return require_key(self.name, settings.GOOGLE_MAPS_API_KEY)

    def _check_status(self, data: dict[str, Any]) -> None:
        status = data.get("status", "UNKNOWN")
        if status == "OK":
            return
        if status in ("ZERO_RESULTS", "NOT_FOUND"):
            raise ProviderError.no_route(self.name)
        if status == "REQUEST_DENIED":
            raise ProviderError.auth_failed(self.name)
        if status == "OVER_QUERY_LIMIT":
            raise ProviderError.quota_exceeded(self.name)
        if status == "UNKNOWN_ERROR":
            raise ProviderError.unavailable(self.name, "UNKNOWN_ERROR")
        raise ProviderError.invalid_response(self.name, f"{status}: {data.get('error_message', '')}")

    def _directions(self, origin: Coordinates, destination: Coordinates, **extra: Any) -> dict[str, Any]:
        params = {
            "origin": f"{origin.latitude},{origin.longitude}",
            "destination": f"{destination.latitude},{destination.longitude}",
            "key": self._key(),
            **extra,
        }
        data = self._get(DIRECTIONS_URL, params=params)
        self._check_status(data)
        if not data.get("routes"):
            raise ProviderError.no_route(self.name)
        return data

    def _fetch_route(self, origin: Coordinates, destination: Coordinates, options: RouteOptions) -> Route:
        extra: dict[str, Any] = {"mode": options.mode, "departure_time": options.departure_time or "now"}
        avoid = []
        if options.avoid_tolls:
            avoid.append("tolls")
        if options.avoid_highways:
            avoid.append("highways")
        if avoid:
            extra["avoid"] = "|".join(avoid)
        data = self._directions(origin, destination, **extra)
        return self._parse_route(data["routes"][0], origin, destination)

    def _fetch_alternatives(self, origin: Coordinates, destination: Coordinates, count: int) -> list[Route]:
        data = self._directions(origin, destination, alternatives="true", departure_time="now")
        return [self._parse_route(r, origin, destination) for r in data["routes"][:count]]

    def _fetch_geocode(self, query: str) -> list[Address]:
        data = self._get(GEOCODING_URL, params={"address": query, "key": self._key()})
        if data.get("status") == "ZERO_RESULTS":
            return []
        self._check_status(data)
        return [self._parse_address(r) for r in data.get("results", [])[:MAX_GEOCODE_RESULTS]]

    def _fetch_reverse_geocode(self, point: Coordinates) -> Address:
        data = self._get(
            GEOCODING_URL, params={"latlng": f"{point.latitude},{point.longitude}", "key": self._key()}
        )
        if data.get("status") == "ZERO_RESULTS" or not data.get("results"):
            raise ProviderError.geocode_not_found(self.name, f"{point.latitude},{point.longitude}")
        self._check_status(data)
        return self._parse_address(data["results"][0])

    def _fetch_traffic(self, route: Route) -> TrafficData:
        data = self._directions(
            route.origin, route.destination, departure_time="now", traffic_model="best_guess"
        )
        leg = data["routes"][0].get("legs", [{}])[0]
        typical = leg.get("duration", {}).get("value", 0)
        current = leg.get("duration_in_traffic", {}).get("value", typical)
        return TrafficData(current_duration=float(current), typical_duration=float(typical))

    def _health_check(self) -> bool:
        data = self._get(GEOCODING_URL, params={"address": "Praça da Sé, São Paulo", "key": self._key()})
        return data.get("status") == "OK"

    def _parse_route(self, data: dict[str, Any], origin: Coordinates, destination: Coordinates) -> Route:
        legs = data.get("legs") or [{}]
        waypoints = []
        for leg in legs:
            for step in leg.get("steps", []):
                loc = step.get("end_location")
                if loc:
                    waypoints.append(Coordinates(loc["lat"], loc["lng"]))
        leg = legs[0]
        duration = leg.get("duration_in_traffic", leg.get("duration", {})).get("value", 0)
        return Route(
            origin=origin,
            destination=destination,
            distance=float(leg.get("distance", {}).get("value", 0)),
            duration=float(duration),
            polyline=data.get("overview_polyline", {}).get("points", ""),
            waypoints=tuple(waypoints),
            provider=self.name,
        )

    def _parse_address(self, result: dict[str, Any]) -> Address:
        components: dict[str, str] = {}
        for component in result.get("address_components", []):
            for kind in component.get("types", []):
                components.setdefault(kind, component.get("long_name", ""))
        loc = result.get("geometry", {}).get("location", {})
        return Address(
            formatted_address=result.get("formatted_address", ""),
            coordinates=Coordinates(loc.get("lat", 0.0), loc.get("lng", 0.0)),
            street=components.get("route"),
            number=components.get("street_number"),
            neighborhood=components.get("sublocality") or components.get("sublocality_level_1"),
            city=components.get("administrative_area_level_2") or components.get("locality"),
            state=components.get("administrative_area_level_1"),
            country=components.get("country"),
            postal_code=components.get("postal_code"),
        )
