"""Immutable value objects shared by providers, risk overlay and navigation.

Validation happens at construction; every object round-trips through
``to_dict()`` / ``from_dict()`` so it can be cached, persisted in JSON columns
or returned from the API unchanged.
"""
from __future__ import annotations

import enum
import math
import uuid
from dataclasses import dataclass, field
from typing import Any

from app.errors import InvalidCoordinatesError, ValidationError
from app.utils.geo import decode_polyline, haversine_meters, initial_bearing


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        lat, lon = self.latitude, self.longitude
        if not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)) \
                or isinstance(lat, bool) or isinstance(lon, bool):
            raise InvalidCoordinatesError("Coordinates must be numeric", latitude=lat, longitude=lon)
        if math.isnan(lat) or not -90.0 <= lat <= 90.0:
            raise InvalidCoordinatesError(
                f"Latitude {lat} out of range [-90, 90]", field="latitude", latitude=lat,
            )
        if math.isnan(lon) or not -180.0 <= lon <= 180.0:
            raise InvalidCoordinatesError(
                f"Longitude {lon} out of range [-180, 180]", field="longitude", longitude=lon,
            )
        object.__setattr__(self, "latitude", float(lat))
        object.__setattr__(self, "longitude", float(lon))

    @property
    def as_tuple(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)

    def distance_to(self, other: Coordinates) -> float:
        """Haversine distance in metres."""
        return haversine_meters(self.latitude, self.longitude, other.latitude, other.longitude)

    def bearing_to(self, other: Coordinates) -> float:
        return initial_bearing(self.latitude, self.longitude, other.latitude, other.longitude)

    def is_within_distance(self, other: Coordinates, meters: float) -> bool:
        return self.distance_to(other) <= meters

    def to_dict(self) -> dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Coordinates:
        """Accepts ``latitude``/``lat`` and ``longitude``/``lng``/``lon`` keys."""
        lat = data.get("latitude", data.get("lat"))
        lon = data.get("longitude", data.get("lng", data.get("lon")))
        if lat is None or lon is None:
            raise InvalidCoordinatesError("Missing latitude or longitude", received=sorted(data))
        try:
            return cls(float(lat), float(lon))
        except (TypeError, ValueError) as exc:
            if isinstance(exc, InvalidCoordinatesError):
                raise
            raise InvalidCoordinatesError("Coordinates must be numeric", latitude=lat, longitude=lon) from exc


@dataclass(frozen=True)
class Address:
    formatted_address: str
    coordinates: Coordinates
    street: str | None = None
    number: str | None = None
    neighborhood: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    postal_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "formatted_address": self.formatted_address,
            "coordinates": self.coordinates.to_dict(),
            "street": self.street,
            "number": self.number,
            "neighborhood": self.neighborhood,
            "city": self.city,
            "state": self.state,
            "country": self.country,
            "postal_code": self.postal_code,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Address:
        return cls(
            formatted_address=data.get("formatted_address", ""),
            coordinates=Coordinates.from_dict(data["coordinates"]),
            street=data.get("street"),
            number=data.get("number"),
            neighborhood=data.get("neighborhood"),
            city=data.get("city"),
            state=data.get("state"),
            country=data.get("country"),
            postal_code=data.get("postal_code"),
        )


@dataclass(frozen=True)
class RouteOptions:
    avoid_tolls: bool = False
    avoid_highways: bool = False
    prefer_safe_route: bool = False
    departure_time: str | None = None
    mode: str = "driving"

    def to_dict(self) -> dict[str, Any]:
        return {
            "avoid_tolls": self.avoid_tolls,
            "avoid_highways": self.avoid_highways,
            "prefer_safe_route": self.prefer_safe_route,
            "departure_time": self.departure_time,
            "mode": self.mode,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RouteOptions:
        data = data or {}
        return cls(
            avoid_tolls=bool(data.get("avoid_tolls", False)),
            avoid_highways=bool(data.get("avoid_highways", False)),
            prefer_safe_route=bool(data.get("prefer_safe_route", False)),
            departure_time=data.get("departure_time"),
            mode=data.get("mode", "driving"),
        )


@dataclass(frozen=True)
class Route:
    origin: Coordinates
    destination: Coordinates
    distance: float
    duration: float
    polyline: str = ""
    waypoints: tuple[Coordinates, ...] = ()
    provider: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if self.distance < 0:
            raise ValidationError("Route distance must be >= 0", field="distance", value=self.distance)
        if self.duration < 0:
            raise ValidationError("Route duration must be >= 0", field="duration", value=self.duration)
        object.__setattr__(self, "waypoints", tuple(self.waypoints))

    def path(self) -> list[tuple[float, float]]:
        """Decoded polyline, or origin → waypoints → destination when absent."""
        if self.polyline:
            try:
                points = decode_polyline(self.polyline)
            except ValueError:
                points = []
            if points:
                return points
        return [self.origin.as_tuple, *(w.as_tuple for w in self.waypoints), self.destination.as_tuple]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "origin": self.origin.to_dict(),
            "destination": self.destination.to_dict(),
            "waypoints": [w.to_dict() for w in self.waypoints],
            "distance": self.distance,
            "duration": self.duration,
            "polyline": self.polyline,
            "provider": self.provider,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Route:
        kwargs: dict[str, Any] = {}
        if data.get("id"):
            kwargs["id"] = data["id"]
        return cls(
            origin=Coordinates.from_dict(data["origin"]),
            destination=Coordinates.from_dict(data["destination"]),
            distance=float(data.get("distance", 0)),
            duration=float(data.get("duration", 0)),
            polyline=data.get("polyline", ""),
            waypoints=tuple(Coordinates.from_dict(w) for w in data.get("waypoints", [])),
            provider=data.get("provider", ""),
            **kwargs,
        )


class TrafficCondition(str, enum.Enum):
    FREE_FLOW = "free_flow"
    LIGHT = "light"
    MODERATE = "moderate"
    HEAVY = "heavy"
    SEVERE = "severe"


# Upper delay-ratio bound per condition band
_CONDITION_BANDS: list[tuple[float, TrafficCondition]] = [
    (0.10, TrafficCondition.FREE_FLOW),
    (0.25, TrafficCondition.LIGHT),
    (0.50, TrafficCondition.MODERATE),
    (1.00, TrafficCondition.HEAVY),
]

SIGNIFICANT_DELAY_RATIO = 0.10


@dataclass(frozen=True)
class TrafficData:
    current_duration: float
    typical_duration: float
    segments: tuple[dict, ...] = ()
    incidents: tuple[dict, ...] = ()
    cached: bool = False
    # Explicit delay, set when aggregated from cached segments
    delay: float | None = None

    @property
    def delay_ratio(self) -> float:
        if self.typical_duration <= 0:
            return 0.0
        return (self.current_duration - self.typical_duration) / self.typical_duration

    @property
    def delay_seconds(self) -> float:
        if self.delay is not None:
            return self.delay
        return max(0.0, self.current_duration - self.typical_duration)

    @property
    def condition(self) -> TrafficCondition:
        ratio = self.delay_ratio
        for bound, condition in _CONDITION_BANDS:
            if ratio <= bound:
                return condition
        return TrafficCondition.SEVERE

    def has_significant_delay(self) -> bool:
        return self.delay_ratio > SIGNIFICANT_DELAY_RATIO

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_duration": self.current_duration,
            "typical_duration": self.typical_duration,
            "delay_ratio": round(self.delay_ratio, 4),
            "delay_seconds": self.delay_seconds,
            "condition": self.condition.value,
            "segments": list(self.segments),
            "incidents": list(self.incidents),
            "cached": self.cached,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrafficData:
        return cls(
            current_duration=float(data.get("current_duration", 0)),
            typical_duration=float(data.get("typical_duration", 0)),
            segments=tuple(data.get("segments", ())),
            incidents=tuple(data.get("incidents", ())),
            cached=bool(data.get("cached", False)),
        )


class RiskFactorType(str, enum.Enum):
    FREQUENCY = "frequency"
    RECENCY = "recency"
    SEVERITY = "severity"
    CONFIDENCE = "confidence"


@dataclass(frozen=True)
class RiskFactor:
    type: RiskFactorType
    weight: float
    contribution: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", RiskFactorType(self.type))
        if not 0.0 <= self.weight <= 1.0:
            raise ValidationError("Risk factor weight must be in [0, 1]", field="weight", value=self.weight)
        if not 0.0 <= self.contribution <= 100.0:
            raise ValidationError(
                "Risk factor contribution must be in [0, 100]", field="contribution", value=self.contribution,
            )

    @property
    def weighted(self) -> float:
        return self.weight * self.contribution

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "weight": self.weight, "contribution": self.contribution}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RiskFactor:
        return cls(RiskFactorType(data["type"]), float(data["weight"]), float(data["contribution"]))


@dataclass(frozen=True)
class RiskRegion:
    """One region crossed by a route, with the risk observed there."""
    region_id: int
    value: float
    is_high_risk: bool
    dominant_crime_type_id: int | None = None
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "region_id": self.region_id,
            "name": self.name,
            "value": self.value,
            "is_high_risk": self.is_high_risk,
            "dominant_crime_type_id": self.dominant_crime_type_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RiskRegion:
        return cls(
            region_id=int(data["region_id"]),
            value=float(data["value"]),
            is_high_risk=bool(data["is_high_risk"]),
            dominant_crime_type_id=data.get("dominant_crime_type_id"),
            name=data.get("name"),
        )


@dataclass(frozen=True)
class RouteWithRisk:
    route: Route
    max_risk: float
    average_risk: float
    risk_regions: tuple[RiskRegion, ...] = ()
    requires_warning: bool = False
    warning_message: str | None = None
    no_safer_alternative: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "route": self.route.to_dict(),
            "max_risk": self.max_risk,
            "average_risk": self.average_risk,
            "risk_regions": [r.to_dict() for r in self.risk_regions],
            "requires_warning": self.requires_warning,
            "warning_message": self.warning_message,
            "no_safer_alternative": self.no_safer_alternative,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RouteWithRisk:
        return cls(
            route=Route.from_dict(data["route"]),
            max_risk=float(data["max_risk"]),
            average_risk=float(data["average_risk"]),
            risk_regions=tuple(RiskRegion.from_dict(r) for r in data.get("risk_regions", [])),
            requires_warning=bool(data.get("requires_warning", False)),
            warning_message=data.get("warning_message"),
            no_safer_alternative=bool(data.get("no_safer_alternative", False)),
        )


@dataclass(frozen=True)
class RouteRecalculationResult:
    original_route: RouteWithRisk
    new_route: RouteWithRisk | None
    route_changed: bool
    risk_changed: bool
    time_change_percent: float
    message: str | None = None

    @property
    def recommended_route(self) -> RouteWithRisk:
        return self.new_route if self.new_route is not None else self.original_route

    @property
    def should_notify_user(self) -> bool:
        return self.route_changed or self.risk_changed or abs(self.time_change_percent) > 10.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_route": self.original_route.to_dict(),
            "new_route": self.new_route.to_dict() if self.new_route else None,
            "route_changed": self.route_changed,
            "risk_changed": self.risk_changed,
            "time_change_percent": self.time_change_percent,
            "message": self.message,
            "should_notify_user": self.should_notify_user,
        }
