"""Pydantic schemas for routing requests."""
from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

from app.values import Coordinates, RouteOptions


class CoordinatesIn(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

    def to_value(self) -> Coordinates:
        return Coordinates(self.latitude, self.longitude)


class RouteRequest(BaseModel):
    origin: CoordinatesIn
    destination: CoordinatesIn
    avoid_tolls: bool = False
    avoid_highways: bool = False
    prefer_safe_route: bool = False
    departure_time: Optional[str] = None
    mode: Literal["driving", "walking", "cycling"] = "driving"

    def options(self) -> RouteOptions:
        return RouteOptions(
            avoid_tolls=self.avoid_tolls,
            avoid_highways=self.avoid_highways,
            prefer_safe_route=self.prefer_safe_route,
            departure_time=self.departure_time,
            mode=self.mode,
        )


class RecalculateRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    current_position: CoordinatesIn
