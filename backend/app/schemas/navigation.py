"""Pydantic schemas for navigation sessions."""
from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

from app.schemas.route import CoordinatesIn


class NavigationStartRequest(BaseModel):
    origin: CoordinatesIn
    destination: CoordinatesIn
    prefer_safe_route: bool = True
    user_id: Optional[int] = None


class PositionUpdateRequest(BaseModel):
    position: CoordinatesIn
    speed_kmh: float = Field(0.0, ge=0.0, le=400.0)


class AlternativeDecisionRequest(BaseModel):
    action: Literal["accept", "reject"]
