"""Pydantic schemas for occurrence reports and merges."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from app.schemas.route import CoordinatesIn


class OccurrenceCreateRequest(BaseModel):
    user_id: int
    latitude: float
    longitude: float
    crime_type_id: int
    severity: str
    source: str = "collaborative"
    timestamp: Optional[datetime] = None
    source_id: Optional[str] = Field(None, max_length=100)
    reporter_location: Optional[CoordinatesIn] = None
    metadata: Optional[dict[str, Any]] = None

    def report(self) -> dict[str, Any]:
        return self.model_dump(exclude={"user_id", "reporter_location"})


class OccurrenceMergeRequest(BaseModel):
    occurrence_ids: list[int] = Field(..., min_length=1)
    target_id: int
    actor_id: Optional[int] = None
