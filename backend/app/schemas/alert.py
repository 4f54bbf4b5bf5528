"""Pydantic schemas for alert preferences."""
from __future__ import annotations

from typing import Annotated, Any, Optional

from pydantic import BaseModel, Field

HourOfDay = Annotated[str, Field(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")]
DayOfWeek = Annotated[int, Field(ge=0, le=6)]


class AlertPreferenceUpdateRequest(BaseModel):
    user_id: int
    alerts_enabled: Optional[bool] = None
    enabled_crime_types: Optional[list[int]] = None
    active_hours_start: Optional[HourOfDay] = None
    active_hours_end: Optional[HourOfDay] = None
    # 0 = Sunday … 6 = Saturday
    active_days: Optional[list[DayOfWeek]] = None

    def changes(self) -> dict[str, Any]:
        """Only the fields the client sent; an explicit null clears active hours."""
        return self.model_dump(exclude={"user_id"}, exclude_unset=True)
