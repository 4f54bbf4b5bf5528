"""AlertPreference entity — per-user filters on navigation risk alerts.

Empty ``enabled_crime_types`` / ``active_days`` mean "all"; null active hours
mean "always". Days use 0 = Sunday … 6 = Saturday. An active-hours window
whose start is later than its end wraps midnight (22:00–06:00).
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Integer, Boolean, String, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base

SUNDAY, MONDAY, TUESDAY, WEDNESDAY, THURSDAY, FRIDAY, SATURDAY = range(7)


def day_of_week(moment: datetime) -> int:
    """0 = Sunday … 6 = Saturday."""
    return (moment.weekday() + 1) % 7


class AlertPreference(Base):
    __tablename__ = "alert_preferences"

    alert_preference_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True, index=True)
    alerts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    enabled_crime_types: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    active_hours_start: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    active_hours_end: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    active_days: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    def is_crime_type_enabled(self, crime_type_id: int) -> bool:
        if not self.enabled_crime_types:
            return True
        return crime_type_id in self.enabled_crime_types

    def is_active_on(self, moment: datetime) -> bool:
        if self.active_days and day_of_week(moment) not in self.active_days:
            return False
        if self.active_hours_start is None or self.active_hours_end is None:
            return True
        current = moment.strftime("%H:%M")
        start, end = self.active_hours_start, self.active_hours_end
        if start > end:
            return current >= start or current <= end
        return start <= current <= end

    def allows(self, dominant_crime_type_id: int | None, moment: datetime) -> bool:
        """Whether an alert for a region dominated by ``dominant_crime_type_id`` should fire."""
        if not self.alerts_enabled:
            return False
        if not self.is_active_on(moment):
            return False
        if dominant_crime_type_id is not None and not self.is_crime_type_enabled(dominant_crime_type_id):
            return False
        return True

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "alerts_enabled": self.alerts_enabled,
            "enabled_crime_types": list(self.enabled_crime_types or []),
            "active_hours_start": self.active_hours_start,
            "active_hours_end": self.active_hours_end,
            "active_days": list(self.active_days or []),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
