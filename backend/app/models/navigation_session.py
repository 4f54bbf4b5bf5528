"""NavigationSession entity — persisted mirror of an in-flight trip."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Integer, String, Float, DateTime, JSON, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base, NavigationStatusEnum


class NavigationSession(Base):
    __tablename__ = "navigation_sessions"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    route_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    destination: Mapped[dict] = mapped_column(JSON, nullable=False)
    current_position: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    original_duration: Mapped[float] = mapped_column(Float, nullable=False)
    current_duration: Mapped[float] = mapped_column(Float, nullable=False)
    max_risk: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    prefer_safe_route: Mapped[bool] = mapped_column(default=True)
    status: Mapped[str] = mapped_column(
        SAEnum(NavigationStatusEnum), nullable=False, default=NavigationStatusEnum.ACTIVE
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
