"""RiskIndex entity — the single current risk score of a region."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Integer, Float, DateTime, JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base


class RiskIndex(Base):
    __tablename__ = "risk_indexes"

    risk_index_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # unique: one current index per region, replaced on recompute
    region_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("regions.region_id"), nullable=False, unique=True
    )
    value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    factors: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    occurrence_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    dominant_crime_type_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    calculated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "region_id": self.region_id,
            "value": self.value,
            "factors": list(self.factors or []),
            "occurrence_count": self.occurrence_count,
            "dominant_crime_type_id": self.dominant_crime_type_id,
            "calculated_at": self.calculated_at.isoformat() if self.calculated_at else None,
        }
