"""Occurrence entity — one reported crime/safety incident."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from shapely.geometry import Point
from sqlalchemy import Integer, String, Float, DateTime, JSON, ForeignKey, Enum as SAEnum, event
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import (
    Base,
    OccurrenceSourceEnum,
    OccurrenceStatusEnum,
    SeverityEnum,
    geometry_column,
    gist_index,
)
from app.utils.geo import to_ewkt


class Occurrence(Base):
    __tablename__ = "occurrences"

    occurrence_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    latitude: Mapped[float] = mapped_column(Float, nullable=False, index=True)
    longitude: Mapped[float] = mapped_column(Float, nullable=False, index=True)
    crime_type_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("crime_types.crime_type_id"), nullable=False, index=True
    )
    severity: Mapped[str] = mapped_column(SAEnum(SeverityEnum), nullable=False)
    confidence_score: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    source: Mapped[str] = mapped_column(
        SAEnum(OccurrenceSourceEnum), nullable=False, default=OccurrenceSourceEnum.COLLABORATIVE
    )
    source_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    region_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("regions.region_id"), nullable=True, index=True
    )
    status: Mapped[str] = mapped_column(
        SAEnum(OccurrenceStatusEnum), nullable=False, default=OccurrenceStatusEnum.ACTIVE, index=True
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    merged_into_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("occurrences.occurrence_id"), nullable=True
    )
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
    # Point mirror of latitude/longitude, kept in sync on flush for spatial queries
    location: Mapped[Optional[object]] = mapped_column(geometry_column("POINT"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    @property
    def is_collaborative(self) -> bool:
        return self.source == OccurrenceSourceEnum.COLLABORATIVE

    @property
    def is_official(self) -> bool:
        return self.source == OccurrenceSourceEnum.OFFICIAL

    def to_dict(self) -> dict:
        return {
            "occurrence_id": self.occurrence_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "crime_type_id": self.crime_type_id,
            "severity": _enum_value(self.severity),
            "confidence_score": self.confidence_score,
            "source": _enum_value(self.source),
            "source_id": self.source_id,
            "region_id": self.region_id,
            "status": _enum_value(self.status),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_by": self.created_by,
            "merged_into_id": self.merged_into_id,
            "metadata": self.metadata_json,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Occurrence":
        return cls(
            occurrence_id=data.get("occurrence_id"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            crime_type_id=int(data["crime_type_id"]),
            severity=SeverityEnum(data["severity"]),
            confidence_score=int(data["confidence_score"]),
            source=OccurrenceSourceEnum(data["source"]),
            source_id=data.get("source_id"),
            region_id=data.get("region_id"),
            status=OccurrenceStatusEnum(data["status"]),
            expires_at=datetime.fromisoformat(data["expires_at"]) if data.get("expires_at") else None,
            created_by=data.get("created_by"),
            merged_into_id=data.get("merged_into_id"),
            metadata_json=data.get("metadata"),
        )


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


event.listen(Occurrence.__table__, "after_create", gist_index("occurrences", "location"))


@event.listens_for(Occurrence, "before_insert")
@event.listens_for(Occurrence, "before_update")
def _sync_location(mapper, connection, target: Occurrence) -> None:
    if target.latitude is not None and target.longitude is not None:
        target.location = to_ewkt(Point(target.longitude, target.latitude))
