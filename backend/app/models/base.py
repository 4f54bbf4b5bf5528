"""Shared declarative base, column types and enums for all models."""
from __future__ import annotations

import enum

from geoalchemy2 import Geometry
from sqlalchemy import DDL, Text
from sqlalchemy.orm import DeclarativeBase

from app.utils.geo import SRID


class Base(DeclarativeBase):
    pass


def geometry_column(geometry_type: str):
    """PostGIS geometry on PostgreSQL; EWKT text on SQLite, which runs without SpatiaLite."""
    # Spatial indexes are created per table with a PostgreSQL-only DDL hook
    return Text().with_variant(
        Geometry(geometry_type=geometry_type, srid=SRID, spatial_index=False), "postgresql"
    )


def gist_index(table: str, column: str):
    """``after_create`` DDL adding a GiST index on PostgreSQL only."""
    return DDL(
        f"CREATE INDEX IF NOT EXISTS ix_{table}_{column} ON {table} USING GIST ({column})"
    ).execute_if(dialect="postgresql")


class SeverityEnum(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class OccurrenceSourceEnum(str, enum.Enum):
    COLLABORATIVE = "collaborative"
    OFFICIAL = "official"


class OccurrenceStatusEnum(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REJECTED = "rejected"
    MERGED = "merged"


class RegionTypeEnum(str, enum.Enum):
    CITY = "city"
    DISTRICT = "district"
    NEIGHBORHOOD = "neighborhood"
    # Higher rank = more specific; the most specific containing region wins.


REGION_SPECIFICITY: dict[RegionTypeEnum, int] = {
    RegionTypeEnum.CITY: 0,
    RegionTypeEnum.DISTRICT: 1,
    RegionTypeEnum.NEIGHBORHOOD: 2,
}


class ValidationTypeEnum(str, enum.Enum):
    CORROBORATION = "corroboration"
    OFFICIAL_CONFIRMATION = "official_confirmation"
    USER_REPORT = "user_report"


class ValidationStatusEnum(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class NavigationStatusEnum(str, enum.Enum):
    ACTIVE = "active"
    RECALCULATING = "recalculating"
    ENDED = "ended"


class ModerationReasonEnum(str, enum.Enum):
    ANOMALY_DETECTED = "anomaly_detected"
    USER_REPORTED = "user_reported"
    ABUSE_PATTERN = "abuse_pattern"
    SUSPICIOUS_LOCATION = "suspicious_location"
    HIGH_FREQUENCY = "high_frequency"
    DUPLICATE_CONTENT = "duplicate_content"


# Review priority per reason (higher = reviewed first)
MODERATION_PRIORITY: dict[ModerationReasonEnum, int] = {
    ModerationReasonEnum.ABUSE_PATTERN: 10,
    ModerationReasonEnum.HIGH_FREQUENCY: 8,
    ModerationReasonEnum.ANOMALY_DETECTED: 6,
    ModerationReasonEnum.SUSPICIOUS_LOCATION: 5,
    ModerationReasonEnum.DUPLICATE_CONTENT: 4,
    ModerationReasonEnum.USER_REPORTED: 3,
}


class ModerationStatusEnum(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
