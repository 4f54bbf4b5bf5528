"""Occurrence ingestion.

Validates, rate-limits, persists and corroborates crime-occurrence reports.

Pipeline for one report:
  1. field validation (timestamp, coordinates, crime type, severity, source)
  2. reporter proximity — the reporter must stand within 100 m of the incident
  3. per-user rate limit — 5 reports per fixed 1-hour window
  4. confidence: official 5 (no expiry), collaborative 2 (expires in 7 days)
  5. region assignment (most specific containing region)
  6. corroboration with nearby same-type reports (500 m, ±30 min)
  7. moderation check, audit record, region risk recompute
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import (
    LocationTooFarError,
    OccurrenceValidationError,
    RateLimitExceededError,
)
from app.models.base import (
    OccurrenceSourceEnum,
    OccurrenceStatusEnum,
    SeverityEnum,
    ValidationStatusEnum,
    ValidationTypeEnum,
)
from app.models.crime_type import CrimeType
from app.models.moderation_queue import ModerationQueue
from app.models.occurrence import Occurrence
from app.models.occurrence_validation import OccurrenceValidation
from app.modules.audit import AuditSink
from app.modules.geo_store import SqlGeoStore
from app.modules.job_queue import RISK_RECOMPUTE, JobQueue
from app.modules.moderation import ModerationService
from app.utils.cache import Cache
from app.utils.clock import as_naive_utc, utcnow
from app.values import Coordinates

logger = logging.getLogger(__name__)

OFFICIAL_CONFIDENCE = 5
COLLABORATIVE_INITIAL_CONFIDENCE = 2
COLLABORATIVE_MAX_CONFIDENCE = 4

RATE_LIMIT_WINDOW_SECONDS = 3600
# Reports may be filed slightly ahead of the server clock
_FUTURE_TOLERANCE = timedelta(minutes=5)


@dataclass
class OccurrenceResult:
    occurrence: Occurrence
    remaining_reports: int
    corroborated_ids: list[int] = field(default_factory=list)
    moderation: ModerationQueue | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "occurrence": self.occurrence.to_dict(),
            "remaining_reports": self.remaining_reports,
            "corroborated_ids": list(self.corroborated_ids),
            "flagged_for_review": self.moderation is not None,
        }


def _parse_timestamp(value: Any, now: datetime) -> datetime:
    if value is None or value == "":
        return now
    if isinstance(value, datetime):
        ts = as_naive_utc(value)
    elif isinstance(value, str):
        try:
            ts = as_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError as exc:
            raise OccurrenceValidationError(
                f"Invalid timestamp '{value}'", field="timestamp"
            ) from exc
    else:
        raise OccurrenceValidationError("Invalid timestamp", field="timestamp")
    if ts > now + _FUTURE_TOLERANCE:
        raise OccurrenceValidationError("Timestamp cannot be in the future", field="timestamp")
    return ts


def _parse_enum(enum_cls, value: Any, field_name: str):
    try:
        return enum_cls(getattr(value, "value", value))
    except ValueError as exc:
        allowed = ", ".join(e.value for e in enum_cls)
        raise OccurrenceValidationError(
            f"Invalid {field_name} '{value}' (expected one of: {allowed})", field=field_name
        ) from exc


def rate_limit_key(user_id: int | str) -> str:
    return f"rate_limit:occurrences:{user_id}"


class OccurrenceIngestEngine:
    def __init__(
        self,
        db: Session,
        cache: Cache,
        jobs: JobQueue | None = None,
        store: SqlGeoStore | None = None,
        moderation: ModerationService | None = None,
        audit: AuditSink | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.cache = cache
        self.jobs = jobs
        self.store = store or SqlGeoStore(db)
        self.moderation = moderation or ModerationService(db)
        self.audit = audit or AuditSink(db)
        self._clock = clock

    # -- validation ------------------------------------------------------

    def validate(self, data: dict[str, Any], now: datetime) -> dict[str, Any]:
        """Normalise a raw report into typed fields or raise OccurrenceValidationError."""
        if data.get("latitude") is None and data.get("lat") is None:
            raise OccurrenceValidationError("latitude is required", field="latitude")
        if data.get("longitude") is None and data.get("lng") is None and data.get("lon") is None:
            raise OccurrenceValidationError("longitude is required", field="longitude")
        location = Coordinates.from_dict(data)

        crime_type_id = data.get("crime_type_id")
        if crime_type_id is None:
            raise OccurrenceValidationError("crime_type_id is required", field="crime_type_id")
        try:
            crime_type_id = int(crime_type_id)
        except (TypeError, ValueError) as exc:
            raise OccurrenceValidationError("crime_type_id must be an integer", field="crime_type_id") from exc
        if self.db.get(CrimeType, crime_type_id) is None:
            raise OccurrenceValidationError(f"Unknown crime type {crime_type_id}", field="crime_type_id")

        if data.get("severity") is None:
            raise OccurrenceValidationError("severity is required", field="severity")
        severity = _parse_enum(SeverityEnum, data["severity"], "severity")
        source = _parse_enum(
            OccurrenceSourceEnum, data.get("source") or OccurrenceSourceEnum.COLLABORATIVE, "source"
        )
        return {
            "timestamp": _parse_timestamp(data.get("timestamp"), now),
            "location": location,
            "crime_type_id": crime_type_id,
            "severity": severity,
            "source": source,
            "source_id": data.get("source_id"),
            "metadata": data.get("metadata"),
        }

    def check_proximity(self, location: Coordinates, reporter_location: Coordinates) -> float:
        distance = reporter_location.distance_to(location)
        limit = settings.MAX_REPORT_DISTANCE_METERS
        if distance > limit:
            raise LocationTooFarError(
                f"Reporter is {distance:.0f} m from the incident (max {limit:.0f} m)",
                distance_meters=round(distance, 1),
                max_distance_meters=limit,
            )
        return distance

    # -- rate limiting ---------------------------------------------------

    def acquire_report_slot(self, user_id: int) -> int:
        """Claim one submission slot; returns the reports left in the window."""
        key = rate_limit_key(user_id)
        limit = settings.MAX_REPORTS_PER_HOUR
        count = self.cache.incr(key, ttl=RATE_LIMIT_WINDOW_SECONDS)
        if count > limit:
            self._return_slot(key)
            reset_in = self.cache.ttl(key)
            raise RateLimitExceededError(
                f"Report limit of {limit} per hour reached",
                limit=limit,
                reset_in_seconds=int(reset_in) if reset_in is not None else RATE_LIMIT_WINDOW_SECONDS,
            )
        return limit - count

    def release_report_slot(self, user_id: int) -> None:
        self._return_slot(rate_limit_key(user_id))

    def _return_slot(self, key: str) -> None:
        # Counter stays non-negative; a window that lapsed meanwhile leaves no key
        if self.cache.incr(key, -1, ttl=RATE_LIMIT_WINDOW_SECONDS) <= 0:
            self.cache.delete(key)

    def remaining_reports(self, user_id: int) -> int:
        used = int(self.cache.get(rate_limit_key(user_id)) or 0)
        return max(0, settings.MAX_REPORTS_PER_HOUR - used)

    # -- creation --------------------------------------------------------

    def create(
        self,
        data: dict[str, Any],
        reporter_location: Coordinates | None,
        user_id: int,
        ip_address: str | None = None,
    ) -> OccurrenceResult:
        now = self._clock()
        fields = self.validate(data, now)
        source = fields["source"]
        if reporter_location is not None:
            self.check_proximity(fields["location"], reporter_location)
        elif source == OccurrenceSourceEnum.COLLABORATIVE:
            raise OccurrenceValidationError(
                "reporter location is required for collaborative reports", field="reporter_location"
            )

        remaining = self.acquire_report_slot(user_id)
        try:
            occurrence = self._persist(fields, user_id, now)
            corroborated = self._corroborate(occurrence, user_id)
            flagged = self.moderation.review_if_needed(occurrence)
            self.audit.record(
                "occurrence_created",
                user_id,
                {
                    "crime_type_id": occurrence.crime_type_id,
                    "severity": fields["severity"].value,
                    "source": source.value,
                    "region_id": occurrence.region_id,
                    "corroborated_ids": corroborated,
                },
                entity_type="occurrence",
                entity_id=occurrence.occurrence_id,
                ip_address=ip_address,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.release_report_slot(user_id)
            raise

        logger.info(
            "Occurrence %s created by user %s (region=%s, corroborated=%d)",
            occurrence.occurrence_id, user_id, occurrence.region_id, len(corroborated),
        )
        if occurrence.region_id is not None and self.jobs is not None:
            self.jobs.enqueue(RISK_RECOMPUTE, region_id=occurrence.region_id)
        return OccurrenceResult(
            occurrence=occurrence,
            remaining_reports=remaining,
            corroborated_ids=corroborated,
            moderation=flagged,
        )

    def _persist(self, fields: dict[str, Any], user_id: int, now: datetime) -> Occurrence:
        location: Coordinates = fields["location"]
        official = fields["source"] == OccurrenceSourceEnum.OFFICIAL
        region = self.store.find_region_containing(location)
        occurrence = Occurrence(
            timestamp=fields["timestamp"],
            latitude=location.latitude,
            longitude=location.longitude,
            crime_type_id=fields["crime_type_id"],
            severity=fields["severity"],
            confidence_score=OFFICIAL_CONFIDENCE if official else COLLABORATIVE_INITIAL_CONFIDENCE,
            source=fields["source"],
            source_id=fields["source_id"],
            region_id=region.region_id if region is not None else None,
            status=OccurrenceStatusEnum.ACTIVE,
            expires_at=None if official else now + timedelta(days=settings.OCCURRENCE_EXPIRATION_DAYS),
            created_by=user_id,
            metadata_json=fields["metadata"],
            created_at=now,
        )
        self.db.add(occurrence)
        self.db.flush()
        return occurrence

    def _corroborate(self, occurrence: Occurrence, user_id: int) -> list[int]:
        """Raise confidence of the new report and its nearby collaborative matches."""
        if not occurrence.is_collaborative:
            return []
        window = timedelta(minutes=settings.CORROBORATION_WINDOW_MINUTES)
        matches = self.store.occurrences_near(
            Coordinates(occurrence.latitude, occurrence.longitude),
            settings.CORROBORATION_DISTANCE_METERS,
            crime_type_id=occurrence.crime_type_id,
            since=occurrence.timestamp - window,
            until=occurrence.timestamp + window,
            exclude_ids=[occurrence.occurrence_id],
        )
        corroborated: list[int] = []
        for match in matches:
            if not match.is_collaborative:
                continue
            match.confidence_score = min(COLLABORATIVE_MAX_CONFIDENCE, match.confidence_score + 1)
            self.db.add(OccurrenceValidation(
                occurrence_id=match.occurrence_id,
                validated_by=user_id,
                validation_type=ValidationTypeEnum.CORROBORATION,
                status=ValidationStatusEnum.APPROVED,
                metadata_json={"corroborating_occurrence_id": occurrence.occurrence_id},
            ))
            corroborated.append(match.occurrence_id)
        if matches:
            occurrence.confidence_score = min(COLLABORATIVE_MAX_CONFIDENCE, occurrence.confidence_score + 1)
        return corroborated
