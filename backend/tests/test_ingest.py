"""Tests for occurrence ingestion: validation, proximity, rate limiting, corroboration."""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from app.errors import (
    InvalidCoordinatesError,
    LocationTooFarError,
    OccurrenceValidationError,
    RateLimitExceededError,
)
from app.models.audit_log import AuditLog
from app.models.base import (
    ModerationReasonEnum,
    OccurrenceSourceEnum,
    OccurrenceStatusEnum,
    SeverityEnum,
)
from app.models.moderation_queue import ModerationQueue
from app.models.occurrence import Occurrence
from app.models.occurrence_validation import OccurrenceValidation
from app.modules.ingest import OccurrenceIngestEngine, rate_limit_key
from app.modules.job_queue import RISK_RECOMPUTE
from app.modules.moderation import ModerationChecker, ModerationService
from app.utils.cache import MemoryCache
from app.values import Coordinates

NOW = datetime(2024, 3, 13, 12, 0)
SE = Coordinates(-23.5505, -46.6333)


@pytest.fixture
def crime_type(make_crime_type):
    return make_crime_type()


@pytest.fixture
def jobs():
    return MagicMock()


@pytest.fixture
def engine(db, memory_cache, jobs):
    return OccurrenceIngestEngine(db, memory_cache, jobs, clock=lambda: NOW)


def _report(crime_type_id, lat=-23.5505, lon=-46.6333, **extra):
    return {"latitude": lat, "longitude": lon, "crime_type_id": crime_type_id, "severity": "high", **extra}


class TestCreate:
    def test_collaborative_report(self, db, engine, crime_type, make_region, jobs):
        region = make_region()
        result = engine.create(_report(crime_type.crime_type_id), SE, user_id=1, ip_address="10.0.0.1")

        occ = result.occurrence
        assert occ.occurrence_id is not None
        assert occ.confidence_score == 2
        assert occ.source == OccurrenceSourceEnum.COLLABORATIVE
        assert occ.status == OccurrenceStatusEnum.ACTIVE
        assert occ.severity == SeverityEnum.HIGH
        assert occ.expires_at == NOW + timedelta(days=7)
        assert occ.timestamp == NOW
        assert occ.region_id == region.region_id
        assert result.remaining_reports == 4
        jobs.enqueue.assert_called_once_with(RISK_RECOMPUTE, region_id=region.region_id)

        audit = db.query(AuditLog).one()
        assert audit.action == "occurrence_created"
        assert audit.entity_id == occ.occurrence_id
        assert audit.ip_address == "10.0.0.1"

    def test_official_report(self, engine, crime_type):
        result = engine.create(_report(crime_type.crime_type_id, source="official"), None, user_id=1)
        assert result.occurrence.confidence_score == 5
        assert result.occurrence.expires_at is None

    def test_outside_every_region_skips_recompute(self, engine, crime_type, jobs):
        result = engine.create(_report(crime_type.crime_type_id), SE, user_id=1)
        assert result.occurrence.region_id is None
        jobs.enqueue.assert_not_called()

    def test_reporter_too_far(self, db, engine, crime_type):
        # ~111 m north of the incident
        reporter = Coordinates(-23.5495, -46.6333)
        with pytest.raises(LocationTooFarError) as exc_info:
            engine.create(_report(crime_type.crime_type_id), reporter, user_id=1)
        assert exc_info.value.details["max_distance_meters"] == 100.0
        assert db.query(Occurrence).count() == 0

    def test_collaborative_requires_reporter_location(self, engine, crime_type):
        with pytest.raises(OccurrenceValidationError) as exc_info:
            engine.create(_report(crime_type.crime_type_id), None, user_id=1)
        assert exc_info.value.details["field"] == "reporter_location"

    def test_explicit_timestamp_accepted(self, engine, crime_type):
        ts = (NOW - timedelta(hours=2)).isoformat() + "Z"
        result = engine.create(_report(crime_type.crime_type_id, timestamp=ts), SE, user_id=1)
        assert result.occurrence.timestamp == NOW - timedelta(hours=2)


class TestValidation:
    @pytest.mark.parametrize("override,field", [
        ({"latitude": None}, "latitude"),
        ({"crime_type_id": None}, "crime_type_id"),
        ({"crime_type_id": "abc"}, "crime_type_id"),
        ({"severity": None}, "severity"),
        ({"severity": "apocalyptic"}, "severity"),
        ({"source": "rumour"}, "source"),
        ({"timestamp": "yesterday"}, "timestamp"),
    ])
    def test_invalid_fields(self, engine, crime_type, override, field):
        data = {**_report(crime_type.crime_type_id), **override}
        with pytest.raises(OccurrenceValidationError) as exc_info:
            engine.create(data, SE, user_id=1)
        assert exc_info.value.details["field"] == field

    def test_unknown_crime_type(self, engine):
        with pytest.raises(OccurrenceValidationError, match="Unknown crime type"):
            engine.create(_report(999), SE, user_id=1)

    def test_future_timestamp_rejected(self, engine, crime_type):
        ts = (NOW + timedelta(hours=1)).isoformat()
        with pytest.raises(OccurrenceValidationError):
            engine.create(_report(crime_type.crime_type_id, timestamp=ts), SE, user_id=1)

    def test_small_clock_skew_tolerated(self, engine, crime_type):
        ts = (NOW + timedelta(minutes=3)).isoformat()
        result = engine.create(_report(crime_type.crime_type_id, timestamp=ts), SE, user_id=1)
        assert result.occurrence.timestamp == NOW + timedelta(minutes=3)

    def test_out_of_range_latitude(self, engine, crime_type):
        with pytest.raises(InvalidCoordinatesError):
            engine.create(_report(crime_type.crime_type_id, lat=91.0), SE, user_id=1)


class TestRateLimit:
    def test_sixth_report_in_hour_rejected(self, db, engine, crime_type):
        for i in range(5):
            result = engine.create(_report(crime_type.crime_type_id), SE, user_id=7)
            assert result.remaining_reports == 4 - i

        with pytest.raises(RateLimitExceededError) as exc_info:
            engine.create(_report(crime_type.crime_type_id), SE, user_id=7)
        err = exc_info.value
        assert err.status_code == 429
        assert 0 < err.details["reset_in_seconds"] <= 3600
        assert db.query(Occurrence).count() == 5
        assert engine.remaining_reports(7) == 0

    def test_limits_are_per_user(self, engine, crime_type):
        for _ in range(5):
            engine.create(_report(crime_type.crime_type_id), SE, user_id=7)
        assert engine.create(_report(crime_type.crime_type_id), SE, user_id=8).remaining_reports == 4

    def test_failed_persist_releases_slot(self, db, memory_cache, crime_type):
        audit = MagicMock()
        audit.record.side_effect = RuntimeError("audit store down")
        engine = OccurrenceIngestEngine(db, memory_cache, audit=audit, clock=lambda: NOW)
        with pytest.raises(RuntimeError):
            engine.create(_report(crime_type.crime_type_id), SE, user_id=3)
        assert engine.remaining_reports(3) == 5
        assert db.query(Occurrence).count() == 0

    def test_release_after_window_lapsed_leaves_no_counter(self, db, crime_type):
        ticks = [0.0]
        cache = MemoryCache(clock=lambda: ticks[0])
        engine = OccurrenceIngestEngine(db, cache, MagicMock(), clock=lambda: NOW)
        engine.acquire_report_slot(4)
        ticks[0] = 3601.0
        engine.release_report_slot(4)
        assert cache.get(rate_limit_key(4)) is None
        assert engine.remaining_reports(4) == 5
        for _ in range(5):
            engine.acquire_report_slot(4)
        with pytest.raises(RateLimitExceededError):
            engine.acquire_report_slot(4)

    def test_rejected_attempt_keeps_window_expiry(self, engine, memory_cache):
        for _ in range(5):
            engine.acquire_report_slot(9)
        with pytest.raises(RateLimitExceededError):
            engine.acquire_report_slot(9)
        assert memory_cache.get(rate_limit_key(9)) == 5
        assert 0 < memory_cache.ttl(rate_limit_key(9)) <= 3600


class TestCorroboration:
    def test_nearby_same_type_raises_both(self, db, engine, crime_type):
        first = engine.create(_report(crime_type.crime_type_id), SE, user_id=1).occurrence
        # ~220 m away
        nearby = Coordinates(-23.5525, -46.6333)
        second = engine.create(
            _report(crime_type.crime_type_id, lat=nearby.latitude, lon=nearby.longitude), nearby, user_id=2
        )
        db.refresh(first)
        assert second.corroborated_ids == [first.occurrence_id]
        assert first.confidence_score == 3
        assert second.occurrence.confidence_score == 3

        validation = db.query(OccurrenceValidation).one()
        assert validation.occurrence_id == first.occurrence_id
        assert validation.validated_by == 2

    def test_confidence_capped_at_four(self, db, engine, crime_type):
        first = engine.create(_report(crime_type.crime_type_id), SE, user_id=1).occurrence
        for user_id in range(2, 6):
            engine.create(_report(crime_type.crime_type_id), SE, user_id=user_id)
        db.refresh(first)
        assert first.confidence_score == 4
        assert max(o.confidence_score for o in db.query(Occurrence).all()) == 4

    def test_far_or_other_type_not_corroborated(self, db, engine, crime_type, make_crime_type):
        other = make_crime_type(name="Theft")
        first = engine.create(_report(crime_type.crime_type_id), SE, user_id=1).occurrence
        engine.create(_report(other.crime_type_id), SE, user_id=2)
        far = Coordinates(-23.5605, -46.6333)
        engine.create(_report(crime_type.crime_type_id, lat=far.latitude, lon=far.longitude), far, user_id=3)
        db.refresh(first)
        assert first.confidence_score == 2

    def test_outside_time_window_not_corroborated(self, db, engine, crime_type):
        old = (NOW - timedelta(hours=2)).isoformat()
        first = engine.create(_report(crime_type.crime_type_id, timestamp=old), SE, user_id=1).occurrence
        engine.create(_report(crime_type.crime_type_id), SE, user_id=2)
        db.refresh(first)
        assert first.confidence_score == 2

    def test_official_report_not_corroborating(self, db, engine, crime_type):
        first = engine.create(_report(crime_type.crime_type_id), SE, user_id=1).occurrence
        engine.create(_report(crime_type.crime_type_id, source="official"), None, user_id=2)
        db.refresh(first)
        assert first.confidence_score == 2


class TestModeration:
    def test_flagged_occurrence_queued(self, db, memory_cache, crime_type):
        class FlagEverything(ModerationChecker):
            def check(self, occurrence, db):
                return ModerationReasonEnum.HIGH_FREQUENCY

        engine = OccurrenceIngestEngine(
            db, memory_cache, moderation=ModerationService(db, FlagEverything()), clock=lambda: NOW
        )
        result = engine.create(_report(crime_type.crime_type_id), SE, user_id=1)
        assert result.to_dict()["flagged_for_review"] is True
        item = db.query(ModerationQueue).one()
        assert item.occurrence_id == result.occurrence.occurrence_id
        assert item.priority == 8
