"""Tests for occurrence time series and dashboard analytics."""
from datetime import datetime, timedelta

import pytest

from app.models.base import OccurrenceSourceEnum, OccurrenceStatusEnum
from app.models.risk_index import RiskIndex
from app.modules.analytics import (
    AnalyticsService,
    OccurrenceFilters,
    TimeSeriesService,
    normalize_granularity,
    percent_change,
)

# Wednesday
NOW = datetime(2024, 3, 13, 12, 0)


@pytest.fixture
def crime_type_id(make_crime_type):
    return make_crime_type().crime_type_id


@pytest.fixture
def series(db):
    return TimeSeriesService(db, clock=lambda: NOW)


@pytest.fixture
def analytics(db):
    return AnalyticsService(db, clock=lambda: NOW)


class TestHelpers:
    def test_unknown_granularity_falls_back_to_day(self):
        assert normalize_granularity("fortnight") == "day"
        assert normalize_granularity(None) == "day"
        assert normalize_granularity(" Week ") == "week"

    def test_percent_change(self):
        assert percent_change(4, 6) == 50.0
        assert percent_change(4, 3) == -25.0
        assert percent_change(0, 2) == 100.0
        assert percent_change(0, 0) == 0.0


class TestTimeSeries:
    def test_daily_series(self, series, crime_type_id, make_occurrence):
        make_occurrence(crime_type_id, timestamp=datetime(2024, 3, 11, 8, 0), confidence_score=2)
        make_occurrence(crime_type_id, timestamp=datetime(2024, 3, 11, 20, 0), confidence_score=4)
        make_occurrence(crime_type_id, timestamp=datetime(2024, 3, 12, 9, 30), confidence_score=3)

        data = series.time_series(OccurrenceFilters(), "day")

        assert data["granularity"] == "day"
        assert data["total_occurrences"] == 3
        assert data["series"] == [
            {"period": "2024-03-11T00:00:00", "count": 2, "avg_confidence": 3.0},
            {"period": "2024-03-12T00:00:00", "count": 1, "avg_confidence": 3.0},
        ]

    def test_only_active_counted(self, series, crime_type_id, make_occurrence):
        make_occurrence(crime_type_id, timestamp=datetime(2024, 3, 11, 8, 0))
        make_occurrence(crime_type_id, timestamp=datetime(2024, 3, 11, 9, 0), status=OccurrenceStatusEnum.EXPIRED)
        make_occurrence(crime_type_id, timestamp=datetime(2024, 3, 11, 10, 0), status=OccurrenceStatusEnum.MERGED)

        assert series.time_series(OccurrenceFilters())["total_occurrences"] == 1

    def test_weeks_start_on_monday(self, series, crime_type_id, make_occurrence):
        make_occurrence(crime_type_id, timestamp=datetime(2024, 3, 13, 8, 0))
        make_occurrence(crime_type_id, timestamp=datetime(2024, 3, 17, 8, 0))

        data = series.time_series(OccurrenceFilters(), "week")

        assert [(p["period"], p["count"]) for p in data["series"]] == [("2024-03-11T00:00:00", 2)]

    def test_filters(self, series, make_crime_type, make_region, make_occurrence):
        robbery = make_crime_type("Robbery").crime_type_id
        theft = make_crime_type("Theft").crime_type_id
        region_id = make_region().region_id
        make_occurrence(robbery, region_id=region_id, timestamp=NOW - timedelta(days=1))
        make_occurrence(theft, region_id=region_id, timestamp=NOW - timedelta(days=1))
        make_occurrence(robbery, timestamp=NOW - timedelta(days=1))
        make_occurrence(robbery, region_id=region_id, timestamp=NOW - timedelta(days=20))

        def total(**filters):
            return series.time_series(OccurrenceFilters(**filters))["total_occurrences"]

        assert total(region_id=region_id) == 3
        assert total(region_id=region_id, crime_type_id=robbery) == 2
        assert total(region_id=region_id, days=7) == 2
        assert total(start=NOW - timedelta(days=21), end=NOW - timedelta(days=19)) == 1

    def test_hourly_pattern(self, series, crime_type_id, make_occurrence):
        for hour in (22, 22, 7):
            make_occurrence(crime_type_id, timestamp=datetime(2024, 3, 12, hour, 15))

        data = series.hourly_pattern(OccurrenceFilters())

        assert len(data["pattern"]) == 24
        assert data["pattern"][22] == {"hour": 22, "label": "22:00", "count": 2}
        assert data["peak_hour"] == 22
        assert data["total"] == 3

    def test_empty_patterns_have_no_peak(self, series):
        assert series.hourly_pattern(OccurrenceFilters())["peak_hour"] is None
        assert series.day_of_week_pattern(OccurrenceFilters())["peak_day"] is None

    def test_day_of_week_starts_on_sunday(self, series, crime_type_id, make_occurrence):
        make_occurrence(crime_type_id, timestamp=datetime(2024, 3, 10, 9, 0))
        make_occurrence(crime_type_id, timestamp=datetime(2024, 3, 10, 19, 0))
        make_occurrence(crime_type_id, timestamp=datetime(2024, 3, 16, 9, 0))

        data = series.day_of_week_pattern(OccurrenceFilters())

        assert data["pattern"][0] == {"day_of_week": 0, "day_name": "Sunday", "count": 2}
        assert data["pattern"][6]["count"] == 1
        assert data["peak_day"] == "Sunday"

    def test_hour_day_matrix(self, series, crime_type_id, make_occurrence):
        make_occurrence(crime_type_id, timestamp=datetime(2024, 3, 13, 23, 0))
        make_occurrence(crime_type_id, timestamp=datetime(2024, 3, 13, 23, 30))
        make_occurrence(crime_type_id, timestamp=datetime(2024, 3, 14, 6, 0))

        data = series.hour_day_matrix(OccurrenceFilters())

        assert len(data["heatmap"]) == 7 * 24
        assert data["max_count"] == 2
        cells = {(c["day_of_week"], c["hour"]): c for c in data["heatmap"]}
        assert cells[(3, 23)]["count"] == 2
        assert cells[(3, 23)]["intensity"] == 1.0
        assert cells[(4, 6)]["intensity"] == 0.5
        assert cells[(0, 0)]["intensity"] == 0.0

    def test_compare_periods(self, series, crime_type_id, make_occurrence):
        make_occurrence(crime_type_id, timestamp=datetime(2024, 2, 5, 10, 0))
        for day in (4, 5, 6):
            make_occurrence(crime_type_id, timestamp=datetime(2024, 3, day, 10, 0))

        data = series.compare_periods(
            OccurrenceFilters(days=1),
            (datetime(2024, 2, 1), datetime(2024, 2, 29)),
            (datetime(2024, 3, 1), datetime(2024, 3, 13)),
        )

        assert data["period1"]["total"] == 1
        assert data["period2"]["total"] == 3
        assert data["comparison"] == {"absolute_change": 2, "percent_change": 200.0, "trend": "increasing"}

    def test_results_cached(self, db, memory_cache, crime_type_id, make_occurrence):
        service = TimeSeriesService(db, memory_cache, clock=lambda: NOW)
        make_occurrence(crime_type_id, timestamp=NOW)
        first = service.time_series(OccurrenceFilters())
        make_occurrence(crime_type_id, timestamp=NOW)

        assert service.time_series(OccurrenceFilters()) == first
        assert service.time_series(OccurrenceFilters(), "hour")["total_occurrences"] == 2
        assert memory_cache.keys("timeseries:series:")


class TestAnalytics:
    def test_summary(self, db, analytics, make_region, crime_type_id, make_occurrence):
        make_occurrence(crime_type_id, timestamp=NOW, confidence_score=2)
        make_occurrence(crime_type_id, timestamp=NOW, confidence_score=4, status=OccurrenceStatusEnum.EXPIRED)
        make_occurrence(crime_type_id, timestamp=NOW, confidence_score=5, source=OccurrenceSourceEnum.OFFICIAL)
        hot, calm = make_region("Hot"), make_region("Calm")
        db.add(RiskIndex(region_id=hot.region_id, value=85.0, factors=[], occurrence_count=9))
        db.add(RiskIndex(region_id=calm.region_id, value=12.0, factors=[], occurrence_count=1))
        db.commit()

        data = analytics.summary(OccurrenceFilters())

        assert data == {
            "total_occurrences": 3,
            "active_occurrences": 2,
            "collaborative_occurrences": 2,
            "official_occurrences": 1,
            "average_confidence_score": 3.67,
            "high_risk_regions": 1,
        }

    def test_distribution_by_crime_type(self, analytics, make_crime_type, make_occurrence):
        violent = make_crime_type("Violent crime")
        robbery = make_crime_type("Robbery", parent_id=violent.crime_type_id).crime_type_id
        vandalism = make_crime_type("Vandalism").crime_type_id
        for _ in range(3):
            make_occurrence(robbery, timestamp=NOW)
        make_occurrence(vandalism, timestamp=NOW)

        data = analytics.distribution_by_crime_type(OccurrenceFilters())

        assert data["total"] == 4
        first, second = data["distribution"]
        assert (first["crime_type_name"], first["category_name"], first["count"]) == ("Robbery", "Violent crime", 3)
        assert first["percentage"] == 75.0
        assert (second["crime_type_name"], second["category_name"]) == ("Vandalism", "Unknown")

    def test_distribution_by_region(self, db, analytics, make_region, crime_type_id, make_occurrence):
        region = make_region()
        db.add(RiskIndex(region_id=region.region_id, value=40.0, factors=[], occurrence_count=2))
        db.commit()
        make_occurrence(crime_type_id, region_id=region.region_id, timestamp=NOW, confidence_score=2)
        make_occurrence(crime_type_id, region_id=region.region_id, timestamp=NOW, confidence_score=3)
        make_occurrence(crime_type_id, timestamp=NOW)

        data = analytics.distribution_by_region(OccurrenceFilters())

        assert data["total"] == 2
        assert data["distribution"] == [{
            "region_id": region.region_id,
            "region_name": "Centro",
            "region_code": None,
            "count": 2,
            "percentage": 100.0,
            "avg_confidence": 2.5,
            "risk_index": 40.0,
        }]

    def test_monthly_trend_increasing(self, analytics, crime_type_id, make_occurrence):
        make_occurrence(crime_type_id, timestamp=datetime(2024, 2, 10, 9, 0))
        make_occurrence(crime_type_id, timestamp=datetime(2024, 2, 11, 9, 0))
        for day in (1, 2, 3):
            make_occurrence(crime_type_id, timestamp=datetime(2024, 3, day, 9, 0))

        trend = analytics.temporal_trends(OccurrenceFilters())["trend"]

        assert trend == {"direction": "increasing", "percentage": 50.0, "current_month": 3, "last_month": 2}

    def test_trend_stable_without_last_month(self, analytics, crime_type_id, make_occurrence):
        make_occurrence(crime_type_id, timestamp=datetime(2024, 3, 1, 9, 0))

        data = analytics.temporal_trends(OccurrenceFilters())

        assert data["trend"]["direction"] == "stable"
        assert data["daily"] == [{"period": "2024-03-01T00:00:00", "count": 1}]

    def test_data_quality(self, analytics, crime_type_id, make_occurrence):
        make_occurrence(crime_type_id, timestamp=NOW, confidence_score=2)
        make_occurrence(crime_type_id, timestamp=NOW, confidence_score=2, status=OccurrenceStatusEnum.MERGED)
        make_occurrence(crime_type_id, timestamp=NOW, confidence_score=5, source=OccurrenceSourceEnum.OFFICIAL)

        data = analytics.data_quality(OccurrenceFilters())

        assert data["deduplication"] == {
            "total_occurrences": 3,
            "merged_occurrences": 1,
            "deduplication_rate": 33.33,
        }
        assert data["confidence_by_source"]["official"] == {"avg_confidence": 5.0, "count": 1}
        assert data["confidence_distribution"] == {"2": 2, "5": 1}
        assert data["data_completeness"]["complete_occurrences"] == 0

    def test_dashboard_sections(self, analytics):
        data = analytics.dashboard(OccurrenceFilters())

        assert set(data) == {
            "summary", "distribution_by_type", "distribution_by_region",
            "temporal_trends", "data_quality", "generated_at",
        }
        assert data["summary"]["total_occurrences"] == 0
        assert data["generated_at"] == NOW.isoformat()
