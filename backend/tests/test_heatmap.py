"""Tests for heatmap aggregation."""
from datetime import timedelta

import pytest

from app.errors import ValidationError
from app.modules.heatmap import HeatmapService, grid_size_for_zoom
from app.utils.cache import MemoryCache
from app.utils.clock import utcnow

BOUNDS = (-24.0, -47.0, -23.0, -46.0)


@pytest.fixture
def crime_types(make_crime_type):
    return make_crime_type(name="Robbery"), make_crime_type(name="Theft")


@pytest.fixture
def occurrences(crime_types, make_occurrence, make_region):
    robbery, theft = crime_types
    region = make_region(name="Sé", code="SE")
    make_occurrence(robbery.crime_type_id, region_id=region.region_id, confidence_score=2)
    make_occurrence(robbery.crime_type_id, region_id=region.region_id, confidence_score=4)
    make_occurrence(theft.crime_type_id, latitude=-23.60, longitude=-46.70, confidence_score=2)
    # Outside the default 30-day window
    make_occurrence(theft.crime_type_id, timestamp=utcnow() - timedelta(days=40))
    return region


class TestGridSize:
    @pytest.mark.parametrize("zoom,expected", [
        (1, 10.0),
        (2, 5.0),
        (10, 10.0 / 512),
        (18, 10.0 / 131072),
        (0, 10.0),
        (25, 10.0 / 131072),
    ])
    def test_grid_size_for_zoom(self, zoom, expected):
        assert grid_size_for_zoom(zoom) == expected


class TestGrid:
    def test_cells_counts_and_intensity(self, db, occurrences):
        data = HeatmapService(db).grid(BOUNDS, zoom=10)
        assert data["total_occurrences"] == 3
        assert data["grid_size"] == 10.0 / 512
        assert [p["count"] for p in data["points"]] == [2, 1]
        busiest = data["points"][0]
        assert busiest["intensity"] == 1.0
        assert busiest["avg_confidence"] == 3.0
        assert data["points"][1]["intensity"] == 0.5
        # Cell centre lies within one cell of the occurrences
        assert abs(busiest["latitude"] - -23.5505) <= data["grid_size"]

    def test_coarse_zoom_merges_cells(self, db, occurrences):
        data = HeatmapService(db).grid(BOUNDS, zoom=1)
        assert len(data["points"]) == 1
        assert data["points"][0]["count"] == 3

    def test_crime_type_filter(self, db, occurrences, crime_types):
        _, theft = crime_types
        data = HeatmapService(db).grid(BOUNDS, crime_type_id=theft.crime_type_id)
        assert data["total_occurrences"] == 1

    def test_days_window(self, db, occurrences):
        assert HeatmapService(db).grid(BOUNDS, days=60)["total_occurrences"] == 4

    def test_empty_area(self, db, occurrences):
        data = HeatmapService(db).grid((10.0, 10.0, 11.0, 11.0))
        assert data["points"] == []
        assert data["total_occurrences"] == 0

    def test_inverted_bounds(self, db):
        with pytest.raises(ValidationError):
            HeatmapService(db).grid((-23.0, -47.0, -24.0, -46.0))

    def test_results_cached(self, db, occurrences, crime_types, make_occurrence):
        service = HeatmapService(db, MemoryCache())
        first = service.grid(BOUNDS)
        make_occurrence(crime_types[0].crime_type_id)
        assert service.grid(BOUNDS) == first


class TestAggregations:
    def test_by_region(self, db, occurrences):
        data = HeatmapService(db).by_region(BOUNDS)
        assert data["total_occurrences"] == 2
        assert data["regions"] == [{
            "region_id": occurrences.region_id,
            "region_name": "Sé",
            "region_code": "SE",
            "count": 2,
            "intensity": 1.0,
            "avg_confidence": 3.0,
        }]

    def test_distribution_by_crime_type(self, db, occurrences, crime_types):
        robbery, theft = crime_types
        data = HeatmapService(db).distribution_by_crime_type(BOUNDS)
        assert data["total"] == 3
        assert data["distribution"] == [
            {"crime_type_id": robbery.crime_type_id, "crime_type_name": "Robbery", "count": 2, "percentage": 66.67},
            {"crime_type_id": theft.crime_type_id, "crime_type_name": "Theft", "count": 1, "percentage": 33.33},
        ]
