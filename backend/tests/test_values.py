"""Tests for the immutable value objects."""
from __future__ import annotations

import dataclasses

import pytest

from app.errors import InvalidCoordinatesError, ValidationError
from app.utils.geo import encode_polyline
from app.values import (
    Address,
    Coordinates,
    RiskFactor,
    RiskFactorType,
    RiskRegion,
    Route,
    RouteOptions,
    RouteRecalculationResult,
    RouteWithRisk,
    TrafficCondition,
    TrafficData,
)


SAO_PAULO = Coordinates(-23.5505, -46.6333)


class TestCoordinates:
    @pytest.mark.parametrize("lat,lon", [(90.0001, 0.0), (-90.5, 0.0), (0.0, 180.01), (0.0, -181.0)])
    def test_out_of_range_rejected(self, lat, lon):
        with pytest.raises(InvalidCoordinatesError):
            Coordinates(lat, lon)

    def test_nan_rejected(self):
        with pytest.raises(InvalidCoordinatesError):
            Coordinates(float("nan"), 0.0)

    def test_non_numeric_rejected(self):
        with pytest.raises(InvalidCoordinatesError):
            Coordinates("10", 20)

    def test_bounds_inclusive(self):
        Coordinates(90.0, 180.0)
        Coordinates(-90.0, -180.0)

    def test_immutable(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            SAO_PAULO.latitude = 0.0

    def test_is_validation_error_and_value_error(self):
        with pytest.raises(ValueError):
            Coordinates(100.0, 0.0)
        with pytest.raises(ValidationError):
            Coordinates(100.0, 0.0)

    def test_from_dict_accepts_aliases(self):
        assert Coordinates.from_dict({"lat": 1.5, "lng": 2.5}) == Coordinates(1.5, 2.5)
        assert Coordinates.from_dict({"latitude": 1.5, "lon": 2.5}) == Coordinates(1.5, 2.5)

    def test_from_dict_missing_key(self):
        with pytest.raises(InvalidCoordinatesError):
            Coordinates.from_dict({"lat": 1.0})

    def test_from_dict_non_numeric(self):
        with pytest.raises(InvalidCoordinatesError):
            Coordinates.from_dict({"lat": "north", "lon": 1.0})

    def test_distance_and_within(self):
        other = Coordinates(-23.5505, -46.6323)  # ~102 m east
        assert SAO_PAULO.distance_to(other) == pytest.approx(102, abs=2)
        assert SAO_PAULO.is_within_distance(other, 110)
        assert not SAO_PAULO.is_within_distance(other, 100)


class TestRoute:
    def test_negative_distance_rejected(self):
        with pytest.raises(ValidationError):
            Route(origin=SAO_PAULO, destination=SAO_PAULO, distance=-1, duration=10)

    def test_negative_duration_rejected(self):
        with pytest.raises(ValidationError):
            Route(origin=SAO_PAULO, destination=SAO_PAULO, distance=1, duration=-10)

    def test_path_falls_back_to_waypoints(self):
        mid = Coordinates(-23.55, -46.63)
        dest = Coordinates(-23.54, -46.62)
        route = Route(origin=SAO_PAULO, destination=dest, distance=100, duration=10, waypoints=(mid,))
        assert route.path() == [SAO_PAULO.as_tuple, mid.as_tuple, dest.as_tuple]

    def test_path_uses_polyline(self):
        points = [(-23.5505, -46.6333), (-23.54, -46.62)]
        route = Route(
            origin=SAO_PAULO, destination=Coordinates(-23.54, -46.62),
            distance=100, duration=10, polyline=encode_polyline(points),
        )
        assert route.path() == [pytest.approx(p) for p in points]

    def test_round_trip_keeps_id(self):
        route = Route(origin=SAO_PAULO, destination=Coordinates(-23.54, -46.62), distance=1500, duration=300,
                      waypoints=(Coordinates(-23.545, -46.625),), provider="google")
        assert Route.from_dict(route.to_dict()) == route


class TestTrafficData:
    @pytest.mark.parametrize("current,condition", [
        (110, TrafficCondition.FREE_FLOW),
        (120, TrafficCondition.LIGHT),
        (150, TrafficCondition.MODERATE),
        (200, TrafficCondition.HEAVY),
        (201, TrafficCondition.SEVERE),
    ])
    def test_condition_bands(self, current, condition):
        assert TrafficData(current_duration=current, typical_duration=100).condition == condition

    def test_zero_typical_duration(self):
        data = TrafficData(current_duration=50, typical_duration=0)
        assert data.delay_ratio == 0.0
        assert not data.has_significant_delay()

    def test_significant_delay(self):
        assert TrafficData(current_duration=111, typical_duration=100).has_significant_delay()
        assert not TrafficData(current_duration=110, typical_duration=100).has_significant_delay()

    def test_to_dict_includes_derived_fields(self):
        d = TrafficData(current_duration=150, typical_duration=100).to_dict()
        assert d["delay_ratio"] == 0.5
        assert d["condition"] == "moderate"


class TestRiskFactor:
    def test_weight_out_of_range(self):
        with pytest.raises(ValidationError):
            RiskFactor(RiskFactorType.FREQUENCY, 1.5, 10)

    def test_contribution_out_of_range(self):
        with pytest.raises(ValidationError):
            RiskFactor(RiskFactorType.SEVERITY, 0.2, 100.5)

    def test_accepts_string_type(self):
        factor = RiskFactor("recency", 0.25, 40)
        assert factor.type is RiskFactorType.RECENCY
        assert factor.weighted == 10.0


class TestRouteWithRisk:
    def _rwr(self, duration=600.0, max_risk=40.0, polyline=""):
        route = Route(origin=SAO_PAULO, destination=Coordinates(-23.54, -46.62), distance=2000,
                      duration=duration, polyline=polyline)
        return RouteWithRisk(
            route=route, max_risk=max_risk, average_risk=max_risk,
            risk_regions=(RiskRegion(region_id=1, value=max_risk, is_high_risk=False, name="Sé"),),
        )

    def test_round_trip(self):
        rwr = self._rwr()
        assert RouteWithRisk.from_dict(rwr.to_dict()) == rwr

    def test_recalculation_notifies_on_time_change(self):
        original = self._rwr()
        result = RouteRecalculationResult(
            original_route=original, new_route=self._rwr(duration=700), route_changed=False,
            risk_changed=False, time_change_percent=16.7,
        )
        assert result.should_notify_user
        assert result.recommended_route.route.duration == 700

    def test_recalculation_quiet_when_nothing_changed(self):
        original = self._rwr()
        result = RouteRecalculationResult(
            original_route=original, new_route=None, route_changed=False,
            risk_changed=False, time_change_percent=5.0,
        )
        assert not result.should_notify_user
        assert result.recommended_route is original


class TestAddressAndOptions:
    def test_address_round_trip(self):
        address = Address(formatted_address="Praça da Sé, São Paulo", coordinates=SAO_PAULO, city="São Paulo")
        assert Address.from_dict(address.to_dict()) == address

    def test_route_options_defaults(self):
        options = RouteOptions.from_dict(None)
        assert options == RouteOptions()
        assert options.mode == "driving"
