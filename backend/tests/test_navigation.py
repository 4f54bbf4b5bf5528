"""Tests for navigation session coordination."""
import copy
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from app.errors import NotFoundError, ProviderError, ValidationError
from app.models.base import NavigationStatusEnum
from app.models.navigation_session import NavigationSession
from app.models.risk_index import RiskIndex
from app.modules.alert_preferences import AlertPreferenceService
from app.modules.navigation import (
    NavigationRegistry,
    NavigationSessionCoordinator,
    NavigationStore,
    alert_distance,
)
from app.modules.risk_scoring import DEFAULT_SCORING_CONFIG
from app.modules.route_risk import RouteRiskOverlay
from app.modules.traffic_cache import TrafficSegmentCache
from app.utils.cache import MemoryCache
from app.values import Coordinates, Route, RouteOptions, RouteWithRisk, TrafficData

NOW = datetime(2024, 3, 13, 12, 0)
ORIGIN = Coordinates(-23.55, -46.64)
DEST = Coordinates(-23.55, -46.60)
WAYPOINTS = (Coordinates(-23.55, -46.63), Coordinates(-23.55, -46.62), Coordinates(-23.55, -46.61))
# ~45 m south of the route line
OFF_ROUTE = Coordinates(-23.5504, -46.635)


def _route(origin=ORIGIN, distance=4000.0, duration=600.0):
    return Route(origin=origin, destination=DEST, distance=distance, duration=duration, waypoints=WAYPOINTS)


class _Monotonic:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return _Monotonic()


@pytest.fixture
def gateway():
    gw = MagicMock()
    gw.alternative_routes.return_value = []
    gw.calculate_route.side_effect = lambda origin, destination, options: _route(
        origin=origin, distance=3500.0, duration=560.0
    )
    gw.traffic_data.side_effect = lambda route: TrafficData(route.duration, route.duration)
    return gw


@pytest.fixture
def overlay(db, gateway):
    return RouteRiskOverlay(db, gateway, config=copy.deepcopy(DEFAULT_SCORING_CONFIG))


@pytest.fixture
def coordinator(db, overlay, clock):
    return NavigationSessionCoordinator(
        overlay=overlay,
        traffic_cache=TrafficSegmentCache(MemoryCache()),
        registry=NavigationRegistry(),
        store=NavigationStore(db),
        monotonic=clock,
    )


@pytest.fixture
def session(coordinator, overlay):
    return coordinator.start(overlay.overlay(_route()), DEST, prefer_safe_route=False, user_id=9)


class TestAlertDistance:
    @pytest.mark.parametrize("speed,expected", [
        (0, 200.0),
        (10, 200.0),
        (20, 250.0),
        (40, 500.0),
        (80, 1000.0),
    ])
    def test_scales_with_speed(self, speed, expected):
        assert alert_distance(speed) == expected


class TestLifecycle:
    def test_start_registers_and_persists(self, db, coordinator, session):
        assert coordinator.registry.get(session.session_id) is session
        assert session.status == NavigationStatusEnum.ACTIVE
        assert session.remaining_distance == 4000.0
        assert session.original_duration == 600.0
        row = db.get(NavigationSession, session.session_id)
        assert row.user_id == 9
        assert row.destination == DEST.to_dict()

    def test_end(self, db, coordinator, session):
        ended = coordinator.end(session.session_id)
        assert ended.status == NavigationStatusEnum.ENDED
        assert ended.ended_at is not None
        assert len(coordinator.registry) == 0
        assert db.get(NavigationSession, session.session_id).status == NavigationStatusEnum.ENDED

    def test_unknown_session(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.update_position("nav_missing", ORIGIN)

    def test_threshold_bounds(self, overlay):
        with pytest.raises(ValidationError):
            NavigationSessionCoordinator(overlay, TrafficSegmentCache(MemoryCache()), deviation_threshold=10)


class TestPositionUpdates:
    def test_on_route_no_recalculation(self, coordinator, session, gateway):
        result = coordinator.update_position(session.session_id, Coordinates(-23.55, -46.635), speed_kmh=36)
        assert result["recalculated"] is False
        assert result["deviation_meters"] < 1.0
        assert result["arrived"] is False
        gateway.calculate_route.assert_not_called()
        # ~3.6 km left at 10 m/s
        assert result["remaining_duration"] == pytest.approx(result["remaining_distance"] / 10.0, abs=0.1)

    def test_response_built_while_session_locked(self, coordinator, session, monkeypatch):
        held = []
        original_to_dict = session.to_dict

        def to_dict():
            held.append(("to_dict", session.lock.locked()))
            return original_to_dict()

        def alerts(state, position, speed_kmh=0.0):
            held.append(("alerts", state.lock.locked()))
            return []

        monkeypatch.setattr(session, "to_dict", to_dict)
        monkeypatch.setattr(coordinator, "alerts", alerts)
        coordinator.update_position(session.session_id, Coordinates(-23.55, -46.635))
        assert held == [("to_dict", True), ("alerts", True)]

    def test_instruction_advances_near_maneuver(self, coordinator, session):
        coordinator.update_position(session.session_id, Coordinates(-23.55, -46.63005))
        assert session.instruction_index == 1
        assert session.next_instruction == WAYPOINTS[1]
        # Moving back does not rewind the pointer
        coordinator.update_position(session.session_id, Coordinates(-23.55, -46.635))
        assert session.instruction_index == 1

    def test_deviation_triggers_recalculation(self, coordinator, session, gateway):
        seen_status = []

        def calculate(origin, destination, options):
            seen_status.append(session.status)
            return _route(origin=origin, distance=3500.0, duration=560.0)

        gateway.calculate_route.side_effect = calculate
        result = coordinator.update_position(session.session_id, OFF_ROUTE)

        assert result["deviation_meters"] > 30.0
        assert result["recalculated"] is True
        assert seen_status == [NavigationStatusEnum.RECALCULATING]
        assert session.status == NavigationStatusEnum.ACTIVE
        assert session.sequence == 1
        assert session.route_with_risk.route.origin == OFF_ROUTE
        assert session.current_duration == 560.0
        gateway.calculate_route.assert_called_once_with(OFF_ROUTE, DEST, RouteOptions(prefer_safe_route=False))

    def test_cooldown_between_recalculations(self, coordinator, session, gateway, clock):
        gateway.calculate_route.side_effect = lambda origin, destination, options: _route(distance=3900.0)
        coordinator.update_position(session.session_id, OFF_ROUTE)
        clock.now += 2
        second = coordinator.update_position(session.session_id, OFF_ROUTE)
        assert second["recalculated"] is False
        assert gateway.calculate_route.call_count == 1

        clock.now += 5
        third = coordinator.update_position(session.session_id, OFF_ROUTE)
        assert third["recalculated"] is True
        assert gateway.calculate_route.call_count == 2
        assert session.sequence == 2

    def test_failed_recalculation_keeps_route(self, coordinator, session, gateway):
        gateway.calculate_route.side_effect = ProviderError.unavailable("google", "all providers failed")
        original = session.route_with_risk
        result = coordinator.update_position(session.session_id, OFF_ROUTE)
        assert result["recalculated"] is False
        assert session.route_with_risk is original
        assert session.status == NavigationStatusEnum.ACTIVE
        assert session.last_error.startswith("unavailable")
        assert result["last_error"] == session.last_error

    def test_stale_result_discarded(self, coordinator, session, overlay):
        newer = overlay.overlay(_route(distance=3000.0))
        older = overlay.overlay(_route(distance=3800.0))
        assert coordinator.apply_route(session, newer, 2) is True
        assert coordinator.apply_route(session, older, 1) is False
        assert session.route_with_risk is newer
        assert session.sequence == 2

    def test_arrival_ends_session(self, db, coordinator, session):
        result = coordinator.update_position(session.session_id, Coordinates(-23.55, -46.60005))
        assert result["arrived"] is True
        assert result["status"] == "ended"
        assert result["alerts"] == []
        assert len(coordinator.registry) == 0
        with pytest.raises(NotFoundError):
            coordinator.update_position(session.session_id, DEST)


class TestTrafficDrift:
    def test_delay_offers_alternative(self, coordinator, session, gateway, clock):
        gateway.traffic_data.side_effect = lambda route: TrafficData(720.0, 600.0)
        clock.now += 60
        coordinator.update_position(session.session_id, Coordinates(-23.55, -46.635))

        assert session.pending_alternative is not None
        assert session.pending_alternative.route.duration == 560.0
        gateway.traffic_data.assert_called_once()

        accepted = coordinator.accept_alternative(session.session_id)
        assert accepted.pending_alternative is None
        assert accepted.route_with_risk.route.duration == 560.0
        assert accepted.sequence == 1

    def test_small_delay_ignored(self, coordinator, session, gateway, clock):
        gateway.traffic_data.side_effect = lambda route: TrafficData(630.0, 600.0)
        clock.now += 60
        coordinator.update_position(session.session_id, Coordinates(-23.55, -46.635))
        assert session.pending_alternative is None
        gateway.calculate_route.assert_not_called()

    def test_not_checked_before_interval(self, coordinator, session, gateway, clock):
        clock.now += 30
        coordinator.update_position(session.session_id, Coordinates(-23.55, -46.635))
        gateway.traffic_data.assert_not_called()

    def test_reject_alternative(self, coordinator, session, gateway, clock):
        gateway.traffic_data.side_effect = lambda route: TrafficData(900.0, 600.0)
        clock.now += 60
        coordinator.update_position(session.session_id, Coordinates(-23.55, -46.635))
        original = session.route_with_risk
        rejected = coordinator.reject_alternative(session.session_id)
        assert rejected.pending_alternative is None
        assert rejected.route_with_risk is original

    def test_accept_without_pending(self, coordinator, session):
        with pytest.raises(ValidationError):
            coordinator.accept_alternative(session.session_id)


class TestAlerts:
    @pytest.fixture
    def hotspot(self, db, make_region):
        region = make_region(name="Sé", south=-23.555, west=-46.625, north=-23.545, east=-46.615)
        db.add(RiskIndex(region_id=region.region_id, value=80.0, factors=[], occurrence_count=4,
                         calculated_at=NOW))
        db.commit()
        return region

    def test_approaching_high_risk(self, coordinator, session, hotspot):
        alerts = coordinator.alerts(session, Coordinates(-23.55, -46.628), speed_kmh=80)
        assert [a["type"] for a in alerts] == ["approaching_high_risk"]
        assert alerts[0]["region_id"] == hotspot.region_id
        assert 0 < alerts[0]["distance_meters"] <= 1000.0

    def test_out_of_look_ahead(self, coordinator, session, hotspot):
        assert coordinator.alerts(session, Coordinates(-23.55, -46.628), speed_kmh=0) == []

    def test_inside_high_risk(self, coordinator, session, hotspot):
        alerts = coordinator.alerts(session, Coordinates(-23.549, -46.618))
        assert alerts[0]["type"] == "inside_high_risk"
        assert alerts[0]["risk"] == 80.0
        assert all(a["type"] != "approaching_high_risk" or a["region_id"] != hotspot.region_id for a in alerts)

    def test_suppressed_by_user_preference(self, db, coordinator, session, hotspot):
        service = AlertPreferenceService(db, clock=lambda: NOW, tz=timezone.utc)
        service.update(session.user_id, {"alerts_enabled": False})
        coordinator.alert_preferences = service

        assert coordinator.alerts(session, Coordinates(-23.549, -46.618)) == []

    def test_other_users_preference_ignored(self, db, coordinator, session, hotspot):
        service = AlertPreferenceService(db, clock=lambda: NOW, tz=timezone.utc)
        service.update(session.user_id + 1, {"alerts_enabled": False})
        coordinator.alert_preferences = service

        alerts = coordinator.alerts(session, Coordinates(-23.549, -46.618))
        assert alerts[0]["type"] == "inside_high_risk"
        assert "dominant_crime_type_id" in alerts[0]
