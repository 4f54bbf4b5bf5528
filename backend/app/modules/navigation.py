"""Navigation session coordination.

Lifecycle: Active → Recalculating → Active … → Ended.

On every position update (serialized per session):
  - the instruction pointer advances when the traveler is within 10 m of the
    next maneuver point, never backwards
  - remaining distance/duration are recomputed
  - deviation: cross-track distance to the route > 30 m, with a 5 s cooldown,
    triggers a recalculation from the current position
  - traffic drift: every 60 s traffic is checked through the segment cache;
    a delay above 10% of the original duration fetches an alternative that
    the traveler may accept or reject

A failed recalculation keeps the last good route, records the error and
returns the session to Active. Each recalculation carries a sequence number;
results older than the latest applied one are discarded.
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import NotFoundError, SafeRouteError, ValidationError
from app.models.base import NavigationStatusEnum
from app.models.navigation_session import NavigationSession
from app.modules.alert_preferences import AlertPreferenceService
from app.modules.provider_gateway import ProviderGateway
from app.modules.route_risk import RouteRiskOverlay
from app.modules.traffic_cache import TrafficSegmentCache
from app.utils.clock import utcnow
from app.utils.geo import distance_to_polyline_meters, haversine_meters, path_length_meters
from app.values import Coordinates, RouteOptions, RouteRecalculationResult, RouteWithRisk

logger = logging.getLogger(__name__)

MIN_DEVIATION_THRESHOLD = 30.0
MAX_DEVIATION_THRESHOLD = 50.0

MIN_ALERT_DISTANCE = 200.0
BASE_ALERT_DISTANCE = 500.0
HIGH_SPEED_KMH = 40.0


def alert_distance(speed_kmh: float) -> float:
    """Look-ahead distance for risk alerts, growing with speed."""
    if speed_kmh <= 0:
        return MIN_ALERT_DISTANCE
    scaled = BASE_ALERT_DISTANCE * speed_kmh / HIGH_SPEED_KMH
    if speed_kmh >= HIGH_SPEED_KMH:
        return scaled
    return max(MIN_ALERT_DISTANCE, scaled)


def _deviation_threshold(value: float | None) -> float:
    threshold = settings.DEVIATION_THRESHOLD_METERS if value is None else value
    if not MIN_DEVIATION_THRESHOLD <= threshold <= MAX_DEVIATION_THRESHOLD:
        raise ValidationError(
            f"Deviation threshold must be within [{MIN_DEVIATION_THRESHOLD:.0f}, {MAX_DEVIATION_THRESHOLD:.0f}] m",
            field="deviation_threshold",
            value=threshold,
        )
    return threshold


@dataclass
class ActiveNavigation:
    session_id: str
    route_with_risk: RouteWithRisk
    destination: Coordinates
    prefer_safe_route: bool
    user_id: int | None = None
    status: NavigationStatusEnum = NavigationStatusEnum.ACTIVE
    current_position: Coordinates | None = None
    instruction_index: int = 0
    remaining_distance: float = 0.0
    remaining_duration: float = 0.0
    original_duration: float = 0.0
    current_duration: float = 0.0
    # Latest recalculation issued / applied
    issued_sequence: int = 0
    sequence: int = 0
    last_recalculation_at: float | None = None
    last_traffic_check_at: float = 0.0
    pending_alternative: RouteWithRisk | None = None
    last_error: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    ended_at: datetime | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def instructions(self) -> tuple[Coordinates, ...]:
        return self.route_with_risk.route.waypoints

    @property
    def next_instruction(self) -> Coordinates | None:
        if self.instruction_index < len(self.instructions):
            return self.instructions[self.instruction_index]
        return None

    def to_dict(self) -> dict[str, Any]:
        nxt = self.next_instruction
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "route": self.route_with_risk.to_dict(),
            "destination": self.destination.to_dict(),
            "current_position": self.current_position.to_dict() if self.current_position else None,
            "instruction_index": self.instruction_index,
            "next_instruction": nxt.to_dict() if nxt else None,
            "remaining_distance": round(self.remaining_distance, 1),
            "remaining_duration": round(self.remaining_duration, 1),
            "original_duration": self.original_duration,
            "current_duration": self.current_duration,
            "sequence": self.sequence,
            "pending_alternative": self.pending_alternative.to_dict() if self.pending_alternative else None,
            "last_error": self.last_error,
        }


class NavigationRegistry:
    """Thread-safe owner of the in-flight sessions, keyed by id."""

    def __init__(self) -> None:
        self._sessions: dict[str, ActiveNavigation] = {}
        self._lock = threading.Lock()

    def add(self, state: ActiveNavigation) -> None:
        with self._lock:
            self._sessions[state.session_id] = state

    def get(self, session_id: str) -> ActiveNavigation:
        with self._lock:
            state = self._sessions.get(session_id)
        if state is None:
            raise NotFoundError(f"Navigation session {session_id} not found", session_id=session_id)
        return state

    def remove(self, session_id: str) -> ActiveNavigation | None:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class NavigationStore:
    """Mirrors in-flight sessions to the navigation_sessions table."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def save(self, state: ActiveNavigation) -> NavigationSession:
        row = self.db.get(NavigationSession, state.session_id)
        if row is None:
            row = NavigationSession(session_id=state.session_id, started_at=state.started_at)
            self.db.add(row)
        row.user_id = state.user_id
        row.route_data = state.route_with_risk.to_dict()
        row.destination = state.destination.to_dict()
        row.current_position = state.current_position.to_dict() if state.current_position else None
        row.original_duration = state.original_duration
        row.current_duration = state.current_duration
        row.max_risk = state.route_with_risk.max_risk
        row.prefer_safe_route = state.prefer_safe_route
        row.status = state.status
        row.sequence = state.sequence
        row.updated_at = state.updated_at
        row.ended_at = state.ended_at
        self.db.commit()
        return row


_registry = NavigationRegistry()


def get_registry() -> NavigationRegistry:
    return _registry


class NavigationSessionCoordinator:
    def __init__(
        self,
        overlay: RouteRiskOverlay,
        traffic_cache: TrafficSegmentCache,
        registry: NavigationRegistry | None = None,
        store: NavigationStore | None = None,
        gateway: ProviderGateway | None = None,
        deviation_threshold: float | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        alert_preferences: AlertPreferenceService | None = None,
    ) -> None:
        self.overlay = overlay
        self.traffic_cache = traffic_cache
        self.registry = registry if registry is not None else get_registry()
        self.store = store
        self.gateway = gateway or overlay.gateway
        self.deviation_threshold = _deviation_threshold(deviation_threshold)
        self._monotonic = monotonic
        self.alert_preferences = alert_preferences

    def _persist(self, state: ActiveNavigation) -> None:
        state.updated_at = utcnow()
        if self.store is not None:
            self.store.save(state)

    # -- lifecycle -------------------------------------------------------

    def start(
        self,
        route_with_risk: RouteWithRisk,
        destination: Coordinates,
        prefer_safe_route: bool = True,
        user_id: int | None = None,
    ) -> ActiveNavigation:
        route = route_with_risk.route
        state = ActiveNavigation(
            session_id=f"nav_{uuid.uuid4().hex}",
            route_with_risk=route_with_risk,
            destination=destination,
            prefer_safe_route=prefer_safe_route,
            user_id=user_id,
            current_position=route.origin,
            remaining_distance=route.distance,
            remaining_duration=route.duration,
            original_duration=route.duration,
            current_duration=route.duration,
            last_traffic_check_at=self._monotonic(),
        )
        self.registry.add(state)
        self._persist(state)
        logger.info("Navigation %s started (%.0f m, max risk %.1f)", state.session_id, route.distance,
                    route_with_risk.max_risk)
        return state

    def end(self, session_id: str) -> ActiveNavigation:
        state = self.registry.get(session_id)
        with state.lock:
            state.status = NavigationStatusEnum.ENDED
            state.ended_at = utcnow()
            state.pending_alternative = None
            self._persist(state)
        self.registry.remove(session_id)
        logger.info("Navigation %s ended", session_id)
        return state

    # -- position updates ------------------------------------------------

    def update_position(self, session_id: str, position: Coordinates, speed_kmh: float = 0.0) -> dict[str, Any]:
        state = self.registry.get(session_id)
        with state.lock:
            if state.status == NavigationStatusEnum.ENDED:
                raise ValidationError(f"Navigation session {session_id} has ended", session_id=session_id)
            state.current_position = position
            self._advance_instruction(state, position)

            path = state.route_with_risk.route.path()
            deviation, segment_idx = distance_to_polyline_meters(position.as_tuple, path)
            self._update_remaining(state, position, path, segment_idx, speed_kmh)

            recalculation: RouteRecalculationResult | None = None
            now = self._monotonic()
            if deviation > self.deviation_threshold and self._cooldown_elapsed(state, now):
                logger.info(
                    "Navigation %s off route by %.0f m (threshold %.0f) — recalculating",
                    session_id, deviation, self.deviation_threshold,
                )
                recalculation = self._recalculate(state, position, now)
                if recalculation is not None:
                    path = state.route_with_risk.route.path()
                    _, segment_idx = distance_to_polyline_meters(position.as_tuple, path)
                    self._update_remaining(state, position, path, segment_idx, speed_kmh)
            elif now - state.last_traffic_check_at >= settings.TRAFFIC_CHECK_INTERVAL_SECONDS:
                self._check_traffic(state, position, now)

            arrived = haversine_meters(
                position.latitude, position.longitude, state.destination.latitude, state.destination.longitude,
            ) <= settings.INSTRUCTION_ADVANCE_METERS
            if arrived:
                state.status = NavigationStatusEnum.ENDED
                state.ended_at = utcnow()
            self._persist(state)

            # Response is a snapshot taken while the session is locked
            result = state.to_dict()
            result.update({
                "deviation_meters": round(deviation, 1),
                "recalculated": recalculation is not None,
                "recalculation": recalculation.to_dict() if recalculation else None,
                "arrived": arrived,
                "alerts": [] if arrived else self.alerts(state, position, speed_kmh),
            })

        if arrived:
            self.registry.remove(session_id)
            logger.info("Navigation %s arrived", session_id)
        return result

    def _advance_instruction(self, state: ActiveNavigation, position: Coordinates) -> None:
        while state.next_instruction is not None and position.is_within_distance(
            state.next_instruction, settings.INSTRUCTION_ADVANCE_METERS
        ):
            state.instruction_index += 1

    def _update_remaining(
        self,
        state: ActiveNavigation,
        position: Coordinates,
        path: list[tuple[float, float]],
        segment_idx: int,
        speed_kmh: float,
    ) -> None:
        if len(path) >= 2 and segment_idx >= 0:
            nxt = path[segment_idx + 1]
            state.remaining_distance = (
                haversine_meters(position.latitude, position.longitude, nxt[0], nxt[1])
                + path_length_meters(path[segment_idx + 1:])
            )
        else:
            state.remaining_distance = position.distance_to(state.destination)
        if speed_kmh > 0:
            state.remaining_duration = state.remaining_distance / (speed_kmh / 3.6)
        else:
            state.remaining_duration = state.route_with_risk.route.duration

    def _cooldown_elapsed(self, state: ActiveNavigation, now: float) -> bool:
        if state.last_recalculation_at is None:
            return True
        return now - state.last_recalculation_at >= settings.RECALCULATION_COOLDOWN_SECONDS

    # -- recalculation ---------------------------------------------------

    def _recalculate(
        self, state: ActiveNavigation, position: Coordinates, now: float
    ) -> RouteRecalculationResult | None:
        state.status = NavigationStatusEnum.RECALCULATING
        state.issued_sequence += 1
        sequence = state.issued_sequence
        state.last_recalculation_at = now
        try:
            result = self.overlay.recalculate(state, position)
        except SafeRouteError as exc:
            state.last_error = f"{exc.code}: {exc.message}"
            logger.warning("Recalculation for %s failed, keeping current route: %s", state.session_id, exc)
            return None
        finally:
            state.status = NavigationStatusEnum.ACTIVE
        if not self.apply_route(state, result.recommended_route, sequence):
            return None
        return result

    def apply_route(self, state: ActiveNavigation, route_with_risk: RouteWithRisk, sequence: int) -> bool:
        """Install a recalculated route unless a newer one was already applied."""
        if sequence <= state.sequence:
            logger.info(
                "Discarding stale recalculation %d for %s (latest %d)", sequence, state.session_id, state.sequence,
            )
            return False
        state.route_with_risk = route_with_risk
        state.instruction_index = 0
        state.current_duration = route_with_risk.route.duration
        state.sequence = sequence
        state.last_error = None
        return True

    # -- traffic drift ---------------------------------------------------

    def _check_traffic(self, state: ActiveNavigation, position: Coordinates, now: float) -> None:
        state.last_traffic_check_at = now
        gateway = self.gateway
        if gateway is None:
            return
        route = state.route_with_risk.route
        try:
            traffic = self.traffic_cache.get(route, gateway.traffic_data)
        except SafeRouteError as exc:
            state.last_error = f"{exc.code}: {exc.message}"
            logger.warning("Traffic check for %s failed: %s", state.session_id, exc)
            return
        if traffic.delay_seconds <= settings.TRAFFIC_DELAY_THRESHOLD * state.original_duration:
            return
        logger.info(
            "Navigation %s: traffic delay %.0fs exceeds %.0f%% of trip — looking for an alternative",
            state.session_id, traffic.delay_seconds, settings.TRAFFIC_DELAY_THRESHOLD * 100,
        )
        try:
            alternative = self.overlay.calculate_route_with_risk(
                position, state.destination, RouteOptions(prefer_safe_route=state.prefer_safe_route)
            )
        except SafeRouteError as exc:
            state.last_error = f"{exc.code}: {exc.message}"
            logger.warning("Alternative lookup for %s failed: %s", state.session_id, exc)
            return
        if alternative.route.polyline and alternative.route.polyline == route.polyline:
            return
        state.pending_alternative = alternative

    def accept_alternative(self, session_id: str) -> ActiveNavigation:
        state = self.registry.get(session_id)
        with state.lock:
            if state.pending_alternative is None:
                raise ValidationError("No pending alternative route", session_id=session_id)
            state.issued_sequence += 1
            self.apply_route(state, state.pending_alternative, state.issued_sequence)
            state.pending_alternative = None
            self._persist(state)
        return state

    def reject_alternative(self, session_id: str) -> ActiveNavigation:
        state = self.registry.get(session_id)
        with state.lock:
            state.pending_alternative = None
            self._persist(state)
        return state

    # -- proximity alerts ------------------------------------------------

    def alerts(self, state: ActiveNavigation, position: Coordinates, speed_kmh: float = 0.0) -> list[dict]:
        """Inside / approaching high-risk region alerts, filtered by the traveler's preferences."""
        store = self.overlay.store
        threshold = self.overlay.high_risk_threshold
        look_ahead = alert_distance(speed_kmh)
        alerts: list[dict] = []

        current = store.find_region_containing(position)
        points = [w for w in state.instructions[state.instruction_index:]
                  if position.distance_to(w) <= look_ahead]
        regions = {}
        for point in points:
            region = store.find_region_containing(point)
            if region is not None and region.region_id not in regions:
                regions[region.region_id] = (region, position.distance_to(point))
        region_ids = list(regions) + ([current.region_id] if current is not None else [])
        indexes = self.overlay.indexes_for(region_ids)

        if current is not None:
            index = indexes.get(current.region_id)
            if index is not None and index.value >= threshold:
                alerts.append({
                    "type": "inside_high_risk",
                    "region_id": current.region_id,
                    "region_name": current.name,
                    "risk": index.value,
                    "distance_meters": 0.0,
                    "dominant_crime_type_id": index.dominant_crime_type_id,
                })
        for region_id, (region, distance) in regions.items():
            if current is not None and region_id == current.region_id:
                continue
            index = indexes.get(region_id)
            if index is not None and index.value >= threshold:
                alerts.append({
                    "type": "approaching_high_risk",
                    "region_id": region_id,
                    "region_name": region.name,
                    "risk": index.value,
                    "distance_meters": round(distance, 1),
                    "dominant_crime_type_id": index.dominant_crime_type_id,
                })
        if self.alert_preferences is not None:
            alerts = self.alert_preferences.filter_alerts(state.user_id, alerts)
        return alerts
