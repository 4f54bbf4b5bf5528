"""Route risk overlay and safer-route selection.

A route is sampled every <= 200 m along its decoded polyline (plus origin,
waypoints and destination). Each sample is resolved to its most specific
region; the distinct regions crossed, in route order, carry the region's
stored RiskIndex (0 when none has been computed).

Safer route: among candidates no longer than 1.2 × the shortest, pick the
lowest max risk (ties: shorter duration, then shorter distance). The default
route stays when nothing is strictly safer.
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Any, Protocol, Sequence

from sqlalchemy.orm import Session

from app.config import settings
from app.models.crime_type import CrimeType
from app.models.occurrence import Occurrence
from app.models.region import Region
from app.models.risk_index import RiskIndex
from app.modules.geo_store import SqlGeoStore, covering_regions
from app.modules.provider_gateway import ProviderGateway
from app.modules.risk_scoring import load_scoring_config
from app.utils.geo import densify, distance_to_polyline_meters
from app.values import (
    Coordinates,
    RiskRegion,
    Route,
    RouteOptions,
    RouteRecalculationResult,
    RouteWithRisk,
)

logger = logging.getLogger(__name__)

SAMPLE_SPACING_METERS = 200.0
ROUTE_BUFFER_METERS = 200.0
RISK_CHANGE_THRESHOLD = 5.0
TIME_CHANGE_NOTIFY_PERCENT = 10.0

_METERS_PER_DEG = 111_320.0


class RecalculableSession(Protocol):
    route_with_risk: RouteWithRisk
    destination: Coordinates
    prefer_safe_route: bool


def sample_points(route: Route, spacing: float = SAMPLE_SPACING_METERS) -> list[Coordinates]:
    path = densify(route.path(), spacing)
    points = [route.origin]
    points.extend(Coordinates(lat, lon) for lat, lon in path)
    points.extend(route.waypoints)
    points.append(route.destination)
    return points


def _bounds(points: Sequence[Coordinates], pad_meters: float = 0.0) -> tuple[float, float, float, float]:
    pad = pad_meters / _METERS_PER_DEG
    return (
        min(p.latitude for p in points) - pad,
        min(p.longitude for p in points) - pad,
        max(p.latitude for p in points) + pad,
        max(p.longitude for p in points) + pad,
    )


class RouteRiskOverlay:
    def __init__(
        self,
        db: Session,
        gateway: ProviderGateway | None = None,
        store: SqlGeoStore | None = None,
        config: dict[str, Any] | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.store = store or SqlGeoStore(db)
        self.config = config or load_scoring_config()

    @property
    def high_risk_threshold(self) -> float:
        return float(self.config["thresholds"]["high_risk"])

    @property
    def warning_threshold(self) -> float:
        return float(self.config["thresholds"]["warning"])

    def _require_gateway(self) -> ProviderGateway:
        if self.gateway is None:
            raise RuntimeError("RouteRiskOverlay needs a ProviderGateway for routing")
        return self.gateway

    # -- overlay ---------------------------------------------------------

    def regions_along(self, route: Route) -> list[Region]:
        """Distinct regions crossed by ``route`` in route order.

        Every region covering a sample counts, enclosing districts and cities
        included alongside the neighborhood.
        """
        points = sample_points(route)
        candidates = self.store.regions_in_bounds(*_bounds(points))
        if not candidates:
            return []
        seen: set[int] = set()
        ordered: list[Region] = []
        for point in points:
            for region in covering_regions(candidates, point):
                if region.region_id not in seen:
                    seen.add(region.region_id)
                    ordered.append(region)
        return ordered

    def indexes_for(self, region_ids: list[int]) -> dict[int, RiskIndex]:
        if not region_ids:
            return {}
        rows = self.db.query(RiskIndex).filter(RiskIndex.region_id.in_(region_ids)).all()
        return {row.region_id: row for row in rows}

    def overlay(self, route: Route) -> RouteWithRisk:
        regions = self.regions_along(route)
        indexes = self.indexes_for([r.region_id for r in regions])
        risk_regions = []
        for region in regions:
            index = indexes.get(region.region_id)
            value = float(index.value) if index is not None else 0.0
            risk_regions.append(RiskRegion(
                region_id=region.region_id,
                value=value,
                is_high_risk=value >= self.high_risk_threshold,
                dominant_crime_type_id=index.dominant_crime_type_id if index is not None else None,
                name=region.name,
            ))
        max_risk = max((r.value for r in risk_regions), default=0.0)
        average_risk = round(sum(r.value for r in risk_regions) / len(risk_regions), 2) if risk_regions else 0.0
        requires_warning = max_risk >= self.warning_threshold
        return RouteWithRisk(
            route=route,
            max_risk=max_risk,
            average_risk=average_risk,
            risk_regions=tuple(risk_regions),
            requires_warning=requires_warning,
            warning_message=self._warning_message(risk_regions) if requires_warning else None,
        )

    def _warning_message(self, risk_regions: list[RiskRegion]) -> str:
        worst = max(risk_regions, key=lambda r: r.value)
        level = "High" if worst.value >= self.high_risk_threshold else "Moderate"
        message = f"{level} risk area on this route: {worst.name or f'region {worst.region_id}'} (risk {worst.value:.0f})"
        if worst.dominant_crime_type_id is not None:
            crime_type = self.db.get(CrimeType, worst.dominant_crime_type_id)
            if crime_type is not None:
                message += f"; most reported: {crime_type.name}"
        return message

    # -- selection -------------------------------------------------------

    def select_safer(
        self, candidates: Sequence[RouteWithRisk], shortest_distance: float | None = None
    ) -> RouteWithRisk:
        """Pick the safest candidate within the distance budget; candidates[0] is the default."""
        if not candidates:
            raise ValueError("select_safer needs at least one candidate route")
        default = candidates[0]
        if shortest_distance is None:
            shortest_distance = min(c.route.distance for c in candidates)
        budget = shortest_distance * settings.SAFE_ROUTE_MAX_DISTANCE_RATIO
        eligible = [c for c in candidates if c.route.distance <= budget]
        if eligible:
            best = min(eligible, key=lambda c: (c.max_risk, c.route.duration, c.route.distance))
            if best.max_risk < default.max_risk:
                return dataclasses.replace(best, no_safer_alternative=False)
        return dataclasses.replace(default, no_safer_alternative=True)

    def calculate_route_with_risk(
        self, origin: Coordinates, destination: Coordinates, options: RouteOptions | None = None
    ) -> RouteWithRisk:
        options = options or RouteOptions()
        gateway = self._require_gateway()
        primary = self.overlay(gateway.calculate_route(origin, destination, options))
        if not options.prefer_safe_route:
            return primary
        alternatives = gateway.alternative_routes(origin, destination, settings.SAFE_ROUTE_ALTERNATIVES)
        candidates = [primary]
        for alt in alternatives:
            if alt.polyline and alt.polyline == primary.route.polyline:
                continue
            candidates.append(self.overlay(alt))
        chosen = self.select_safer(candidates)
        logger.info(
            "Safe route: %d candidates, chose max_risk=%.1f (default %.1f)",
            len(candidates), chosen.max_risk, primary.max_risk,
        )
        return chosen

    def recalculate(
        self, session: RecalculableSession, current_position: Coordinates
    ) -> RouteRecalculationResult:
        """Fresh route from ``current_position`` to the session's destination."""
        original = session.route_with_risk
        new = self.calculate_route_with_risk(
            current_position,
            session.destination,
            RouteOptions(prefer_safe_route=session.prefer_safe_route),
        )
        risk_delta = new.max_risk - original.max_risk
        risk_changed = abs(risk_delta) >= RISK_CHANGE_THRESHOLD
        if original.route.duration > 0:
            time_change = round((new.route.duration - original.route.duration) / original.route.duration * 100, 1)
        else:
            time_change = 0.0
        route_changed = new.route.polyline != original.route.polyline or new.route.distance != original.route.distance
        return RouteRecalculationResult(
            original_route=original,
            new_route=new,
            route_changed=route_changed,
            risk_changed=risk_changed,
            time_change_percent=time_change,
            message=_recalculation_message(time_change, risk_changed, original.max_risk, new.max_risk),
        )

    # -- occurrences -----------------------------------------------------

    def occurrences_along_route(self, route: Route, buffer_meters: float = ROUTE_BUFFER_METERS) -> list[Occurrence]:
        path = route.path()
        points = [Coordinates(lat, lon) for lat, lon in path]
        south, west, north, east = _bounds(points, buffer_meters * 2)
        candidates = self.store.occurrences_in_bounds(south, west, north, east)
        nearby = [
            occ for occ in candidates
            if distance_to_polyline_meters((occ.latitude, occ.longitude), path)[0] <= buffer_meters
        ]
        nearby.sort(key=lambda o: (o.timestamp, o.occurrence_id), reverse=True)
        return nearby


def _recalculation_message(
    time_change: float, risk_changed: bool, old_risk: float, new_risk: float
) -> str | None:
    parts = []
    if abs(time_change) > TIME_CHANGE_NOTIFY_PERCENT:
        direction = "increased" if time_change > 0 else "decreased"
        parts.append(f"Travel time {direction} by {abs(time_change):.0f}%")
    if risk_changed:
        direction = "increased" if new_risk > old_risk else "decreased"
        parts.append(f"Route risk {direction} from {old_risk:.0f} to {new_risk:.0f}")
    return ". ".join(parts) if parts else None
