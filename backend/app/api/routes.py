from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.database import get_db
from app.errors import NotFoundError, ValidationError
from app.modules.alert_preferences import AlertPreferenceService
from app.modules.analytics import AnalyticsService, OccurrenceFilters, TimeSeriesService
from app.modules.geocoding import GeocodingService
from app.modules.heatmap import DEFAULT_DAYS, HeatmapService
from app.modules.ingest import OccurrenceIngestEngine
from app.modules.job_queue import JobQueue, get_job_queue
from app.modules.navigation import (
    NavigationRegistry,
    NavigationSessionCoordinator,
    NavigationStore,
    get_registry,
)
from app.modules.occurrence_lifecycle import merge_occurrences
from app.modules.provider_gateway import ProviderGateway, get_gateway
from app.modules.risk_scoring import RiskIndexEngine
from app.modules.route_risk import RouteRiskOverlay
from app.modules.traffic_cache import TrafficSegmentCache
from app.schemas.alert import AlertPreferenceUpdateRequest
from app.schemas.error import ErrorResponse
from app.schemas.navigation import (
    AlternativeDecisionRequest,
    NavigationStartRequest,
    PositionUpdateRequest,
)
from app.schemas.occurrence import OccurrenceCreateRequest, OccurrenceMergeRequest
from app.schemas.route import RecalculateRequest, RouteRequest
from app.utils.cache import Cache, get_cache
from app.utils.clock import as_naive_utc
from app.values import Coordinates, RouteOptions

logger = logging.getLogger(__name__)

router = APIRouter(
    responses={
        404: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)


def _coordinator(
    db: Session,
    gateway: ProviderGateway,
    cache: Cache,
    registry: NavigationRegistry,
) -> NavigationSessionCoordinator:
    return NavigationSessionCoordinator(
        overlay=RouteRiskOverlay(db, gateway),
        traffic_cache=TrafficSegmentCache(cache),
        registry=registry,
        store=NavigationStore(db),
        alert_preferences=AlertPreferenceService(db),
    )


def _bounds(south: float, west: float, north: float, east: float) -> tuple[float, float, float, float]:
    # Validates ranges through Coordinates
    Coordinates(south, west)
    Coordinates(north, east)
    return (south, west, north, east)


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

@router.post("/routes", tags=["routes"])
def calculate_route(
    body: RouteRequest,
    db: Session = Depends(get_db),
    gateway: ProviderGateway = Depends(get_gateway),
):
    """Route between two points with its risk overlay (safer route when preferred)."""
    overlay = RouteRiskOverlay(db, gateway)
    result = overlay.calculate_route_with_risk(body.origin.to_value(), body.destination.to_value(), body.options())
    return result.to_dict()


@router.post("/routes/recalculate", tags=["routes"])
def recalculate_route(
    body: RecalculateRequest,
    db: Session = Depends(get_db),
    gateway: ProviderGateway = Depends(get_gateway),
    registry: NavigationRegistry = Depends(get_registry),
):
    state = registry.get(body.session_id)
    result = RouteRiskOverlay(db, gateway).recalculate(state, body.current_position.to_value())
    return result.to_dict()


# ---------------------------------------------------------------------------
# Geocoding
# ---------------------------------------------------------------------------

@router.get("/geocode", tags=["geocoding"])
def geocode(
    q: str = Query(..., min_length=1, max_length=500),
    gateway: ProviderGateway = Depends(get_gateway),
    cache: Cache = Depends(get_cache),
):
    addresses = GeocodingService(gateway, cache).geocode(q)
    return {"results": [a.to_dict() for a in addresses], "no_results": not addresses}


@router.get("/geocode/reverse", tags=["geocoding"])
def reverse_geocode(
    lat: float = Query(...),
    lon: float = Query(...),
    gateway: ProviderGateway = Depends(get_gateway),
    cache: Cache = Depends(get_cache),
):
    address = GeocodingService(gateway, cache).reverse_geocode(Coordinates(lat, lon))
    return address.to_dict()


@router.get("/geocode/suggestions", tags=["geocoding"])
def geocode_suggestions(
    q: str = Query(..., min_length=1, max_length=500),
    limit: int = Query(5, ge=1, le=20),
    gateway: ProviderGateway = Depends(get_gateway),
    cache: Cache = Depends(get_cache),
):
    """Fuzzy matches against previously resolved searches."""
    return {"results": GeocodingService(gateway, cache).search_cached_addresses(q, limit=limit)}


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------

@router.get("/risk/regions/{region_id}", tags=["risk"])
def region_risk(region_id: int, db: Session = Depends(get_db)):
    engine = RiskIndexEngine(db)
    index = engine.get_index(region_id)
    if index is None:
        if engine.store.get_region(region_id) is None:
            raise NotFoundError(f"Region {region_id} not found", region_id=region_id)
        index = engine.calculate(region_id)
    return index.to_dict()


@router.get("/risk/at", tags=["risk"])
def risk_at(
    lat: float = Query(...),
    lon: float = Query(...),
    db: Session = Depends(get_db),
):
    index = RiskIndexEngine(db).risk_for_coordinates(Coordinates(lat, lon))
    return index.to_dict()


# ---------------------------------------------------------------------------
# Occurrences
# ---------------------------------------------------------------------------

@router.post("/occurrences", tags=["occurrences"], status_code=201)
def create_occurrence(
    body: OccurrenceCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
    jobs: JobQueue = Depends(get_job_queue),
):
    engine = OccurrenceIngestEngine(db, cache, jobs)
    result = engine.create(
        body.report(),
        body.reporter_location.to_value() if body.reporter_location else None,
        body.user_id,
        ip_address=request.client.host if request.client else None,
    )
    return result.to_dict()


@router.post("/occurrences/merge", tags=["occurrences"])
def merge(
    body: OccurrenceMergeRequest,
    db: Session = Depends(get_db),
    jobs: JobQueue = Depends(get_job_queue),
):
    target = merge_occurrences(db, body.occurrence_ids, body.target_id, actor_id=body.actor_id, jobs=jobs)
    return target.to_dict()


@router.get("/occurrences/along-route", tags=["occurrences"])
def occurrences_along_route(
    origin_lat: float = Query(...),
    origin_lon: float = Query(...),
    destination_lat: float = Query(...),
    destination_lon: float = Query(...),
    buffer_meters: float = Query(200.0, gt=0, le=2000),
    db: Session = Depends(get_db),
    gateway: ProviderGateway = Depends(get_gateway),
):
    overlay = RouteRiskOverlay(db, gateway)
    route = gateway.calculate_route(
        Coordinates(origin_lat, origin_lon), Coordinates(destination_lat, destination_lon), RouteOptions()
    )
    occurrences = overlay.occurrences_along_route(route, buffer_meters)
    return {"route_id": route.id, "occurrences": [o.to_dict() for o in occurrences]}


# ---------------------------------------------------------------------------
# Heatmap
# ---------------------------------------------------------------------------

@router.get("/heatmap", tags=["heatmap"])
def heatmap(
    south: float = Query(...),
    west: float = Query(...),
    north: float = Query(...),
    east: float = Query(...),
    zoom: int = Query(10, ge=1, le=18),
    crime_type_id: Optional[int] = Query(None),
    days: int = Query(DEFAULT_DAYS, ge=1, le=365),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    service = HeatmapService(db, cache)
    bounds = _bounds(south, west, north, east)
    data = service.grid(bounds, zoom=zoom, crime_type_id=crime_type_id, days=days)
    distribution = service.distribution_by_crime_type(bounds, days=days)
    return {**data, "crime_types": distribution["distribution"]}


@router.get("/heatmap/regions", tags=["heatmap"])
def heatmap_regions(
    south: float = Query(...),
    west: float = Query(...),
    north: float = Query(...),
    east: float = Query(...),
    crime_type_id: Optional[int] = Query(None),
    days: int = Query(DEFAULT_DAYS, ge=1, le=365),
    db: Session = Depends(get_db),
):
    return HeatmapService(db).by_region(_bounds(south, west, north, east), crime_type_id=crime_type_id, days=days)


# ---------------------------------------------------------------------------
# Navigation
# ---------------------------------------------------------------------------

@router.post("/navigation/sessions", tags=["navigation"], status_code=201)
def start_navigation(
    body: NavigationStartRequest,
    db: Session = Depends(get_db),
    gateway: ProviderGateway = Depends(get_gateway),
    cache: Cache = Depends(get_cache),
    registry: NavigationRegistry = Depends(get_registry),
):
    coordinator = _coordinator(db, gateway, cache, registry)
    destination = body.destination.to_value()
    route = coordinator.overlay.calculate_route_with_risk(
        body.origin.to_value(), destination, RouteOptions(prefer_safe_route=body.prefer_safe_route)
    )
    state = coordinator.start(route, destination, body.prefer_safe_route, user_id=body.user_id)
    return state.to_dict()


@router.post("/navigation/sessions/{session_id}/position", tags=["navigation"])
def update_position(
    session_id: str,
    body: PositionUpdateRequest,
    db: Session = Depends(get_db),
    gateway: ProviderGateway = Depends(get_gateway),
    cache: Cache = Depends(get_cache),
    registry: NavigationRegistry = Depends(get_registry),
):
    coordinator = _coordinator(db, gateway, cache, registry)
    return coordinator.update_position(session_id, body.position.to_value(), body.speed_kmh)


@router.post("/navigation/sessions/{session_id}/alternative", tags=["navigation"])
def decide_alternative(
    session_id: str,
    body: AlternativeDecisionRequest,
    db: Session = Depends(get_db),
    gateway: ProviderGateway = Depends(get_gateway),
    cache: Cache = Depends(get_cache),
    registry: NavigationRegistry = Depends(get_registry),
):
    coordinator = _coordinator(db, gateway, cache, registry)
    if body.action == "accept":
        state = coordinator.accept_alternative(session_id)
    else:
        state = coordinator.reject_alternative(session_id)
    return state.to_dict()


@router.delete("/navigation/sessions/{session_id}", tags=["navigation"])
def end_navigation(
    session_id: str,
    db: Session = Depends(get_db),
    gateway: ProviderGateway = Depends(get_gateway),
    cache: Cache = Depends(get_cache),
    registry: NavigationRegistry = Depends(get_registry),
):
    coordinator = _coordinator(db, gateway, cache, registry)
    return coordinator.end(session_id).to_dict()


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

@router.get("/providers/quota", tags=["providers"])
def provider_quota(gateway: ProviderGateway = Depends(get_gateway)):
    return gateway.statistics()


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

@router.get("/alerts/preferences", tags=["alerts"])
def get_alert_preferences(user_id: int = Query(...), db: Session = Depends(get_db)):
    return AlertPreferenceService(db).get_or_default(user_id).to_dict()


@router.put("/alerts/preferences", tags=["alerts"])
def update_alert_preferences(body: AlertPreferenceUpdateRequest, db: Session = Depends(get_db)):
    return AlertPreferenceService(db).update(body.user_id, body.changes()).to_dict()


@router.get("/alerts/check", tags=["alerts"])
def check_alerts(
    lat: float = Query(...),
    lon: float = Query(...),
    user_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    """High-risk alert for the region at a position, honoring the user's preferences."""
    engine = RiskIndexEngine(db)
    position = Coordinates(lat, lon)
    index = engine.risk_for_coordinates(position)
    alerts = []
    if index.region_id is not None and index.value >= engine.high_risk_threshold:
        region = engine.store.get_region(index.region_id)
        alerts.append({
            "type": "inside_high_risk",
            "region_id": index.region_id,
            "region_name": region.name if region else None,
            "risk": index.value,
            "distance_meters": 0.0,
            "dominant_crime_type_id": index.dominant_crime_type_id,
        })
    return {"alerts": AlertPreferenceService(db).filter_alerts(user_id, alerts)}


# ---------------------------------------------------------------------------
# Time series / analytics
# ---------------------------------------------------------------------------

def occurrence_filters(
    region_id: Optional[int] = Query(None),
    crime_type_id: Optional[int] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    days: Optional[int] = Query(None, ge=1, le=3650),
) -> OccurrenceFilters:
    if (start_date is None) != (end_date is None):
        raise ValidationError("start_date and end_date must be given together", field="start_date")
    if start_date is not None and start_date > end_date:
        raise ValidationError("start_date must not be after end_date", field="start_date")
    return OccurrenceFilters(
        region_id=region_id,
        crime_type_id=crime_type_id,
        start=as_naive_utc(start_date) if start_date else None,
        end=as_naive_utc(end_date) if end_date else None,
        days=days,
    )


@router.get("/timeseries", tags=["analytics"])
def time_series(
    granularity: str = Query("day"),
    filters: OccurrenceFilters = Depends(occurrence_filters),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    return TimeSeriesService(db, cache).time_series(filters, granularity)


@router.get("/timeseries/hourly", tags=["analytics"])
def hourly_pattern(
    filters: OccurrenceFilters = Depends(occurrence_filters),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    return TimeSeriesService(db, cache).hourly_pattern(filters)


@router.get("/timeseries/daily", tags=["analytics"])
def day_of_week_pattern(
    filters: OccurrenceFilters = Depends(occurrence_filters),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    return TimeSeriesService(db, cache).day_of_week_pattern(filters)


@router.get("/timeseries/heatmap", tags=["analytics"])
def hour_day_heatmap(
    filters: OccurrenceFilters = Depends(occurrence_filters),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    return TimeSeriesService(db, cache).hour_day_matrix(filters)


@router.get("/timeseries/compare", tags=["analytics"])
def compare_periods(
    period1_start: datetime = Query(...),
    period1_end: datetime = Query(...),
    period2_start: datetime = Query(...),
    period2_end: datetime = Query(...),
    granularity: str = Query("day"),
    filters: OccurrenceFilters = Depends(occurrence_filters),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    first = (as_naive_utc(period1_start), as_naive_utc(period1_end))
    second = (as_naive_utc(period2_start), as_naive_utc(period2_end))
    for start, end in (first, second):
        if start > end:
            raise ValidationError("Period start must not be after its end", field="period")
    return TimeSeriesService(db, cache).compare_periods(filters, first, second, granularity)


@router.get("/analytics/dashboard", tags=["analytics"])
def analytics_dashboard(
    filters: OccurrenceFilters = Depends(occurrence_filters),
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
):
    return AnalyticsService(db, cache).dashboard(filters)


@router.get("/analytics/summary", tags=["analytics"])
def analytics_summary(filters: OccurrenceFilters = Depends(occurrence_filters), db: Session = Depends(get_db)):
    return AnalyticsService(db).summary(filters)


@router.get("/analytics/distribution/type", tags=["analytics"])
def analytics_by_type(filters: OccurrenceFilters = Depends(occurrence_filters), db: Session = Depends(get_db)):
    return AnalyticsService(db).distribution_by_crime_type(filters)


@router.get("/analytics/distribution/region", tags=["analytics"])
def analytics_by_region(filters: OccurrenceFilters = Depends(occurrence_filters), db: Session = Depends(get_db)):
    return AnalyticsService(db).distribution_by_region(filters)


@router.get("/analytics/trends", tags=["analytics"])
def analytics_trends(filters: OccurrenceFilters = Depends(occurrence_filters), db: Session = Depends(get_db)):
    return AnalyticsService(db).temporal_trends(filters)


@router.get("/analytics/quality", tags=["analytics"])
def analytics_quality(filters: OccurrenceFilters = Depends(occurrence_filters), db: Session = Depends(get_db)):
    return AnalyticsService(db).data_quality(filters)
