"""Geospatial store — region lookup and radius/region occurrence queries.

Two paths:
  1. PostGIS: ST_Covers / ST_Intersects / ST_DWithin against the geometry columns.
  2. Anything else (SQLite in tests and local runs): bounding-box prefilter on
     indexed lat/lon columns, then an exact test in Python with shapely
     polygon containment for regions and haversine for radius queries.
"""
from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable

from geoalchemy2 import Geography
from shapely.errors import ShapelyError
from shapely.geometry import Point
from sqlalchemy import cast, func, or_
from sqlalchemy.orm import Session

from app.models.base import OccurrenceStatusEnum, REGION_SPECIFICITY, RegionTypeEnum
from app.models.occurrence import Occurrence
from app.models.region import Region
from app.utils.geo import SRID, haversine_meters
from app.values import Coordinates


logger = logging.getLogger(__name__)

_METERS_PER_DEG_LAT = 111_320.0

ACTIVE_ONLY: tuple[OccurrenceStatusEnum, ...] = (OccurrenceStatusEnum.ACTIVE,)


class GeoStore(ABC):
    """Spatial queries consumed by ingest, risk scoring and the route overlay."""

    @abstractmethod
    def find_region_containing(self, point: Coordinates) -> Region | None:
        ...

    @abstractmethod
    def occurrences_near(
        self,
        point: Coordinates,
        radius_meters: float,
        *,
        crime_type_id: int | None = None,
        statuses: Iterable[OccurrenceStatusEnum] = ACTIVE_ONLY,
        since: datetime | None = None,
        until: datetime | None = None,
        exclude_ids: Iterable[int] = (),
    ) -> list[Occurrence]:
        ...

    @abstractmethod
    def occurrences_in_region(
        self,
        region_id: int,
        *,
        statuses: Iterable[OccurrenceStatusEnum] = ACTIVE_ONLY,
        since: datetime | None = None,
        not_expired_at: datetime | None = None,
    ) -> list[Occurrence]:
        ...


def _radius_bbox(point: Coordinates, radius_meters: float) -> tuple[float, float, float, float]:
    dlat = radius_meters / _METERS_PER_DEG_LAT
    cos_lat = max(math.cos(math.radians(point.latitude)), 1e-6)
    dlon = min(180.0, radius_meters / (_METERS_PER_DEG_LAT * cos_lat))
    return (
        point.latitude - dlat,
        point.latitude + dlat,
        point.longitude - dlon,
        point.longitude + dlon,
    )


def _specificity(region: Region) -> int:
    return REGION_SPECIFICITY.get(RegionTypeEnum(region.region_type), 0)


def _by_specificity(regions: list[Region]) -> list[Region]:
    # Ties on specificity resolve to the lowest id so lookups are stable
    return sorted(regions, key=lambda r: (-_specificity(r), r.region_id))


def _sql_point(point: Coordinates):
    return func.ST_SetSRID(func.ST_MakePoint(point.longitude, point.latitude), SRID)


def covering_regions(regions: Iterable[Region], point: Coordinates) -> list[Region]:
    """Regions of ``regions`` whose polygon covers ``point``, most specific first."""
    shape_point = Point(point.longitude, point.latitude)
    matches = []
    for region in regions:
        if not (region.min_lat <= point.latitude <= region.max_lat
                and region.min_lon <= point.longitude <= region.max_lon):
            continue
        try:
            polygon = region.shape
        except (ValueError, ShapelyError) as exc:
            logger.warning("Region %s has an unusable boundary: %s", region.region_id, exc)
            continue
        if polygon is not None and polygon.covers(shape_point):
            matches.append(region)
    return _by_specificity(matches)


class SqlGeoStore(GeoStore):
    def __init__(self, db: Session, spatial: bool | None = None) -> None:
        self.db = db
        if spatial is None:
            spatial = db.get_bind().dialect.name == "postgresql"
        self.spatial = spatial

    def _containment_query(self, point: Coordinates):
        q = self.db.query(Region)
        if self.spatial:
            return q.filter(func.ST_Covers(Region.boundary, _sql_point(point)))
        lat, lon = point.latitude, point.longitude
        return q.filter(
            Region.min_lat <= lat,
            Region.max_lat >= lat,
            Region.min_lon <= lon,
            Region.max_lon >= lon,
        )

    def regions_containing(self, point: Coordinates) -> list[Region]:
        """All regions whose polygon covers ``point``, most specific first."""
        candidates = self._containment_query(point).all()
        if self.spatial:
            return _by_specificity(candidates)
        return covering_regions(candidates, point)

    def find_region_containing(self, point: Coordinates) -> Region | None:
        regions = self.regions_containing(point)
        return regions[0] if regions else None

    def regions_in_bounds(self, south: float, west: float, north: float, east: float) -> list[Region]:
        """Regions intersecting the given box (bounding-box overlap off PostGIS)."""
        q = self.db.query(Region)
        if self.spatial:
            q = q.filter(
                func.ST_Intersects(Region.boundary, func.ST_MakeEnvelope(west, south, east, north, SRID))
            )
        else:
            q = q.filter(
                Region.max_lat >= south,
                Region.min_lat <= north,
                Region.max_lon >= west,
                Region.min_lon <= east,
            )
        return q.order_by(Region.region_id).all()

    def get_region(self, region_id: int) -> Region | None:
        return self.db.get(Region, region_id)

    def region_ids(self) -> list[int]:
        return [rid for (rid,) in self.db.query(Region.region_id).order_by(Region.region_id).all()]

    def occurrences_near(
        self,
        point: Coordinates,
        radius_meters: float,
        *,
        crime_type_id: int | None = None,
        statuses: Iterable[OccurrenceStatusEnum] = ACTIVE_ONLY,
        since: datetime | None = None,
        until: datetime | None = None,
        exclude_ids: Iterable[int] = (),
    ) -> list[Occurrence]:
        q = self.db.query(Occurrence).filter(Occurrence.status.in_(list(statuses)))
        if self.spatial:
            q = q.filter(
                func.ST_DWithin(
                    cast(Occurrence.location, Geography), cast(_sql_point(point), Geography), radius_meters
                )
            )
        else:
            min_lat, max_lat, min_lon, max_lon = _radius_bbox(point, radius_meters)
            q = q.filter(
                Occurrence.latitude >= min_lat,
                Occurrence.latitude <= max_lat,
                Occurrence.longitude >= min_lon,
                Occurrence.longitude <= max_lon,
            )
        if crime_type_id is not None:
            q = q.filter(Occurrence.crime_type_id == crime_type_id)
        if since is not None:
            q = q.filter(Occurrence.timestamp >= since)
        if until is not None:
            q = q.filter(Occurrence.timestamp <= until)
        excluded = [i for i in exclude_ids if i is not None]
        if excluded:
            q = q.filter(Occurrence.occurrence_id.notin_(excluded))

        rows = q.order_by(Occurrence.occurrence_id).all()
        if self.spatial:
            return rows
        return [
            occ for occ in rows
            if haversine_meters(point.latitude, point.longitude, occ.latitude, occ.longitude) <= radius_meters
        ]

    def occurrences_in_region(
        self,
        region_id: int,
        *,
        statuses: Iterable[OccurrenceStatusEnum] = ACTIVE_ONLY,
        since: datetime | None = None,
        not_expired_at: datetime | None = None,
    ) -> list[Occurrence]:
        q = self.db.query(Occurrence).filter(
            Occurrence.region_id == region_id,
            Occurrence.status.in_(list(statuses)),
        )
        if since is not None:
            q = q.filter(Occurrence.timestamp >= since)
        if not_expired_at is not None:
            q = q.filter(or_(Occurrence.expires_at.is_(None), Occurrence.expires_at > not_expired_at))
        return q.order_by(Occurrence.occurrence_id).all()

    def occurrences_in_bounds(
        self,
        south: float,
        west: float,
        north: float,
        east: float,
        *,
        since: datetime | None = None,
        crime_type_ids: Iterable[int] | None = None,
        statuses: Iterable[OccurrenceStatusEnum] = ACTIVE_ONLY,
    ) -> list[Occurrence]:
        q = self.db.query(Occurrence).filter(
            Occurrence.latitude >= south,
            Occurrence.latitude <= north,
            Occurrence.longitude >= west,
            Occurrence.longitude <= east,
            Occurrence.status.in_(list(statuses)),
        )
        if since is not None:
            q = q.filter(Occurrence.timestamp >= since)
        if crime_type_ids:
            q = q.filter(Occurrence.crime_type_id.in_(list(crime_type_ids)))
        return q.all()
