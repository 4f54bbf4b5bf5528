"""Occurrence heatmap aggregation.

Active occurrences inside a bounding box are binned into square grid cells
whose size follows the map zoom (10° at zoom 1, halving per level down to
zoom 18). Each cell reports its centre, count, intensity (count / busiest
cell) and mean confidence. Results are cached for 5 minutes.
"""
from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

import polars as pl
from sqlalchemy.orm import Session

from app.errors import ValidationError
from app.models.crime_type import CrimeType
from app.models.region import Region
from app.modules.geo_store import SqlGeoStore
from app.utils.cache import Cache
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

CACHE_TTL = 300
DEFAULT_DAYS = 30
MIN_ZOOM = 1
MAX_ZOOM = 18

_SCHEMA = {
    "latitude": pl.Float64,
    "longitude": pl.Float64,
    "confidence_score": pl.Int64,
    "crime_type_id": pl.Int64,
    "region_id": pl.Int64,
}


def grid_size_for_zoom(zoom: int) -> float:
    zoom = max(MIN_ZOOM, min(MAX_ZOOM, int(zoom)))
    return 10.0 / (2 ** (zoom - 1))


class HeatmapService:
    def __init__(
        self,
        db: Session,
        cache: Cache | None = None,
        store: SqlGeoStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.cache = cache
        self.store = store or SqlGeoStore(db)
        self._clock = clock

    def _frame(
        self,
        bounds: tuple[float, float, float, float],
        crime_type_id: int | None,
        days: int,
    ) -> pl.DataFrame:
        south, west, north, east = bounds
        if south > north or west > east:
            raise ValidationError("Bounds must satisfy south <= north and west <= east", field="bounds")
        since = self._clock() - timedelta(days=days)
        occurrences = self.store.occurrences_in_bounds(
            south, west, north, east,
            since=since,
            crime_type_ids=[crime_type_id] if crime_type_id is not None else None,
        )
        return pl.DataFrame(
            {
                "latitude": [o.latitude for o in occurrences],
                "longitude": [o.longitude for o in occurrences],
                "confidence_score": [o.confidence_score for o in occurrences],
                "crime_type_id": [o.crime_type_id for o in occurrences],
                "region_id": [o.region_id for o in occurrences],
            },
            schema=_SCHEMA,
        )

    def _cached(self, kind: str, params: dict[str, Any], compute: Callable[[], dict]) -> dict:
        if self.cache is None:
            return compute()
        digest = hashlib.md5(json.dumps(params, sort_keys=True, default=str).encode()).hexdigest()
        return self.cache.get_or_set(f"heatmap:{kind}:{digest}", CACHE_TTL, compute)

    def grid(
        self,
        bounds: tuple[float, float, float, float],
        zoom: int = 10,
        crime_type_id: int | None = None,
        days: int = DEFAULT_DAYS,
    ) -> dict[str, Any]:
        params = {"bounds": list(bounds), "zoom": zoom, "crime_type_id": crime_type_id, "days": days}
        return self._cached("grid", params, lambda: self._grid(bounds, zoom, crime_type_id, days))

    def _grid(self, bounds, zoom, crime_type_id, days) -> dict[str, Any]:
        size = grid_size_for_zoom(zoom)
        df = self._frame(bounds, crime_type_id, days)
        if df.is_empty():
            return {"points": [], "total_occurrences": 0, "grid_size": size, "bounds": list(bounds)}
        cells = (
            df.with_columns(
                ((pl.col("latitude") / size).floor() * size).alias("lat_cell"),
                ((pl.col("longitude") / size).floor() * size).alias("lon_cell"),
            )
            .group_by("lat_cell", "lon_cell")
            .agg(
                pl.len().alias("count"),
                pl.col("confidence_score").mean().alias("avg_confidence"),
            )
            .sort(["count", "lat_cell", "lon_cell"], descending=[True, False, False])
        )
        max_count = int(cells["count"].max()) or 1
        points = [
            {
                "latitude": round(row["lat_cell"] + size / 2, 6),
                "longitude": round(row["lon_cell"] + size / 2, 6),
                "count": int(row["count"]),
                "intensity": round(row["count"] / max_count, 4),
                "avg_confidence": round(row["avg_confidence"], 2),
            }
            for row in cells.iter_rows(named=True)
        ]
        return {
            "points": points,
            "total_occurrences": df.height,
            "grid_size": size,
            "bounds": list(bounds),
        }

    def by_region(
        self,
        bounds: tuple[float, float, float, float],
        crime_type_id: int | None = None,
        days: int = DEFAULT_DAYS,
    ) -> dict[str, Any]:
        df = self._frame(bounds, crime_type_id, days).filter(pl.col("region_id").is_not_null())
        if df.is_empty():
            return {"regions": [], "total_occurrences": 0}
        grouped = (
            df.group_by("region_id")
            .agg(pl.len().alias("count"), pl.col("confidence_score").mean().alias("avg_confidence"))
            .sort(["count", "region_id"], descending=[True, False])
        )
        ids = grouped["region_id"].to_list()
        names = {r.region_id: r for r in self.db.query(Region).filter(Region.region_id.in_(ids)).all()}
        max_count = int(grouped["count"].max()) or 1
        regions = []
        for row in grouped.iter_rows(named=True):
            region = names.get(row["region_id"])
            regions.append({
                "region_id": row["region_id"],
                "region_name": region.name if region else None,
                "region_code": region.code if region else None,
                "count": int(row["count"]),
                "intensity": round(row["count"] / max_count, 4),
                "avg_confidence": round(row["avg_confidence"], 2),
            })
        return {"regions": regions, "total_occurrences": df.height}

    def distribution_by_crime_type(
        self,
        bounds: tuple[float, float, float, float],
        days: int = DEFAULT_DAYS,
    ) -> dict[str, Any]:
        df = self._frame(bounds, None, days)
        if df.is_empty():
            return {"distribution": [], "total": 0}
        grouped = (
            df.group_by("crime_type_id")
            .agg(pl.len().alias("count"))
            .sort(["count", "crime_type_id"], descending=[True, False])
        )
        ids = grouped["crime_type_id"].to_list()
        names = {
            ct.crime_type_id: ct.name
            for ct in self.db.query(CrimeType).filter(CrimeType.crime_type_id.in_(ids)).all()
        }
        total = df.height
        return {
            "distribution": [
                {
                    "crime_type_id": row["crime_type_id"],
                    "crime_type_name": names.get(row["crime_type_id"], "Unknown"),
                    "count": int(row["count"]),
                    "percentage": round(row["count"] / total * 100, 2),
                }
                for row in grouped.iter_rows(named=True)
            ],
            "total": total,
        }
