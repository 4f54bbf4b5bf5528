"""Occurrence analytics: time series, temporal patterns and dashboard indicators.

Occurrences matching an ``OccurrenceFilters`` are loaded once into a polars
frame and aggregated there. Day-of-week values follow the 0 = Sunday …
6 = Saturday convention used by alert preferences. Weeks start on Monday.

Time-series results are cached for 5 minutes, dashboard indicators for 15.
"""
from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

import polars as pl
from sqlalchemy.orm import Session

from app.models.base import OccurrenceSourceEnum, OccurrenceStatusEnum
from app.models.crime_type import CrimeType
from app.models.occurrence import Occurrence
from app.models.region import Region
from app.models.risk_index import RiskIndex
from app.modules.risk_scoring import high_risk_threshold
from app.utils.cache import Cache
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

TIME_SERIES_CACHE_TTL = 300
DASHBOARD_CACHE_TTL = 900
DISTRIBUTION_LIMIT = 20
# Month-over-month change inside this band (percent) counts as stable
TREND_BAND_PERCENT = 5.0

GRANULARITIES: dict[str, str] = {"hour": "1h", "day": "1d", "week": "1w", "month": "1mo"}
DEFAULT_GRANULARITY = "day"
DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")

_SCHEMA = {
    "timestamp": pl.Datetime("us"),
    "crime_type_id": pl.Int64,
    "region_id": pl.Int64,
    "confidence_score": pl.Int64,
    "severity": pl.Utf8,
    "source": pl.Utf8,
    "status": pl.Utf8,
}


@dataclass(frozen=True)
class OccurrenceFilters:
    region_id: int | None = None
    region_ids: tuple[int, ...] = ()
    crime_type_id: int | None = None
    start: datetime | None = None
    end: datetime | None = None
    # Last N days; ignored when an explicit start/end range is given
    days: int | None = None

    def cache_params(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def normalize_granularity(granularity: str | None) -> str:
    """Known granularity, or ``day`` for anything else."""
    value = (granularity or "").strip().lower()
    return value if value in GRANULARITIES else DEFAULT_GRANULARITY


def percent_change(before: int, after: int) -> float:
    if before > 0:
        return round((after - before) / before * 100, 2)
    return 100.0 if after > 0 else 0.0


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


def _day_of_week() -> pl.Expr:
    # polars weekday is ISO (Monday = 1 … Sunday = 7)
    return (pl.col("timestamp").dt.weekday() % 7).alias("day_of_week")


class _OccurrenceFrames:
    """Shared loading and caching for the analytics services."""

    cache_prefix = "analytics"
    cache_ttl = DASHBOARD_CACHE_TTL

    def __init__(
        self,
        db: Session,
        cache: Cache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.cache = cache
        self._clock = clock

    def frame(
        self,
        filters: OccurrenceFilters,
        statuses: tuple[OccurrenceStatusEnum, ...] | None = None,
    ) -> pl.DataFrame:
        q = self.db.query(
            Occurrence.timestamp,
            Occurrence.crime_type_id,
            Occurrence.region_id,
            Occurrence.confidence_score,
            Occurrence.severity,
            Occurrence.source,
            Occurrence.status,
        )
        if statuses:
            q = q.filter(Occurrence.status.in_(list(statuses)))
        if filters.region_id is not None:
            q = q.filter(Occurrence.region_id == filters.region_id)
        if filters.region_ids:
            q = q.filter(Occurrence.region_id.in_(list(filters.region_ids)))
        if filters.crime_type_id is not None:
            q = q.filter(Occurrence.crime_type_id == filters.crime_type_id)
        if filters.start is not None and filters.end is not None:
            q = q.filter(Occurrence.timestamp >= filters.start, Occurrence.timestamp <= filters.end)
        elif filters.days is not None:
            q = q.filter(Occurrence.timestamp >= self._clock() - timedelta(days=filters.days))
        rows = q.all()
        return pl.DataFrame(
            {
                "timestamp": [r.timestamp for r in rows],
                "crime_type_id": [r.crime_type_id for r in rows],
                "region_id": [r.region_id for r in rows],
                "confidence_score": [r.confidence_score for r in rows],
                "severity": [_enum_value(r.severity) for r in rows],
                "source": [_enum_value(r.source) for r in rows],
                "status": [_enum_value(r.status) for r in rows],
            },
            schema=_SCHEMA,
        )

    def _cached(self, kind: str, params: dict[str, Any], compute: Callable[[], dict]) -> dict:
        if self.cache is None:
            return compute()
        digest = hashlib.md5(json.dumps(params, sort_keys=True, default=str).encode()).hexdigest()
        return self.cache.get_or_set(f"{self.cache_prefix}:{kind}:{digest}", self.cache_ttl, compute)


def _series(df: pl.DataFrame, granularity: str) -> list[dict[str, Any]]:
    if df.is_empty():
        return []
    grouped = (
        df.with_columns(pl.col("timestamp").dt.truncate(GRANULARITIES[granularity]).alias("period"))
        .group_by("period")
        .agg(pl.len().alias("count"), pl.col("confidence_score").mean().alias("avg_confidence"))
        .sort("period")
    )
    return [
        {
            "period": row["period"].isoformat(),
            "count": int(row["count"]),
            "avg_confidence": round(row["avg_confidence"], 2),
        }
        for row in grouped.iter_rows(named=True)
    ]


def _counts_by(df: pl.DataFrame, column: str, size: int) -> list[int]:
    """Dense counts for integer buckets 0..size-1 of ``column``."""
    counts = [0] * size
    if df.is_empty():
        return counts
    for bucket, count in df.group_by(column).agg(pl.len().alias("count")).iter_rows():
        counts[int(bucket)] = int(count)
    return counts


class TimeSeriesService(_OccurrenceFrames):
    """Occurrence counts over time for active occurrences."""

    cache_prefix = "timeseries"
    cache_ttl = TIME_SERIES_CACHE_TTL

    def _active(self, filters: OccurrenceFilters) -> pl.DataFrame:
        return self.frame(filters, statuses=(OccurrenceStatusEnum.ACTIVE,))

    def time_series(self, filters: OccurrenceFilters, granularity: str = DEFAULT_GRANULARITY) -> dict[str, Any]:
        granularity = normalize_granularity(granularity)
        params = {"filters": filters.cache_params(), "granularity": granularity}
        return self._cached("series", params, lambda: self._time_series(filters, granularity))

    def _time_series(self, filters: OccurrenceFilters, granularity: str) -> dict[str, Any]:
        df = self._active(filters)
        return {
            "series": _series(df, granularity),
            "granularity": granularity,
            "total_occurrences": df.height,
        }

    def hourly_pattern(self, filters: OccurrenceFilters) -> dict[str, Any]:
        return self._cached("hourly", filters.cache_params(), lambda: self._hourly_pattern(filters))

    def _hourly_pattern(self, filters: OccurrenceFilters) -> dict[str, Any]:
        df = self._active(filters).with_columns(pl.col("timestamp").dt.hour().alias("hour"))
        counts = _counts_by(df, "hour", 24)
        total = sum(counts)
        return {
            "pattern": [{"hour": h, "label": f"{h:02d}:00", "count": c} for h, c in enumerate(counts)],
            "peak_hour": counts.index(max(counts)) if total else None,
            "total": total,
        }

    def day_of_week_pattern(self, filters: OccurrenceFilters) -> dict[str, Any]:
        return self._cached("dow", filters.cache_params(), lambda: self._day_of_week_pattern(filters))

    def _day_of_week_pattern(self, filters: OccurrenceFilters) -> dict[str, Any]:
        df = self._active(filters).with_columns(_day_of_week())
        counts = _counts_by(df, "day_of_week", 7)
        total = sum(counts)
        return {
            "pattern": [
                {"day_of_week": d, "day_name": DAY_NAMES[d], "count": c} for d, c in enumerate(counts)
            ],
            "peak_day": DAY_NAMES[counts.index(max(counts))] if total else None,
            "total": total,
        }

    def hour_day_matrix(self, filters: OccurrenceFilters) -> dict[str, Any]:
        """7 x 24 grid of counts by day of week and hour, with intensity."""
        return self._cached("hour_day", filters.cache_params(), lambda: self._hour_day_matrix(filters))

    def _hour_day_matrix(self, filters: OccurrenceFilters) -> dict[str, Any]:
        df = self._active(filters).with_columns(_day_of_week(), pl.col("timestamp").dt.hour().alias("hour"))
        matrix = [[0] * 24 for _ in range(7)]
        if not df.is_empty():
            grouped = df.group_by("day_of_week", "hour").agg(pl.len().alias("count"))
            for dow, hour, count in grouped.iter_rows():
                matrix[int(dow)][int(hour)] = int(count)
        max_count = max(max(row) for row in matrix)
        cells = [
            {
                "day_of_week": dow,
                "day_name": DAY_NAMES[dow],
                "hour": hour,
                "count": matrix[dow][hour],
                "intensity": round(matrix[dow][hour] / max_count, 4) if max_count else 0.0,
            }
            for dow in range(7)
            for hour in range(24)
        ]
        return {"heatmap": cells, "max_count": max_count}

    def compare_periods(
        self,
        filters: OccurrenceFilters,
        first: tuple[datetime, datetime],
        second: tuple[datetime, datetime],
        granularity: str = DEFAULT_GRANULARITY,
    ) -> dict[str, Any]:
        granularity = normalize_granularity(granularity)
        periods = []
        for start, end in (first, second):
            data = self.time_series(dataclasses.replace(filters, start=start, end=end, days=None), granularity)
            periods.append({
                "start": start.isoformat(),
                "end": end.isoformat(),
                "series": data["series"],
                "total": data["total_occurrences"],
            })
        change = percent_change(periods[0]["total"], periods[1]["total"])
        return {
            "period1": periods[0],
            "period2": periods[1],
            "comparison": {
                "absolute_change": periods[1]["total"] - periods[0]["total"],
                "percent_change": change,
                "trend": "increasing" if change > 0 else "decreasing" if change < 0 else "stable",
            },
            "granularity": granularity,
        }


class AnalyticsService(_OccurrenceFrames):
    """Dashboard indicators over occurrences of every status."""

    def dashboard(self, filters: OccurrenceFilters) -> dict[str, Any]:
        return self._cached("dashboard", filters.cache_params(), lambda: self._dashboard(filters))

    def _dashboard(self, filters: OccurrenceFilters) -> dict[str, Any]:
        df = self.frame(filters)
        return {
            "summary": self._summary(df),
            "distribution_by_type": self._by_crime_type(df),
            "distribution_by_region": self._by_region(df),
            "temporal_trends": self._trends(df),
            "data_quality": self._quality(df),
            "generated_at": self._clock().isoformat(),
        }

    def summary(self, filters: OccurrenceFilters) -> dict[str, Any]:
        return self._summary(self.frame(filters))

    def distribution_by_crime_type(self, filters: OccurrenceFilters) -> dict[str, Any]:
        return self._by_crime_type(self.frame(filters))

    def distribution_by_region(self, filters: OccurrenceFilters) -> dict[str, Any]:
        return self._by_region(self.frame(filters))

    def temporal_trends(self, filters: OccurrenceFilters) -> dict[str, Any]:
        return self._trends(self.frame(filters))

    def data_quality(self, filters: OccurrenceFilters) -> dict[str, Any]:
        return self._quality(self.frame(filters))

    # -- aggregations ----------------------------------------------------

    def _summary(self, df: pl.DataFrame) -> dict[str, Any]:
        def count(column: str, value: str) -> int:
            return df.filter(pl.col(column) == value).height

        threshold = high_risk_threshold()
        return {
            "total_occurrences": df.height,
            "active_occurrences": count("status", OccurrenceStatusEnum.ACTIVE.value),
            "collaborative_occurrences": count("source", OccurrenceSourceEnum.COLLABORATIVE.value),
            "official_occurrences": count("source", OccurrenceSourceEnum.OFFICIAL.value),
            "average_confidence_score": round(df["confidence_score"].mean(), 2) if df.height else 0.0,
            "high_risk_regions": self.db.query(RiskIndex).filter(RiskIndex.value >= threshold).count(),
        }

    def _by_crime_type(self, df: pl.DataFrame) -> dict[str, Any]:
        if df.is_empty():
            return {"distribution": [], "total": 0}
        grouped = (
            df.group_by("crime_type_id")
            .agg(pl.len().alias("count"))
            .sort(["count", "crime_type_id"], descending=[True, False])
            .head(DISTRIBUTION_LIMIT)
        )
        ids = grouped["crime_type_id"].to_list()
        types = {ct.crime_type_id: ct for ct in self.db.query(CrimeType).filter(CrimeType.crime_type_id.in_(ids))}
        parents = {
            ct.crime_type_id: ct.name
            for ct in self.db.query(CrimeType).filter(
                CrimeType.crime_type_id.in_([t.parent_id for t in types.values() if t.parent_id])
            )
        }
        total = int(grouped["count"].sum())
        distribution = []
        for row in grouped.iter_rows(named=True):
            crime_type = types.get(row["crime_type_id"])
            distribution.append({
                "crime_type_id": row["crime_type_id"],
                "crime_type_name": crime_type.name if crime_type else "Unknown",
                "category_name": parents.get(crime_type.parent_id, "Unknown") if crime_type else "Unknown",
                "count": int(row["count"]),
                "percentage": round(row["count"] / total * 100, 2),
            })
        return {"distribution": distribution, "total": total}

    def _by_region(self, df: pl.DataFrame) -> dict[str, Any]:
        df = df.filter(pl.col("region_id").is_not_null())
        if df.is_empty():
            return {"distribution": [], "total": 0}
        grouped = (
            df.group_by("region_id")
            .agg(pl.len().alias("count"), pl.col("confidence_score").mean().alias("avg_confidence"))
            .sort(["count", "region_id"], descending=[True, False])
            .head(DISTRIBUTION_LIMIT)
        )
        ids = grouped["region_id"].to_list()
        regions = {r.region_id: r for r in self.db.query(Region).filter(Region.region_id.in_(ids))}
        indexes = {i.region_id: i for i in self.db.query(RiskIndex).filter(RiskIndex.region_id.in_(ids))}
        total = int(grouped["count"].sum())
        distribution = []
        for row in grouped.iter_rows(named=True):
            region = regions.get(row["region_id"])
            index = indexes.get(row["region_id"])
            distribution.append({
                "region_id": row["region_id"],
                "region_name": region.name if region else "Unknown",
                "region_code": region.code if region else None,
                "count": int(row["count"]),
                "percentage": round(row["count"] / total * 100, 2),
                "avg_confidence": round(row["avg_confidence"], 2),
                "risk_index": index.value if index else 0.0,
            })
        return {"distribution": distribution, "total": total}

    def _trends(self, df: pl.DataFrame) -> dict[str, Any]:
        now = self._clock()

        def since(delta: timedelta) -> pl.DataFrame:
            return df.filter(pl.col("timestamp") >= now - delta)

        def counts_only(series: list[dict]) -> list[dict]:
            return [{"period": s["period"], "count": s["count"]} for s in series]

        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        last_month_start = (month_start - timedelta(days=1)).replace(day=1)
        current_month = df.filter(pl.col("timestamp") >= month_start).height
        last_month = df.filter(
            (pl.col("timestamp") >= last_month_start) & (pl.col("timestamp") < month_start)
        ).height

        direction, change = "stable", 0.0
        if last_month > 0:
            change = percent_change(last_month, current_month)
            if change > TREND_BAND_PERCENT:
                direction = "increasing"
            elif change < -TREND_BAND_PERCENT:
                direction = "decreasing"
        return {
            "daily": counts_only(_series(since(timedelta(days=30)), "day")),
            "weekly": counts_only(_series(since(timedelta(weeks=12)), "week")),
            "monthly": counts_only(_series(since(timedelta(days=365)), "month")),
            "trend": {
                "direction": direction,
                "percentage": change,
                "current_month": current_month,
                "last_month": last_month,
            },
        }

    def _quality(self, df: pl.DataFrame) -> dict[str, Any]:
        total = df.height

        def rate(part: int) -> float:
            return round(part / total * 100, 2) if total else 0.0

        by_source = {}
        confidence_distribution = {}
        if total:
            grouped = df.group_by("source").agg(
                pl.col("confidence_score").mean().alias("avg_confidence"), pl.len().alias("count")
            )
            by_source = {
                row["source"]: {"avg_confidence": round(row["avg_confidence"], 2), "count": int(row["count"])}
                for row in grouped.sort("source").iter_rows(named=True)
            }
            scores = df.group_by("confidence_score").agg(pl.len().alias("count")).sort("confidence_score")
            confidence_distribution = {str(score): int(count) for score, count in scores.iter_rows()}

        statuses = {s.value: df.filter(pl.col("status") == s.value).height for s in OccurrenceStatusEnum}
        complete = df.filter(
            pl.col("crime_type_id").is_not_null()
            & pl.col("region_id").is_not_null()
            & pl.col("severity").is_not_null()
        ).height
        return {
            "confidence_by_source": by_source,
            "deduplication": {
                "total_occurrences": total,
                "merged_occurrences": statuses[OccurrenceStatusEnum.MERGED.value],
                "deduplication_rate": rate(statuses[OccurrenceStatusEnum.MERGED.value]),
            },
            "status_breakdown": statuses,
            "confidence_distribution": confidence_distribution,
            "data_completeness": {
                "complete_occurrences": complete,
                "completeness_rate": rate(complete),
            },
        }
