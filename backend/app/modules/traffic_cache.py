"""Segmented traffic cache.

Routes are cut into ~5 km segments; each segment's share of the provider's
traffic answer is cached under a key derived from every rounded point along it, so
overlapping routes reuse each other's traffic data. Durations are split
evenly across segments; the delay is stored whole on each and a full hit
reports the largest.

TTL follows the clock (traffic changes fastest at rush hour):
  weekend            600s   (checked first)
  rush 07-09, 17-19  120s
  night 22-06        900s
  otherwise          300s

A cached segment is also treated as stale when the conditions it was stored
under no longer hold: rush-hour flag flipped, weekend flag flipped, or more
than two hours passed.
"""
from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from app.utils.cache import Cache
from app.utils.clock import utcnow
from app.utils.geo import haversine_meters
from app.values import Route, TrafficData

logger = logging.getLogger(__name__)

KEY_PREFIX = "traffic_segment:"
SEGMENT_LENGTH_METERS = 5000.0

WEEKEND_TTL = 600
RUSH_HOUR_TTL = 120
NIGHT_TTL = 900
DEFAULT_TTL = 300

_RUSH_HOURS = (range(7, 10), range(17, 20))
_MAX_CONDITION_GAP = timedelta(hours=2)

# Consecutive path points, first and last shared with the neighboring segments
Segment = tuple[tuple[float, float], ...]


def is_rush_hour(now: datetime) -> bool:
    return any(now.hour in hours for hours in _RUSH_HOURS)


def is_weekend(now: datetime) -> bool:
    return now.weekday() >= 5


def is_night(now: datetime) -> bool:
    return now.hour >= 22 or now.hour < 6


def ttl_for(now: datetime) -> int:
    if is_weekend(now):
        return WEEKEND_TTL
    if is_rush_hour(now):
        return RUSH_HOUR_TTL
    if is_night(now):
        return NIGHT_TTL
    return DEFAULT_TTL


def conditions_for(now: datetime) -> dict[str, Any]:
    return {
        "hour": now.hour,
        "day_of_week": now.weekday(),
        "is_weekend": is_weekend(now),
        "is_rush_hour": is_rush_hour(now),
        "recorded_at": now.isoformat(),
    }


def conditions_changed(stored: dict[str, Any], now: datetime) -> bool:
    if stored.get("is_rush_hour") != is_rush_hour(now):
        return True
    if stored.get("is_weekend") != is_weekend(now):
        return True
    recorded = stored.get("recorded_at")
    if recorded is None:
        return True
    return abs(now - datetime.fromisoformat(recorded)) > _MAX_CONDITION_GAP


def split_segments(route: Route, segment_length: float = SEGMENT_LENGTH_METERS) -> list[Segment]:
    """Cut the route path into consecutive runs of roughly ``segment_length``."""
    path = route.path()
    if len(path) < 2:
        return [(route.origin.as_tuple, route.destination.as_tuple)]
    segments: list[Segment] = []
    run_points = [path[0]]
    run = 0.0
    for prev, point in zip(path, path[1:]):
        run += haversine_meters(prev[0], prev[1], point[0], point[1])
        run_points.append(point)
        if run >= segment_length:
            segments.append(tuple(run_points))
            run_points, run = [point], 0.0
    if len(run_points) > 1:
        segments.append(tuple(run_points))
    return segments


def segment_key(segment: Segment) -> str:
    raw = ":".join(f"{lat:.4f},{lon:.4f}" for lat, lon in segment)
    return KEY_PREFIX + hashlib.md5(raw.encode()).hexdigest()


class TrafficSegmentCache:
    def __init__(
        self,
        cache: Cache,
        segment_length: float = SEGMENT_LENGTH_METERS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.segment_length = segment_length
        self._clock = clock
        self.hits = 0
        self.misses = 0

    def get(self, route: Route, compute_fn: Callable[[Route], TrafficData]) -> TrafficData:
        """Traffic for ``route`` from cached segments, or one fresh ``compute_fn`` call."""
        now = self._clock()
        segments = split_segments(route, self.segment_length)
        keys = [segment_key(s) for s in segments]

        cached: list[dict[str, Any]] = []
        for key in keys:
            entry = self.cache.get(key)
            if entry is None or conditions_changed(entry.get("conditions", {}), now):
                break
            cached.append(entry)

        if len(cached) == len(keys):
            self.hits += 1
            return self._aggregate(cached)

        self.misses += 1
        fresh = compute_fn(route)
        self._store(keys, fresh, now)
        return fresh

    def _aggregate(self, entries: list[dict[str, Any]]) -> TrafficData:
        incidents: list[dict] = []
        for entry in entries:
            for incident in entry.get("incidents", []):
                if incident not in incidents:
                    incidents.append(incident)
        segments = tuple(
            {
                "current_duration": e["current_duration"],
                "typical_duration": e["typical_duration"],
                "delay_seconds": e["delay_seconds"],
            }
            for e in entries
        )
        return TrafficData(
            current_duration=sum(e["current_duration"] for e in entries),
            typical_duration=sum(e["typical_duration"] for e in entries),
            delay=max(e["delay_seconds"] for e in entries),
            segments=segments,
            incidents=tuple(incidents),
            cached=True,
        )

    def _store(self, keys: list[str], data: TrafficData, now: datetime) -> None:
        share = 1.0 / len(keys)
        ttl = ttl_for(now)
        conditions = conditions_for(now)
        for key in keys:
            self.cache.set(
                key,
                {
                    "current_duration": data.current_duration * share,
                    "typical_duration": data.typical_duration * share,
                    "delay_seconds": data.delay_seconds,
                    "incidents": list(data.incidents),
                    "conditions": conditions,
                },
                ttl,
            )
        logger.debug("Cached traffic for %d segments (ttl=%ds)", len(keys), ttl)

    def invalidate(self, route: Route) -> int:
        keys = [segment_key(s) for s in split_segments(route, self.segment_length)]
        for key in keys:
            self.cache.delete(key)
        return len(keys)

    def cleanup_expired_cache(self) -> int:
        """Drop segments stored under conditions that no longer hold."""
        now = self._clock()
        removed = 0
        for key in self.cache.keys(KEY_PREFIX):
            entry = self.cache.get(key)
            if entry is None:
                continue
            if conditions_changed(entry.get("conditions", {}), now):
                self.cache.delete(key)
                removed += 1
        if removed:
            logger.info("Removed %d stale traffic segments", removed)
        return removed

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        lookups = self.hits + self.misses
        return {
            "cached_segments": len(self.cache.keys(KEY_PREFIX)),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
            "current_ttl": ttl_for(now),
            "conditions": conditions_for(now),
            "segment_length_meters": self.segment_length,
        }
