"""Base class for routing/geocoding provider adapters.

Each adapter implements the ``_fetch_*`` hooks for its vendor API and
normalizes responses into the shared Route / Address / TrafficData value
objects. The base class handles what every provider shares:

  - quota admission and call recording (QuotaTracker)
  - response caching (routes 300s, geocodes 24h) in the shared cache
  - health checks that never raise

Retry and fallback live one level up in ProviderGateway.
"""
from __future__ import annotations

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from app.config import settings
from app.errors import ProviderError
from app.modules.quota_tracker import QuotaTracker
from app.utils.cache import Cache
from app.utils.http_retry import request_json
from app.values import Address, Coordinates, Route, RouteOptions, TrafficData

logger = logging.getLogger(__name__)

MAX_GEOCODE_RESULTS = 5


class MapProvider(ABC):
    """Uniform routing/geocoding contract over one external provider."""

    name: str = ""
    # Per-operation cost in USD, recorded with every call
    costs: dict[str, float] = {}

    def __init__(
        self,
        cache: Cache,
        quota: QuotaTracker,
        client: httpx.Client | None = None,
        timeout: float | None = None,
    ) -> None:
        self.cache = cache
        self.quota = quota
        self.client = client or httpx.Client(
            timeout=timeout or settings.MAP_PROVIDER_TIMEOUT, follow_redirects=True
        )

    def provider_name(self) -> str:
        return self.name

    # -- public contract -------------------------------------------------

    def calculate_route(
        self, origin: Coordinates, destination: Coordinates, options: RouteOptions | None = None
    ) -> Route:
        options = options or RouteOptions()
        key = self._route_cache_key(origin, destination, options)
        cached = self.cache.get(key)
        if cached is not None:
            return Route.from_dict(cached)
        self._admit("route")
        route = self._fetch_route(origin, destination, options)
        self._record("route")
        self.cache.set(key, route.to_dict(), settings.ROUTE_CACHE_TTL)
        return route

    def alternative_routes(
        self, origin: Coordinates, destination: Coordinates, count: int = 3
    ) -> list[Route]:
        self._admit("route", essential=False)
        routes = self._fetch_alternatives(origin, destination, count)
        self._record("route")
        return routes[:count]

    def geocode(self, query: str) -> list[Address]:
        key = f"geocode:{self.name}:{hashlib.md5(query.strip().lower().encode()).hexdigest()}"
        cached = self.cache.get(key)
        if cached is not None:
            return [Address.from_dict(a) for a in cached]
        self._admit("geocode")
        addresses = self._fetch_geocode(query)[:MAX_GEOCODE_RESULTS]
        self._record("geocode")
        self.cache.set(key, [a.to_dict() for a in addresses], settings.GEOCODE_CACHE_TTL)
        return addresses

    def reverse_geocode(self, point: Coordinates) -> Address:
        key = f"reverse_geocode:{self.name}:{point.latitude:.6f}:{point.longitude:.6f}"
        cached = self.cache.get(key)
        if cached is not None:
            return Address.from_dict(cached)
        self._admit("geocode")
        address = self._fetch_reverse_geocode(point)
        self._record("geocode")
        self.cache.set(key, address.to_dict(), settings.GEOCODE_CACHE_TTL)
        return address

    def traffic_data(self, route: Route) -> TrafficData:
        self._admit("traffic")
        data = self._fetch_traffic(route)
        self._record("traffic")
        return data

    def is_available(self) -> bool:
        try:
            return self._health_check()
        except (ProviderError, httpx.HTTPError, ValueError, KeyError) as exc:
            logger.warning("Health check for %s failed: %s", self.name, exc)
            return False

    # -- provider hooks --------------------------------------------------

    @abstractmethod
    def _fetch_route(self, origin: Coordinates, destination: Coordinates, options: RouteOptions) -> Route:
        ...

    @abstractmethod
    def _fetch_alternatives(self, origin: Coordinates, destination: Coordinates, count: int) -> list[Route]:
        ...

    @abstractmethod
    def _fetch_geocode(self, query: str) -> list[Address]:
        ...

    @abstractmethod
    def _fetch_reverse_geocode(self, point: Coordinates) -> Address:
        ...

    @abstractmethod
    def _fetch_traffic(self, route: Route) -> TrafficData:
        ...

    @abstractmethod
    def _health_check(self) -> bool:
        ...

    # -- helpers ---------------------------------------------------------

    def _get(self, url: str, params: dict[str, Any] | None = None, headers: dict[str, str] | None = None) -> Any:
        return request_json(self.client, self.name, url, params=params, headers=headers)

    def _admit(self, operation: str, essential: bool = True) -> None:
        self.quota.admit(self.name, operation, essential=essential)

    def _record(self, operation: str) -> None:
        self.quota.record_call(self.name, operation, self.costs.get(operation, 0.0))

    def _route_cache_key(self, origin: Coordinates, destination: Coordinates, options: RouteOptions) -> str:
        options_hash = hashlib.md5(json.dumps(options.to_dict(), sort_keys=True).encode()).hexdigest()
        return (
            f"route:{self.name}:{origin.latitude:.6f},{origin.longitude:.6f}:"
            f"{destination.latitude:.6f},{destination.longitude:.6f}:{options_hash}"
        )

    def close(self) -> None:
        self.client.close()


def require_key(provider: str, key: str | None) -> str:
    if not key:
        raise ProviderError.auth_failed(provider)
    return key
