"""Provider factory and the retrying, falling-back gateway over it.

Call policy for every gateway operation:
  1. primary provider, retried on transient errors (3 attempts, 1s/2s backoff)
  2. on a non-retryable error or exhausted retries, the fallback provider once
  3. both failed → ProviderError(code="unavailable") naming both error codes

"Nothing found" answers (no route, no geocode match) are results, not
failures: they never trigger the fallback.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, TypeVar

import httpx

from app.config import settings
from app.errors import ConfigurationError, NoRouteFoundError, ProviderError
from app.modules.google_maps_client import GoogleMapsClient
from app.modules.here_client import HereClient
from app.modules.map_provider import MAX_GEOCODE_RESULTS, MapProvider
from app.modules.mapbox_client import MapboxClient
from app.modules.nominatim_client import NominatimClient
from app.modules.quota_tracker import QuotaTracker
from app.utils.cache import Cache, get_cache
from app.utils.http_retry import retry_provider_call
from app.values import Address, Coordinates, Route, RouteOptions, TrafficData

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROVIDER_CLASSES: dict[str, type[MapProvider]] = {
    "google": GoogleMapsClient,
    "here": HereClient,
    "mapbox": MapboxClient,
    "nominatim": NominatimClient,
}
SUPPORTED_PROVIDERS = list(PROVIDER_CLASSES)
DEFAULT_FALLBACK_ORDER = ["nominatim", "google", "here", "mapbox"]


class ProviderFactory:
    """Resolves provider adapters by name; instances are cached per name."""

    def __init__(
        self,
        cache: Cache,
        quota: QuotaTracker,
        client: httpx.Client | None = None,
        classes: dict[str, type[MapProvider]] | None = None,
    ) -> None:
        self.cache = cache
        self.quota = quota
        self.client = client
        self.classes = classes or PROVIDER_CLASSES
        self._instances: dict[str, MapProvider] = {}
        self._lock = threading.Lock()

    def create(self, name: str) -> MapProvider:
        name = name.strip().lower()
        if name not in self.classes:
            raise ConfigurationError(
                f"Unsupported map provider '{name}'", supported=sorted(self.classes)
            )
        with self._lock:
            if name not in self._instances:
                self._instances[name] = self.classes[name](self.cache, self.quota, client=self.client)
            return self._instances[name]

    def fallback_name(self, primary: str, configured: str | None = None) -> str | None:
        if configured and configured.strip().lower() != primary:
            return configured.strip().lower()
        for name in DEFAULT_FALLBACK_ORDER:
            if name != primary and name in self.classes:
                return name
        return None

    def clear(self) -> None:
        with self._lock:
            self._instances.clear()


class ProviderGateway:
    """Uniform routing/geocoding entry point with retry and single fallback."""

    def __init__(
        self,
        primary: MapProvider,
        fallback: MapProvider | None = None,
        *,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback if fallback is not primary else None
        self.max_attempts = max_attempts or settings.PROVIDER_MAX_ATTEMPTS
        self.base_delay = settings.PROVIDER_BACKOFF_BASE_SECONDS if base_delay is None else base_delay
        self.max_delay = settings.PROVIDER_BACKOFF_MAX_SECONDS if max_delay is None else max_delay

    def provider_name(self) -> str:
        return self.primary.provider_name()

    def is_available(self) -> bool:
        if self.primary.is_available():
            return True
        return self.fallback is not None and self.fallback.is_available()

    def _call(self, label: str, op: Callable[[MapProvider], T]) -> T:
        try:
            return retry_provider_call(
                op,
                self.primary,
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                label=label,
            )
        except ProviderError as primary_exc:
            if primary_exc.is_not_found:
                raise
            if self.fallback is None:
                raise
            logger.warning(
                "%s failed on %s (%s) — falling back to %s",
                label, self.primary.name, primary_exc.code, self.fallback.name,
            )
            try:
                return op(self.fallback)
            except ProviderError as fallback_exc:
                if fallback_exc.is_not_found:
                    raise
                logger.error(
                    "%s failed on fallback %s (%s) after primary %s (%s)",
                    label, self.fallback.name, fallback_exc.code, self.primary.name, primary_exc.code,
                )
                raise ProviderError.unavailable(
                    self.fallback.name,
                    "all providers failed",
                    primary_provider=self.primary.name,
                    primary_error=primary_exc.code,
                    fallback_error=fallback_exc.code,
                ) from fallback_exc

    def calculate_route(
        self, origin: Coordinates, destination: Coordinates, options: RouteOptions | None = None
    ) -> Route:
        try:
            return self._call("route", lambda p: p.calculate_route(origin, destination, options))
        except ProviderError as exc:
            if exc.is_not_found:
                raise NoRouteFoundError(
                    "No route found between the given points",
                    origin=origin.to_dict(),
                    destination=destination.to_dict(),
                    provider=exc.provider,
                ) from exc
            raise

    def alternative_routes(self, origin: Coordinates, destination: Coordinates, count: int = 3) -> list[Route]:
        """Up to ``count`` routes; empty when suppressed by quota throttling."""
        try:
            return self._call("alternative routes", lambda p: p.alternative_routes(origin, destination, count))
        except ProviderError as exc:
            if exc.is_not_found:
                return []
            if exc.code == ProviderError.THROTTLED or exc.details.get("primary_error") == ProviderError.THROTTLED:
                logger.info("Alternative routes suppressed by quota throttling")
                return []
            raise

    def geocode(self, query: str) -> list[Address]:
        try:
            return self._call("geocode", lambda p: p.geocode(query))[:MAX_GEOCODE_RESULTS]
        except ProviderError as exc:
            if exc.is_not_found:
                return []
            raise

    def reverse_geocode(self, point: Coordinates) -> Address:
        return self._call("reverse geocode", lambda p: p.reverse_geocode(point))

    def traffic_data(self, route: Route) -> TrafficData:
        return self._call("traffic", lambda p: p.traffic_data(route))

    def statistics(self) -> dict[str, Any]:
        names = [self.primary.name] + ([self.fallback.name] if self.fallback else [])
        return {
            "primary": self.primary.name,
            "fallback": self.fallback.name if self.fallback else None,
            "providers": self.primary.quota.statistics(names),
        }


def build_gateway(
    cache: Cache | None = None,
    primary: str | None = None,
    fallback: str | None = None,
    client: httpx.Client | None = None,
) -> ProviderGateway:
    cache = cache or get_cache()
    factory = ProviderFactory(cache, QuotaTracker(cache), client=client)
    primary_name = (primary or settings.MAP_PROVIDER).strip().lower()
    primary_provider = factory.create(primary_name)
    fallback_name = factory.fallback_name(primary_name, fallback or settings.MAP_FALLBACK_PROVIDER)
    fallback_provider = factory.create(fallback_name) if fallback_name else None
    logger.info("Map providers: primary=%s fallback=%s", primary_name, fallback_name)
    return ProviderGateway(primary_provider, fallback_provider)


_gateway: ProviderGateway | None = None
_gateway_lock = threading.Lock()


def get_gateway() -> ProviderGateway:
    global _gateway
    with _gateway_lock:
        if _gateway is None:
            _gateway = build_gateway()
        return _gateway
