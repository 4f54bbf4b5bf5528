"""Geocoding service with a long-lived fallback cache and fuzzy lookup.

Two cache tiers keyed by the normalised query:
  geocode_primary:{md5}    24h — served before calling any provider
  geocode_fallback:{md5}   7d  — served only when every provider fails

Fallback entries keep the normalised query text so earlier searches can be
found again by fuzzy match (rapidfuzz token_sort_ratio), e.g. when the
traveler mistypes an address they already looked up.
"""
from __future__ import annotations

import hashlib
import logging
import re
from typing import Any

from rapidfuzz import fuzz
from unidecode import unidecode

from app.config import settings
from app.errors import ProviderError, ValidationError
from app.modules.provider_gateway import ProviderGateway
from app.utils.cache import Cache
from app.values import Address, Coordinates

logger = logging.getLogger(__name__)

PRIMARY_PREFIX = "geocode_primary:"
FALLBACK_PREFIX = "geocode_fallback:"
REVERSE_PRIMARY_PREFIX = "reverse_primary:"
REVERSE_FALLBACK_PREFIX = "reverse_fallback:"

SIMILARITY_THRESHOLD = 70

_PUNCT_RE = re.compile(r"[^\w\s]", re.UNICODE)
_MULTI_SPACE_RE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    """Lowercase, strip accents and punctuation, collapse whitespace."""
    if not query:
        return ""
    text = unidecode(query).lower()
    text = _PUNCT_RE.sub(" ", text)
    return _MULTI_SPACE_RE.sub(" ", text).strip()


def _query_hash(normalized: str) -> str:
    return hashlib.md5(normalized.encode()).hexdigest()


def _point_key(point: Coordinates) -> str:
    return f"{point.latitude:.5f},{point.longitude:.5f}"


class GeocodingService:
    def __init__(self, gateway: ProviderGateway, cache: Cache) -> None:
        self.gateway = gateway
        self.cache = cache

    def geocode(self, query: str) -> list[Address]:
        normalized = normalize_query(query)
        if not normalized:
            raise ValidationError("Search query must not be empty", field="q")
        digest = _query_hash(normalized)

        cached = self.cache.get(PRIMARY_PREFIX + digest)
        if cached is not None:
            return [Address.from_dict(a) for a in cached]

        try:
            addresses = self.gateway.geocode(query)
        except ProviderError as exc:
            fallback = self.cache.get(FALLBACK_PREFIX + digest)
            if fallback is None:
                raise
            logger.warning("Geocoding '%s' failed (%s) — serving fallback cache", normalized, exc.code)
            return [Address.from_dict(a) for a in fallback["results"]]

        payload = [a.to_dict() for a in addresses]
        self.cache.set(PRIMARY_PREFIX + digest, payload, settings.GEOCODE_CACHE_TTL)
        if addresses:
            self.cache.set(
                FALLBACK_PREFIX + digest,
                {"query": normalized, "results": payload},
                settings.GEOCODE_FALLBACK_CACHE_TTL,
            )
        return addresses

    def reverse_geocode(self, point: Coordinates) -> Address:
        key = _point_key(point)
        cached = self.cache.get(REVERSE_PRIMARY_PREFIX + key)
        if cached is not None:
            return Address.from_dict(cached)
        try:
            address = self.gateway.reverse_geocode(point)
        except ProviderError as exc:
            if exc.is_not_found:
                raise
            fallback = self.cache.get(REVERSE_FALLBACK_PREFIX + key)
            if fallback is None:
                raise
            logger.warning("Reverse geocoding %s failed (%s) — serving fallback cache", key, exc.code)
            return Address.from_dict(fallback)
        self.cache.set(REVERSE_PRIMARY_PREFIX + key, address.to_dict(), settings.GEOCODE_CACHE_TTL)
        self.cache.set(REVERSE_FALLBACK_PREFIX + key, address.to_dict(), settings.GEOCODE_FALLBACK_CACHE_TTL)
        return address

    def search_cached_addresses(self, query: str, limit: int = 5) -> list[dict[str, Any]]:
        """Fuzzy-match ``query`` against previously resolved searches."""
        normalized = normalize_query(query)
        if not normalized:
            return []
        scored: list[tuple[float, Address]] = []
        for key in self.cache.keys(FALLBACK_PREFIX):
            entry = self.cache.get(key)
            if not entry:
                continue
            score = fuzz.token_sort_ratio(normalized, entry.get("query", ""))
            if score < SIMILARITY_THRESHOLD:
                continue
            for item in entry.get("results", []):
                scored.append((score, Address.from_dict(item)))
        scored.sort(key=lambda pair: (-pair[0], pair[1].formatted_address))
        seen: set[str] = set()
        results = []
        for score, address in scored:
            if address.formatted_address in seen:
                continue
            seen.add(address.formatted_address)
            results.append({"score": round(score, 1), "address": address.to_dict()})
            if len(results) >= limit:
                break
        return results
