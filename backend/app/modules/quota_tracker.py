"""Per-provider call quota and cost tracking.

Counters live in the shared cache so every API worker sees the same usage:

  quota:{provider}:monthly:{YYYY-MM}    calls this month (expires after ~32 days)
  quota:{provider}:daily:{YYYY-MM-DD}   calls today (expires after ~25h)
  quota:{provider}:cost:{YYYY-MM}       cost this month in micro-USD
  quota:{provider}:gate:{YYYY-MM}       throttled-call sequence (admits every other call)

At >= THROTTLE_THRESHOLD of the monthly quota the provider is throttled:
non-essential calls are refused outright and essential calls are admitted
at half rate. At 100% every call is refused with quota_exceeded.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from app.config import settings
from app.errors import ProviderError
from app.utils.cache import Cache
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

_MONTH_TTL = 32 * 86_400
_DAY_TTL = 25 * 3_600
_MICRO = 1_000_000


class QuotaTracker:
    def __init__(
        self,
        cache: Cache,
        monthly_quota: int | None = None,
        overrides: dict[str, int] | None = None,
        throttle_threshold: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.default_quota = monthly_quota if monthly_quota is not None else settings.PROVIDER_MONTHLY_QUOTA
        self.overrides = dict(settings.PROVIDER_QUOTAS if overrides is None else overrides)
        self.threshold = (
            throttle_threshold if throttle_threshold is not None else settings.QUOTA_THROTTLE_THRESHOLD
        )
        self._clock = clock

    def monthly_quota(self, provider: str) -> int:
        return self.overrides.get(provider, self.default_quota)

    def _keys(self, provider: str) -> dict[str, str]:
        now = self._clock()
        month, day = now.strftime("%Y-%m"), now.strftime("%Y-%m-%d")
        return {
            "monthly": f"quota:{provider}:monthly:{month}",
            "daily": f"quota:{provider}:daily:{day}",
            "cost": f"quota:{provider}:cost:{month}",
            "gate": f"quota:{provider}:gate:{month}",
        }

    def usage(self, provider: str) -> int:
        return int(self.cache.get(self._keys(provider)["monthly"]) or 0)

    def usage_percent(self, provider: str) -> float:
        quota = self.monthly_quota(provider)
        if quota <= 0:
            return 0.0
        return self.usage(provider) / quota * 100.0

    def is_throttled(self, provider: str) -> bool:
        return self.usage_percent(provider) >= self.threshold * 100.0

    def is_exhausted(self, provider: str) -> bool:
        quota = self.monthly_quota(provider)
        return quota > 0 and self.usage(provider) >= quota

    def admit(self, provider: str, operation: str, essential: bool = True) -> None:
        """Raise ProviderError when ``provider`` must not be called right now."""
        if self.is_exhausted(provider):
            logger.warning("Quota exhausted for %s — refusing %s", provider, operation)
            raise ProviderError.quota_exceeded(provider)
        if not self.is_throttled(provider):
            return
        percent = self.usage_percent(provider)
        if not essential:
            logger.info("Suppressing non-essential %s on %s (%.1f%% of quota)", operation, provider, percent)
            raise ProviderError.throttled(provider, percent)
        seq = self.cache.incr(self._keys(provider)["gate"], ttl=_MONTH_TTL)
        if seq % 2 == 0:
            logger.info("Throttling %s on %s (%.1f%% of quota)", operation, provider, percent)
            raise ProviderError.throttled(provider, percent)

    def record_call(self, provider: str, operation: str, cost: float = 0.0) -> None:
        keys = self._keys(provider)
        monthly = self.cache.incr(keys["monthly"], ttl=_MONTH_TTL)
        self.cache.incr(keys["daily"], ttl=_DAY_TTL)
        if cost:
            self.cache.incr(keys["cost"], int(round(cost * _MICRO)), ttl=_MONTH_TTL)
        quota = self.monthly_quota(provider)
        if quota > 0 and monthly == int(quota * self.threshold):
            logger.warning(
                "%s reached %.0f%% of its monthly quota (%d/%d) — throttling",
                provider, self.threshold * 100, monthly, quota,
            )

    def statistics(self, providers: list[str]) -> dict[str, dict[str, Any]]:
        stats: dict[str, dict[str, Any]] = {}
        for provider in providers:
            keys = self._keys(provider)
            quota = self.monthly_quota(provider)
            stats[provider] = {
                "monthly_calls": self.usage(provider),
                "daily_calls": int(self.cache.get(keys["daily"]) or 0),
                "monthly_quota": quota,
                "usage_percent": round(self.usage_percent(provider), 2),
                "cost_usd": round(int(self.cache.get(keys["cost"]) or 0) / _MICRO, 6),
                "throttled": self.is_throttled(provider),
                "exhausted": self.is_exhausted(provider),
            }
        return stats

    def reset(self, provider: str) -> None:
        for key in self._keys(provider).values():
            self.cache.delete(key)
