"""Typed errors surfaced to API and CLI callers.

Every error carries a stable ``code`` plus structured ``details`` so callers
can react (remaining attempts, reset time, offending field) without parsing
the message.
"""
from __future__ import annotations

from typing import Any


class SafeRouteError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.details}


class ValidationError(SafeRouteError, ValueError):
    code = "validation_error"
    status_code = 422


class InvalidCoordinatesError(ValidationError):
    code = "invalid_coordinates"


class OccurrenceValidationError(ValidationError):
    code = "invalid_occurrence"


class LocationTooFarError(ValidationError):
    code = "location_too_far"


class RateLimitExceededError(SafeRouteError):
    code = "rate_limit_exceeded"
    status_code = 429


class NotFoundError(SafeRouteError):
    code = "not_found"
    status_code = 404


class NoRouteFoundError(NotFoundError):
    code = "no_route"


class ConfigurationError(SafeRouteError):
    code = "configuration_error"
    status_code = 500


class ProviderError(SafeRouteError):
    """Failure reported by (or while talking to) an external map provider."""

    status_code = 503

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    INVALID_RESPONSE = "invalid_response"
    AUTH_FAILED = "auth_failed"
    QUOTA_EXCEEDED = "quota_exceeded"
    NO_ROUTE = "no_route"
    GEOCODE_NOT_FOUND = "geocode_not_found"
    THROTTLED = "throttled"

    _RETRYABLE = frozenset({TIMEOUT, RATE_LIMITED, UNAVAILABLE, INVALID_RESPONSE})

    def __init__(self, provider: str, error_code: str, message: str, **details: Any) -> None:
        super().__init__(message, provider=provider, **details)
        self.provider = provider
        self.code = error_code
        if self.is_not_found:
            self.status_code = 404
        elif error_code == self.INVALID_RESPONSE:
            self.status_code = 502

    @property
    def retryable(self) -> bool:
        return self.code in self._RETRYABLE

    @property
    def is_not_found(self) -> bool:
        return self.code in (self.NO_ROUTE, self.GEOCODE_NOT_FOUND)

    @classmethod
    def timeout(cls, provider: str) -> "ProviderError":
        return cls(provider, cls.TIMEOUT, f"{provider} request timed out")

    @classmethod
    def rate_limited(cls, provider: str) -> "ProviderError":
        return cls(provider, cls.RATE_LIMITED, f"{provider} rate limit reached")

    @classmethod
    def unavailable(cls, provider: str, reason: str = "", **details: Any) -> "ProviderError":
        message = f"{provider} is unavailable"
        if reason:
            message = f"{message}: {reason}"
        return cls(provider, cls.UNAVAILABLE, message, **details)

    @classmethod
    def invalid_response(cls, provider: str, reason: str) -> "ProviderError":
        return cls(provider, cls.INVALID_RESPONSE, f"Invalid response from {provider}: {reason}")

    @classmethod
    def auth_failed(cls, provider: str) -> "ProviderError":
        return cls(provider, cls.AUTH_FAILED, f"Authentication with {provider} failed")

    @classmethod
    def quota_exceeded(cls, provider: str) -> "ProviderError":
        return cls(provider, cls.QUOTA_EXCEEDED, f"{provider} quota exceeded")

    @classmethod
    def throttled(cls, provider: str, usage_percent: float) -> "ProviderError":
        return cls(
            provider, cls.THROTTLED, f"{provider} is throttled near its quota",
            usage_percent=round(usage_percent, 1),
        )

    @classmethod
    def no_route(cls, provider: str) -> "ProviderError":
        return cls(provider, cls.NO_ROUTE, f"{provider} found no route")

    @classmethod
    def geocode_not_found(cls, provider: str, query: str) -> "ProviderError":
        return cls(provider, cls.GEOCODE_NOT_FOUND, f"{provider} found no address for '{query}'")
