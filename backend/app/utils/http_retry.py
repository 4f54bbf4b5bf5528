"""Provider HTTP error classification and retry with exponential backoff.

Retries only transient provider failures (timeouts, 429, 5xx, garbled
payloads). Never retries auth or quota failures (401/403, quota exceeded),
which indicate config problems and go straight to the fallback provider.

Usage:
    from app.utils.http_retry import retry_provider_call

    route = retry_provider_call(adapter.calculate_route, origin, dest, label="route")
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, TypeVar

import httpx

from app.errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Status codes that signal transient server issues
_UNAVAILABLE_STATUS_CODES: frozenset[int] = frozenset({500, 502, 503, 504})
_AUTH_STATUS_CODES: frozenset[int] = frozenset({401, 403})

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 8.0


def error_for_status(provider: str, status_code: int, body: str = "") -> ProviderError:
    """Map an HTTP failure status onto a typed provider error."""
    if status_code in _AUTH_STATUS_CODES:
        return ProviderError.auth_failed(provider)
    if status_code == 429:
        return ProviderError.rate_limited(provider)
    if status_code in _UNAVAILABLE_STATUS_CODES:
        return ProviderError.unavailable(provider, f"HTTP {status_code}")
    return ProviderError.invalid_response(provider, f"HTTP {status_code}: {body[:200]}")


def request_json(
    client: httpx.Client,
    provider: str,
    url: str,
    *,
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> Any:
    """GET ``url`` and return decoded JSON, translating every failure to ProviderError."""
    try:
        resp = client.get(url, params=params, headers=headers)
    except httpx.TimeoutException as exc:
        raise ProviderError.timeout(provider) from exc
    except (httpx.ConnectError, httpx.NetworkError, OSError) as exc:
        raise ProviderError.unavailable(provider, type(exc).__name__) from exc

    if resp.status_code >= 400:
        raise error_for_status(provider, resp.status_code, resp.text)
    try:
        return resp.json()
    except ValueError as exc:
        raise ProviderError.invalid_response(provider, "body is not JSON") from exc


def backoff_delay(attempt: int, base: float = DEFAULT_BASE_DELAY, cap: float = DEFAULT_MAX_DELAY) -> float:
    """Delay before retry number ``attempt`` (1-based): base, 2·base, 4·base… capped."""
    return min(cap, base * (2 ** (attempt - 1)))


def retry_provider_call(
    fn: Callable[..., T],
    *args: Any,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    label: str = "provider call",
    **kwargs: Any,
) -> T:
    """Call ``fn`` retrying retryable ProviderErrors up to ``max_attempts`` total.

    Non-retryable errors propagate immediately; the last retryable error
    propagates once attempts are exhausted.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return fn(*args, **kwargs)
        except ProviderError as exc:
            if not exc.retryable or attempt >= max_attempts:
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                "%s from %s during %s — retrying in %.0fs (attempt %d/%d)",
                exc.code,
                exc.provider,
                label,
                delay,
                attempt,
                max_attempts,
            )
            time.sleep(delay)

    raise RuntimeError("retry_provider_call exhausted retries without result")
