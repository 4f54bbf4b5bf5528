"""Tests for ProviderFactory and ProviderGateway retry/fallback policy."""
from unittest.mock import MagicMock, patch

import pytest

from app.errors import ConfigurationError, NoRouteFoundError, ProviderError
from app.modules.google_maps_client import GoogleMapsClient
from app.modules.nominatim_client import NominatimClient
from app.modules.provider_gateway import ProviderFactory, ProviderGateway, build_gateway
from app.modules.quota_tracker import QuotaTracker
from app.utils.cache import MemoryCache
from app.values import Address, Coordinates, Route

ORIGIN = Coordinates(-23.5505, -46.6333)
DEST = Coordinates(-23.5614, -46.6559)


def _provider(name):
    provider = MagicMock()
    provider.name = name
    provider.provider_name.return_value = name
    return provider


def _route(provider="nominatim"):
    return Route(origin=ORIGIN, destination=DEST, distance=2500, duration=420, provider=provider)


@pytest.fixture
def primary():
    return _provider("nominatim")


@pytest.fixture
def fallback():
    return _provider("google")


@pytest.fixture
def gateway(primary, fallback):
    return ProviderGateway(primary, fallback, max_attempts=3, base_delay=1.0, max_delay=8.0)


@patch("app.utils.http_retry.time")
class TestGatewayFallback:
    def test_primary_success_skips_fallback(self, mock_time, gateway, primary, fallback):
        primary.calculate_route.return_value = _route()
        route = gateway.calculate_route(ORIGIN, DEST)
        assert route.provider == "nominatim"
        fallback.calculate_route.assert_not_called()
        mock_time.sleep.assert_not_called()

    def test_transient_error_retried_then_succeeds(self, mock_time, gateway, primary, fallback):
        primary.calculate_route.side_effect = [ProviderError.timeout("nominatim"), _route()]
        route = gateway.calculate_route(ORIGIN, DEST)
        assert route.provider == "nominatim"
        assert primary.calculate_route.call_count == 2
        mock_time.sleep.assert_called_once_with(1.0)
        fallback.calculate_route.assert_not_called()

    def test_three_timeouts_fall_back_exactly_once(self, mock_time, gateway, primary, fallback):
        primary.calculate_route.side_effect = ProviderError.timeout("nominatim")
        fallback.calculate_route.return_value = _route("google")

        route = gateway.calculate_route(ORIGIN, DEST)

        assert route.provider == "google"
        assert primary.calculate_route.call_count == 3
        assert fallback.calculate_route.call_count == 1
        assert [c.args[0] for c in mock_time.sleep.call_args_list] == [1.0, 2.0]

    def test_auth_failure_falls_back_without_retry(self, mock_time, gateway, primary, fallback):
        primary.geocode.side_effect = ProviderError.auth_failed("nominatim")
        fallback.geocode.return_value = [Address("Praça da Sé", ORIGIN)]
        assert gateway.geocode("Praça da Sé")[0].formatted_address == "Praça da Sé"
        assert primary.geocode.call_count == 1
        mock_time.sleep.assert_not_called()

    def test_both_fail_unavailable_names_both_errors(self, mock_time, gateway, primary, fallback):
        primary.traffic_data.side_effect = ProviderError.timeout("nominatim")
        fallback.traffic_data.side_effect = ProviderError.quota_exceeded("google")

        with pytest.raises(ProviderError) as exc_info:
            gateway.traffic_data(_route())

        err = exc_info.value
        assert err.code == ProviderError.UNAVAILABLE
        assert err.details["primary_error"] == ProviderError.TIMEOUT
        assert err.details["fallback_error"] == ProviderError.QUOTA_EXCEEDED
        assert fallback.traffic_data.call_count == 1

    def test_no_route_does_not_fall_back(self, mock_time, gateway, primary, fallback):
        primary.calculate_route.side_effect = ProviderError.no_route("nominatim")
        with pytest.raises(NoRouteFoundError) as exc_info:
            gateway.calculate_route(ORIGIN, DEST)
        assert exc_info.value.status_code == 404
        assert primary.calculate_route.call_count == 1
        fallback.calculate_route.assert_not_called()

    def test_geocode_not_found_is_empty(self, mock_time, gateway, primary, fallback):
        primary.geocode.side_effect = ProviderError.geocode_not_found("nominatim", "xyz")
        assert gateway.geocode("xyz") == []
        fallback.geocode.assert_not_called()

    def test_geocode_capped_at_five(self, mock_time, gateway, primary):
        primary.geocode.return_value = [Address(f"Rua {i}", ORIGIN) for i in range(8)]
        assert len(gateway.geocode("Rua")) == 5

    def test_throttled_alternatives_are_empty(self, mock_time, gateway, primary, fallback):
        primary.alternative_routes.side_effect = ProviderError.throttled("nominatim", 85.0)
        fallback.alternative_routes.side_effect = ProviderError.throttled("google", 90.0)
        assert gateway.alternative_routes(ORIGIN, DEST) == []

    def test_without_fallback_primary_error_propagates(self, mock_time, primary):
        gateway = ProviderGateway(primary, None, max_attempts=3)
        primary.reverse_geocode.side_effect = ProviderError.unavailable("nominatim", "HTTP 503")
        with pytest.raises(ProviderError) as exc_info:
            gateway.reverse_geocode(ORIGIN)
        assert exc_info.value.provider == "nominatim"
        assert primary.reverse_geocode.call_count == 3


class TestGatewayMisc:
    def test_fallback_same_as_primary_is_dropped(self, primary):
        assert ProviderGateway(primary, primary).fallback is None

    def test_is_available_checks_fallback(self, gateway, primary, fallback):
        primary.is_available.return_value = False
        fallback.is_available.return_value = True
        assert gateway.is_available() is True

    def test_statistics(self):
        cache = MemoryCache()
        quota = QuotaTracker(cache, monthly_quota=100, overrides={})
        primary = NominatimClient(cache, quota, client=MagicMock())
        fallback = GoogleMapsClient(cache, quota, client=MagicMock())
        quota.record_call("nominatim", "route")
        stats = ProviderGateway(primary, fallback).statistics()
        assert stats["primary"] == "nominatim"
        assert stats["fallback"] == "google"
        assert stats["providers"]["nominatim"]["monthly_calls"] == 1
        assert stats["providers"]["google"]["monthly_calls"] == 0


class TestProviderFactory:
    @pytest.fixture
    def factory(self):
        cache = MemoryCache()
        return ProviderFactory(cache, QuotaTracker(cache), client=MagicMock())

    def test_create_is_cached_and_case_insensitive(self, factory):
        first = factory.create("Google")
        assert isinstance(first, GoogleMapsClient)
        assert factory.create("google") is first

    def test_unknown_provider(self, factory):
        with pytest.raises(ConfigurationError) as exc_info:
            factory.create("bing")
        assert "google" in exc_info.value.details["supported"]

    def test_fallback_name(self, factory):
        assert factory.fallback_name("nominatim") == "google"
        assert factory.fallback_name("google") == "nominatim"
        assert factory.fallback_name("google", "here") == "here"
        assert factory.fallback_name("google", "google") == "nominatim"

    def test_build_gateway(self):
        gateway = build_gateway(MemoryCache(), primary="google", fallback=None, client=MagicMock())
        assert gateway.provider_name() == "google"
        assert gateway.fallback.name == "nominatim"
