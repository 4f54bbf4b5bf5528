"""Tests for SafeRoute CLI commands."""
from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from app.cli import app
from app.errors import ProviderError
from app.models.risk_index import RiskIndex
from app.modules.job_queue import JobQueue
from app.utils.cache import MemoryCache
from app.values import Address, Coordinates


runner = CliRunner()


@pytest.fixture
def session_local(db):
    """Routes the CLI's SessionLocal() to the in-memory session."""
    with patch("app.database.SessionLocal", MagicMock(return_value=db)) as factory:
        yield factory


# ---------------------------------------------------------------------------
# init-db / status
# ---------------------------------------------------------------------------


@patch("app.database.init_db")
def test_init_db(mock_init):
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0
    mock_init.assert_called_once()
    assert "Database ready" in result.output


def test_status_empty(session_local):
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "none loaded" in result.output


def test_status_suggests_recompute(session_local, make_region):
    make_region()
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "1 loaded" in result.output
    assert "recompute-risk" in result.output


# ---------------------------------------------------------------------------
# recompute-risk / expire
# ---------------------------------------------------------------------------


def test_recompute_all(db, session_local, make_region):
    make_region()
    make_region(name="Bela Vista", south=-23.57, west=-46.66, north=-23.56, east=-46.64)
    result = runner.invoke(app, ["recompute-risk"])
    assert result.exit_code == 0
    assert "Recomputed 2/2 regions" in result.output
    assert db.query(RiskIndex).count() == 2


def test_recompute_single_region(session_local, make_region):
    region_id = make_region().region_id
    result = runner.invoke(app, ["recompute-risk", "--region", str(region_id)])
    assert result.exit_code == 0
    assert f"Region {region_id}: risk 0.00" in result.output


def test_recompute_unknown_region(session_local):
    result = runner.invoke(app, ["recompute-risk", "--region", "999"])
    assert result.exit_code == 1
    assert "not found" in result.output


@patch("app.modules.job_queue.get_job_queue", return_value=JobQueue())
def test_expire_nothing_due(mock_queue, session_local):
    result = runner.invoke(app, ["expire"])
    assert result.exit_code == 0
    assert "Processed 0" in result.output


# ---------------------------------------------------------------------------
# quota / traffic-cache-cleanup
# ---------------------------------------------------------------------------


@patch("app.modules.provider_gateway.get_gateway")
def test_quota_table(mock_gateway):
    mock_gateway.return_value.statistics.return_value = {
        "primary": "google",
        "fallback": "nominatim",
        "providers": {
            "google": {
                "monthly_calls": 41000, "daily_calls": 1200, "monthly_quota": 50000,
                "usage_percent": 82.0, "cost_usd": 205.0, "throttled": True, "exhausted": False,
            },
        },
    }
    result = runner.invoke(app, ["quota"])
    assert result.exit_code == 0
    assert "google" in result.output
    assert "throttled" in result.output


@patch("app.utils.cache.get_cache", return_value=MemoryCache())
def test_traffic_cache_cleanup(mock_cache):
    result = runner.invoke(app, ["traffic-cache-cleanup"])
    assert result.exit_code == 0
    assert "Removed 0 stale segments" in result.output


# ---------------------------------------------------------------------------
# geocode / serve
# ---------------------------------------------------------------------------


@patch("app.utils.cache.get_cache", return_value=MemoryCache())
@patch("app.modules.provider_gateway.get_gateway")
def test_geocode_results(mock_gateway, mock_cache):
    mock_gateway.return_value.geocode.return_value = [
        Address(formatted_address="Praca da Se", coordinates=Coordinates(-23.5505, -46.6333)),
    ]
    result = runner.invoke(app, ["geocode", "Praca da Se"])
    assert result.exit_code == 0
    assert "-23.550500" in result.output


@patch("app.utils.cache.get_cache", return_value=MemoryCache())
@patch("app.modules.provider_gateway.get_gateway")
def test_geocode_no_results(mock_gateway, mock_cache):
    mock_gateway.return_value.geocode.return_value = []
    result = runner.invoke(app, ["geocode", "nowhere"])
    assert result.exit_code == 0
    assert "No results" in result.output


@patch("app.utils.cache.get_cache", return_value=MemoryCache())
@patch("app.modules.provider_gateway.get_gateway")
def test_geocode_failure(mock_gateway, mock_cache):
    mock_gateway.return_value.geocode.side_effect = ProviderError(
        "gateway", ProviderError.UNAVAILABLE, "All map providers failed",
    )
    result = runner.invoke(app, ["geocode", "Praca da Se"])
    assert result.exit_code == 1
    assert "Geocoding failed" in result.output


@patch("uvicorn.run")
def test_serve(mock_run):
    result = runner.invoke(app, ["serve", "--port", "9000"])
    assert result.exit_code == 0
    mock_run.assert_called_once_with("app.main:app", host="127.0.0.1", port=9000, reload=False)
