"""Region risk index engine.

Applies configurable weights from risk_scoring.yaml to the active
occurrences of a region and produces an explainable 0-100 index.

Four factors, each on a 0-100 scale:
  frequency  — min(100, count / baseline × scale)
  recency    — mean of 100 × exp(−age_days / decay_days)
  severity   — mean severity multiplier × 100
  confidence — Σ confidence_score / (count × 5) × 100

value = clamp(Σ weight × contribution / Σ weights, 0, 100), rounded to 2 dp.

Only occurrences inside the lookback window (30 days before ``as_of``) and not
past their ``expires_at`` are counted, so a fixed (occurrence set, as_of) pair
always yields the same value.
"""
from __future__ import annotations

import copy
import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterable

import yaml
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import NotFoundError
from app.models.base import SeverityEnum
from app.models.occurrence import Occurrence
from app.models.risk_index import RiskIndex
from app.modules.geo_store import SqlGeoStore
from app.utils.clock import as_naive_utc, utcnow
from app.values import Coordinates, RiskFactor, RiskFactorType

logger = logging.getLogger(__name__)

MAX_CONFIDENCE = 5

DEFAULT_SCORING_CONFIG: dict[str, Any] = {
    "weights": {"frequency": 0.30, "recency": 0.25, "severity": 0.25, "confidence": 0.20},
    "severity_multipliers": {"low": 0.25, "medium": 0.5, "high": 0.75, "critical": 1.0},
    "frequency": {"baseline": 10, "scale": 50},
    "recency": {"decay_days": 7, "lookback_days": 30},
    "thresholds": {"high_risk": 70, "warning": 50},
    "recalculation": {"batch_size": 50},
}

_EXPECTED_SECTIONS = ["weights", "severity_multipliers", "frequency", "recency", "thresholds"]

_SCORING_CONFIG: dict[str, Any] | None = None


def _merge_defaults(loaded: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(DEFAULT_SCORING_CONFIG)
    for section, values in loaded.items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


def validate_scoring_config(config: dict[str, Any]) -> list[str]:
    """Return human-readable problems with ``config``; empty when it is usable."""
    problems = [f"missing section '{s}'" for s in _EXPECTED_SECTIONS if s not in config]
    for name, weight in (config.get("weights") or {}).items():
        if not isinstance(weight, (int, float)) or not 0 <= weight <= 1:
            problems.append(f"weights.{name}={weight} outside [0,1]")
    for name, mult in (config.get("severity_multipliers") or {}).items():
        if not isinstance(mult, (int, float)) or not 0 <= mult <= 1:
            problems.append(f"severity_multipliers.{name}={mult} outside [0,1]")
    for name, value in (config.get("thresholds") or {}).items():
        if not isinstance(value, (int, float)) or not 0 <= value <= 100:
            problems.append(f"thresholds.{name}={value} outside [0,100]")
    return problems


def scoring_config_path() -> Path:
    """Configured path, resolved against the repo root when relative and absent from cwd."""
    config_path = Path(settings.RISK_SCORING_CONFIG)
    if not config_path.is_absolute() and not config_path.exists():
        # config/ is at repo root (two levels above backend/app)
        repo_root = Path(__file__).resolve().parents[3]
        config_path = repo_root / settings.RISK_SCORING_CONFIG
    return config_path


def load_scoring_config() -> dict[str, Any]:
    global _SCORING_CONFIG
    if _SCORING_CONFIG is None:
        config_path = scoring_config_path()
        if not config_path.exists():
            logger.warning("risk_scoring.yaml not found at %s — using built-in defaults", config_path)
            loaded: dict[str, Any] = {}
        else:
            with open(config_path) as f:
                loaded = yaml.safe_load(f) or {}
        for problem in validate_scoring_config(loaded):
            logger.warning("risk_scoring.yaml: %s", problem)
        _SCORING_CONFIG = _merge_defaults(loaded)
    return _SCORING_CONFIG


def reload_scoring_config() -> dict[str, Any]:
    """Force-reload scoring config from disk (e.g. after YAML edits)."""
    global _SCORING_CONFIG
    _SCORING_CONFIG = None
    return load_scoring_config()


def high_risk_threshold(config: dict[str, Any] | None = None) -> float:
    return float((config or load_scoring_config())["thresholds"]["high_risk"])


def warning_threshold(config: dict[str, Any] | None = None) -> float:
    return float((config or load_scoring_config())["thresholds"]["warning"])


@dataclass
class RiskComputation:
    value: float
    factors: list[RiskFactor] = field(default_factory=list)
    occurrence_count: int = 0
    dominant_crime_type_id: int | None = None


def _weight(weights: dict[str, Any], name: str) -> float:
    # Out-of-range weights are reported at load time and clamped here
    return min(1.0, max(0.0, float(weights.get(name, 0.0))))


def _severity_value(severity: Any) -> str:
    return SeverityEnum(getattr(severity, "value", severity)).value


def compute_risk(
    occurrences: Iterable[Occurrence],
    as_of: datetime,
    config: dict[str, Any] | None = None,
) -> RiskComputation:
    """Pure scoring over an already-filtered occurrence set."""
    config = config or load_scoring_config()
    occs = list(occurrences)
    weights = config["weights"]
    if not occs:
        return RiskComputation(
            value=0.0,
            factors=[
                RiskFactor(RiskFactorType(name), _weight(weights, name), 0.0)
                for name in ("frequency", "recency", "severity", "confidence")
            ],
        )

    count = len(occs)
    freq_cfg = config["frequency"]
    frequency = min(100.0, count / float(freq_cfg["baseline"]) * float(freq_cfg["scale"]))

    decay = float(config["recency"]["decay_days"])
    recency = sum(
        100.0 * math.exp(-max(0.0, (as_of - o.timestamp).total_seconds() / 86_400) / decay)
        for o in occs
    ) / count

    multipliers = config["severity_multipliers"]
    severity = sum(float(multipliers[_severity_value(o.severity)]) * 100.0 for o in occs) / count

    confidence = sum(o.confidence_score for o in occs) / (count * MAX_CONFIDENCE) * 100.0

    contributions = {
        "frequency": frequency,
        "recency": recency,
        "severity": severity,
        "confidence": confidence,
    }
    factors = [
        RiskFactor(
            RiskFactorType(name),
            _weight(weights, name),
            round(min(100.0, max(0.0, contribution)), 2),
        )
        for name, contribution in contributions.items()
    ]
    total_weight = sum(f.weight for f in factors)
    raw = sum(f.weight * contributions[f.type.value] for f in factors) / total_weight if total_weight else 0.0
    value = round(min(100.0, max(0.0, raw)), 2)

    counts = Counter(o.crime_type_id for o in occs)
    # Ties resolve to the lowest crime type id
    dominant = min(counts, key=lambda ct: (-counts[ct], ct))
    return RiskComputation(
        value=value,
        factors=factors,
        occurrence_count=count,
        dominant_crime_type_id=dominant,
    )


class RiskIndexEngine:
    def __init__(
        self,
        db: Session,
        store: SqlGeoStore | None = None,
        config: dict[str, Any] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.store = store or SqlGeoStore(db)
        self.config = config or load_scoring_config()
        self._clock = clock

    @property
    def high_risk_threshold(self) -> float:
        return high_risk_threshold(self.config)

    @property
    def warning_threshold(self) -> float:
        return warning_threshold(self.config)

    def scoring_window(self, region_id: int, as_of: datetime) -> list[Occurrence]:
        since = as_of - timedelta(days=float(self.config["recency"]["lookback_days"]))
        occs = self.store.occurrences_in_region(region_id, since=since, not_expired_at=as_of)
        return [o for o in occs if o.timestamp <= as_of]

    def calculate(self, region_id: int, as_of: datetime | None = None) -> RiskIndex:
        """Compute (without persisting) the current RiskIndex of a region."""
        as_of = as_naive_utc(as_of) if as_of else self._clock()
        result = compute_risk(self.scoring_window(region_id, as_of), as_of, self.config)
        return RiskIndex(
            region_id=region_id,
            value=result.value,
            factors=[f.to_dict() for f in result.factors],
            occurrence_count=result.occurrence_count,
            dominant_crime_type_id=result.dominant_crime_type_id,
            calculated_at=as_of,
        )

    def get_index(self, region_id: int) -> RiskIndex | None:
        return self.db.query(RiskIndex).filter(RiskIndex.region_id == region_id).first()

    def recalculate(self, region_id: int, as_of: datetime | None = None) -> RiskIndex:
        """Replace the region's RiskIndex row in a single transaction."""
        if self.store.get_region(region_id) is None:
            raise NotFoundError(f"Region {region_id} not found", region_id=region_id)
        fresh = self.calculate(region_id, as_of)
        try:
            row = self.get_index(region_id)
            if row is None:
                row = fresh
                self.db.add(row)
            else:
                row.value = fresh.value
                row.factors = fresh.factors
                row.occurrence_count = fresh.occurrence_count
                row.dominant_crime_type_id = fresh.dominant_crime_type_id
                row.calculated_at = fresh.calculated_at
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("Risk recompute failed for region %s — keeping previous value", region_id)
            raise
        logger.info(
            "Region %s risk=%.2f from %d occurrences", region_id, row.value, row.occurrence_count,
        )
        return row

    def recalculate_all(self, batch_size: int | None = None, as_of: datetime | None = None) -> dict:
        batch_size = batch_size or int(self.config.get("recalculation", {}).get("batch_size", 50))
        region_ids = self.store.region_ids()
        processed = failed = 0
        failures: list[int] = []
        for start in range(0, len(region_ids), batch_size):
            for region_id in region_ids[start:start + batch_size]:
                try:
                    self.recalculate(region_id, as_of)
                    processed += 1
                except Exception:
                    # Already logged with traceback; keep sweeping
                    failed += 1
                    failures.append(region_id)
            logger.info("Risk sweep: %d/%d regions done", min(start + batch_size, len(region_ids)), len(region_ids))
        return {"total": len(region_ids), "processed": processed, "failed": failed, "failed_region_ids": failures}

    def risk_for_coordinates(self, point: Coordinates) -> RiskIndex:
        """Stored index of the most specific region containing ``point`` (0 when none)."""
        region = self.store.find_region_containing(point)
        index = self.get_index(region.region_id) if region is not None else None
        if index is not None:
            return index
        return RiskIndex(
            region_id=region.region_id if region is not None else None,
            value=0.0,
            factors=[],
            occurrence_count=0,
            dominant_crime_type_id=None,
            calculated_at=self._clock(),
        )
