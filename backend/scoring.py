"""SafeRoute Backend: Safety Scoring Logic

Turns per-cell aggregates from the active grid snapshot into a composite
score in [0, 1]. Higher means less safe.

Only the crime component is measured. The other three are proxies with no
dataset behind them and must not be presented as ground truth:
  - lighting:  distance from the city-centre reference point
  - collision: 0.3 × crime component
  - hazard:    0.2 × crime component
Each proxy is a named strategy function so it can be replaced once real
data exists.
"""

import json
import logging
import math
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Optional

import numpy as np

from cache import KeyedMemo
from config import (
    CITY_CENTRE,
    DEFAULT_FACTOR_WEIGHTS,
    LIGHTING_FALLOFF_DEGREES,
    NEUTRAL_SCORE,
    SEVERITY_CACHE_SIZE,
)
from errors import ValidationError
from geo import is_valid_coordinate
from grid_index import GridCell, GridSnapshot, SpatialGridIndex

logger = logging.getLogger("saferoute.scoring")

COUNT_SHARE = 0.6
SEVERITY_SHARE = 0.4


@dataclass(frozen=True)
class SafetyScore:
    crime: float
    lighting: float
    collision: float
    hazard: float
    composite: float
    incident_count: int = 0
    source: str = "cell"  # cell | neighbors | default

    def as_dict(self) -> dict:
        return {
            "crimeComponent": round(self.crime, 4),
            "lightingComponent": round(self.lighting, 4),
            "collisionComponent": round(self.collision, 4),
            "hazardComponent": round(self.hazard, 4),
            "composite": round(self.composite, 4),
            "incidentCount": self.incident_count,
            "source": self.source,
        }


NEUTRAL = SafetyScore(
    crime=NEUTRAL_SCORE,
    lighting=NEUTRAL_SCORE,
    collision=NEUTRAL_SCORE,
    hazard=NEUTRAL_SCORE,
    composite=NEUTRAL_SCORE,
    source="default",
)


# ── Proxy strategies ─────────────────────────────────────────────


def distance_lighting(
    lat: float,
    lon: float,
    centre: tuple[float, float] = CITY_CENTRE,
    falloff: float = LIGHTING_FALLOFF_DEGREES,
) -> float:
    """Lighting proxy: 0 at the city centre rising to 1 at `falloff` degrees out.

    Assumes central streets are better lit. Not measured data.
    """
    distance = math.hypot(lat - centre[0], lon - centre[1])
    return min(1.0, distance / falloff)


def collision_from_crime(crime: float) -> float:
    # Approximation, no collision dataset
    return crime * 0.3


def hazard_from_crime(crime: float) -> float:
    # Approximation, no hazard dataset
    return crime * 0.2


@dataclass(frozen=True)
class ProxyStrategies:
    lighting: Callable[[float, float], float] = distance_lighting
    collision: Callable[[float], float] = collision_from_crime
    hazard: Callable[[float], float] = hazard_from_crime


# ── Weight handling ──────────────────────────────────────────────


def _clamp01(value: float) -> float:
    return float(np.clip(value, 0.0, 1.0))


def resolve_factor_weights(weights: Optional[Mapping[str, float]] = None) -> dict[str, float]:
    """Merge caller weights over the defaults. Unknown factor names are ignored."""
    merged = dict(DEFAULT_FACTOR_WEIGHTS)
    if not weights:
        return merged
    for name, value in weights.items():
        if name not in merged:
            logger.debug(f"Ignoring unknown safety factor '{name}'")
            continue
        try:
            v = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Factor weight '{name}' must be a number")
        if not math.isfinite(v) or v < 0:
            raise ValidationError(f"Factor weight '{name}' must be a non-negative number")
        merged[name] = v
    return merged


def _clean_overrides(overrides: Mapping[str, float]) -> dict[str, float]:
    cleaned = {}
    for category, value in overrides.items():
        try:
            v = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Severity weight for '{category}' must be a number")
        if not math.isfinite(v) or v < 0:
            raise ValidationError(f"Severity weight for '{category}' must be a non-negative number")
        cleaned[str(category)] = v
    return cleaned


def canonical_key(mapping: Mapping[str, float]) -> str:
    """Order-independent serialization used as a memo key."""
    return json.dumps(mapping, sort_keys=True, separators=(",", ":"))


# ── Scorer ───────────────────────────────────────────────────────


class SafetyScorer:
    """Read-only scoring over the index's current snapshot.

    Severity overrides need a re-aggregated snapshot; those are memoized
    per (snapshot version, override set) in a bounded LRU so a route with
    hundreds of sample points triggers at most one re-aggregation.
    """

    def __init__(
        self,
        index: SpatialGridIndex,
        proxies: Optional[ProxyStrategies] = None,
        cache_size: int = SEVERITY_CACHE_SIZE,
    ):
        self.index = index
        self.proxies = proxies or ProxyStrategies()
        self._override_memo = KeyedMemo(maxsize=cache_size)

    @property
    def override_memo(self) -> KeyedMemo:
        return self._override_memo

    def snapshot_for(self, severity_overrides: Optional[Mapping[str, float]] = None) -> Optional[GridSnapshot]:
        snapshot = self.index.snapshot
        if snapshot is None or not severity_overrides:
            return snapshot
        overrides = _clean_overrides(severity_overrides)
        key = (snapshot.version, canonical_key(overrides))
        return self._override_memo.get_or_compute(
            key, lambda: snapshot.with_severity_overrides(overrides)
        )

    def cell_score(self, snapshot: GridSnapshot, cell: GridCell, weights: Mapping[str, float]) -> SafetyScore:
        count_norm = cell.incident_count / snapshot.max_count if snapshot.max_count > 0 else 0.0
        severity_norm = (
            cell.cumulative_severity / snapshot.max_severity if snapshot.max_severity > 0 else 0.0
        )
        crime = COUNT_SHARE * count_norm + SEVERITY_SHARE * severity_norm

        lat, lon = cell.center
        lighting = _clamp01(self.proxies.lighting(lat, lon))
        collision = _clamp01(self.proxies.collision(crime))
        hazard = _clamp01(self.proxies.hazard(crime))

        composite = (
            weights["crime"] * crime
            + weights["collision"] * collision
            + weights["lighting"] * lighting
            + weights["hazard"] * hazard
        )
        return SafetyScore(
            crime=crime,
            lighting=lighting,
            collision=collision,
            hazard=hazard,
            composite=_clamp01(composite),
            incident_count=cell.incident_count,
        )

    def _score(
        self,
        snapshot: Optional[GridSnapshot],
        lat: float,
        lon: float,
        weights: Mapping[str, float],
    ) -> SafetyScore:
        if not is_valid_coordinate(lat, lon):
            raise ValidationError(f"Invalid coordinate ({lat}, {lon})")
        if snapshot is None:
            return NEUTRAL

        cell = snapshot.cell_at(lat, lon)
        if cell is not None:
            return self.cell_score(snapshot, cell, weights)

        # No data in this cell: average the ring-1 neighbours
        neighbors = snapshot.neighbors(lat, lon, ring_radius=1)
        if not neighbors:
            return NEUTRAL
        scores = [self.cell_score(snapshot, n, weights) for n in neighbors]
        return SafetyScore(
            crime=float(np.mean([s.crime for s in scores])),
            lighting=float(np.mean([s.lighting for s in scores])),
            collision=float(np.mean([s.collision for s in scores])),
            hazard=float(np.mean([s.hazard for s in scores])),
            composite=_clamp01(float(np.mean([s.composite for s in scores]))),
            incident_count=0,
            source="neighbors",
        )

    def score_at(
        self,
        lat: float,
        lon: float,
        factor_weights: Optional[Mapping[str, float]] = None,
        severity_overrides: Optional[Mapping[str, float]] = None,
    ) -> SafetyScore:
        weights = resolve_factor_weights(factor_weights)
        snapshot = self.snapshot_for(severity_overrides)
        return self._score(snapshot, lat, lon, weights)

    def composite_at(self, lat: float, lon: float, factor_weights=None, severity_overrides=None) -> float:
        return self.score_at(lat, lon, factor_weights, severity_overrides).composite

    def score_along_path(
        self,
        coordinates: Iterable[tuple[float, float]],
        factor_weights: Optional[Mapping[str, float]] = None,
        severity_overrides: Optional[Mapping[str, float]] = None,
    ) -> float:
        """Mean composite score over every (lat, lon) sample of a path."""
        coords = list(coordinates)
        if not coords:
            return NEUTRAL_SCORE
        weights = resolve_factor_weights(factor_weights)
        snapshot = self.snapshot_for(severity_overrides)
        composites = [self._score(snapshot, lat, lon, weights).composite for lat, lon in coords]
        return float(np.mean(composites))

    def metrics_at(
        self,
        lat: float,
        lon: float,
        factor_weights: Optional[Mapping[str, float]] = None,
        severity_overrides: Optional[Mapping[str, float]] = None,
    ) -> dict:
        """Full component breakdown for a location, plus the cell it falls in."""
        score = self.score_at(lat, lon, factor_weights, severity_overrides)
        key = self.index.cell_for(lat, lon)
        return {
            **score.as_dict(),
            "cell": {"latKey": key[0], "lonKey": key[1]},
            "factorWeights": resolve_factor_weights(factor_weights),
        }
