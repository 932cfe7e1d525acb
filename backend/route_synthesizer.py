"""SafeRoute Backend: Fastest / safest route synthesis

Per request:
  1. acquire a road path from the routing provider (straight line on failure)
  2. score it as the fastest plan
  3. derive a safest plan: provider alternative if strictly safer, otherwise a
     geometric detour around a risky midpoint
  4. guard: the safest plan never reports a worse mean score than the fastest

costScalar = priority · meanSafety + (1 − priority) · hours
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional, Protocol

from config import DEFAULT_MODE, MODE_SPEEDS_KMH, PROVIDER_TIMEOUT_SECONDS
from data_fetchers import ProviderRoute
from errors import ProviderUnavailableError, ValidationError
from geo import haversine_km, is_valid_coordinate, path_length_km
from scoring import SafetyScorer, resolve_factor_weights

logger = logging.getLogger("saferoute.routing")

Coord = tuple[float, float]


class RoutingProvider(Protocol):
    name: str

    async def route(self, from_lat: float, from_lon: float, to_lat: float, to_lon: float,
                    mode: str = DEFAULT_MODE, alternative: bool = False) -> ProviderRoute: ...


@dataclass(frozen=True)
class RoutePlan:
    coordinates: list[Coord]
    distance_km: float
    duration_min: float
    safety_score: float
    cost: float
    kind: str  # fastest | safest
    instructions: list[dict] = field(default_factory=list)
    fallback: bool = False
    modified: bool = False

    def to_dict(self) -> dict:
        return {
            "coordinates": [[lat, lon] for lat, lon in self.coordinates],
            "distance": self.distance_km,
            "time": self.duration_min,
            "safetyScore": self.safety_score,
            "routeCost": self.cost,
            "type": self.kind,
            "instructions": self.instructions,
            "fallback": self.fallback,
            "modified": self.modified,
        }


@dataclass(frozen=True)
class RouteComparison:
    fastest: RoutePlan
    safest: RoutePlan
    provider: str
    mode: str
    safety_priority: float
    factor_weights: dict[str, float]

    def to_dict(self) -> dict:
        return {
            "fastest": self.fastest.to_dict(),
            "safest": self.safest.to_dict(),
            "provider": self.provider,
            "mode": self.mode,
            "safetyPriority": self.safety_priority,
            "factorWeights": self.factor_weights,
        }


def speed_for_mode(mode: str, speeds: Mapping[str, float] = MODE_SPEEDS_KMH) -> float:
    return speeds.get(mode, speeds[DEFAULT_MODE])


def route_cost(priority: float, safety: float, duration_min: float) -> float:
    return priority * safety + (1 - priority) * (duration_min / 60)


def detour_path(from_lat: float, from_lon: float, to_lat: float, to_lon: float, priority: float) -> list[Coord]:
    """5-point path offset perpendicular to the direct line, scaled by priority."""
    d_lat = to_lat - from_lat
    d_lon = to_lon - from_lon
    scale = 0.2 + 0.3 * priority
    off_lat = -d_lon * scale
    off_lon = d_lat * scale
    mid_lat = (from_lat + to_lat) / 2
    mid_lon = (from_lon + to_lon) / 2
    return [
        (from_lat, from_lon),
        (from_lat + d_lat * 0.3 + off_lat, from_lon + d_lon * 0.3 + off_lon),
        (mid_lat + off_lat, mid_lon + off_lon),
        (from_lat + d_lat * 0.7 + off_lat, from_lon + d_lon * 0.7 + off_lon),
        (to_lat, to_lon),
    ]


class RouteSynthesizer:
    def __init__(
        self,
        scorer: SafetyScorer,
        provider: RoutingProvider,
        speeds: Optional[Mapping[str, float]] = None,
        provider_timeout: float = PROVIDER_TIMEOUT_SECONDS,
    ):
        self.scorer = scorer
        self.provider = provider
        self.speeds = dict(speeds or MODE_SPEEDS_KMH)
        self.provider_timeout = provider_timeout

    # ── Helpers ──

    def _plan(
        self,
        coords: list[Coord],
        distance_km: float,
        duration_min: float,
        safety: float,
        priority: float,
        kind: str,
        **extra,
    ) -> RoutePlan:
        return RoutePlan(
            coordinates=coords,
            distance_km=round(distance_km, 2),
            duration_min=round(duration_min, 1),
            safety_score=round(safety, 2),
            cost=round(route_cost(priority, safety, duration_min), 3),
            kind=kind,
            **extra,
        )

    async def _fetch(self, *args, alternative: bool = False) -> Optional[ProviderRoute]:
        try:
            return await asyncio.wait_for(
                self.provider.route(*args, alternative=alternative),
                timeout=self.provider_timeout,
            )
        except ProviderUnavailableError as e:
            logger.warning(f"Routing provider unavailable: {e}")
        except asyncio.TimeoutError:
            logger.warning(f"Routing provider timed out after {self.provider_timeout}s")
        except Exception as e:
            logger.exception(f"Routing provider {self.provider.name} failed unexpectedly: {e}")
        return None

    # ── Entry point ──

    async def compute_routes(
        self,
        from_lat: float,
        from_lon: float,
        to_lat: float,
        to_lon: float,
        mode: str = DEFAULT_MODE,
        priority: float = 0.5,
        factor_weights: Optional[Mapping[str, float]] = None,
        severity_overrides: Optional[Mapping[str, float]] = None,
    ) -> RouteComparison:
        if not (is_valid_coordinate(from_lat, from_lon) and is_valid_coordinate(to_lat, to_lon)):
            raise ValidationError("Route endpoints must be valid coordinates")
        if mode not in self.speeds:
            logger.debug(f"Unknown travel mode '{mode}', using {DEFAULT_MODE}")
            mode = DEFAULT_MODE
        priority = min(1.0, max(0.0, float(priority)))
        weights = resolve_factor_weights(factor_weights)
        # Warm the override memo once for the whole request
        self.scorer.snapshot_for(severity_overrides)

        def path_score(coords: list[Coord]) -> float:
            return self.scorer.score_along_path(coords, weights, severity_overrides)

        def point_score(lat: float, lon: float) -> float:
            return self.scorer.composite_at(lat, lon, weights, severity_overrides)

        def result(fastest: RoutePlan, safest: RoutePlan, provider: str) -> RouteComparison:
            return RouteComparison(fastest, safest, provider, mode, priority, weights)

        # Identical endpoints: nothing to route
        if from_lat == to_lat and from_lon == to_lon:
            safety = point_score(from_lat, from_lon)
            fastest = self._plan([(from_lat, from_lon)], 0.0, 0.0, safety, priority, "fastest")
            return result(fastest, replace(fastest, kind="safest"), "none")

        endpoints = (from_lat, from_lon, to_lat, to_lon, mode)
        primary = await self._fetch(*endpoints)
        if primary is None:
            fastest = self._straight_line(from_lat, from_lon, to_lat, to_lon, mode, priority, point_score)
            return result(fastest, replace(fastest, kind="safest"), "straight-line")

        fastest_safety = path_score(primary.coordinates)
        fastest = self._plan(
            primary.coordinates,
            primary.distance_m / 1000,
            primary.duration_s / 60,
            fastest_safety,
            priority,
            "fastest",
            instructions=primary.steps,
        )

        safest, safest_safety = None, None
        alt = await self._fetch(*endpoints, alternative=True)
        if alt is not None:
            alt_safety = path_score(alt.coordinates)
            if alt_safety < fastest_safety:
                safest_safety = alt_safety
                safest = self._plan(
                    alt.coordinates,
                    alt.distance_m / 1000,
                    alt.duration_s / 60,
                    alt_safety,
                    priority,
                    "safest",
                    instructions=alt.steps,
                )

        if safest is None:
            safest, safest_safety = self._deviate(
                from_lat, from_lon, to_lat, to_lon, mode, priority, point_score, path_score
            )

        if safest_safety > fastest_safety:
            logger.debug("Derived safest route scores worse than fastest; reusing fastest geometry")
            safest = replace(fastest, kind="safest")

        return result(fastest, safest, f"{self.provider.name}+safety")

    # ── Fallbacks ──

    def _straight_line(self, from_lat, from_lon, to_lat, to_lon, mode, priority, point_score) -> RoutePlan:
        distance = haversine_km(from_lat, from_lon, to_lat, to_lon)
        duration = distance / speed_for_mode(mode, self.speeds) * 60
        mid_lat = (from_lat + to_lat) / 2
        mid_lon = (from_lon + to_lon) / 2
        safety = (
            point_score(from_lat, from_lon)
            + point_score(mid_lat, mid_lon)
            + point_score(to_lat, to_lon)
        ) / 3
        return self._plan(
            [(from_lat, from_lon), (to_lat, to_lon)],
            distance,
            duration,
            safety,
            priority,
            "fastest",
            instructions=[{
                "instruction": f"Head straight to destination ({distance:.1f}km)",
                "distance": distance * 1000,
                "duration": duration * 60,
            }],
            fallback=True,
        )

    def _deviate(self, from_lat, from_lon, to_lat, to_lon, mode, priority, point_score, path_score):
        mid_lat = (from_lat + to_lat) / 2
        mid_lon = (from_lon + to_lon) / 2
        threshold = 0.7 - 0.4 * priority

        if point_score(mid_lat, mid_lon) > threshold:
            path = detour_path(from_lat, from_lon, to_lat, to_lon, priority)
        else:
            path = [(from_lat, from_lon), (mid_lat, mid_lon), (to_lat, to_lon)]

        distance = path_length_km(path)
        duration = distance / speed_for_mode(mode, self.speeds) * 60
        safety = path_score(path)
        plan = self._plan(
            path,
            distance,
            duration,
            safety,
            priority,
            "safest",
            instructions=[{
                "instruction": f"Follow the safest route to destination ({distance:.1f}km)",
                "distance": distance * 1000,
                "duration": duration * 60,
            }],
            modified=True,
        )
        return plan, safety
