"""Tests for fastest / safest route synthesis with a fake routing provider."""

import asyncio

import pytest

from conftest import FakeRoutingProvider, build_index, make_record, provider_route
from errors import ValidationError
from route_synthesizer import RouteSynthesizer, detour_path, route_cost, speed_for_mode
from scoring import SafetyScorer

HOT = (51.50, -0.13)
FROM = (51.45, -0.25)
TO = (51.55, -0.25)


def synth(records, provider, **kwargs):
    return RouteSynthesizer(SafetyScorer(build_index(records)), provider, **kwargs)


def compute(synthesizer, start, end, **kwargs):
    return asyncio.run(synthesizer.compute_routes(*start, *end, **kwargs))


class TestZeroLength:
    def test_identical_endpoints_short_circuit(self):
        provider = FakeRoutingProvider()
        result = compute(synth([make_record(*HOT)], provider), HOT, HOT, priority=0.7)

        for plan in (result.fastest, result.safest):
            assert plan.distance_km == 0.0
            assert plan.duration_min == 0.0
            assert plan.coordinates == [HOT]
        assert result.fastest.kind == "fastest"
        assert result.safest.kind == "safest"
        # No travel time: cost is priority × safety
        assert result.fastest.cost == pytest.approx(round(0.7 * result.fastest.safety_score, 3), abs=1e-3)
        assert provider.calls == []


class TestStraightLineFallback:
    def test_provider_failure_draws_straight_line(self):
        result = compute(synth([make_record(*HOT)], FakeRoutingProvider()), HOT, (51.51, -0.13))

        assert result.provider == "straight-line"
        assert result.fastest.fallback and result.safest.fallback
        assert result.fastest.coordinates == [HOT, (51.51, -0.13)]
        assert result.safest.coordinates == result.fastest.coordinates
        # 0.01° of latitude ≈ 1.112 km; 1.112 / 5 km/h × 60 ≈ 13.3 min
        assert result.fastest.distance_km == 1.11
        assert result.fastest.duration_min == 13.3
        assert result.fastest.instructions[0]["instruction"] == "Head straight to destination (1.1km)"

    def test_slow_provider_times_out(self):
        provider = FakeRoutingProvider(primary=provider_route([FROM, TO]), delay=1.0)
        result = compute(synth([make_record(*HOT)], provider, provider_timeout=0.05), FROM, TO)
        assert result.provider == "straight-line"

    def test_unexpected_provider_error_draws_straight_line(self):
        class CrashingProvider(FakeRoutingProvider):
            async def route(self, *args, **kwargs):
                raise KeyError("routes")

        result = compute(synth([make_record(*HOT)], CrashingProvider()), HOT, (51.51, -0.13))
        assert result.provider == "straight-line"
        assert result.fastest.fallback is True

    def test_failing_alternative_still_yields_safest(self):
        class AlternativeCrashes(FakeRoutingProvider):
            async def route(self, *args, alternative=False, **kwargs):
                if alternative:
                    raise AttributeError("'str' object has no attribute 'get'")
                return await super().route(*args, alternative=alternative, **kwargs)

        provider = AlternativeCrashes(primary=provider_route([FROM, HOT, TO]))
        result = compute(synth([make_record(*HOT)], provider), FROM, TO, priority=1.0)
        assert result.provider == "fake+safety"
        assert result.safest.modified is True

    def test_unknown_mode_uses_walking_speed(self):
        result = compute(synth([make_record(*HOT)], FakeRoutingProvider()), HOT, (51.51, -0.13), mode="hovercraft")
        assert result.mode == "walking"
        assert result.fastest.duration_min == 13.3


class TestFastest:
    def test_provider_route_scored(self):
        primary = provider_route([FROM, TO], distance_m=1000, duration_s=720)
        result = compute(synth([make_record(*HOT)], FakeRoutingProvider(primary=primary)), FROM, TO, priority=0.5)

        assert result.provider == "fake+safety"
        assert result.fastest.distance_km == 1.0
        assert result.fastest.duration_min == 12.0
        assert result.fastest.safety_score == 0.5
        # 0.5 × 0.5 + 0.5 × (12 / 60)
        assert result.fastest.cost == pytest.approx(0.35)
        assert result.fastest.instructions[0]["instruction"] == "Continue"


class TestSafest:
    def test_strictly_safer_alternative_accepted(self):
        risky = provider_route([FROM, HOT, TO])
        calm = provider_route([FROM, (51.50, -0.40), TO], distance_m=1500, duration_s=1080)
        provider = FakeRoutingProvider(primary=risky, alternative=calm)
        result = compute(synth([make_record(*HOT)], provider), FROM, TO)

        assert result.safest.coordinates == calm.coordinates
        assert result.safest.modified is False
        assert result.safest.distance_km == 1.5
        assert provider.calls[1][-1] is True

    def test_equal_alternative_falls_back_to_detour(self):
        """Alternative no safer: high priority forces a 5-point detour"""
        risky = provider_route([FROM, HOT, TO])
        provider = FakeRoutingProvider(primary=risky, alternative=risky)
        result = compute(synth([make_record(*HOT)], provider), FROM, TO, priority=1.0)

        # Neutral midpoint 0.5 exceeds threshold 0.7 − 0.4 = 0.3
        assert result.safest.modified is True
        assert len(result.safest.coordinates) == 5
        assert result.safest.coordinates[0] == FROM
        assert result.safest.coordinates[-1] == TO

    def test_low_priority_keeps_three_point_path(self):
        risky = provider_route([FROM, HOT, TO])
        result = compute(synth([make_record(*HOT)], FakeRoutingProvider(primary=risky)), FROM, TO, priority=0.0)

        # Neutral midpoint 0.5 is under threshold 0.7
        assert result.safest.modified is True
        coords = result.safest.coordinates
        assert len(coords) == 3
        assert coords[0] == FROM and coords[2] == TO
        assert coords[1] == pytest.approx((51.50, -0.25))

    def test_worse_detour_replaced_by_fastest_geometry(self):
        """A hot cell on the straight line must not make 'safest' less safe"""
        around = provider_route([FROM, (51.45, -0.40), (51.55, -0.40), TO])
        provider = FakeRoutingProvider(primary=around)
        result = compute(synth([make_record(51.50, -0.25)], provider), FROM, TO, priority=0.0)

        assert result.safest.coordinates == result.fastest.coordinates
        assert result.safest.kind == "safest"
        assert result.safest.safety_score == result.fastest.safety_score

    @pytest.mark.parametrize("records,primary", [
        ([make_record(*HOT)], provider_route([FROM, HOT, TO])),
        ([make_record(51.50, -0.25)], provider_route([FROM, (51.45, -0.40), (51.55, -0.40), TO])),
        ([make_record(51.50, -0.25), make_record(51.50, -0.20)], provider_route([FROM, TO])),
    ])
    def test_safest_never_scores_worse_at_any_priority(self, records, primary):
        for priority in (0.0, 0.25, 0.5, 0.75, 1.0):
            provider = FakeRoutingProvider(primary=primary)
            result = compute(synth(records, provider), FROM, TO, priority=priority)
            assert result.safest.safety_score <= result.fastest.safety_score


class TestInputs:
    def test_invalid_endpoint_rejected(self):
        with pytest.raises(ValidationError):
            compute(synth([make_record(*HOT)], FakeRoutingProvider()), (95.0, 0.0), TO)

    def test_priority_clamped(self):
        result = compute(synth([make_record(*HOT)], FakeRoutingProvider()), HOT, (51.51, -0.13), priority=5)
        assert result.safety_priority == 1.0

    def test_negative_factor_weight_rejected(self):
        with pytest.raises(ValidationError):
            compute(synth([make_record(*HOT)], FakeRoutingProvider()), FROM, TO, factor_weights={"crime": -1})


class TestHelpers:
    def test_speeds(self):
        assert speed_for_mode("walking") == 5.0
        assert speed_for_mode("cycling") == 15.0
        assert speed_for_mode("driving") == 30.0
        assert speed_for_mode("teleport") == 5.0

    def test_route_cost(self):
        assert route_cost(1.0, 0.4, 90) == pytest.approx(0.4)
        assert route_cost(0.0, 0.4, 90) == pytest.approx(1.5)

    def test_detour_offsets_perpendicular(self):
        path = detour_path(0.0, 0.0, 1.0, 0.0, priority=1.0)
        # Northward line, offset 0.5 × Δlat to the east
        assert path[2] == pytest.approx((0.5, 0.5))
        assert path[1] == pytest.approx((0.3, 0.5))
        assert path[3] == pytest.approx((0.7, 0.5))
