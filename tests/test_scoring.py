"""Tests for composite safety scoring over the grid."""

import pytest

from conftest import build_index, make_record
from errors import ValidationError
from grid_index import SpatialGridIndex
from scoring import (
    ProxyStrategies,
    SafetyScorer,
    distance_lighting,
    resolve_factor_weights,
)

A = (51.50, -0.13)   # two incidents, severity 1.0 + 0.5
C = (51.60, -0.00)   # one incident, severity 0.2
EMPTY = (51.30, -0.40)


class TestExampleScenario:
    def test_default_weights(self, scorer):
        """Default weights: A is scored near its full crime weight, C well below neutral"""
        a = scorer.score_at(*A)
        c = scorer.score_at(*C)
        # A: crime 1.0, collision 0.3, hazard 0.2, lighting ~0.0257
        #    0.4*1.0 + 0.25*0.3 + 0.2*0.0257 + 0.15*0.2 ≈ 0.5101
        assert a.crime == pytest.approx(1.0)
        assert a.composite == pytest.approx(0.5101, abs=1e-3)
        # C: crime 0.6*0.5 + 0.4*(0.2/1.5) ≈ 0.3533, lighting ~0.5261
        assert c.crime == pytest.approx(0.3533, abs=1e-3)
        assert c.composite == pytest.approx(0.2837, abs=1e-3)
        assert scorer.score_at(*EMPTY).composite == 0.5

    def test_crime_and_lighting_weighted_ordering(self, scorer):
        """With crime and lighting weights only: A > C > neutral default"""
        weights = {"crime": 1.0, "lighting": 0.5, "collision": 0.0, "hazard": 0.0}
        a = scorer.composite_at(*A, factor_weights=weights)
        c = scorer.composite_at(*C, factor_weights=weights)
        empty = scorer.composite_at(*EMPTY, factor_weights=weights)
        # A: 1.0 + 0.5*0.0257 → clamped to 1.0; C: 0.3533 + 0.5*0.5261 ≈ 0.616
        assert a == 1.0
        assert c == pytest.approx(0.616, abs=1e-3)
        assert empty == 0.5
        assert a > c > empty


class TestScoreBounds:
    def test_populated_cells_stay_in_unit_interval(self, scorer):
        for weights in (None, {"crime": 5.0}, {"crime": 0, "collision": 0, "lighting": 0, "hazard": 0}):
            for point in (A, C, (51.505, -0.125), (51.61, 0.005)):
                composite = scorer.composite_at(*point, factor_weights=weights)
                assert 0.0 <= composite <= 1.0

    def test_deterministic_for_fixed_snapshot(self, scorer):
        first = scorer.score_at(*A, factor_weights={"crime": 0.7})
        second = scorer.score_at(*A, factor_weights={"crime": 0.7})
        assert first == second

    def test_no_data_within_ring_one_is_neutral(self, scorer):
        score = scorer.score_at(*EMPTY)
        assert score.composite == 0.5
        assert score.source == "default"

    def test_unloaded_index_is_neutral(self):
        score = SafetyScorer(SpatialGridIndex()).score_at(*A)
        assert score.composite == 0.5
        assert score.crime == 0.5
        assert score.source == "default"

    def test_invalid_coordinate_rejected(self, scorer):
        with pytest.raises(ValidationError):
            scorer.score_at(123.0, 0.0)
        with pytest.raises(ValidationError):
            scorer.score_at(float("nan"), 0.0)


class TestNeighborFallback:
    def test_empty_cell_averages_ring_one(self, scorer):
        """(51.51, -0.13) has no incidents; its only ring-1 neighbour is A"""
        fallback = scorer.score_at(51.51, -0.13)
        assert fallback.source == "neighbors"
        assert fallback.incident_count == 0
        assert fallback.composite == pytest.approx(scorer.score_at(*A).composite)

    def test_single_incident_beats_distant_empty_cell(self):
        """A known max-severity incident scores above a point 10 cells away"""
        scorer = SafetyScorer(build_index([make_record(51.50, -0.13, severity=1.0)]))
        here = scorer.composite_at(51.50, -0.13)
        ten_cells_away = scorer.composite_at(51.60, -0.13)
        assert ten_cells_away == 0.5
        assert here > ten_cells_away


class TestWeights:
    def test_merge_over_defaults(self):
        weights = resolve_factor_weights({"crime": 0.9})
        assert weights == {"crime": 0.9, "collision": 0.25, "lighting": 0.2, "hazard": 0.15}

    def test_unknown_factor_ignored(self):
        assert "noise" not in resolve_factor_weights({"noise": 1.0})

    def test_negative_weight_rejected(self):
        with pytest.raises(ValidationError):
            resolve_factor_weights({"crime": -0.1})

    def test_non_numeric_weight_rejected(self):
        with pytest.raises(ValidationError):
            resolve_factor_weights({"crime": "lots"})


class TestProxies:
    def test_lighting_zero_at_centre_and_capped(self):
        assert distance_lighting(51.5074, -0.1278) == 0.0
        assert distance_lighting(52.5, -0.1278) == 1.0

    def test_proxies_are_swappable(self, example_index):
        dark = ProxyStrategies(lighting=lambda lat, lon: 1.0, collision=lambda c: 0.0, hazard=lambda c: 0.0)
        score = SafetyScorer(example_index, proxies=dark).score_at(*A)
        assert score.lighting == 1.0
        assert score.collision == 0.0
        # 0.4*1.0 + 0.2*1.0
        assert score.composite == pytest.approx(0.6)


class TestSeverityOverrides:
    def test_override_changes_crime_component(self, scorer):
        overrides = {"Robbery": 0.0, "Burglary": 0.0, "Shoplifting": 1.0}
        a = scorer.score_at(*A, severity_overrides=overrides)
        c = scorer.score_at(*C, severity_overrides=overrides)
        # A: count 2/2, severity 0/1 → 0.6; C: count 1/2, severity 1/1 → 0.7
        assert a.crime == pytest.approx(0.6)
        assert c.crime == pytest.approx(0.7)

    def test_override_set_memoized_once(self, scorer):
        path = [A, C, (51.55, -0.05), A, C]
        scorer.score_along_path(path, severity_overrides={"Robbery": 0.2, "Burglary": 0.9})
        scorer.score_along_path(path, severity_overrides={"Burglary": 0.9, "Robbery": 0.2})
        assert scorer.override_memo.computations == 1

        scorer.score_at(*A, severity_overrides={"Robbery": 0.3})
        assert scorer.override_memo.computations == 2

    def test_rebuild_invalidates_memo_key(self, example_index):
        scorer = SafetyScorer(example_index)
        overrides = {"Robbery": 0.2}
        scorer.score_at(*A, severity_overrides=overrides)
        example_index.build([make_record(51.50, -0.13, "Robbery", 1.0)])
        scorer.score_at(*A, severity_overrides=overrides)
        assert scorer.override_memo.computations == 2

    def test_memo_is_bounded(self, example_index):
        scorer = SafetyScorer(example_index, cache_size=2)
        for w in (0.1, 0.2, 0.3, 0.4):
            scorer.score_at(*A, severity_overrides={"Robbery": w})
        assert len(scorer.override_memo) == 2

    def test_negative_override_rejected(self, scorer):
        with pytest.raises(ValidationError):
            scorer.score_at(*A, severity_overrides={"Robbery": -1})


class TestPathScoring:
    def test_mean_over_samples(self, scorer):
        expected = (scorer.composite_at(*A) + 0.5) / 2
        assert scorer.score_along_path([A, EMPTY]) == pytest.approx(expected)

    def test_empty_path_is_neutral(self, scorer):
        assert scorer.score_along_path([]) == 0.5


class TestMetrics:
    def test_metrics_include_cell_and_weights(self, scorer):
        metrics = scorer.metrics_at(*A)
        assert metrics["cell"] == {"latKey": 5150, "lonKey": -13}
        assert metrics["incidentCount"] == 2
        assert metrics["source"] == "cell"
        assert metrics["factorWeights"]["crime"] == 0.4
