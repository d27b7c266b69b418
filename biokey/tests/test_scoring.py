"""Test the variance-aware distance and its policy gates."""
import math

import numpy as np
import pytest

from biokey.app.errors import InsufficientEvidence
from biokey.app.models import BiometricProfile
from biokey.app.samples import AttemptSample
from biokey.app.scoring import (
    MIN_MATCHED_PAIRS,
    UNSCORABLE_SCORE,
    coverage_penalty,
    feature_weights,
    huber_loss,
    match_features,
    score_attempt,
    weighted_variance_aware_score,
)

PAIRS = ["ab", "bc", "cd", "de", "ef", "fg"]


def make_row(pair, mean_dwell=100.0, mean_flight=50.0, std=20.0, count=12):
    """Profile row whose Welford accumulator yields the given std."""
    m2 = std * std * (count - 1) if count > 1 else 0.0
    return BiometricProfile(
        user_id=1,
        key_pair=pair,
        mean_dwell=mean_dwell,
        mean_flight=mean_flight,
        m2_dwell=m2,
        m2_flight=m2,
        sample_count=count,
    )


def make_profile(pairs=PAIRS, **kwargs):
    return {pair: make_row(pair, **kwargs) for pair in pairs}


def samples_for(pairs, dwell=100.0, flight=50.0):
    return [AttemptSample(pair=p, dwell=dwell, flight=flight) for p in pairs]


class TestHuberLoss:

    @pytest.mark.parametrize("z, expected", [
        (0.0, 0.0),
        (1.0, 0.5),
        (-1.0, 0.5),
        (2.5, 3.125),
        (4.0, 6.875),
        (-4.0, 6.875),
        (5.0, 9.375),
    ])
    def test_values(self, z, expected):
        assert float(huber_loss(z)) == pytest.approx(expected)

    def test_grows_linearly_beyond_delta(self):
        assert float(huber_loss(4.0) - huber_loss(3.0)) == pytest.approx(2.5)


class TestMatching:

    def test_unmatched_samples_are_dropped(self):
        matched, coverage = match_features(samples_for(["ab", "zz", "bc", "yy"]), make_profile())
        assert [f.pair for f in matched] == ["ab", "bc"]
        assert coverage == 0.5

    def test_coverage_is_a_ratio_of_submitted_samples(self):
        profile = make_profile()
        for attempt in (["zz"], PAIRS, PAIRS + ["x1", "x2"], ["ab"] * 3):
            matched, coverage = match_features(samples_for(attempt), profile)
            assert 0.0 <= coverage <= 1.0
            assert len(matched) <= len(attempt)

    def test_empty_attempt_has_zero_coverage(self):
        matched, coverage = match_features([], make_profile())
        assert matched == []
        assert coverage == 0.0


class TestScoreAttempt:

    def test_exact_match_scores_zero(self):
        result = score_attempt(samples_for(PAIRS), make_profile())
        assert result.distance == 0.0
        assert result.matched_pairs == 6
        assert result.coverage_ratio == 1.0

    def test_three_matched_pairs_is_unscorable(self):
        with pytest.raises(InsufficientEvidence) as exc_info:
            score_attempt(samples_for(PAIRS[:3]), make_profile())

        err = exc_info.value
        assert err.score == UNSCORABLE_SCORE == 4.0
        assert err.matched_pairs == 3
        assert err.coverage_ratio == 1.0

    def test_gate_applies_no_matter_how_good_the_subset(self):
        attempt = samples_for(PAIRS[:MIN_MATCHED_PAIRS - 1]) + samples_for(["x1", "x2"])
        with pytest.raises(InsufficientEvidence) as exc_info:
            score_attempt(attempt, make_profile())
        assert exc_info.value.matched_pairs == MIN_MATCHED_PAIRS - 1

    def test_uniform_one_sigma_dwell_offset(self):
        # z_dwell = 1 everywhere, z_flight = 0: sqrt((0.5 + 0) / 2)
        result = score_attempt(samples_for(PAIRS, dwell=120.0), make_profile())
        assert result.distance == pytest.approx(0.5)

    def test_low_coverage_is_penalized_proportionally(self):
        attempt = samples_for(PAIRS, dwell=120.0) + samples_for([f"x{i}" for i in range(6)])
        result = score_attempt(attempt, make_profile())
        assert result.coverage_ratio == 0.5
        assert result.distance == pytest.approx(0.5 * 1.1)

    def test_z_scores_are_clipped(self):
        far = score_attempt(samples_for(PAIRS, dwell=100.0 + 20 * 5), make_profile())
        farther = score_attempt(samples_for(PAIRS, dwell=100.0 + 20 * 50), make_profile())
        assert far.distance == pytest.approx(farther.distance)
        assert far.distance == pytest.approx(math.sqrt(9.375 / 2))

    def test_std_is_floored(self):
        # A single-sample pair (std 0) behaves like one with std exactly at the floor.
        unset = make_profile(std=0.0, count=1)
        floored = make_profile(std=15.0, count=2)
        attempt = samples_for(PAIRS, dwell=130.0, flight=65.0)
        assert score_attempt(attempt, unset).distance == pytest.approx(
            score_attempt(attempt, floored).distance
        )

    def test_deviation_on_steady_key_counts_more(self):
        profile = make_profile(std=60.0)
        profile["ab"] = make_row("ab", std=15.0)
        attempt = samples_for(PAIRS)

        steady_off = list(attempt)
        steady_off[0] = AttemptSample("ab", 100.0 + 30.0, 50.0)
        noisy_off = list(attempt)
        noisy_off[1] = AttemptSample("bc", 100.0 + 120.0, 50.0)

        # Both deviations are z = 2, but the steady key carries more weight.
        assert score_attempt(steady_off, profile).distance > score_attempt(noisy_off, profile).distance


class TestWeights:

    def test_weight_formula(self):
        weights = feature_weights(np.array([15.0]), np.array([15.0]), np.array([12.0]))
        assert weights[0] == pytest.approx(math.log(13.0) * (2.0 / 15.0))

    def test_more_history_means_more_weight(self):
        std = np.array([20.0, 20.0])
        weights = feature_weights(std, std, np.array([3.0, 300.0]))
        assert weights[1] > weights[0]

    def test_small_counts_share_the_minimum_stability(self):
        std = np.array([20.0, 20.0, 20.0])
        weights = feature_weights(std, std, np.array([0.0, 1.0, 2.0]))
        assert weights[0] == weights[1] == weights[2]

    def test_weight_never_drops_below_minimum(self):
        huge = np.array([1e9])
        assert feature_weights(huge, huge, np.array([2.0]))[0] == pytest.approx(0.01)


def test_no_features_is_unscorable():
    assert weighted_variance_aware_score([]) == UNSCORABLE_SCORE


@pytest.mark.parametrize("coverage, expected", [
    (1.0, 1.0),
    (0.55, 1.0),
    (0.5, 1.1),
    (0.25, 1.6),
])
def test_coverage_penalty(coverage, expected):
    assert coverage_penalty(coverage) == pytest.approx(expected)
