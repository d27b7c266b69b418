"""Variance-aware distance between an attempt and a stored typing profile.

The score is unitless and lower is better.  Each matched key pair contributes
two clipped z-scores (dwell and flight) passed through a Huber loss, so one
fat-fingered key cannot dominate the aggregate.  Features are weighted by how
much history backs them and by how consistent they normally are; the result
is a weighted RMS of the losses.

Attempts that match too few enrolled pairs are not scored at all.  Attempts
that match enough pairs but cover a small share of the submitted sample get
a multiplicative penalty instead.
"""
from dataclasses import dataclass
from typing import Mapping, Sequence, List, Tuple

import numpy as np

from .errors import InsufficientEvidence
from .models import BiometricProfile
from .samples import AttemptSample

DEFAULT_SUCCESS_THRESHOLD = 1.75
DEFAULT_CHALLENGE_THRESHOLD = 3.0

MIN_MATCHED_PAIRS = 6
MIN_COVERAGE_RATIO = 0.55
MIN_FEATURE_STD = 15.0
MAX_Z = 5.0
HUBER_DELTA = 2.5
MIN_FEATURE_WEIGHT = 0.01

# Score reported for attempts that could not be evaluated.
UNSCORABLE_SCORE = DEFAULT_CHALLENGE_THRESHOLD + 1.0


@dataclass(frozen=True)
class MatchedFeature:
    pair: str
    attempt_dwell: float
    attempt_flight: float
    mean_dwell: float
    mean_flight: float
    std_dwell: float
    std_flight: float
    sample_count: int


@dataclass(frozen=True)
class ScoreResult:
    distance: float
    matched_pairs: int
    coverage_ratio: float


def match_features(
    samples: Sequence[AttemptSample],
    profile: Mapping[str, BiometricProfile],
) -> Tuple[List[MatchedFeature], float]:
    """Join samples to profile rows by label.

    Returns the matched features and the coverage ratio (matched / submitted).
    """
    matched = []
    for sample in samples:
        row = profile.get(sample.pair)
        if row is None:
            continue
        matched.append(MatchedFeature(
            pair=sample.pair,
            attempt_dwell=sample.dwell,
            attempt_flight=sample.flight,
            mean_dwell=float(row.mean_dwell),
            mean_flight=float(row.mean_flight),
            std_dwell=float(row.std_dwell),
            std_flight=float(row.std_flight),
            sample_count=int(row.sample_count),
        ))

    coverage_ratio = len(matched) / len(samples) if samples else 0.0
    return matched, coverage_ratio


def huber_loss(z):
    """Quadratic inside +/-HUBER_DELTA, linear outside.  Works elementwise."""
    abs_z = np.abs(z)
    return np.where(
        abs_z <= HUBER_DELTA,
        0.5 * abs_z * abs_z,
        HUBER_DELTA * (abs_z - 0.5 * HUBER_DELTA),
    )


def feature_weights(std_dwell: np.ndarray, std_flight: np.ndarray, sample_count: np.ndarray) -> np.ndarray:
    """Trust pairs backed by more samples and pairs that are normally steady.

    Standard deviations are expected to be floored already.
    """
    stability = np.log(np.maximum(sample_count, 2) + 1.0)
    variance = 1.0 / std_dwell + 1.0 / std_flight
    return np.maximum(stability * variance, MIN_FEATURE_WEIGHT)


def weighted_variance_aware_score(matched: Sequence[MatchedFeature]) -> float:
    if not matched:
        return UNSCORABLE_SCORE

    attempt_dwell = np.array([f.attempt_dwell for f in matched], dtype=float)
    attempt_flight = np.array([f.attempt_flight for f in matched], dtype=float)
    mean_dwell = np.array([f.mean_dwell for f in matched], dtype=float)
    mean_flight = np.array([f.mean_flight for f in matched], dtype=float)
    std_dwell = np.maximum(np.array([f.std_dwell for f in matched], dtype=float), MIN_FEATURE_STD)
    std_flight = np.maximum(np.array([f.std_flight for f in matched], dtype=float), MIN_FEATURE_STD)
    sample_count = np.array([f.sample_count for f in matched], dtype=float)

    z_dwell = np.clip((attempt_dwell - mean_dwell) / std_dwell, -MAX_Z, MAX_Z)
    z_flight = np.clip((attempt_flight - mean_flight) / std_flight, -MAX_Z, MAX_Z)
    losses = huber_loss(z_dwell) + huber_loss(z_flight)

    weights = feature_weights(std_dwell, std_flight, sample_count)
    weight_sum = float(np.sum(weights * 2.0))
    if weight_sum <= 0:
        return UNSCORABLE_SCORE

    return float(np.sqrt(np.sum(weights * losses) / weight_sum))


def coverage_penalty(coverage_ratio: float) -> float:
    if coverage_ratio >= MIN_COVERAGE_RATIO:
        return 1.0
    return 1.0 + (MIN_COVERAGE_RATIO - coverage_ratio) * 2.0


def score_attempt(
    samples: Sequence[AttemptSample],
    profile: Mapping[str, BiometricProfile],
) -> ScoreResult:
    """Score canonical samples against a user's profile rows.

    Raises InsufficientEvidence (carrying the sentinel score) when fewer than
    MIN_MATCHED_PAIRS samples match, however well that subset would score.
    """
    matched, coverage_ratio = match_features(samples, profile)
    matched_pairs = len(matched)

    if matched_pairs < MIN_MATCHED_PAIRS:
        raise InsufficientEvidence(UNSCORABLE_SCORE, matched_pairs, coverage_ratio)

    distance = weighted_variance_aware_score(matched) * coverage_penalty(coverage_ratio)
    return ScoreResult(
        distance=distance,
        matched_pairs=matched_pairs,
        coverage_ratio=coverage_ratio,
    )
