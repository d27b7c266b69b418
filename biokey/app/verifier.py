"""Login verification and enrollment built on the scoring engine."""
from dataclasses import dataclass, field, asdict
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from .calibration import thresholds_for
from .context import EngineContext
from .errors import InsufficientEvidence, NoProfile, StorageFailure
from .models import BiometricProfile, Outcome
from .samples import AttemptSample, AttemptSampleInput, normalize_samples
from .scoring import score_attempt
from .stats import apply_observation

ADAPTIVE_UPDATE_MAX_PAIRS = 160

RawSamples = Iterable[Union[AttemptSampleInput, AttemptSample]]


@dataclass
class VerifyResult:
    status: str
    score: Optional[float] = None
    matched_pairs: Optional[int] = None
    coverage_ratio: Optional[float] = None
    success_threshold: Optional[float] = None
    challenge_threshold: Optional[float] = None
    message: Optional[str] = None

    def as_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class TrainSummary:
    applied: int = 0
    failed_pairs: List[str] = field(default_factory=list)


def _record(ctx: EngineContext, user_id: int, score: float, outcome: Outcome,
            coverage_ratio: Optional[float], matched_pairs: Optional[int]) -> None:
    try:
        ctx.store.append_history(
            user_id, score, outcome, coverage_ratio, matched_pairs, ctx.now_iso()
        )
    except SQLAlchemyError as exc:
        ctx.logger.warning("Failed to store score history for user %s: %s", user_id, exc)


def _adapt_profile(ctx: EngineContext, user_id: int, samples: List[AttemptSample]) -> int:
    """Drift the profile toward an accepted attempt.  Failures are only logged."""
    applied = 0
    for sample in samples[:ADAPTIVE_UPDATE_MAX_PAIRS]:
        try:
            apply_observation(ctx, user_id, sample.pair, sample.dwell, sample.flight)
            applied += 1
        except SQLAlchemyError as exc:
            ctx.logger.warning(
                "Adaptive update failed for user %s pair %r: %s", user_id, sample.pair, exc
            )
    return applied


def load_profile(ctx: EngineContext, user_id: int) -> Dict[str, BiometricProfile]:
    """All key-pair rows for a user.

    Raises NoProfile if the user never enrolled and StorageFailure if the
    rows cannot be read.
    """
    try:
        profile = ctx.store.fetch_profiles(user_id)
    except SQLAlchemyError as exc:
        ctx.store.db.rollback()
        raise StorageFailure(f"Could not read profile for user {user_id}", exc) from exc

    if not profile:
        raise NoProfile(user_id)
    return profile


def verify(ctx: EngineContext, user_id: int, raw_samples: RawSamples) -> VerifyResult:
    """
    Decide SUCCESS / CHALLENGE / DENIED / ERROR for one login attempt.

    Exactly one score-history entry is appended for every outcome except a
    missing profile (or a batch with no usable timings).  Only SUCCESS
    updates the stored profile.

    Raises StorageFailure if the profile cannot be read.
    """
    try:
        profile = load_profile(ctx, user_id)
    except NoProfile:
        return VerifyResult(status=Outcome.ERROR.value, message="No profile found")

    samples = normalize_samples(raw_samples)
    if not samples:
        return VerifyResult(status=Outcome.ERROR.value, message="No valid attempt timings supplied")

    try:
        result = score_attempt(samples, profile)
    except InsufficientEvidence as exc:
        _record(ctx, user_id, exc.score, Outcome.LOW_COVERAGE, exc.coverage_ratio, exc.matched_pairs)
        ctx.logger.info(
            "Login attempt for user %s: insufficient evidence (%d pairs matched)",
            user_id, exc.matched_pairs,
        )
        return VerifyResult(
            status=Outcome.ERROR.value,
            message="Insufficient matched pairs",
            score=exc.score,
            matched_pairs=exc.matched_pairs,
            coverage_ratio=round(exc.coverage_ratio, 3),
        )

    thresholds = thresholds_for(ctx, user_id)

    if result.distance <= thresholds.success:
        outcome = Outcome.SUCCESS
        applied = _adapt_profile(ctx, user_id, samples)
        ctx.logger.debug("Adaptive update applied %d samples for user %s", applied, user_id)
    elif result.distance <= thresholds.challenge:
        outcome = Outcome.CHALLENGE
    else:
        outcome = Outcome.DENIED

    _record(ctx, user_id, result.distance, outcome, result.coverage_ratio, result.matched_pairs)
    ctx.logger.info(
        "Login attempt for user %s: %s (score=%.4f)", user_id, outcome.value, result.distance
    )

    return VerifyResult(
        status=outcome.value,
        score=round(result.distance, 4),
        matched_pairs=result.matched_pairs,
        coverage_ratio=round(result.coverage_ratio, 3),
        success_threshold=round(thresholds.success, 4),
        challenge_threshold=round(thresholds.challenge, 4),
    )


def train(ctx: EngineContext, user_id: int, raw_samples: RawSamples) -> TrainSummary:
    """
    Enrollment: fold every usable sample into the profile, unconditionally.

    Each sample is its own transaction.  A failed write does not stop the
    rest of the batch; failed pairs are reported in the summary.
    """
    summary = TrainSummary()
    for sample in normalize_samples(raw_samples):
        try:
            apply_observation(ctx, user_id, sample.pair, sample.dwell, sample.flight)
            summary.applied += 1
        except SQLAlchemyError as exc:
            ctx.logger.error(
                "Profile update failed for user %s pair %r: %s", user_id, sample.pair, exc
            )
            summary.failed_pairs.append(sample.pair)

    ctx.logger.info(
        "Updated profile for user %s (%d applied, %d failed)",
        user_id, summary.applied, len(summary.failed_pairs),
    )
    return summary
