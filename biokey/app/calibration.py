"""Per-user adaptive decision thresholds."""
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from sqlalchemy.exc import SQLAlchemyError

from .context import EngineContext
from .scoring import DEFAULT_SUCCESS_THRESHOLD, DEFAULT_CHALLENGE_THRESHOLD

CALIBRATION_MIN_SCORES = 10
SCORE_HISTORY_LIMIT = 200

MAD_TO_SIGMA = 1.4826
MIN_ROBUST_SIGMA = 0.20
SUCCESS_SIGMAS = 2.2
CHALLENGE_SIGMAS = 3.6
MIN_THRESHOLD_GAP = 0.4
THRESHOLD_FLOOR_FACTOR = 0.75


@dataclass(frozen=True)
class Thresholds:
    success: float
    challenge: float


DEFAULT_THRESHOLDS = Thresholds(DEFAULT_SUCCESS_THRESHOLD, DEFAULT_CHALLENGE_THRESHOLD)


def robust_thresholds(scores: Sequence[float]) -> Thresholds:
    """Median/MAD thresholds, never tighter than the system-wide floors."""
    values = np.asarray(scores, dtype=float)
    med = float(np.median(values))
    mad = float(np.median(np.abs(values - med)))
    robust_sigma = max(MAD_TO_SIGMA * mad, MIN_ROBUST_SIGMA)

    success = max(
        med + SUCCESS_SIGMAS * robust_sigma,
        THRESHOLD_FLOOR_FACTOR * DEFAULT_SUCCESS_THRESHOLD,
    )
    challenge = max(
        med + CHALLENGE_SIGMAS * robust_sigma,
        success + MIN_THRESHOLD_GAP,
        THRESHOLD_FLOOR_FACTOR * DEFAULT_CHALLENGE_THRESHOLD,
    )
    return Thresholds(success=success, challenge=challenge)


def _stored_or_default(ctx: EngineContext, user_id: int) -> Thresholds:
    try:
        stored = ctx.store.fetch_thresholds(user_id)
    except SQLAlchemyError as exc:
        ctx.store.db.rollback()
        ctx.logger.warning("Could not read stored thresholds for user %s: %s", user_id, exc)
        return DEFAULT_THRESHOLDS

    if stored is None:
        return DEFAULT_THRESHOLDS
    return Thresholds(float(stored.success_threshold), float(stored.challenge_threshold))


def thresholds_for(ctx: EngineContext, user_id: int) -> Thresholds:
    """
    Effective thresholds for a user.

    Users with fewer than CALIBRATION_MIN_SCORES successful logins keep their
    last persisted thresholds, or the population defaults if they have none.
    Otherwise thresholds are recomputed from the most recent
    SCORE_HISTORY_LIMIT successes and the stored row is overwritten.

    Storage failures never fail the caller: a failed read falls back to the
    stored/default thresholds and a failed write still returns the freshly
    computed values.
    """
    try:
        scores = ctx.store.fetch_success_scores(user_id, SCORE_HISTORY_LIMIT)
    except SQLAlchemyError as exc:
        ctx.store.db.rollback()
        ctx.logger.warning("Could not read score history for user %s: %s", user_id, exc)
        return _stored_or_default(ctx, user_id)

    if len(scores) < CALIBRATION_MIN_SCORES:
        return _stored_or_default(ctx, user_id)

    thresholds = robust_thresholds(scores)

    try:
        ctx.store.upsert_thresholds(
            user_id, thresholds.success, thresholds.challenge, ctx.now_iso()
        )
    except SQLAlchemyError as exc:
        ctx.logger.warning("Could not persist thresholds for user %s: %s", user_id, exc)

    return thresholds
