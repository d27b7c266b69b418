"""Profile and score-history persistence used by the verification engine."""
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .models import BiometricProfile, Outcome, ScoreHistory, UserThresholds

logger = logging.getLogger(__name__)


class PairLockRegistry:
    """Mutexes keyed by (user_id, key_pair).

    Entries are created on demand and dropped once nobody holds or waits on
    them, so the registry only ever holds keys that are in use.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[int, str], list] = {}

    @contextmanager
    def hold(self, user_id: int, key_pair: str) -> Iterator[None]:
        key = (user_id, key_pair)
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# SQLite has no row locks, so writers in this process also serialize here.
pair_locks = PairLockRegistry()


class ProfileStore:
    """Storage operations keyed by integer user id and key-pair label.

    SQLAlchemy errors are rolled back and re-raised unchanged; callers decide
    whether a failure is fatal.
    """

    def __init__(self, db: Session, locks: PairLockRegistry = pair_locks):
        self.db = db
        self.locks = locks

    def fetch_profiles(self, user_id: int) -> Dict[str, BiometricProfile]:
        rows = (
            self.db.query(BiometricProfile)
            .filter(BiometricProfile.user_id == user_id)
            .all()
        )
        return {row.key_pair: row for row in rows}

    def fetch_success_scores(self, user_id: int, limit: int) -> List[float]:
        """Most recent SUCCESS scores, newest first."""
        rows = (
            self.db.query(ScoreHistory.score)
            .filter(
                ScoreHistory.user_id == user_id,
                ScoreHistory.outcome == Outcome.SUCCESS.value,
            )
            .order_by(ScoreHistory.created_ts_utc.desc(), ScoreHistory.id.desc())
            .limit(limit)
            .all()
        )
        return [float(score) for (score,) in rows]

    def fetch_thresholds(self, user_id: int) -> Optional[UserThresholds]:
        return (
            self.db.query(UserThresholds)
            .filter(UserThresholds.user_id == user_id)
            .first()
        )

    @contextmanager
    def locked_profile(self, user_id: int, key_pair: str) -> Iterator[Optional[BiometricProfile]]:
        """Read-modify-write scope for one profile row.

        Yields the current row (re-read under ``SELECT ... FOR UPDATE``) or
        None when the pair has never been seen.  Changes made inside the block
        are committed on exit and rolled back if the block raises.
        """
        with self.locks.hold(user_id, key_pair):
            try:
                row = (
                    self.db.query(BiometricProfile)
                    .filter(
                        BiometricProfile.user_id == user_id,
                        BiometricProfile.key_pair == key_pair,
                    )
                    .with_for_update()
                    .populate_existing()
                    .one_or_none()
                )
                yield row
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

    def insert_profile(self, user_id: int, key_pair: str, dwell: float, flight: float) -> BiometricProfile:
        """Stage the first observation of a pair; use inside ``locked_profile``."""
        row = BiometricProfile(
            user_id=user_id,
            key_pair=key_pair,
            mean_dwell=dwell,
            mean_flight=flight,
            m2_dwell=0.0,
            m2_flight=0.0,
            sample_count=1,
        )
        self.db.add(row)
        return row

    def upsert_thresholds(
        self, user_id: int, success: float, challenge: float, updated_ts_utc: str
    ) -> UserThresholds:
        """Replace the user's thresholds row, creating it if needed.

        Two first-time writers can race on the unique user_id; the loser
        retries as an update.
        """
        for attempt in range(2):
            try:
                existing = self.fetch_thresholds(user_id)
                if existing:
                    existing.success_threshold = success
                    existing.challenge_threshold = challenge
                    existing.updated_ts_utc = updated_ts_utc
                else:
                    existing = UserThresholds(
                        user_id=user_id,
                        success_threshold=success,
                        challenge_threshold=challenge,
                        updated_ts_utc=updated_ts_utc,
                    )
                    self.db.add(existing)
                self.db.commit()
                return existing
            except IntegrityError:
                self.db.rollback()
                if attempt:
                    raise
                logger.info("Concurrent threshold insert for user %s, retrying as update", user_id)
            except SQLAlchemyError:
                self.db.rollback()
                raise

    def append_history(
        self,
        user_id: int,
        score: float,
        outcome: Outcome,
        coverage_ratio: Optional[float],
        matched_pairs: Optional[int],
        created_ts_utc: str,
    ) -> ScoreHistory:
        entry = ScoreHistory(
            user_id=user_id,
            score=score,
            outcome=outcome.value,
            coverage_ratio=coverage_ratio,
            matched_pairs=matched_pairs,
            created_ts_utc=created_ts_utc,
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return entry

    def reset_profile(self, user_id: int) -> int:
        """Delete every key-pair row for the user.  Returns rows removed."""
        try:
            removed = (
                self.db.query(BiometricProfile)
                .filter(BiometricProfile.user_id == user_id)
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return removed
