"""SQLAlchemy ORM models."""
import enum
import math

from sqlalchemy import Column, Integer, String, Float, UniqueConstraint

from .db import Base


class Outcome(str, enum.Enum):
    """Audit outcome stored per verification attempt.

    LOW_COVERAGE is only ever written to history; the API reports it as ERROR.
    """
    SUCCESS = "SUCCESS"
    CHALLENGE = "CHALLENGE"
    DENIED = "DENIED"
    ERROR = "ERROR"
    LOW_COVERAGE = "LOW_COVERAGE"


def sample_std(m2: float, count: int) -> float:
    """Sample standard deviation from a Welford M2 accumulator."""
    if count <= 1:
        return 0.0
    return math.sqrt(max(m2, 0.0) / (count - 1))


class BiometricProfile(Base):
    """Running dwell/flight statistics for one (user, key pair)."""
    __tablename__ = "biometric_profiles"
    __table_args__ = (
        UniqueConstraint("user_id", "key_pair", name="uq_biometric_profiles_user_pair"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    key_pair = Column(String(16), nullable=False)
    mean_dwell = Column(Float, nullable=False)
    mean_flight = Column(Float, nullable=False)
    m2_dwell = Column(Float, nullable=False, default=0.0)
    m2_flight = Column(Float, nullable=False, default=0.0)
    sample_count = Column(Integer, nullable=False, default=0)

    @property
    def std_dwell(self) -> float:
        return sample_std(self.m2_dwell, self.sample_count)

    @property
    def std_flight(self) -> float:
        return sample_std(self.m2_flight, self.sample_count)


class UserThresholds(Base):
    """Calibrated decision thresholds, one row per user (overwritten)."""
    __tablename__ = "user_score_thresholds"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, unique=True, index=True, nullable=False)
    success_threshold = Column(Float, nullable=False)
    challenge_threshold = Column(Float, nullable=False)
    updated_ts_utc = Column(String, nullable=False)


class ScoreHistory(Base):
    """Append-only record of every scored (or unscorable) attempt."""
    __tablename__ = "user_score_history"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    score = Column(Float, nullable=False)
    outcome = Column(String(24), index=True, nullable=False)
    coverage_ratio = Column(Float, nullable=True)
    matched_pairs = Column(Integer, nullable=True)
    created_ts_utc = Column(String, nullable=False)
