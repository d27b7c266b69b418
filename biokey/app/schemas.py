"""Pydantic schemas for request/response validation."""
from typing import Annotated, List, Optional, Union, Literal

from pydantic import BaseModel, Field, ConfigDict, model_validator

from .samples import BareInput, KeyedInput, DWELL_FIELDS
from .settings import MAX_TIMING_MS, MAX_TIMING_SAMPLES, MAX_PAIR_LENGTH

TimingMs = Annotated[float, Field(gt=0, le=MAX_TIMING_MS)]


class KeyedTiming(BaseModel):
    """One key-pair timing given as an object."""
    pair: Optional[str] = Field(None, min_length=1, max_length=MAX_PAIR_LENGTH)
    dwell: Optional[TimingMs] = None
    flight: Optional[TimingMs] = None
    value: Optional[TimingMs] = None
    time: Optional[TimingMs] = None

    @model_validator(mode="after")
    def _has_timing(self):
        if all(getattr(self, name) is None for name in DWELL_FIELDS):
            raise ValueError("timing needs one of: dwell, value, time")
        if self.pair is not None and not self.pair.strip():
            raise ValueError("pair must not be blank")
        return self

    def to_input(self) -> KeyedInput:
        return KeyedInput(
            pair=self.pair,
            dwell=self.dwell,
            flight=self.flight,
            value=self.value,
            time=self.time,
        )


Timing = Union[KeyedTiming, TimingMs]


class TimingsRequest(BaseModel):
    """Body of /train and /login."""
    user_id: int = Field(..., gt=0)
    timings: List[Timing] = Field(..., min_length=1, max_length=MAX_TIMING_SAMPLES)

    def sample_inputs(self) -> List[Union[KeyedInput, BareInput]]:
        return [
            t.to_input() if isinstance(t, KeyedTiming) else BareInput(value=float(t))
            for t in self.timings
        ]


class VerifyResponse(BaseModel):
    """Verdict for one login attempt."""
    status: Literal["SUCCESS", "CHALLENGE", "DENIED", "ERROR"]
    score: Optional[float] = None
    matched_pairs: Optional[int] = None
    coverage_ratio: Optional[float] = None
    success_threshold: Optional[float] = None
    challenge_threshold: Optional[float] = None
    message: Optional[str] = None


class TrainResponse(BaseModel):
    status: Literal["SUCCESS"]
    message: str
    applied: int


class HealthResponse(BaseModel):
    """Response for health check."""
    status: str


class KeyPairProfileResponse(BaseModel):
    """Stored statistics for one key pair."""
    model_config = ConfigDict(from_attributes=True)

    key_pair: str
    mean_dwell: float
    mean_flight: float
    std_dwell: float
    std_flight: float
    sample_count: int


class ProfileResponse(BaseModel):
    user_id: int
    pairs: List[KeyPairProfileResponse]


class ThresholdsResponse(BaseModel):
    user_id: int
    success_threshold: float
    challenge_threshold: float


class ResetResponse(BaseModel):
    user_id: int
    removed_pairs: int
