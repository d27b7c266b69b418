"""Attempt sample inputs and their resolution to canonical samples.

Clients send each timing either as a keyed object or as a bare number.  Both
shapes are resolved here, once, into an ``AttemptSample``; the rest of the
engine only ever sees canonical samples.
"""
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Union


@dataclass(frozen=True)
class AttemptSample:
    """Canonical (pair, dwell, flight) triple, timings in milliseconds."""
    pair: str
    dwell: float
    flight: float


@dataclass(frozen=True)
class KeyedInput:
    """Object-shaped timing.  Any timing field may be missing."""
    pair: Optional[str] = None
    dwell: Optional[float] = None
    flight: Optional[float] = None
    value: Optional[float] = None
    time: Optional[float] = None


@dataclass(frozen=True)
class BareInput:
    """A bare number, used as both dwell and flight."""
    value: float


AttemptSampleInput = Union[KeyedInput, BareInput]

# Field precedence, first present value wins.
DWELL_FIELDS = ("dwell", "value", "time")
FLIGHT_FIELDS = ("flight", "dwell", "value", "time")


def default_pair_label(index: int) -> str:
    return f"k{index}"


def resolve_field(sample: KeyedInput, fields: Sequence[str]) -> Optional[float]:
    """Return the first of ``fields`` that is set on ``sample``, else None."""
    for name in fields:
        value = getattr(sample, name)
        if value is not None:
            return float(value)
    return None


def _usable(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value) and value > 0


def to_attempt_sample(
    raw: Union[AttemptSampleInput, AttemptSample], index: int
) -> Optional[AttemptSample]:
    """Resolve one input to an AttemptSample, or None if it cannot be scored."""
    if isinstance(raw, AttemptSample):
        pair, dwell, flight = raw.pair, raw.dwell, raw.flight
    elif isinstance(raw, BareInput):
        pair = default_pair_label(index)
        dwell = flight = float(raw.value)
    elif isinstance(raw, KeyedInput):
        pair = raw.pair if raw.pair else default_pair_label(index)
        dwell = resolve_field(raw, DWELL_FIELDS)
        flight = resolve_field(raw, FLIGHT_FIELDS)
    else:
        return None

    if not pair or not _usable(dwell) or not _usable(flight):
        return None
    return AttemptSample(pair=str(pair), dwell=float(dwell), flight=float(flight))


def normalize_samples(
    raw_samples: Iterable[Union[AttemptSampleInput, AttemptSample]],
) -> List[AttemptSample]:
    """Resolve a batch, dropping (not failing on) unusable entries.

    Indexes used for default labels are positions in the submitted batch.
    """
    normalized = []
    for index, raw in enumerate(raw_samples):
        sample = to_attempt_sample(raw, index)
        if sample is not None:
            normalized.append(sample)
    return normalized
