"""Online (Welford) statistics for key-pair profiles."""
from dataclasses import dataclass
from typing import Iterable, Tuple

from .context import EngineContext
from .models import sample_std


@dataclass(frozen=True)
class RunningStats:
    """Welford accumulator state for one timing feature."""
    mean: float
    m2: float
    count: int

    @property
    def std(self) -> float:
        return sample_std(self.m2, self.count)


def update_running_stats(old: RunningStats, value: float) -> RunningStats:
    """Fold a single observation into ``old``.

    A zero-count state is the empty accumulator, so the first observation
    yields mean=value, m2=0.
    """
    count = old.count + 1
    delta = value - old.mean
    mean = old.mean + delta / count
    delta2 = value - mean
    m2 = old.m2 + delta * delta2
    return RunningStats(mean=mean, m2=m2, count=count)


def fold(values: Iterable[float], start: RunningStats = RunningStats(0.0, 0.0, 0)) -> RunningStats:
    stats = start
    for value in values:
        stats = update_running_stats(stats, value)
    return stats


def apply_observation(ctx: EngineContext, user_id: int, key_pair: str, dwell: float, flight: float) -> Tuple[int, bool]:
    """Fold one (dwell, flight) observation into the stored profile row.

    Runs as its own transaction with the row locked for the whole
    read-modify-write.  Storage errors propagate to the caller.

    Returns (new sample_count, created).
    """
    store = ctx.store
    with store.locked_profile(user_id, key_pair) as row:
        if row is None:
            store.insert_profile(user_id, key_pair, dwell, flight)
            return 1, True

        count = row.sample_count
        dwell_stats = update_running_stats(RunningStats(row.mean_dwell, row.m2_dwell, count), dwell)
        flight_stats = update_running_stats(RunningStats(row.mean_flight, row.m2_flight, count), flight)

        row.mean_dwell = dwell_stats.mean
        row.m2_dwell = dwell_stats.m2
        row.mean_flight = flight_stats.mean
        row.m2_flight = flight_stats.m2
        row.sample_count = dwell_stats.count
        return row.sample_count, False
