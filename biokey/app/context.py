"""Per-request context handed to every engine operation."""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from .store import ProfileStore


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EngineContext:
    """Storage handle, clock and logger for one engine call."""
    store: ProfileStore
    clock: Callable[[], datetime] = utc_now
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("biokey.engine"))

    def now_iso(self) -> str:
        return self.clock().isoformat()
