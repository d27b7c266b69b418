"""Error taxonomy for the verification engine."""
from typing import Optional


class BiometricError(Exception):
    """Base class for engine errors."""


class NoProfile(BiometricError):
    """The user has no enrolled key pairs at all."""

    def __init__(self, user_id: int):
        super().__init__(f"No profile found for user {user_id}")
        self.user_id = user_id


class InsufficientEvidence(BiometricError):
    """Too few key pairs in the attempt matched the profile to score it."""

    def __init__(self, score: float, matched_pairs: int, coverage_ratio: float):
        super().__init__(
            f"Insufficient matched pairs ({matched_pairs} matched, "
            f"coverage {coverage_ratio:.3f})"
        )
        self.score = score
        self.matched_pairs = matched_pairs
        self.coverage_ratio = coverage_ratio


class StorageFailure(BiometricError):
    """A read or write against the profile store failed."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
