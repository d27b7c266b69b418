"""Application settings."""
import os
from pathlib import Path

# Database file lives at repo root unless DATABASE_URL points elsewhere
REPO_ROOT = Path(__file__).resolve().parent.parent.parent
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{REPO_ROOT / 'biokey.db'}")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Request shape limits enforced at the HTTP boundary
MAX_TIMING_SAMPLES = int(os.getenv("MAX_TIMING_SAMPLES", "500"))
MAX_TIMING_MS = float(os.getenv("MAX_TIMING_MS", "5000"))
MAX_PAIR_LENGTH = int(os.getenv("MAX_PAIR_LENGTH", "16"))
