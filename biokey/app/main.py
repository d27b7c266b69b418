"""FastAPI application for keystroke-rhythm verification."""
import logging
import os

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .calibration import thresholds_for
from .context import EngineContext
from .db import ensure_schema, get_db
from .errors import NoProfile, StorageFailure
from .schemas import (
    TimingsRequest,
    VerifyResponse,
    TrainResponse,
    HealthResponse,
    KeyPairProfileResponse,
    ProfileResponse,
    ThresholdsResponse,
    ResetResponse,
)
from .settings import LOG_LEVEL
from .store import ProfileStore
from .verifier import load_profile, verify, train

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create or validate tables on startup
ensure_schema()

app = FastAPI(title="BioKey Verification API", version="0.1.0")

# CORS configuration
_allowed_origins_env = os.getenv("ALLOWED_ORIGINS")
if _allowed_origins_env:
    allowed_origins = [origin.strip() for origin in _allowed_origins_env.split(",")]
else:
    allowed_origins = ["http://localhost:8080"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_engine(db: Session = Depends(get_db)) -> EngineContext:
    """Dependency that wraps the request's session for the engine."""
    return EngineContext(store=ProfileStore(db))


@app.exception_handler(StorageFailure)
async def storage_failure_handler(request: Request, exc: StorageFailure):
    logger.error("Storage failure on %s: %s (%s)", request.url.path, exc, exc.cause)
    return JSONResponse(status_code=500, content={"detail": "Database error"})


@app.exception_handler(NoProfile)
async def no_profile_handler(request: Request, exc: NoProfile):
    return JSONResponse(status_code=404, content={"detail": "No profile found for user"})


@app.get("/health", response_model=HealthResponse)
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.post("/train", response_model=TrainResponse)
def train_profile(body: TimingsRequest, ctx: EngineContext = Depends(get_engine)):
    """Enroll timings into the user's profile unconditionally."""
    summary = train(ctx, body.user_id, body.sample_inputs())
    if summary.failed_pairs:
        raise StorageFailure(
            f"{len(summary.failed_pairs)} of "
            f"{summary.applied + len(summary.failed_pairs)} samples not stored"
        )
    return TrainResponse(status="SUCCESS", message="Profile Updated", applied=summary.applied)


@app.post("/login", response_model=VerifyResponse)
def login(body: TimingsRequest, ctx: EngineContext = Depends(get_engine)):
    """Verify a login attempt's keystroke rhythm.

    ERROR verdicts are returned with status 422 and the same body, so clients
    can tell a missing profile from an attempt that could not be evaluated.
    """
    result = verify(ctx, body.user_id, body.sample_inputs())
    if result.status == "ERROR":
        return JSONResponse(status_code=422, content=result.as_dict())
    return VerifyResponse(**result.as_dict())


@app.get("/users/{user_id}/profile", response_model=ProfileResponse)
def get_profile(user_id: int, ctx: EngineContext = Depends(get_engine)):
    """Get the stored key-pair statistics for a user."""
    profile = load_profile(ctx, user_id)
    pairs = [
        KeyPairProfileResponse.model_validate(row)
        for _, row in sorted(profile.items())
    ]
    return ProfileResponse(user_id=user_id, pairs=pairs)


@app.get("/users/{user_id}/thresholds", response_model=ThresholdsResponse)
def get_thresholds(user_id: int, ctx: EngineContext = Depends(get_engine)):
    """Get the thresholds the next login for this user will be judged against."""
    thresholds = thresholds_for(ctx, user_id)
    return ThresholdsResponse(
        user_id=user_id,
        success_threshold=thresholds.success,
        challenge_threshold=thresholds.challenge,
    )


@app.delete("/users/{user_id}/profile", response_model=ResetResponse)
def reset_profile(user_id: int, ctx: EngineContext = Depends(get_engine)):
    """Delete every enrolled key pair for a user."""
    try:
        removed = ctx.store.reset_profile(user_id)
    except SQLAlchemyError as exc:
        raise StorageFailure(f"Could not reset profile for user {user_id}", exc) from exc

    logger.info("Reset profile for user %s (%d pairs removed)", user_id, removed)
    return ResetResponse(user_id=user_id, removed_pairs=removed)
