import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .background import drain
from .database import init_db
from .errors import (
    AppendOnlyViolation,
    ConflictError,
    InvalidTransition,
    NotFoundError,
    StorageError,
    SyncFailed,
    TimelineError,
    TooManyAmendments,
    ValidationError,
)
from .routers import account, documents, entries, sources, timeline
from .schemas import UserCreate, UserRead, UserUpdate
from .settings.config import settings
from .users import auth_backend, fastapi_users

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Health Timeline")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Update for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----------------------
# Route Includes
# ----------------------
app.include_router(timeline.router)
app.include_router(entries.router)
app.include_router(documents.router)
app.include_router(sources.router)
app.include_router(account.router)

# Authentication Routes
app.include_router(
    fastapi_users.get_auth_router(auth_backend),
    prefix="/auth/jwt",
    tags=["auth"]
)
app.include_router(
    fastapi_users.get_register_router(UserRead, UserCreate),
    prefix="/auth",
    tags=["auth"]
)
app.include_router(
    fastapi_users.get_users_router(UserRead, UserUpdate),
    prefix="/users",
    tags=["users"]
)


# ----------------------
# Error mapping
# ----------------------
# most specific first; InvalidAmendmentTarget is a ValidationError
STATUS_BY_ERROR = (
    (ValidationError, 422),
    (TooManyAmendments, 422),
    (NotFoundError, 404),
    (InvalidTransition, 409),
    (ConflictError, 409),
    (AppendOnlyViolation, 409),
    (SyncFailed, 502),
    (StorageError, 503),
)


def status_for(exc: TimelineError) -> int:
    for cls, code in STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return code
    return 500


@app.exception_handler(TimelineError)
async def _timeline_error_handler(request: Request, exc: TimelineError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.code)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "code": exc.code})


@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.on_event("startup")
async def on_startup():
    from . import models  # noqa: F401  (registers tables on Base.metadata)
    await init_db()


@app.on_event("shutdown")
async def on_shutdown():
    await drain(timeout=10)
