"""
Whispr Map API — Application entry point.

Bootstraps FastAPI, wires up middleware, registers route groups,
and manages the map session lifecycle.

Extension points:
  - Add new route groups with app.include_router() below
  - Add new middleware in the middleware block
  - Change startup behaviour in the lifespan context manager

Run:
  uvicorn whispr.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from whispr.core.config import settings
from whispr.core.rate_limit import limiter
from whispr.core.sessions import session_store
from whispr.routes.health import router as health_router
from whispr.routes.sessions import router as sessions_router

# ─── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ─── Lifespan ──────────────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage startup and shutdown lifecycle.

    Code before `yield` runs on startup; code after runs on shutdown, where
    every live map session is torn down so no late fetch touches its state.
    """
    logger.info("Starting Whispr Map API (env: %s)", settings.environment)
    if not settings.map_access_token:
        logger.warning("MAP_ACCESS_TOKEN not set — sessions will report a configuration error")
    yield
    logger.info("Shutting down Whispr Map API")
    session_store.close_all()


# ─── App ───────────────────────────────────────────────────────────────────────
app = FastAPI(
    title="Whispr Map API",
    description="Geotagged whispers on a map: session state, markers and manual add.",
    version="0.1.0",
    lifespan=lifespan,
    # Disable docs in production to reduce attack surface
    docs_url="/docs" if settings.environment != "production" else None,
    redoc_url="/redoc" if settings.environment != "production" else None,
)


# ─── Rate limiting ─────────────────────────────────────────────────────────────
# Attach the limiter to app state so slowapi can find it.
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ─── Middleware ─────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Routes ────────────────────────────────────────────────────────────────────
app.include_router(health_router, prefix="/health", tags=["health"])
app.include_router(sessions_router)


@app.get("/", tags=["root"])
async def root():
    """API root — basic metadata."""
    return {
        "name": "Whispr Map API",
        "version": "0.1.0",
        "status": "running",
        "environment": settings.environment,
        "docs": "/docs",
    }
