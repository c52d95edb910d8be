"""
Health check endpoint.

Used by:
  - Docker HEALTHCHECK instruction
  - Load balancers / orchestrators
  - Front-end to check API connectivity before mounting the map

Reports whether the external collaborators are configured so callers can
tell "API down" apart from "API up but map token / source missing".
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from whispr.core.config import settings
from whispr.core.sessions import SessionStore, get_session_store

logger = logging.getLogger(__name__)
router = APIRouter()


class HealthResponse(BaseModel):
    status: str  # Always "ok" if the API process is alive
    version: str
    environment: str
    map_token: str  # "configured" | "missing"
    whispers_source: str
    catalog: str  # "configured" | "disabled"
    live_sessions: int


@router.get("", response_model=HealthResponse, summary="API health check")
async def health_check(store: SessionStore = Depends(get_session_store)) -> HealthResponse:
    """
    Liveness of the API plus configuration status.

    A missing map token is reported, not fatal — sessions still start and
    carry a configuration error in their view state.
    """
    return HealthResponse(
        status="ok",
        version="0.1.0",
        environment=settings.environment,
        map_token="configured" if settings.map_access_token else "missing",
        whispers_source=settings.whispers_url,
        catalog="configured" if settings.catalog_source else "disabled",
        live_sessions=len(store),
    )
