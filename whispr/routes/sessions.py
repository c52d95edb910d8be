"""
sessions.py — Map session routes.

One session = one mounted map view. The browser creates a session with the
result of its own geolocation query, then polls / mutates it.

Routes:
  POST   /api/v1/sessions                       — create + start (rate limited)
  GET    /api/v1/sessions/{id}                  — current view
  POST   /api/v1/sessions/{id}/refresh          — refetch whispers
  POST   /api/v1/sessions/{id}/select           — select a whisper
  POST   /api/v1/sessions/{id}/markers/{mid}/click — renderer click callback
  DELETE /api/v1/sessions/{id}/selection        — clear the selection
  POST   /api/v1/sessions/{id}/catalog          — manual add from the catalog
  DELETE /api/v1/sessions/{id}/error            — dismiss the error banner
  DELETE /api/v1/sessions/{id}                  — tear down

Every route except DELETE returns a SessionView:
  state    : ViewState (center, zoom, records, loading, phase, error, ...)
  markers  : render-ready [{id, coordinate, is_user_marker, title}]
  detail   : detail panel for the selected whisper (or null)

TESTING YOUR CHANGES
─────────────────────
  pytest tests/test_sessions_api.py -v

  curl -X POST localhost:8000/api/v1/sessions -H "content-type: application/json"
       -d '{"position": {"lat": 40.7, "lng": -74.0}}'
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from whispr.core.config import settings
from whispr.core.errors import (
    DuplicateError,
    FetchError,
    InvalidLocationError,
    NotFoundError,
    SessionClosedError,
)
from whispr.core.rate_limit import limiter
from whispr.core.sessions import SessionStore, get_session_store
from whispr.models.session import (
    CatalogAddRequest,
    CreateSessionRequest,
    SelectRequest,
    SessionView,
)
from whispr.models.whisper import Coordinate
from whispr.services.reconciler import MapSession
from whispr.services.render import build_view

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/sessions", tags=["sessions"])

# Upper bound on how long POST waits for the probe + first fetch
_READY_WAIT_S = 60.0


def _session_or_404(session_id: str, store: SessionStore) -> MapSession:
    session = store.get(session_id)
    if session is None or not session.alive:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


def _view(session: MapSession) -> SessionView:
    return build_view(session.id, session.state)


# ── Lifecycle ─────────────────────────────────────────────────────────────────

@router.post("", response_model=SessionView, status_code=201)
@limiter.limit(settings.session_rate_limit)
async def create_session(
    request: Request,
    payload: CreateSessionRequest,
    store: SessionStore = Depends(get_session_store),
):
    """
    Create a map session and start its probe + fetch concurrently.

    With ``wait`` (the default) the response is sent once both have
    settled; otherwise it is sent immediately with loading=true.
    """
    position = None
    if payload.position is not None:
        position = Coordinate(latitude=payload.position.lat, longitude=payload.position.lng)

    session = store.create(position=position, geolocation_error=payload.geolocation_error)
    session.start()
    if payload.wait:
        try:
            await session.wait_ready(timeout=_READY_WAIT_S)
        except asyncio.TimeoutError:
            # Still a valid session; the client keeps polling it
            logger.warning("Session %s not ready after %.0fs", session.id, _READY_WAIT_S)
    return _view(session)


@router.get("/{session_id}", response_model=SessionView)
async def get_session(session_id: str, store: SessionStore = Depends(get_session_store)):
    return _view(_session_or_404(session_id, store))


@router.delete("/{session_id}", status_code=204)
async def close_session(session_id: str, store: SessionStore = Depends(get_session_store)):
    if not store.close(session_id):
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return Response(status_code=204)


@router.post("/{session_id}/refresh", response_model=SessionView)
async def refresh_session(session_id: str, store: SessionStore = Depends(get_session_store)):
    """Refetch whispers. A failure keeps the markers and sets state.error."""
    session = _session_or_404(session_id, store)
    try:
        await session.refresh()
    except SessionClosedError:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return _view(session)


# ── Selection ─────────────────────────────────────────────────────────────────

@router.post("/{session_id}/select", response_model=SessionView)
async def select_whisper(
    session_id: str,
    payload: SelectRequest,
    store: SessionStore = Depends(get_session_store),
):
    """Unknown ids are ignored (the selection stays as it was)."""
    session = _session_or_404(session_id, store)
    session.select(payload.whisper_id)
    return _view(session)


@router.post("/{session_id}/markers/{marker_id}/click", response_model=SessionView)
async def click_marker(
    session_id: str,
    marker_id: str,
    store: SessionStore = Depends(get_session_store),
):
    session = _session_or_404(session_id, store)
    session.dispatch_click(marker_id)
    return _view(session)


@router.delete("/{session_id}/selection", response_model=SessionView)
async def clear_selection(session_id: str, store: SessionStore = Depends(get_session_store)):
    session = _session_or_404(session_id, store)
    session.clear_selection()
    return _view(session)


@router.delete("/{session_id}/error", response_model=SessionView)
async def dismiss_error(session_id: str, store: SessionStore = Depends(get_session_store)):
    session = _session_or_404(session_id, store)
    session.dismiss_error()
    return _view(session)


# ── Manual add ────────────────────────────────────────────────────────────────

@router.post("/{session_id}/catalog", response_model=SessionView, status_code=201)
async def add_from_catalog(
    session_id: str,
    payload: CatalogAddRequest,
    store: SessionStore = Depends(get_session_store),
):
    """
    Add the catalog entry whose filename matches exactly.

    409 — already on the map
    404 — not in the catalog
    422 — catalog entry has an unparseable location
    502 — the catalog could not be loaded
    """
    session = _session_or_404(session_id, store)
    try:
        await session.add_from_catalog(payload.filename, recenter=payload.recenter)
    except DuplicateError as exc:
        raise HTTPException(status_code=409, detail=exc.message)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message)
    except InvalidLocationError as exc:
        raise HTTPException(status_code=422, detail=exc.message)
    except FetchError as exc:
        logger.warning("Catalog unavailable for session %s: %s", session_id, exc.message)
        raise HTTPException(status_code=502, detail=exc.message)
    except SessionClosedError:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return _view(session)
