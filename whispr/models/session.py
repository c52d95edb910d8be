"""
session.py — Pydantic models for map sessions and their render-ready views.

ViewState   — the single derived snapshot a session owns (frozen; every
              event produces a new one via model_copy)
Marker      — what the rendering collaborator paints
WhisperDetail — the detail panel for the selected whisper
SessionView — response body for every /api/v1/sessions route
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from whispr.models.whisper import Coordinate, WhisperKind, WhisperRecord


class ErrorKind(str, Enum):
    PARSE = "parse"
    FETCH = "fetch"
    GEOLOCATION = "geolocation"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    INVALID_LOCATION = "invalid_location"
    CONFIGURATION = "configuration"


class ErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str


class ViewPhase(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"


class ViewState(BaseModel):
    """
    Everything the map view needs, as one consistent snapshot.

    Invariants (maintained by services/reconciler.py and selection.py):
      • selected_id, when set, is the id of a record in ``records``
      • record ids are unique and every record has a parsed position
      • loading stays True until both the probe and the first fetch settle
    """

    model_config = ConfigDict(frozen=True)

    center: Coordinate
    zoom: int
    user_position: Optional[Coordinate] = None
    records: tuple[WhisperRecord, ...] = ()
    selected_id: Optional[str] = None
    loading: bool = True
    phase: ViewPhase = ViewPhase.INITIALIZING

    # One slot per source so the merge stays order-independent
    configuration_error: Optional[ErrorInfo] = None
    fetch_error: Optional[ErrorInfo] = None
    geolocation_error: Optional[ErrorInfo] = None

    @computed_field
    @property
    def error(self) -> Optional[ErrorInfo]:
        """The banner to show: configuration beats fetch beats geolocation."""
        return self.configuration_error or self.fetch_error or self.geolocation_error

    def find(self, whisper_id: str) -> Optional[WhisperRecord]:
        for record in self.records:
            if record.id == whisper_id:
                return record
        return None

    def has(self, whisper_id: str) -> bool:
        return self.find(whisper_id) is not None


# ── Render-ready output ───────────────────────────────────────────────────────

class Marker(BaseModel):
    """One point for the rendering collaborator."""

    id: str
    coordinate: Coordinate
    is_user_marker: bool = False
    title: str = ""


class WhisperDetail(BaseModel):
    """Detail panel contents for the selected whisper."""

    id: str
    kind: WhisperKind
    heading: str                     # "(video)"
    body: Optional[str] = None       # text whispers only
    media_ref: Optional[str] = None  # image / video whispers only
    caption: Optional[str] = None    # text accompanying a media whisper
    emotions: str                    # "joy, calm" or "None"
    listens: str                     # "1/5"


class SessionView(BaseModel):
    """Response shape for every session route."""

    session_id: str
    state: ViewState
    markers: list[Marker]
    selected_id: Optional[str] = None
    detail: Optional[WhisperDetail] = None


# ── Requests ──────────────────────────────────────────────────────────────────

class GeoPoint(BaseModel):
    """Lat/lng reported by the browser's one-shot geolocation query."""

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class CreateSessionRequest(BaseModel):
    """
    Payload for POST /api/v1/sessions.

    The browser runs navigator.geolocation itself and reports either a
    position or the platform's error message. Both omitted → the server
    falls back to IP lookup (if configured) or treats geolocation as
    unsupported.
    """

    position: Optional[GeoPoint] = None
    geolocation_error: Optional[str] = Field(default=None, max_length=500)
    # Block until the session is ready before responding
    wait: bool = True


class SelectRequest(BaseModel):
    whisper_id: str = Field(..., min_length=1)


class CatalogAddRequest(BaseModel):
    """Payload for POST /api/v1/sessions/{id}/catalog."""

    filename: str = Field(..., min_length=1, max_length=500)
    recenter: bool = True
