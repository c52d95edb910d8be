"""
whisper.py — Pydantic models for whispers, catalog entries and coordinates.

Two layers live here:

  • Inbound shapes (RawWhisper, WhisperEnvelope, CatalogEntry) mirror the
    JSON the content source actually sends, field names and all. They are
    permissive: anything they accept still has to pass the normalizer in
    services/content_fetcher.py.
  • Core shapes (Coordinate, WhisperRecord) are strict and frozen. Nothing
    enters the reconciler without having been converted to these.

Inbound whisper document (Go backend, models/whisper_model.go):

  {
    "_id": "6612f0...",
    "Location": "51.5,-0.12",
    "DataType": "text",          ← text | image | video
    "Data": "hello",
    "MediaUrl": "https://...",   ← omitted for text whispers
    "MaxListens": 5,
    "AmountListens": 1,
    "Emotions": ["joy", "calm"]
  }
"""

from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

# Marker id of the viewer's own position. No whisper or catalog entry may use it.
USER_MARKER_ID = "__user__"


def _not_reserved(value: str) -> str:
    if value == USER_MARKER_ID:
        raise ValueError(f"\"{USER_MARKER_ID}\" is reserved for the user marker")
    return value


# Ids and catalog filenames end up as marker ids
MarkerId = Annotated[str, AfterValidator(_not_reserved)]


class Coordinate(BaseModel):
    """A validated lat/lng pair. Immutable once constructed."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    longitude: float = Field(..., ge=-180, le=180, allow_inf_nan=False)


class WhisperKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"


class WhisperRecord(BaseModel):
    """One whisper as held by a map session. Replaced wholesale, never patched."""

    model_config = ConfigDict(frozen=True)

    id: MarkerId = Field(..., min_length=1)
    raw_location: str
    kind: WhisperKind
    body: str = ""
    media_ref: Optional[str] = None
    emotions: tuple[str, ...] = ()
    listen_count: int = Field(default=0, ge=0)
    listen_cap: int = Field(default=1, ge=0)
    # Derived once at ingestion from raw_location
    position: Coordinate

    @model_validator(mode="after")
    def _cap_covers_count(self) -> "WhisperRecord":
        if self.listen_cap < self.listen_count:
            raise ValueError(
                f"listen_cap ({self.listen_cap}) is below listen_count ({self.listen_count})"
            )
        return self


# ── Inbound shapes ────────────────────────────────────────────────────────────

class RawWhisper(BaseModel):
    """A whisper document exactly as the content source serialises it."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., alias="_id", min_length=1)
    location: str = Field(..., alias="Location")
    data_type: WhisperKind = Field(..., alias="DataType")
    data: Optional[str] = Field(default="", alias="Data")
    media_url: Optional[str] = Field(default=None, alias="MediaUrl")
    max_listens: int = Field(default=0, alias="MaxListens", ge=0)
    amount_listens: int = Field(default=0, alias="AmountListens", ge=0)
    # Go encodes a nil slice as null
    emotions: Optional[list[str]] = Field(default=None, alias="Emotions")


class WhisperPayload(BaseModel):
    # Items stay untyped so one bad record cannot fail the whole envelope.
    data: Optional[list[Any]] = None


class WhisperEnvelope(BaseModel):
    """Response wrapper: {status, message, data?: {data: [...]}}."""

    status: int
    message: str = ""
    data: Optional[WhisperPayload] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class CatalogEntry(BaseModel):
    """One item of the static catalog. Keyed by filename."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    filename: MarkerId = Field(..., min_length=1)
    emotion: str = ""      # slash-delimited, e.g. "joy/calm"
    location: str          # raw "lat,lng", parsed only when added
