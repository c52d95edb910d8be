"""
catalog.py — Manual add: match an external id (a file name) against the catalog.

    matcher = CatalogMatcher(entries=[CatalogEntry(filename="v1.mov",
                                                   emotion="joy/calm",
                                                   location="40.0,-74.0")])
    state = matcher.add_from_catalog(state, "v1.mov")
    # state.records[-1].emotions  → ("joy", "calm")
    # state.records[-1].position  → Coordinate(latitude=40.0, longitude=-74.0)
    matcher.add_from_catalog(state, "v1.mov")   # → DuplicateError

Failures raise and leave the passed-in state untouched.
"""

import logging
import mimetypes
from typing import Iterable, Optional

from whispr.core.config import settings
from whispr.core.errors import DuplicateError, InvalidLocationError, NotFoundError
from whispr.models.session import ViewState
from whispr.models.whisper import CatalogEntry, WhisperKind, WhisperRecord
from whispr.services.content_fetcher import ContentFetcher
from whispr.services.location_parser import parse_location

logger = logging.getLogger(__name__)

# A fresh whisper has not been heard yet and can be heard once
# (the backend rejects MaxListens below 1).
DEFAULT_LISTEN_COUNT = 0
DEFAULT_LISTEN_CAP = 1


def split_emotions(text: str) -> tuple[str, ...]:
    """ "joy / calm//" → ("joy", "calm") """
    return tuple(part.strip() for part in text.split("/") if part.strip())


def kind_for_filename(filename: str) -> WhisperKind:
    mime, _ = mimetypes.guess_type(filename)
    if mime is not None:
        if mime.startswith("video/"):
            return WhisperKind.VIDEO
        if mime.startswith("image/"):
            return WhisperKind.IMAGE
    return WhisperKind.TEXT


class CatalogMatcher:
    """
    Holds the catalog for one session.

    Entries are either given up front or loaded lazily (once) through a
    ContentFetcher the first time load() is awaited.
    """

    def __init__(
        self,
        entries: Optional[Iterable[CatalogEntry]] = None,
        fetcher: Optional[ContentFetcher] = None,
        media_base_url: Optional[str] = None,
    ) -> None:
        self._entries: Optional[dict[str, CatalogEntry]] = None
        if entries is not None:
            self._entries = {e.filename: e for e in entries}
        self.fetcher = fetcher
        self.media_base_url = (
            media_base_url if media_base_url is not None else settings.media_base_url
        )

    @property
    def loaded(self) -> bool:
        return self._entries is not None

    async def load(self) -> list[CatalogEntry]:
        if self._entries is None:
            if self.fetcher is None:
                self._entries = {}
            else:
                entries = await self.fetcher.fetch_catalog()
                self._entries = {e.filename: e for e in entries}
        return list(self._entries.values())

    def lookup(self, filename: str) -> CatalogEntry:
        entry = (self._entries or {}).get(filename)
        if entry is None:
            raise NotFoundError(f'"{filename}" is not in the catalog')
        return entry

    def _media_ref(self, filename: str) -> str:
        if not self.media_base_url:
            return filename
        return f"{self.media_base_url.rstrip('/')}/{filename}"

    def derive(self, entry: CatalogEntry) -> WhisperRecord:
        """Build a WhisperRecord from a catalog entry (same rules as ingestion)."""
        position = parse_location(entry.location)
        if position is None:
            raise InvalidLocationError(
                f'Catalog entry "{entry.filename}" has an invalid location: "{entry.location}"'
            )
        kind = kind_for_filename(entry.filename)
        return WhisperRecord(
            id=entry.filename,
            raw_location=entry.location,
            kind=kind,
            media_ref=self._media_ref(entry.filename) if kind != WhisperKind.TEXT else None,
            emotions=split_emotions(entry.emotion),
            listen_count=DEFAULT_LISTEN_COUNT,
            listen_cap=DEFAULT_LISTEN_CAP,
            position=position,
        )

    def add_from_catalog(self, state: ViewState, external_id: str, recenter: bool = True) -> ViewState:
        if state.has(external_id):
            raise DuplicateError(f'"{external_id}" is already on the map')
        record = self.derive(self.lookup(external_id))

        update: dict = {"records": state.records + (record,)}
        if recenter:
            update["center"] = record.position
        logger.info("Added catalog whisper %s (%s)", record.id, record.kind.value)
        return state.model_copy(update=update)
