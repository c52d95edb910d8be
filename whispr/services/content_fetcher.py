"""
content_fetcher.py — Retrieve whispers (or the addable catalog) from one source.

One call = one request. No retries here; retry policy, if any, belongs to
the caller (the session's refresh()).

Failure policy
──────────────
  • Transport status outside 2xx        → FetchError(status=<http status>)
  • Network error / non-JSON body       → FetchError(status=None)
  • Envelope status outside 200–299     → FetchError(<server message>)
  • Envelope status 2xx, no payload     → [] (not an error)
  • Single record malformed / bad location → dropped + logged, batch survives

Usage
─────
    fetcher = ContentFetcher()
    records = await fetcher.fetch_whispers()
    catalog = await fetcher.fetch_catalog()

Tests inject an ``httpx.MockTransport`` through the ``transport`` argument.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from whispr.core.config import settings
from whispr.core.errors import FetchError, ParseError
from whispr.models.whisper import (
    CatalogEntry,
    Coordinate,
    RawWhisper,
    WhisperEnvelope,
    WhisperRecord,
)
from whispr.services.location_parser import format_location, parse_location

logger = logging.getLogger(__name__)

_DEFAULT_FAILURE_MESSAGE = "Failed to fetch whispers"


# ── Record normalization (ingestion boundary) ─────────────────────────────────

def normalize_whisper(item: Any) -> WhisperRecord:
    """
    Convert one raw whisper document into a strict WhisperRecord.

    Raises ParseError when the shape is wrong or the location does not parse.
    """
    try:
        raw = RawWhisper.model_validate(item)
    except ValidationError as exc:
        raise ParseError(f"Malformed whisper ({exc.error_count()} validation errors)") from exc

    position = parse_location(raw.location)
    if position is None:
        raise ParseError(f'Invalid location "{raw.location}" on whisper {raw.id}')

    emotions = tuple(e.strip() for e in (raw.emotions or []) if e and e.strip())
    try:
        return WhisperRecord(
            id=raw.id,
            raw_location=raw.location,
            kind=raw.data_type,
            body=raw.data or "",
            media_ref=raw.media_url or None,
            emotions=emotions,
            listen_count=raw.amount_listens,
            listen_cap=raw.max_listens,
            position=position,
        )
    except ValidationError as exc:
        raise ParseError(f"Inconsistent whisper {raw.id}: {exc.errors()[0]['msg']}") from exc


def normalize_whispers(items: list[Any]) -> list[WhisperRecord]:
    """Normalize a batch, dropping (and logging) every record that fails."""
    records: list[WhisperRecord] = []
    for item in items:
        try:
            records.append(normalize_whisper(item))
        except ParseError as exc:
            logger.warning("Skipping whisper: %s", exc.message)
    dropped = len(items) - len(records)
    if dropped:
        logger.info("Dropped %d of %d whispers during ingestion", dropped, len(items))
    return records


def normalize_catalog(items: list[Any]) -> list[CatalogEntry]:
    """
    Validate catalog items. Locations stay raw — they are parsed on add.

    A repeated filename replaces the earlier entry in place.
    """
    by_name: dict[str, CatalogEntry] = {}
    for item in items:
        try:
            entry = CatalogEntry.model_validate(item)
        except ValidationError as exc:
            logger.warning("Skipping catalog item %r: %s", item, exc.errors()[0]["msg"])
            continue
        by_name[entry.filename] = entry
    return list(by_name.values())


def _read_json_file(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise FetchError(f"Cannot read catalog file {path}: {exc.strerror}") from exc
    except json.JSONDecodeError as exc:
        raise FetchError(f"Catalog file {path} is not valid JSON") from exc


# ── Fetcher ───────────────────────────────────────────────────────────────────

class ContentFetcher:
    """
    Thin async wrapper around the whisper source and the catalog source.

    Defaults come from settings; every argument can be overridden so one
    process can talk to several sources (and so tests can swap transports).
    """

    def __init__(
        self,
        whispers_url: Optional[str] = None,
        catalog_source: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.whispers_url = whispers_url if whispers_url is not None else settings.whispers_url
        self.catalog_source = (
            catalog_source if catalog_source is not None else settings.catalog_source
        )
        self.timeout = timeout if timeout is not None else settings.fetch_timeout_s
        self._transport = transport

    async def _get_json(self, url: str, params: Optional[dict[str, str]] = None) -> Any:
        logger.debug("Fetching %s", url)
        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            try:
                response = await client.get(url, params=params)
            except httpx.HTTPError as exc:
                logger.error("Request to %s failed: %s", url, exc)
                raise FetchError(f"Request failed: {exc}") from exc

        if not response.is_success:
            logger.error("%s answered HTTP %s", url, response.status_code)
            raise FetchError(
                f"HTTP error! status: {response.status_code}",
                status=response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise FetchError("Response body is not valid JSON", status=response.status_code) from exc

    async def fetch_whispers(
        self,
        near: Optional[Coordinate] = None,
        radius: Optional[float] = None,
    ) -> list[WhisperRecord]:
        """
        Fetch and normalize the whisper collection.

        ``near`` / ``radius`` are passed through to the source untouched;
        no proximity filtering happens on this side.
        """
        params: dict[str, str] = {}
        if near is not None:
            params["location"] = format_location(near)
        if radius is not None:
            params["radius"] = str(radius)

        body = await self._get_json(self.whispers_url, params or None)

        try:
            envelope = WhisperEnvelope.model_validate(body)
        except ValidationError as exc:
            raise FetchError("Malformed response envelope") from exc

        if not envelope.ok:
            raise FetchError(envelope.message or _DEFAULT_FAILURE_MESSAGE, status=envelope.status)

        if envelope.data is None or envelope.data.data is None:
            logger.info("Source returned success but no whispers in the payload")
            return []

        return normalize_whispers(envelope.data.data)

    async def fetch_catalog(self) -> list[CatalogEntry]:
        """Load the catalog from an http(s) URL or a local JSON file."""
        source = self.catalog_source
        if not source:
            raise FetchError("No catalog source configured (set CATALOG_SOURCE)")

        if source.startswith(("http://", "https://")):
            body = await self._get_json(source)
        else:
            body = await asyncio.to_thread(_read_json_file, Path(source))

        if not isinstance(body, list):
            raise FetchError("Catalog must be a JSON array")

        entries = normalize_catalog(body)
        logger.info("Loaded %d catalog entries from %s", len(entries), source)
        return entries
