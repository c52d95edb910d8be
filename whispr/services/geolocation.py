"""
geolocation.py — One-shot, best-effort viewer position.

The browser's navigator.geolocation.getCurrentPosition() hands back its
answer through two callbacks. Here the same query is a single awaitable
that always resolves to a tagged value:

    result = await GeolocationProbe(source).probe()
    if isinstance(result, ProbeSuccess):
        result.coordinate, result.zoom
    else:
        result.reason          # "User denied Geolocation", "Timeout expired", ...

Options follow the browser call the map view makes:
  enableHighAccuracy=true, timeout=5000 ms, maximumAge=0

Position sources
────────────────
  ReportedPositionSource — what the client's own browser reported
  IPLookupSource         — coarse HTTP lookup (ip-api.com response shape)
  UnsupportedSource      — no capability at all
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional, Protocol, Union

import httpx

from whispr.core.config import settings
from whispr.core.errors import GeolocationError
from whispr.models.whisper import Coordinate

logger = logging.getLogger(__name__)

UNSUPPORTED_MESSAGE = "Geolocation is not supported by this browser."


@dataclass(frozen=True)
class ProbeOptions:
    high_accuracy: bool = True
    timeout_ms: int = 5000
    maximum_age_ms: int = 0

    @classmethod
    def from_settings(cls) -> "ProbeOptions":
        return cls(
            high_accuracy=settings.geolocation_high_accuracy,
            timeout_ms=settings.geolocation_timeout_ms,
            maximum_age_ms=settings.geolocation_maximum_age_ms,
        )


@dataclass(frozen=True)
class ProbeSuccess:
    coordinate: Coordinate
    zoom: int


@dataclass(frozen=True)
class ProbeFailure:
    reason: str


ProbeResult = Union[ProbeSuccess, ProbeFailure]


class PositionSource(Protocol):
    async def locate(self, high_accuracy: bool) -> Coordinate:
        """Return the current position or raise GeolocationError."""
        ...


# ── Sources ───────────────────────────────────────────────────────────────────

class ReportedPositionSource:
    """Replays the browser's own answer (position or error message)."""

    def __init__(self, position: Optional[Coordinate] = None, error: Optional[str] = None) -> None:
        if position is None and not error:
            raise ValueError("ReportedPositionSource needs a position or an error")
        self.position = position
        self.error = error

    async def locate(self, high_accuracy: bool) -> Coordinate:
        if self.position is None:
            raise GeolocationError(self.error or "Position unavailable")
        return self.position


class UnsupportedSource:
    async def locate(self, high_accuracy: bool) -> Coordinate:
        raise GeolocationError(UNSUPPORTED_MESSAGE)


class IPLookupSource:
    """
    Coarse position from an IP geolocation endpoint.

    Accuracy is city-level at best, so ``high_accuracy`` is only logged.
    """

    def __init__(self, url: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.url = url
        self._transport = transport

    async def locate(self, high_accuracy: bool) -> Coordinate:
        if high_accuracy:
            logger.debug("IP lookup cannot honour high accuracy; using best effort")
        async with httpx.AsyncClient(transport=self._transport) as client:
            try:
                response = await client.get(self.url)
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPStatusError as exc:
                raise GeolocationError(
                    f"Position lookup failed (HTTP {exc.response.status_code})"
                ) from exc
            except (httpx.HTTPError, ValueError) as exc:
                raise GeolocationError(f"Position lookup failed: {exc}") from exc

        if not isinstance(data, dict) or data.get("status", "success") != "success":
            message = data.get("message") if isinstance(data, dict) else None
            raise GeolocationError(f"Position unavailable: {message or 'lookup refused'}")
        try:
            return Coordinate(latitude=data["lat"], longitude=data["lon"])
        except (KeyError, TypeError, ValueError) as exc:
            raise GeolocationError("Position lookup returned no usable coordinates") from exc


def source_for(
    position: Optional[Coordinate] = None,
    error: Optional[str] = None,
) -> PositionSource:
    """Pick the source for a new session from what the client reported."""
    if position is not None or error:
        return ReportedPositionSource(position, error)
    if settings.ip_lookup_url:
        return IPLookupSource(settings.ip_lookup_url)
    return UnsupportedSource()


# ── Probe ─────────────────────────────────────────────────────────────────────

class GeolocationProbe:
    """
    Bounded one-shot query against a PositionSource.

    Never raises. A previous fix is reused only while it is younger than
    ``maximum_age_ms``; the default of 0 queries the source every time.
    """

    def __init__(
        self,
        source: PositionSource,
        options: Optional[ProbeOptions] = None,
        located_zoom: Optional[int] = None,
    ) -> None:
        self.source = source
        self.options = options or ProbeOptions.from_settings()
        self.located_zoom = located_zoom if located_zoom is not None else settings.located_zoom
        self._last_fix: Optional[tuple[Coordinate, float]] = None

    def _cached(self) -> Optional[Coordinate]:
        if self._last_fix is None or self.options.maximum_age_ms <= 0:
            return None
        coordinate, taken_at = self._last_fix
        age_ms = (time.monotonic() - taken_at) * 1000
        return coordinate if age_ms <= self.options.maximum_age_ms else None

    async def probe(self) -> ProbeResult:
        cached = self._cached()
        if cached is not None:
            return ProbeSuccess(coordinate=cached, zoom=self.located_zoom)

        try:
            coordinate = await asyncio.wait_for(
                self.source.locate(self.options.high_accuracy),
                timeout=self.options.timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            logger.warning("Geolocation timed out after %d ms", self.options.timeout_ms)
            return ProbeFailure("Timeout expired")
        except GeolocationError as exc:
            logger.warning("Geolocation error: %s", exc.message)
            return ProbeFailure(exc.message)
        except Exception as exc:
            # A misbehaving source must not take the session down with it
            logger.error("Geolocation source failed: %s", exc)
            return ProbeFailure(f"Position unavailable: {exc}")

        self._last_fix = (coordinate, time.monotonic())
        logger.info(
            "Initial geolocation: lat=%s lng=%s", coordinate.latitude, coordinate.longitude
        )
        return ProbeSuccess(coordinate=coordinate, zoom=self.located_zoom)
