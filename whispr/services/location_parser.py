"""
location_parser.py — Turn an untrusted "lat,lng" string into a Coordinate.

Contract
────────
  parse_location("51,49")      → Coordinate(latitude=51.0, longitude=49.0)
  parse_location(" 51 , 49 ")  → Coordinate(latitude=51.0, longitude=49.0)
  parse_location("200,49")     → None   (latitude out of range)
  parse_location("51,49,1")    → None   (exactly one comma required)
  parse_location("abc,49")     → None   (non-numeric)

Failure is a value, never an exception. Diagnostics go to the logger at
debug level and never change the return value.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any, Optional

from whispr.models.whisper import Coordinate

logger = logging.getLogger(__name__)

_LAT_RANGE = (-90.0, 90.0)
_LNG_RANGE = (-180.0, 180.0)

# Plain ASCII decimal with an optional exponent. float() alone is looser:
# it takes digit underscores and non-ASCII digits.
_DECIMAL = re.compile(r"[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?", re.ASCII)


def _to_finite(part: str) -> Optional[float]:
    text = part.strip()
    if not _DECIMAL.fullmatch(text):
        return None
    try:
        value = float(text)
    except ValueError:
        return None
    # Huge exponents overflow to inf
    return value if math.isfinite(value) else None


def parse_location(raw: Any) -> Optional[Coordinate]:
    """
    Parse a single comma-separated latitude/longitude pair.

    Returns None for anything other than exactly one comma, two finite
    numbers, latitude in [-90, 90] and longitude in [-180, 180].
    """
    if not isinstance(raw, str):
        logger.debug("Location is not a string: %r", raw)
        return None

    parts = raw.split(",")
    if len(parts) != 2:
        logger.debug('Invalid location format (expected one comma): "%s"', raw)
        return None

    lat = _to_finite(parts[0])
    lng = _to_finite(parts[1])
    if lat is None or lng is None:
        logger.debug('Invalid number format in location "%s"', raw)
        return None

    if not (_LAT_RANGE[0] <= lat <= _LAT_RANGE[1] and _LNG_RANGE[0] <= lng <= _LNG_RANGE[1]):
        logger.debug("Location out of range: lat=%s lng=%s", lat, lng)
        return None

    return Coordinate(latitude=lat, longitude=lng)


def format_location(coord: Coordinate) -> str:
    """Inverse of parse_location — the shape the content source expects."""
    return f"{coord.latitude},{coord.longitude}"
