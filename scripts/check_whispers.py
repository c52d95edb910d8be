#!/usr/bin/env python3
"""
check_whispers.py — Fetch the whisper source once and report what survives ingestion.

Usage (from the repo root):
    python scripts/check_whispers.py                      # uses WHISPERS_URL / .env
    python scripts/check_whispers.py --url http://localhost:8080/whispers
    python scripts/check_whispers.py --catalog catalog.json

Prints how many whispers were accepted and lists the ones that would be
dropped (bad location, bad shape) so they can be fixed at the source.
Exit status is 1 when the fetch itself fails.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

import httpx  # noqa: E402

from whispr.core.config import settings  # noqa: E402
from whispr.core.errors import FetchError, InvalidLocationError, ParseError  # noqa: E402
from whispr.services.catalog import CatalogMatcher  # noqa: E402
from whispr.services.content_fetcher import ContentFetcher, normalize_whisper  # noqa: E402


async def check_whispers(url: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> int:
    fetcher = ContentFetcher(whispers_url=url, transport=transport)
    try:
        records = await fetcher.fetch_whispers()
    except FetchError as exc:
        print(f"ERROR: fetch failed: {exc.message}")
        return 1

    print(f"✓ {len(records)} whispers accepted from {url}")

    # Second pass over the raw payload to name the rejected records
    try:
        async with httpx.AsyncClient(timeout=settings.fetch_timeout_s, transport=transport) as client:
            response = await client.get(url)
            response.raise_for_status()
            body = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        print(f"ERROR: could not re-read raw payload to list rejects: {exc}")
        return 1
    payload = body.get("data") if isinstance(body, dict) else None
    items = (payload or {}).get("data") or []
    for item in items:
        try:
            normalize_whisper(item)
        except ParseError as exc:
            print(f"  ✗ {exc.message}")
    return 0


async def check_catalog(source: str) -> int:
    matcher = CatalogMatcher(fetcher=ContentFetcher(catalog_source=source))
    try:
        entries = await matcher.load()
    except FetchError as exc:
        print(f"ERROR: catalog load failed: {exc.message}")
        return 1

    bad = 0
    for entry in entries:
        try:
            matcher.derive(entry)
        except InvalidLocationError as exc:
            bad += 1
            print(f"  ✗ {exc.message}")
    print(f"✓ {len(entries) - bad}/{len(entries)} catalog entries addable from {source}")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Validate the whisper source and catalog")
    parser.add_argument("--url", default=settings.whispers_url, help="Whisper collection URL")
    parser.add_argument("--catalog", default=settings.catalog_source, help="Catalog URL or file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show ingestion logs")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.ERROR,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )

    status = asyncio.run(check_whispers(args.url))
    if args.catalog:
        status = max(status, asyncio.run(check_catalog(args.catalog)))
    sys.exit(status)
