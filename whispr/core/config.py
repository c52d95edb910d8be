"""
Application configuration loaded from environment variables.

Uses pydantic-settings for type-safe env var parsing with automatic
.env file loading. Endpoint locations and the map token are injected via
environment — never hard-coded.

To extend: add new fields here; every field maps to the upper-case env var.
See https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ─── Core ──────────────────────────────────────────────────────
    environment: str = "development"
    debug: bool = False

    # ─── Content source ────────────────────────────────────────────
    # Whisper collection endpoint (the Go backend's GET /whispers).
    whispers_url: str = "http://localhost:8080/whispers"
    # Catalog of addable content: an http(s) URL or a local JSON file path.
    # Empty string disables manual add.
    catalog_source: str = ""
    # Prefix joined with a catalog filename to build the media URL.
    media_base_url: str = ""
    # Transport timeout for outbound fetches. The reconciler itself never
    # times out a fetch; this bound belongs to httpx.
    fetch_timeout_s: float = 30.0

    # ─── Map ───────────────────────────────────────────────────────
    # Identity token for the tile provider. Missing → labelled error state.
    map_access_token: str = ""
    default_latitude: float = 51.0
    default_longitude: float = 49.0
    default_zoom: int = 10
    # Zoom used once the viewer's own position is known
    located_zoom: int = 14

    # ─── Geolocation probe ─────────────────────────────────────────
    geolocation_timeout_ms: int = 5000
    geolocation_maximum_age_ms: int = 0
    geolocation_high_accuracy: bool = True
    # Optional IP lookup used when the client reports no position.
    # Expected to answer {"lat": .., "lon": ..} (ip-api.com shape).
    ip_lookup_url: Optional[str] = None

    # ─── CORS ──────────────────────────────────────────────────────
    cors_origins_str: str = "http://localhost:3000"

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins_str.split(",") if o.strip()]

    # ─── Rate limiting ─────────────────────────────────────────────
    # Session creation fans out to the content source, so it is capped per IP.
    session_rate_limit: str = "30/minute"

    # ─── Session registry ──────────────────────────────────────────
    # Sessions untouched for this long are closed. 0 disables expiry.
    session_idle_ttl_s: float = 1800.0
    # Beyond this many live sessions the least recently used one is closed
    max_sessions: int = 1000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Don't fail on unknown env vars
    )


# Module-level singleton: import this everywhere instead of instantiating Settings()
settings = Settings()
