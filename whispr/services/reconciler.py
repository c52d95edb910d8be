"""
reconciler.py — Merge geolocation, content fetches and user events into one ViewState.

HOW THE STATE MOVES
───────────────────
    start() ──┬── GeolocationProbe.probe() ──► apply_probe_result ─┐
              └── ContentFetcher.fetch()   ──► apply_fetch_*      ─┴─► ready once both settled

  • Both operations run as independent asyncio tasks. Each completion is
    applied to the *current* state, one event at a time — there is only one
    event loop, so no locking is needed.
  • The reducers touch disjoint fields, so the final state does not depend
    on which of the two finishes first.
  • phase goes INITIALIZING → READY exactly once; loading stays True until
    then, and is True again while a refresh is in flight.
  • Every fetch gets a sequence number. A result older than the newest one
    already applied is dropped, so a slow initial fetch never overwrites
    a refresh that landed first.
  • A failure applied before any other fetch result leaves the map empty;
    a later failure keeps the last good records and only raises the error
    flag.
  • close() drops a liveness flag. Late completions are discarded instead
    of cancelled.

The reducers are module-level pure functions so they can be tested (and
their commutativity checked) without a running session.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from whispr.core.config import settings
from whispr.core.errors import FetchError, SessionClosedError
from whispr.models.session import ErrorInfo, ErrorKind, ViewPhase, ViewState
from whispr.models.whisper import USER_MARKER_ID, Coordinate, WhisperRecord
from whispr.services import selection
from whispr.services.catalog import CatalogMatcher
from whispr.services.content_fetcher import ContentFetcher
from whispr.services.geolocation import GeolocationProbe, ProbeResult, ProbeSuccess

logger = logging.getLogger(__name__)

LOCATION_FALLBACK_MESSAGE = "Unable to retrieve location. Showing default area."
MISSING_TOKEN_MESSAGE = "Map token is missing. Configure MAP_ACCESS_TOKEN."
UNKNOWN_FETCH_MESSAGE = "An unknown error occurred fetching whispers"

Listener = Callable[[ViewState], None]


@dataclass(frozen=True)
class MapDefaults:
    """Where the map sits before (or instead of) the viewer's own position."""

    center: Coordinate
    zoom: int

    @classmethod
    def from_settings(cls) -> "MapDefaults":
        return cls(
            center=Coordinate(
                latitude=settings.default_latitude,
                longitude=settings.default_longitude,
            ),
            zoom=settings.default_zoom,
        )


# ── Pure reducers ─────────────────────────────────────────────────────────────

def initial_state(defaults: MapDefaults, map_token: str = "") -> ViewState:
    configuration_error = None
    if not map_token:
        logger.error("Map access token is missing")
        configuration_error = ErrorInfo(kind=ErrorKind.CONFIGURATION, message=MISSING_TOKEN_MESSAGE)
    return ViewState(
        center=defaults.center,
        zoom=defaults.zoom,
        configuration_error=configuration_error,
    )


def dedupe_records(records: Iterable[WhisperRecord]) -> tuple[WhisperRecord, ...]:
    """Unique ids, later record wins, keeping the position of the first one."""
    by_id: dict[str, WhisperRecord] = {}
    for record in records:
        by_id[record.id] = record
    return tuple(by_id.values())


def apply_probe_result(state: ViewState, result: ProbeResult, defaults: MapDefaults) -> ViewState:
    if isinstance(result, ProbeSuccess):
        return state.model_copy(update={
            "user_position": result.coordinate,
            "center": result.coordinate,
            "zoom": result.zoom,
            "geolocation_error": None,
        })

    message = LOCATION_FALLBACK_MESSAGE
    if result.reason:
        message = f"{message} ({result.reason})"
    return state.model_copy(update={
        "center": defaults.center,
        "zoom": defaults.zoom,
        "geolocation_error": ErrorInfo(kind=ErrorKind.GEOLOCATION, message=message),
    })


def apply_fetch_success(state: ViewState, records: Iterable[WhisperRecord]) -> ViewState:
    replaced = state.model_copy(update={
        "records": dedupe_records(records),
        "fetch_error": None,
    })
    return selection.prune(replaced)


def apply_fetch_failure(state: ViewState, error: FetchError, first_attempt: bool) -> ViewState:
    update = {"fetch_error": ErrorInfo(kind=ErrorKind.FETCH, message=error.message)}
    if first_attempt:
        update["records"] = ()
    return selection.prune(state.model_copy(update=update))


def apply_progress(state: ViewState, ready: bool, busy: bool) -> ViewState:
    """Recompute phase + loading. READY is never left once reached."""
    phase = ViewPhase.READY if ready else state.phase
    loading = not ready or busy
    if phase == state.phase and loading == state.loading:
        return state
    return state.model_copy(update={"phase": phase, "loading": loading})


def dismiss_errors(state: ViewState) -> ViewState:
    """Close the fetch / geolocation banners. Configuration errors stay."""
    return state.model_copy(update={"fetch_error": None, "geolocation_error": None})


# ── Session ───────────────────────────────────────────────────────────────────

class MapSession:
    """
    Owns one map view's state from mount to teardown.

    Usage:
        session = MapSession(probe, fetcher, matcher)
        session.start()
        await session.wait_ready()
        session.select("6612f0...")
        session.close()
    """

    def __init__(
        self,
        probe: GeolocationProbe,
        fetcher: ContentFetcher,
        matcher: Optional[CatalogMatcher] = None,
        defaults: Optional[MapDefaults] = None,
        map_token: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex
        self.probe = probe
        self.fetcher = fetcher
        self.matcher = matcher
        self.defaults = defaults or MapDefaults.from_settings()
        token = map_token if map_token is not None else settings.map_access_token
        self._state = initial_state(self.defaults, token)

        self._alive = True
        self._started = False
        self._listeners: list[Listener] = []
        self._tasks: set[asyncio.Task] = set()
        self._ready = asyncio.Event()

        self._probe_settled = False
        self._fetch_settled = False
        # Fetch sequence numbers: last one issued, last one whose result was applied
        self._fetch_issued = 0
        self._fetch_applied = 0
        self._in_flight = 0

    # ── Introspection ────────────────────────────────────────────────────────

    @property
    def state(self) -> ViewState:
        return self._state

    @property
    def alive(self) -> bool:
        return self._alive

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for every new state. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ── Internals ────────────────────────────────────────────────────────────

    def _ensure_alive(self) -> None:
        if not self._alive:
            raise SessionClosedError(f"Session {self.id} is closed")

    def _commit(self, new_state: ViewState) -> None:
        if not self._alive:
            logger.debug("Session %s closed; dropping state update", self.id)
            return
        if new_state is self._state:
            return
        self._state = new_state
        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception:
                logger.exception("View-state listener failed in session %s", self.id)
        if new_state.phase == ViewPhase.READY:
            self._ready.set()

    def _with_progress(self, state: ViewState) -> ViewState:
        ready = self._probe_settled and self._fetch_settled
        return apply_progress(state, ready=ready, busy=self._in_flight > 0)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_probe(self) -> None:
        result = await self.probe.probe()
        if not self._alive:
            logger.debug("Session %s closed; discarding probe result", self.id)
            return
        self._probe_settled = True
        state = apply_probe_result(self._state, result, self.defaults)
        self._commit(self._with_progress(state))

    async def _run_fetch(self, initial: bool) -> Optional[FetchError]:
        self._fetch_issued += 1
        seq = self._fetch_issued
        self._in_flight += 1
        records: list[WhisperRecord] = []
        error: Optional[FetchError] = None
        try:
            records = await self.fetcher.fetch_whispers()
        except FetchError as exc:
            error = exc
        except Exception:
            logger.exception("Unexpected failure fetching whispers")
            error = FetchError(UNKNOWN_FETCH_MESSAGE)
        finally:
            self._in_flight -= 1

        if not self._alive:
            logger.debug("Session %s closed; discarding fetch result", self.id)
            return error

        if initial:
            self._fetch_settled = True

        if seq < self._fetch_applied:
            # A newer fetch already landed; only the progress flags move
            logger.info("Session %s discarding stale fetch #%d (newest applied: #%d)",
                        self.id, seq, self._fetch_applied)
            self._commit(self._with_progress(self._state))
            return error

        first_attempt = self._fetch_applied == 0
        self._fetch_applied = seq
        if error is None:
            logger.info("Session %s received %d whispers", self.id, len(records))
            state = apply_fetch_success(self._state, records)
        else:
            logger.warning(
                "Failed to fetch whispers for session %s (first attempt: %s): %s",
                self.id, first_attempt, error.message,
            )
            state = apply_fetch_failure(self._state, error, first_attempt)
        self._commit(self._with_progress(state))
        return error

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Launch the probe and the first fetch concurrently. Call once."""
        self._ensure_alive()
        if self._started:
            raise RuntimeError(f"Session {self.id} already started")
        self._started = True
        logger.info("Starting map session %s", self.id)
        self._spawn(self._run_probe())
        self._spawn(self._run_fetch(initial=True))

    async def wait_ready(self, timeout: Optional[float] = None) -> ViewState:
        """Wait until both initial operations settled (or the session closed)."""
        await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        return self._state

    async def refresh(self) -> ViewState:
        """Refetch the whisper collection. Failures keep the current records."""
        self._ensure_alive()
        if not self._state.loading:
            self._commit(self._state.model_copy(update={"loading": True}))
        await self._run_fetch(initial=False)
        return self._state

    def close(self) -> None:
        """Tear down: no completion after this point reaches the state."""
        if not self._alive:
            return
        self._alive = False
        self._listeners.clear()
        # Release anyone blocked in wait_ready()
        self._ready.set()
        logger.info("Closed map session %s (%d operations still in flight)", self.id, len(self._tasks))

    # ── User events ──────────────────────────────────────────────────────────

    def select(self, whisper_id: str) -> ViewState:
        self._ensure_alive()
        self._commit(selection.select(self._state, whisper_id))
        return self._state

    def dispatch_click(self, marker_id: str) -> ViewState:
        """Click callback handed to the renderer. The user marker and unknown ids are no-ops."""
        if marker_id == USER_MARKER_ID:
            self._ensure_alive()
            return self._state
        return self.select(marker_id)

    def clear_selection(self) -> ViewState:
        self._ensure_alive()
        self._commit(selection.clear(self._state))
        return self._state

    def dismiss_error(self) -> ViewState:
        self._ensure_alive()
        self._commit(dismiss_errors(self._state))
        return self._state

    async def add_from_catalog(self, filename: str, recenter: bool = True) -> ViewState:
        """
        Append the catalog entry named ``filename``.

        Raises DuplicateError / NotFoundError / InvalidLocationError (state
        untouched), or FetchError when the catalog itself cannot be loaded.
        """
        self._ensure_alive()
        if self.matcher is None:
            raise FetchError("No catalog configured for this session")
        await self.matcher.load()
        self._ensure_alive()
        self._commit(self.matcher.add_from_catalog(self._state, filename, recenter=recenter))
        return self._state
