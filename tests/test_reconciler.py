"""
test_reconciler.py — ViewState reducers and the MapSession event loop.

Covers:
  - probe / fetch reducers (success, failure, cold start vs refresh)
  - commutativity of the two initial completions
  - loading stays True until both settle
  - teardown discards late completions
  - refresh keeps the last good records on failure
"""

import asyncio

import pytest

from whispr.core.errors import FetchError, SessionClosedError
from whispr.models.session import ErrorKind, ViewPhase
from whispr.models.whisper import Coordinate
from whispr.services.geolocation import ProbeFailure, ProbeSuccess
from whispr.services.reconciler import (
    LOCATION_FALLBACK_MESSAGE,
    MISSING_TOKEN_MESSAGE,
    UNKNOWN_FETCH_MESSAGE,
    MapSession,
    apply_fetch_failure,
    apply_fetch_success,
    apply_probe_result,
    apply_progress,
    dedupe_records,
    dismiss_errors,
    initial_state,
)

HERE = Coordinate(latitude=40.7, longitude=-74.0)


# ── Fakes ─────────────────────────────────────────────────────────────────────

class GatedProbe:
    """Resolves with ``result`` once ``gate`` is set."""

    def __init__(self, result):
        self.result = result
        self.gate = asyncio.Event()

    async def probe(self):
        await self.gate.wait()
        return self.result


class GatedFetcher:
    """Each call pops the next outcome (a list of records or an exception)."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.gate = asyncio.Event()
        self.calls = 0

    async def fetch_whispers(self):
        self.calls += 1
        await self.gate.wait()
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def _drain():
    for _ in range(5):
        await asyncio.sleep(0)


def _session(probe, fetcher, defaults, token="test-map-token"):
    return MapSession(probe, fetcher, defaults=defaults, map_token=token, session_id="s1")


# ── Reducers ──────────────────────────────────────────────────────────────────

class TestReducers:

    def test_initial_state(self, empty_state, defaults):
        assert empty_state.loading is True
        assert empty_state.phase == ViewPhase.INITIALIZING
        assert empty_state.records == ()
        assert empty_state.center == defaults.center
        assert empty_state.zoom == defaults.zoom
        assert empty_state.error is None

    def test_missing_token_is_a_labelled_error(self, defaults):
        state = initial_state(defaults, map_token="")
        assert state.error.kind == ErrorKind.CONFIGURATION
        assert state.error.message == MISSING_TOKEN_MESSAGE

    def test_probe_success(self, empty_state, defaults):
        state = apply_probe_result(empty_state, ProbeSuccess(HERE, 14), defaults)
        assert state.user_position == HERE
        assert state.center == HERE
        assert state.zoom == 14
        assert state.geolocation_error is None

    def test_probe_failure_falls_back(self, empty_state, defaults):
        moved = empty_state.model_copy(update={"center": HERE, "zoom": 3})
        state = apply_probe_result(moved, ProbeFailure("Timeout expired"), defaults)
        assert state.center == defaults.center
        assert state.zoom == defaults.zoom
        assert state.user_position is None
        assert state.error.kind == ErrorKind.GEOLOCATION
        assert state.error.message.startswith(LOCATION_FALLBACK_MESSAGE)
        assert "Timeout expired" in state.error.message

    def test_location_failure_without_reason(self, empty_state, defaults):
        state = apply_probe_result(empty_state, ProbeFailure(""), defaults)
        assert state.center == defaults.center
        assert state.geolocation_error.message == LOCATION_FALLBACK_MESSAGE

    def test_fetch_success_replaces_wholesale(self, empty_state, make_record):
        state = apply_fetch_success(empty_state, [make_record("a"), make_record("b")])
        state = apply_fetch_success(state, [make_record("c")])
        assert [r.id for r in state.records] == ["c"]

    def test_fetch_success_clears_fetch_error(self, empty_state, make_record):
        failed = apply_fetch_failure(empty_state, FetchError("down"), first_attempt=True)
        assert failed.error is not None
        assert apply_fetch_success(failed, [make_record("a")]).fetch_error is None

    def test_fetch_success_prunes_selection(self, empty_state, make_record):
        state = apply_fetch_success(empty_state, [make_record("a")])
        state = state.model_copy(update={"selected_id": "a"})
        assert apply_fetch_success(state, [make_record("b")]).selected_id is None

    def test_duplicate_ids_later_wins(self, make_record):
        records = dedupe_records([
            make_record("a", lat=1), make_record("b"), make_record("a", lat=2),
        ])
        assert [r.id for r in records] == ["a", "b"]
        assert records[0].position.latitude == 2

    def test_cold_start_failure_leaves_records_empty(self, empty_state):
        state = apply_fetch_failure(empty_state, FetchError("HTTP error! status: 500"), first_attempt=True)
        assert state.records == ()
        assert state.error.kind == ErrorKind.FETCH
        assert state.error.message == "HTTP error! status: 500"

    def test_refresh_failure_retains_records(self, empty_state, make_record):
        before = apply_fetch_success(empty_state, [make_record("a"), make_record("b")])
        after = apply_fetch_failure(before, FetchError("down"), first_attempt=False)
        assert after.records == before.records
        assert after.error is not None

    def test_commutative_success(self, empty_state, defaults, make_record):
        probe = ProbeSuccess(HERE, 14)
        records = [make_record("a"), make_record("b")]
        one = apply_fetch_success(apply_probe_result(empty_state, probe, defaults), records)
        two = apply_probe_result(apply_fetch_success(empty_state, records), probe, defaults)
        assert one == two

    def test_commutative_failures(self, empty_state, defaults):
        probe = ProbeFailure("denied")
        err = FetchError("down")
        one = apply_fetch_failure(apply_probe_result(empty_state, probe, defaults), err, True)
        two = apply_probe_result(apply_fetch_failure(empty_state, err, True), probe, defaults)
        assert one == two
        # Fetch failures outrank geolocation failures in the banner
        assert one.error.kind == ErrorKind.FETCH

    def test_progress(self, empty_state):
        assert apply_progress(empty_state, ready=False, busy=False).loading is True
        ready = apply_progress(empty_state, ready=True, busy=False)
        assert (ready.phase, ready.loading) == (ViewPhase.READY, False)
        busy = apply_progress(ready, ready=True, busy=True)
        assert (busy.phase, busy.loading) == (ViewPhase.READY, True)

    def test_dismiss_keeps_configuration_error(self, defaults):
        state = initial_state(defaults, map_token="")
        state = apply_fetch_failure(state, FetchError("down"), first_attempt=True)
        state = dismiss_errors(state)
        assert state.fetch_error is None
        assert state.error.kind == ErrorKind.CONFIGURATION


# ── MapSession ────────────────────────────────────────────────────────────────

class TestMapSessionStartup:

    async def test_loading_until_both_settle(self, defaults, make_record):
        probe = GatedProbe(ProbeSuccess(HERE, 14))
        fetcher = GatedFetcher([make_record("a")])
        session = _session(probe, fetcher, defaults)
        session.start()

        probe.gate.set()
        await _drain()
        assert session.state.user_position == HERE
        assert session.state.loading is True
        assert session.state.phase == ViewPhase.INITIALIZING

        fetcher.gate.set()
        state = await session.wait_ready(timeout=1)
        assert state.loading is False
        assert state.phase == ViewPhase.READY
        assert [r.id for r in state.records] == ["a"]

    @pytest.mark.parametrize("probe_first", [True, False])
    async def test_completion_order_does_not_matter(self, defaults, make_record, probe_first):
        probe = GatedProbe(ProbeSuccess(HERE, 14))
        fetcher = GatedFetcher([make_record("a"), make_record("b")])
        session = _session(probe, fetcher, defaults)
        session.start()

        first, second = (probe, fetcher) if probe_first else (fetcher, probe)
        first.gate.set()
        await _drain()
        second.gate.set()
        final = await session.wait_ready(timeout=1)

        expected = _session(GatedProbe(None), GatedFetcher(), defaults).state.model_copy(update={
            "center": HERE,
            "zoom": 14,
            "user_position": HERE,
            "records": (make_record("a"), make_record("b")),
            "loading": False,
            "phase": ViewPhase.READY,
        })
        assert final == expected

    async def test_cold_start_failure(self, defaults):
        probe = GatedProbe(ProbeFailure("denied"))
        fetcher = GatedFetcher(FetchError("HTTP error! status: 500", status=500))
        probe.gate.set()
        fetcher.gate.set()
        session = _session(probe, fetcher, defaults)
        session.start()
        state = await session.wait_ready(timeout=1)
        assert state.records == ()
        assert state.error.kind == ErrorKind.FETCH
        assert state.geolocation_error is not None
        assert state.center == defaults.center
        assert state.loading is False

    async def test_unexpected_fetch_exception_still_settles(self, defaults):
        probe = GatedProbe(ProbeSuccess(HERE, 14))
        fetcher = GatedFetcher(RuntimeError("boom"))
        probe.gate.set()
        fetcher.gate.set()
        session = _session(probe, fetcher, defaults)
        session.start()
        state = await session.wait_ready(timeout=1)
        assert state.error.message == UNKNOWN_FETCH_MESSAGE

    async def test_start_twice_raises(self, defaults):
        session = _session(GatedProbe(None), GatedFetcher(), defaults)
        session.start()
        with pytest.raises(RuntimeError):
            session.start()
        session.close()

    async def test_listeners_see_each_state(self, defaults, make_record):
        probe = GatedProbe(ProbeSuccess(HERE, 14))
        fetcher = GatedFetcher([make_record("a")])
        probe.gate.set()
        fetcher.gate.set()
        session = _session(probe, fetcher, defaults)
        seen = []
        session.subscribe(seen.append)
        session.start()
        await session.wait_ready(timeout=1)
        assert len(seen) == 2
        assert seen[-1] == session.state


class TestMapSessionTeardown:

    async def test_late_completions_are_discarded(self, defaults, make_record):
        probe = GatedProbe(ProbeSuccess(HERE, 14))
        fetcher = GatedFetcher([make_record("a")])
        session = _session(probe, fetcher, defaults)
        session.start()
        before = session.state

        session.close()
        probe.gate.set()
        fetcher.gate.set()
        await _drain()

        assert session.state == before
        assert session.alive is False

    async def test_close_releases_listeners_and_waiters(self, defaults):
        session = _session(GatedProbe(None), GatedFetcher(), defaults)
        seen = []
        session.subscribe(seen.append)
        session.start()
        waiter = asyncio.create_task(session.wait_ready())
        await _drain()
        session.close()
        await asyncio.wait_for(waiter, timeout=1)
        assert seen == []

    async def test_user_events_after_close_raise(self, defaults):
        session = _session(GatedProbe(None), GatedFetcher(), defaults)
        session.close()
        session.close()  # idempotent
        with pytest.raises(SessionClosedError):
            session.select("a")
        with pytest.raises(SessionClosedError):
            await session.refresh()


class TestMapSessionRefresh:

    async def _ready_session(self, defaults, *outcomes):
        probe = GatedProbe(ProbeSuccess(HERE, 14))
        fetcher = GatedFetcher(*outcomes)
        probe.gate.set()
        fetcher.gate.set()
        session = _session(probe, fetcher, defaults)
        session.start()
        await session.wait_ready(timeout=1)
        return session

    async def test_failed_refresh_keeps_records(self, defaults, make_record):
        session = await self._ready_session(
            defaults, [make_record("a"), make_record("b")], FetchError("down"),
        )
        before = session.state.records
        state = await session.refresh()
        assert state.records == before
        assert state.error.kind == ErrorKind.FETCH
        assert state.loading is False
        assert state.phase == ViewPhase.READY

    async def test_refresh_replaces_and_prunes_selection(self, defaults, make_record):
        session = await self._ready_session(
            defaults, [make_record("a"), make_record("b")], [make_record("b"), make_record("c")],
        )
        session.select("a")
        state = await session.refresh()
        assert [r.id for r in state.records] == ["b", "c"]
        assert state.selected_id is None

    async def test_refresh_keeps_surviving_selection(self, defaults, make_record):
        session = await self._ready_session(
            defaults, [make_record("a")], [make_record("a"), make_record("c")],
        )
        session.select("a")
        state = await session.refresh()
        assert state.selected_id == "a"

    async def test_refresh_success_after_failure_clears_error(self, defaults, make_record):
        session = await self._ready_session(
            defaults, FetchError("down"), [make_record("a")],
        )
        assert session.state.error is not None
        state = await session.refresh()
        assert state.fetch_error is None
        assert [r.id for r in state.records] == ["a"]

    async def test_loading_while_refresh_in_flight(self, defaults, make_record):
        session = await self._ready_session(defaults, [make_record("a")], [make_record("b")])
        session.fetcher.gate.clear()
        task = asyncio.create_task(session.refresh())
        await _drain()
        assert session.state.loading is True
        assert session.state.phase == ViewPhase.READY
        session.fetcher.gate.set()
        state = await asyncio.wait_for(task, timeout=1)
        assert state.loading is False

    async def test_dispatch_click_and_dismiss(self, defaults, make_record):
        session = await self._ready_session(defaults, [make_record("a")], FetchError("down"))
        assert session.dispatch_click("a").selected_id == "a"
        assert session.dispatch_click("__user__").selected_id == "a"
        assert session.clear_selection().selected_id is None
        await session.refresh()
        assert session.dismiss_error().error is None


class PerCallFetcher:
    """Call N resolves with outcomes[N] once gates[N] is set."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.gates = [asyncio.Event() for _ in outcomes]
        self.calls = 0

    async def fetch_whispers(self):
        index = self.calls
        self.calls += 1
        await self.gates[index].wait()
        outcome = self.outcomes[index]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestOverlappingFetches:

    async def _overlapped(self, defaults, initial_outcome, refresh_outcome):
        """Initial fetch still in flight while a refresh completes."""
        probe = GatedProbe(ProbeSuccess(HERE, 14))
        probe.gate.set()
        fetcher = PerCallFetcher(initial_outcome, refresh_outcome)
        session = _session(probe, fetcher, defaults)
        session.start()
        await _drain()

        fetcher.gates[1].set()
        refreshed = await asyncio.wait_for(session.refresh(), timeout=1)
        fetcher.gates[0].set()
        final = await session.wait_ready(timeout=1)
        return refreshed, final

    async def test_late_initial_failure_keeps_refreshed_records(self, defaults, make_record):
        refreshed, final = await self._overlapped(
            defaults, FetchError("initial failed late"), [make_record("a"), make_record("b")],
        )
        assert [r.id for r in refreshed.records] == ["a", "b"]
        assert [r.id for r in final.records] == ["a", "b"]
        assert final.fetch_error is None
        assert final.phase == ViewPhase.READY
        assert final.loading is False

    async def test_late_initial_success_does_not_overwrite_refresh(self, defaults, make_record):
        _, final = await self._overlapped(
            defaults, [make_record("old")], [make_record("new")],
        )
        assert [r.id for r in final.records] == ["new"]

    async def test_in_order_results_all_apply(self, defaults, make_record):
        probe = GatedProbe(ProbeSuccess(HERE, 14))
        probe.gate.set()
        fetcher = PerCallFetcher([make_record("a")], FetchError("down"))
        session = _session(probe, fetcher, defaults)
        session.start()
        fetcher.gates[0].set()
        await session.wait_ready(timeout=1)

        fetcher.gates[1].set()
        state = await session.refresh()
        assert [r.id for r in state.records] == ["a"]
        assert state.error.kind == ErrorKind.FETCH
