from __future__ import annotations

from datetime import datetime, timedelta, timezone
import errno
from unittest.mock import MagicMock, patch

import pytest

from conftest import T0, FakeClock, RecordingSurface, iso, make_trip, ride
from src.data.models import Leg
from src.data.state_store import FileKeyValueStore, TrackingStateStore
from src.errors import IncompleteLegData, NoTrackableLeg, StoreUnavailable, TrackingSurfaceDenied
from src.logic.session import Phase
from src.tracking.coordinator import TrackingCoordinator
from src.tracking.loop import COMPACT_MIN_ENTRIES, TrackingLoop


@pytest.fixture()
def coordinator(store: TrackingStateStore, surface: RecordingSurface, loop: TrackingLoop) -> TrackingCoordinator:
    return TrackingCoordinator(store, surface, loop, tz=timezone.utc)


def _advance(loop: TrackingLoop, clock: FakeClock, seconds: int) -> None:
    for _ in range(seconds):
        clock.advance(1)
        loop.run_pending()


def _trip(trip_id: str = "trip-a", departs_in: timedelta = timedelta(minutes=3), **kwargs):
    departure = T0 + departs_in
    return make_trip(ride(departure, departure + timedelta(minutes=12), **kwargs), trip_id=trip_id)


def test_start_tracking_before_departure(
    coordinator: TrackingCoordinator, store: TrackingStateStore, surface: RecordingSurface
) -> None:
    snapshot = coordinator.start_tracking(_trip(), "token")

    assert snapshot.phase is Phase.BEFORE_DEPARTURE
    assert snapshot.delay_minutes is None
    assert coordinator.is_tracking("trip-a")
    assert store.get_trip("trip-a").is_active
    assert store.load_snapshot("trip-a") == snapshot
    assert len(surface.requests) == 1


def test_departure_deadline_moves_tracked_trip_forward(
    coordinator: TrackingCoordinator, loop: TrackingLoop, clock: FakeClock, store: TrackingStateStore
) -> None:
    coordinator.start_tracking(_trip(), "token")

    _advance(loop, clock, 180)

    assert coordinator.snapshot("trip-a").phase is Phase.DURING_JOURNEY
    assert store.load_snapshot("trip-a").phase is Phase.DURING_JOURNEY


def test_delay_from_estimate(coordinator: TrackingCoordinator) -> None:
    departure = T0 + timedelta(minutes=3)
    trip = make_trip(
        ride(departure, departure + timedelta(minutes=12), estimated_departure=iso(departure + timedelta(minutes=5)))
    )

    snapshot = coordinator.start_tracking(trip, "token")

    assert snapshot.delay_minutes == 5


def test_already_departed_trip_starts_during_journey(coordinator: TrackingCoordinator, loop: TrackingLoop) -> None:
    snapshot = coordinator.start_tracking(_trip(departs_in=timedelta(minutes=-10)), "token")

    assert snapshot.phase is Phase.DURING_JOURNEY
    assert all(not handle.name.startswith("departure") for handle in loop.pending())


def test_trip_without_ride_is_rejected(
    coordinator: TrackingCoordinator, store: TrackingStateStore, surface: RecordingSurface, loop: TrackingLoop
) -> None:
    trip = make_trip(Leg.transfer("WALK"), trip_id="walk-only")

    with pytest.raises(NoTrackableLeg):
        coordinator.start_tracking(trip, "token")

    assert store.active_trip_ids() == []
    assert store.get_trip("walk-only") is None
    assert surface.requests == []
    assert loop.pending() == []


def test_incomplete_first_leg_is_rejected(coordinator: TrackingCoordinator, store: TrackingStateStore) -> None:
    with pytest.raises(IncompleteLegData):
        coordinator.start_tracking(_trip(line=None), "token")

    assert store.active_trip_ids() == []


def test_rejected_trip_leaves_current_tracking_alone(
    coordinator: TrackingCoordinator, store: TrackingStateStore
) -> None:
    coordinator.start_tracking(_trip("trip-a"), "token")

    with pytest.raises(NoTrackableLeg):
        coordinator.start_tracking(make_trip(Leg.transfer("WALK"), trip_id="trip-b"), "token")

    assert store.active_trip_ids() == ["trip-a"]


def test_surface_denied_writes_nothing(store: TrackingStateStore, loop: TrackingLoop) -> None:
    coordinator = TrackingCoordinator(store, RecordingSurface(enabled=False), loop)

    with pytest.raises(TrackingSurfaceDenied):
        coordinator.start_tracking(_trip(), "token")

    assert not coordinator.is_tracking("trip-a")
    assert store.get_trip("trip-a") is None
    assert loop.pending() == []


def test_surface_denied_keeps_current_trip(
    coordinator: TrackingCoordinator, store: TrackingStateStore, surface: RecordingSurface, loop: TrackingLoop
) -> None:
    coordinator.start_tracking(_trip("trip-a"), "token")
    handles = loop.pending()
    surface.enabled = False

    with pytest.raises(TrackingSurfaceDenied):
        coordinator.start_tracking(_trip("trip-b"), "token")

    assert store.active_trip_ids() == ["trip-a"]
    assert coordinator.active_trip_ids() == ["trip-a"]
    assert store.get_trip("trip-b") is None
    assert surface.ended == []
    assert loop.pending() == handles


def test_new_trip_supersedes_previous(
    coordinator: TrackingCoordinator, store: TrackingStateStore, surface: RecordingSurface, loop: TrackingLoop
) -> None:
    coordinator.start_tracking(_trip("trip-a"), "token")
    coordinator.start_tracking(_trip("trip-b"), "token")

    assert store.active_trip_ids() == ["trip-b"]
    assert not coordinator.is_tracking("trip-a")
    assert coordinator.is_tracking("trip-b")
    assert surface.ended == ["trip-a"]
    assert all(handle.name.endswith("trip-b") for handle in loop.pending())


def test_start_supersedes_trip_active_in_another_process(
    coordinator: TrackingCoordinator, store: TrackingStateStore
) -> None:
    store.set_active("other-process-trip", True)

    coordinator.start_tracking(_trip("trip-a"), "token")

    assert store.active_trip_ids() == ["trip-a"]


def test_at_most_one_active_trip_after_many_starts(
    coordinator: TrackingCoordinator, store: TrackingStateStore
) -> None:
    for index in range(5):
        coordinator.start_tracking(_trip(f"trip-{index}"), "token")
        assert len(store.active_trip_ids()) == 1

    assert coordinator.active_trip_ids() == ["trip-4"]


def test_arrival_then_stop(
    coordinator: TrackingCoordinator, loop: TrackingLoop, clock: FakeClock, surface: RecordingSurface
) -> None:
    trip = make_trip(ride(T0 + timedelta(seconds=5), T0 + timedelta(seconds=10)))
    coordinator.start_tracking(trip, "token")

    _advance(loop, clock, 10)
    frozen = coordinator.snapshot("trip-a")
    updates = len(surface.updates)
    _advance(loop, clock, 30)

    assert frozen.phase is Phase.ARRIVED
    assert coordinator.snapshot("trip-a") is frozen
    assert len(surface.updates) == updates

    coordinator.stop_tracking("trip-a")
    assert not coordinator.is_tracking("trip-a")


def test_stop_tracking_is_idempotent(
    coordinator: TrackingCoordinator, store: TrackingStateStore, loop: TrackingLoop
) -> None:
    coordinator.start_tracking(_trip(), "token")

    coordinator.stop_tracking("trip-a")
    state_after_first = (store.active_trip_ids(), loop.pending())
    coordinator.stop_tracking("trip-a")
    coordinator.stop_tracking("never-tracked")

    assert (store.active_trip_ids(), loop.pending()) == state_after_first
    assert state_after_first == ([], [])


def test_stop_all_collects_failures() -> None:
    store = MagicMock(spec=TrackingStateStore)
    store.active_trip_ids.return_value = ["trip-x", "trip-y"]

    def _set_active(trip_id: str, is_active: bool) -> None:
        if trip_id == "trip-x" and not is_active:
            raise StoreUnavailable("disk gone")

    store.set_active.side_effect = _set_active
    coordinator = TrackingCoordinator(store, RecordingSurface(), TrackingLoop(clock=FakeClock()))

    report = coordinator.stop_all_tracking()

    assert not report.ok
    assert set(report.failures) == {"trip-x"}
    assert report.stopped == ["trip-y"]


def test_stop_all_clears_every_trip(coordinator: TrackingCoordinator, store: TrackingStateStore) -> None:
    coordinator.start_tracking(_trip("trip-a"), "token")
    store.set_active("stale-trip", True)

    report = coordinator.stop_all_tracking()

    assert report.ok
    assert set(report.stopped) == {"trip-a", "stale-trip"}
    assert store.active_trip_ids() == []


def test_tracking_continues_when_store_unavailable(loop: TrackingLoop, clock: FakeClock) -> None:
    store = MagicMock(spec=TrackingStateStore)
    store.active_trip_ids.side_effect = StoreUnavailable("offline")
    store.is_active.side_effect = StoreUnavailable("offline")
    store.set_active.side_effect = StoreUnavailable("offline")
    store.save_snapshot.side_effect = StoreUnavailable("offline")
    surface = RecordingSurface()
    coordinator = TrackingCoordinator(store, surface, loop)

    coordinator.start_tracking(_trip(), "token")
    _advance(loop, clock, 180)

    assert coordinator.is_tracking("trip-a")
    assert coordinator.snapshot("trip-a").phase is Phase.DURING_JOURNEY
    assert surface.updates


def test_start_and_stop_with_running_loop(store: TrackingStateStore, surface: RecordingSurface) -> None:
    loop = TrackingLoop(max_wait_seconds=0.05)
    coordinator = TrackingCoordinator(store, surface, loop)
    loop.start()
    try:
        departure = datetime.now(timezone.utc) + timedelta(hours=1)
        coordinator.start_tracking(make_trip(ride(departure, departure + timedelta(minutes=12))), "token")
        assert coordinator.active_trip_ids() == ["trip-a"]
        coordinator.stop_tracking("trip-a")
        assert loop.pending() == []
    finally:
        loop.stop()


def test_superseded_trips_do_not_grow_timer_queue(coordinator: TrackingCoordinator, loop: TrackingLoop) -> None:
    for index in range(200):
        coordinator.start_tracking(_trip(f"trip-{index}", departs_in=timedelta(hours=1)), "token")

    assert len(loop.pending()) == 3
    assert loop.queued_count() <= 2 * COMPACT_MIN_ENTRIES + 3


def test_tracking_continues_when_file_lock_fails(tmp_path, surface: RecordingSurface, loop: TrackingLoop) -> None:
    store = TrackingStateStore(FileKeyValueStore(tmp_path, "rnv-tracking"))
    coordinator = TrackingCoordinator(store, surface, loop)

    with patch("fcntl.flock", side_effect=OSError(errno.ENOLCK, "No locks available")):
        snapshot = coordinator.start_tracking(_trip(), "token")

        assert snapshot.phase is Phase.BEFORE_DEPARTURE
        assert coordinator.is_tracking("trip-a")
