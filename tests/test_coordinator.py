"""Tests for the device refresh coordinator."""

import threading
import time

import pytest

from conftest import FakeClock, FakeDevice, FakeTerminus, at
from terminus_runner.core.config import CoordinatorConfig
from terminus_runner.core.coordinator import (
    BeliefState,
    Clock,
    CoordinatorStopped,
    RefreshCoordinator,
    SyncState,
    TemporaryRefreshRate,
)
from terminus_runner.core.errors import CoordinatorError, TerminusError


class Recorder:
    """Refresh callback that remembers when it was called."""

    def __init__(self, clock):
        self.clock = clock
        self.calls = []
        self.render_seconds = 0

    def __call__(self, reason):
        self.calls.append((self.clock.now_ms(), reason))
        if self.render_seconds:
            self.clock.sleep(self.render_seconds, threading.Event())

    @property
    def times(self):
        return [timestamp for timestamp, _ in self.calls]


def make_coordinator(terminus, clock, **overrides):
    settings = dict(
        safety_margin=60.0,
        poll_interval=600.0,
        recovery_poll_interval=60.0,
        recovery_refresh_rate=60,
    )
    settings.update(overrides)
    recorder = Recorder(clock)
    coordinator = RefreshCoordinator(
        terminus, 1, recorder, CoordinatorConfig(**settings), clock=clock
    )
    states = []
    coordinator.on_state_change(lambda old, new: states.append(new))
    return coordinator, recorder, states


class TestBeliefState:
    def test_prediction(self):
        belief = BeliefState(last_refresh_ms=at(0), refresh_rate=300)
        assert belief.predicted_refresh_ms == at(300)

    def test_prediction_requires_confirmed_refresh(self):
        with pytest.raises(CoordinatorError):
            BeliefState().predicted_refresh_ms


class TestConfigValidation:
    @pytest.mark.parametrize(
        "field, value",
        [
            ("safety_margin", 0),
            ("poll_interval", -1),
            ("recovery_poll_interval", 0),
            ("recovery_refresh_rate", 30),
        ],
    )
    def test_rejected(self, terminus, clock, field, value):
        with pytest.raises(CoordinatorError):
            make_coordinator(terminus, clock, **{field: value})

    def test_override_can_be_disabled(self, terminus, clock):
        coordinator, _, _ = make_coordinator(terminus, clock, recovery_refresh_rate=None)
        assert coordinator.config.recovery_refresh_rate is None


class TestSteadyState:
    def test_renders_one_margin_before_predicted_refresh(self, terminus, clock):
        # Device refreshed at T0 with a 300s rate
        coordinator, recorder, _ = make_coordinator(terminus, clock)
        coordinator.belief = BeliefState(last_refresh_ms=at(0), refresh_rate=300)

        coordinator.steady_cycle()

        assert recorder.times == [at(240)]
        # Verified at predicted + margin, then the next refresh is predicted
        assert clock.now == at(360)
        assert coordinator.belief.last_refresh_ms == at(300)
        assert coordinator.belief.predicted_refresh_ms == at(600)
        assert not coordinator.belief.expecting_refresh

    def test_trigger_window(self, terminus, clock):
        coordinator, recorder, _ = make_coordinator(terminus, clock)
        coordinator.belief = BeliefState(last_refresh_ms=at(0), refresh_rate=300)

        coordinator.steady_cycle()

        predicted = at(300)
        margin = 60_000
        trigger = recorder.times[0]
        assert predicted - 2 * margin <= trigger <= predicted

    def test_long_waits_poll_periodically(self, clock):
        device = FakeDevice(clock, refresh_rate=3600)
        terminus = FakeTerminus(device)
        coordinator, recorder, _ = make_coordinator(terminus, clock, poll_interval=600.0)
        coordinator.belief = BeliefState(last_refresh_ms=at(0), refresh_rate=3600)

        coordinator.steady_cycle()

        assert recorder.times == [at(3540)]
        assert all(seconds <= 600 for seconds in clock.sleeps)
        assert terminus.polls >= 5

    def test_imminent_refresh_triggers_immediately(self, terminus):
        clock = FakeClock(start_ms=at(280))
        terminus.device.clock = clock
        coordinator, recorder, _ = make_coordinator(terminus, clock)
        coordinator.belief = BeliefState(last_refresh_ms=at(0), refresh_rate=300)

        coordinator.steady_cycle()

        assert recorder.times == [at(280)]
        assert coordinator.belief.last_refresh_ms == at(300)

    def test_unexpected_refresh_rerenders_and_resets_prediction(self, clock):
        device = FakeDevice(clock, refresh_rate=900, manual=[at(200)])
        terminus = FakeTerminus(device)
        coordinator, recorder, _ = make_coordinator(terminus, clock, poll_interval=120.0)
        coordinator.belief = BeliefState(last_refresh_ms=at(0), refresh_rate=900)

        coordinator.steady_cycle()

        assert recorder.times == [at(250)]
        assert "unexpected" in recorder.calls[0][1]
        assert coordinator.belief.last_refresh_ms == at(200)
        assert coordinator.belief.predicted_refresh_ms == at(1100)

    def test_transient_poll_failure_keeps_belief(self, terminus, clock):
        coordinator, _, _ = make_coordinator(terminus, clock)
        coordinator.belief = BeliefState(last_refresh_ms=at(0), refresh_rate=300)
        terminus.fail_polls = 1

        assert coordinator.poll() is None
        assert coordinator.belief.last_refresh_ms == at(0)
        assert coordinator.poll() is not None

    def test_verification_retries_failed_polls(self, terminus, clock):
        coordinator, recorder, _ = make_coordinator(terminus, clock)
        coordinator.belief = BeliefState(last_refresh_ms=at(0), refresh_rate=300)

        def fail_at_verification(reason):
            recorder(reason)
            terminus.fail_polls = 2

        coordinator._refresh = fail_at_verification
        coordinator.steady_cycle()

        # Two failed polls, each followed by a recovery tick
        assert clock.now == at(360 + 120)
        assert coordinator.belief.last_refresh_ms == at(300)

    def test_refresh_callback_failure_does_not_stop_cycle(self, terminus, clock):
        coordinator, _, _ = make_coordinator(terminus, clock)
        coordinator.belief = BeliefState(last_refresh_ms=at(0), refresh_rate=300)

        def broken(reason):
            raise RuntimeError("render pool exploded")

        coordinator._refresh = broken
        coordinator.steady_cycle()

        assert coordinator.belief.last_refresh_ms == at(300)


class TestSynchronization:
    def test_waits_for_confirmed_refresh_without_override(self, terminus, clock):
        coordinator, recorder, states = make_coordinator(
            terminus, clock, recovery_refresh_rate=None
        )

        coordinator.synchronize()

        assert states[:1] == [SyncState.WAITING_FOR_REFRESH]
        assert terminus.rate_updates == []
        assert recorder.calls == []
        # Polled every recovery tick from T0+10 until the T0+300 fetch was seen
        assert clock.now == at(310)
        assert coordinator.belief.last_refresh_ms == at(300)
        assert coordinator.belief.refresh_rate == 300

    def test_override_is_restored_exactly_once(self, terminus, clock):
        coordinator, _, _ = make_coordinator(terminus, clock)

        coordinator.synchronize()

        assert terminus.rate_updates == [60, 300]
        assert terminus.device.refresh_rate == 300
        # The fetch at T0+300 handed the device the temporary rate
        assert coordinator.belief.last_refresh_ms == at(300)
        assert coordinator.belief.refresh_rate == 60

    def test_no_override_when_device_already_fast(self, clock):
        device = FakeDevice(clock, refresh_rate=60)
        terminus = FakeTerminus(device)
        coordinator, _, _ = make_coordinator(terminus, clock, recovery_refresh_rate=120)

        coordinator.synchronize()

        assert terminus.rate_updates == []
        assert coordinator.belief.refresh_rate == 60

    def test_failed_override_still_restores(self, terminus, clock):
        terminus.fail_updates = 1
        coordinator, _, _ = make_coordinator(terminus, clock)

        coordinator.synchronize()

        # Only the restore went through; the prediction uses the polled rate
        assert terminus.rate_updates == [300]
        assert coordinator.belief.refresh_rate == 300

    def test_retries_transient_failures_before_baseline(self, terminus, clock):
        terminus.fail_polls = 2
        coordinator, _, _ = make_coordinator(terminus, clock, recovery_refresh_rate=None)

        coordinator.synchronize()

        assert coordinator.belief.last_refresh_ms == at(300)


class TestDisconnection:
    def test_missed_refresh_resynchronizes(self, clock):
        # Offline across the T0+300 fetch; back for the next attempt at T0+600
        device = FakeDevice(clock, refresh_rate=300, offline=[(at(200), at(400))])
        terminus = FakeTerminus(device)
        coordinator, recorder, states = make_coordinator(terminus, clock)
        coordinator.belief = BeliefState(last_refresh_ms=at(0), refresh_rate=300)

        coordinator.steady_cycle()

        assert recorder.times == [at(240), at(360)]
        assert "missed" in recorder.calls[1][1]
        assert states.index(SyncState.DISCONNECTED) < states.index(
            SyncState.WAITING_FOR_REFRESH
        )
        assert terminus.rate_updates == [60, 300]
        assert coordinator.belief.last_refresh_ms == at(600)
        assert coordinator.belief.refresh_rate == 60

    def test_refresh_during_missed_refresh_render_confirms_sync(self, clock):
        # Offline across the T0+300 fetch; refreshed by hand while plugins re-render
        device = FakeDevice(
            clock, refresh_rate=300, offline=[(at(200), at(400))], manual=[at(420)]
        )
        terminus = FakeTerminus(device)
        coordinator, recorder, states = make_coordinator(terminus, clock)
        recorder.render_seconds = 90
        coordinator.belief = BeliefState(last_refresh_ms=at(0), refresh_rate=300)

        coordinator.steady_cycle()

        assert recorder.times == [at(240), at(360)]
        assert states[-2:] == [SyncState.DISCONNECTED, SyncState.UNSYNCED]
        assert SyncState.WAITING_FOR_REFRESH not in states
        assert terminus.rate_updates == []
        assert coordinator.belief.last_refresh_ms == at(420)
        assert coordinator.belief.refresh_rate == 300

    def test_prediction_resumes_after_reconnect(self, clock):
        device = FakeDevice(clock, refresh_rate=300, offline=[(at(200), at(400))])
        terminus = FakeTerminus(device)
        coordinator, recorder, _ = make_coordinator(terminus, clock)
        coordinator.belief = BeliefState(last_refresh_ms=at(0), refresh_rate=300)

        coordinator.steady_cycle()
        coordinator.steady_cycle()

        # Next prediction at T0+660 is already inside the margin: render at once
        assert recorder.times[-1] == at(600)
        assert coordinator.belief.last_refresh_ms == at(660)
        assert coordinator.belief.refresh_rate == 300

    def test_no_refresh_inferred_from_elapsed_time(self, clock):
        # Device never comes back
        device = FakeDevice(clock, refresh_rate=300, offline=[(at(200), at(10_000))])
        terminus = FakeTerminus(device)
        clock.stop_at = at(5_000)
        coordinator, _, states = make_coordinator(terminus, clock)

        coordinator.belief = BeliefState(last_refresh_ms=at(0), refresh_rate=300)
        with pytest.raises(CoordinatorStopped):
            coordinator.steady_cycle()

        assert coordinator.state is SyncState.WAITING_FOR_REFRESH
        assert terminus.rate_updates == [60, 300]


class TestRun:
    def test_concrete_schedule(self, terminus, clock):
        clock.stop_at = at(850)
        coordinator, recorder, _ = make_coordinator(terminus, clock, recovery_refresh_rate=None)

        coordinator.run()

        # Synchronized on the T0+300 fetch, then rendered a margin before
        # T0+600 and T0+900
        assert recorder.times == [at(540), at(840)]
        assert coordinator.state is SyncState.STOPPED
        assert not coordinator.is_running

    def test_states_progress(self, terminus, clock):
        clock.stop_at = at(850)
        coordinator, _, states = make_coordinator(terminus, clock, recovery_refresh_rate=None)

        coordinator.run()

        assert states[:4] == [
            SyncState.WAITING_FOR_REFRESH,
            SyncState.STEADY_STATE,
            SyncState.REFRESHING,
            SyncState.STEADY_STATE,
        ]
        assert states[-1] is SyncState.STOPPED

    def test_stop_during_override_restores_rate(self, terminus, clock):
        clock.stop_at = at(200)
        coordinator, recorder, _ = make_coordinator(terminus, clock)

        coordinator.run()

        assert terminus.rate_updates == [60, 300]
        assert terminus.device.refresh_rate == 300
        assert recorder.calls == []
        assert coordinator.state is SyncState.STOPPED

    def test_stop_before_run(self, terminus, clock):
        coordinator, _, _ = make_coordinator(terminus, clock)
        coordinator.stop()

        coordinator.run()

        assert coordinator.state is SyncState.STOPPED
        assert terminus.rate_updates == []

    def test_refresh_rate_below_floor_is_fatal(self, clock):
        device = FakeDevice(clock, refresh_rate=30)
        terminus = FakeTerminus(device)
        coordinator, _, _ = make_coordinator(terminus, clock)

        with pytest.raises(CoordinatorError, match="less than 60 seconds"):
            coordinator.run()

        assert coordinator.state is SyncState.STOPPED
        # The device slot is released
        with pytest.raises(CoordinatorError, match="less than 60 seconds"):
            coordinator.run()

    def test_unrestorable_rate_is_fatal(self, terminus, clock):
        clock.stop_at = at(200)
        coordinator, _, _ = make_coordinator(terminus, clock, restore_attempts=2)
        original_update = terminus.update_device

        def update(device_id, **fields):
            if fields["refresh_rate"] == 300:
                raise TerminusError("Failed to update device 1: timed out")
            original_update(device_id, **fields)

        terminus.update_device = update

        with pytest.raises(CoordinatorError, match="Could not restore"):
            coordinator.run()

    def test_one_coordinator_per_device(self, terminus):
        first = RefreshCoordinator(
            terminus, 1, lambda reason: None, CoordinatorConfig(), clock=Clock()
        )
        thread = threading.Thread(target=first.run, daemon=True)
        thread.start()
        try:
            deadline = time.monotonic() + 5
            while not first.is_running and time.monotonic() < deadline:
                time.sleep(0.01)
            assert first.is_running

            second = RefreshCoordinator(terminus, 1, lambda reason: None, clock=Clock())
            with pytest.raises(CoordinatorError, match="already running"):
                second.run()
        finally:
            first.stop()
            thread.join(timeout=5)

        assert not thread.is_alive()
        assert first.state is SyncState.STOPPED


class TestTemporaryRefreshRate:
    def test_restore_is_idempotent(self, terminus):
        override = TemporaryRefreshRate(terminus, 1, 60, 300)
        with override:
            override.restore()

        assert terminus.rate_updates == [60, 300]
        assert override.restored

    def test_restored_when_block_raises(self, terminus):
        with pytest.raises(KeyError):
            with TemporaryRefreshRate(terminus, 1, 60, 300):
                raise KeyError("boom")

        assert terminus.rate_updates == [60, 300]

    def test_restore_retries_wait_on_clock(self, terminus, clock):
        override = TemporaryRefreshRate(
            terminus, 1, 60, 300, attempts=3, retry_delay=5, clock=clock
        )
        with override:
            terminus.fail_updates = 2

        assert terminus.rate_updates == [60, 300]
        assert clock.sleeps == [5, 5]

    def test_stop_request_shortens_retry_delay(self, terminus, clock):
        stop = threading.Event()
        stop.set()
        override = TemporaryRefreshRate(
            terminus, 1, 60, 300, retry_delay=600, clock=clock, stop_event=stop
        )
        with override:
            terminus.fail_updates = 1

        assert terminus.rate_updates == [60, 300]
        assert clock.now_ms() == at(10)

    def test_not_applied_when_slower(self, terminus):
        with TemporaryRefreshRate(terminus, 1, 900, 300) as override:
            assert not override.active

        assert terminus.rate_updates == []
