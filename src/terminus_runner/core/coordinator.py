"""
Device-synchronized refresh coordinator.

The device decides on its own when it wakes up and fetches a new image; the
only thing we can observe is its last fetch time (``updated_at``) and its
refresh rate, by polling Terminus. The coordinator predicts the next fetch
and re-renders every plugin shortly before it:

    UNSYNCED -> WAITING_FOR_REFRESH -> STEADY_STATE -> REFRESHING
                        ^                    ^              |
                        |                    +--------------+  refresh confirmed
                        +---- DISCONNECTED <----------------+  refresh missed

A refresh is only ever inferred from a changed timestamp between two polls,
never from elapsed wall-clock time.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Set

from .config import MIN_REFRESH_RATE, CoordinatorConfig
from .errors import CoordinatorError, TerminusError
from .terminus import Device, TerminusClient

log = logging.getLogger(__name__)

# Devices with a coordinator currently running in this process
_active_devices: Set[int] = set()
_active_lock = threading.Lock()


def format_ms(timestamp_ms: Optional[int]) -> str:
    """Human readable UTC time for log messages."""
    if timestamp_ms is None:
        return "unknown"
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="seconds")


class SyncState(Enum):
    """Coordinator states."""

    UNSYNCED = "unsynced"
    WAITING_FOR_REFRESH = "waiting_for_refresh"
    STEADY_STATE = "steady_state"
    REFRESHING = "refreshing"
    DISCONNECTED = "disconnected"
    STOPPED = "stopped"


@dataclass(frozen=True)
class DeviceStatus:
    """One observation of the device."""

    id: int
    refresh_rate: int  # seconds
    last_refresh_ms: int

    @classmethod
    def from_device(cls, device: Device) -> "DeviceStatus":
        return cls(
            id=device.id,
            refresh_rate=device.refresh_rate,
            last_refresh_ms=device.last_refresh_ms,
        )


@dataclass
class BeliefState:
    """What the coordinator believes about the device's refresh timing."""

    last_refresh_ms: Optional[int] = None
    # Rate the device was handed on its last observed fetch, in seconds
    refresh_rate: Optional[int] = None
    expecting_refresh: bool = False

    @property
    def known(self) -> bool:
        return self.last_refresh_ms is not None and self.refresh_rate is not None

    @property
    def predicted_refresh_ms(self) -> int:
        if not self.known:
            raise CoordinatorError("No confirmed device refresh to predict from")
        return self.last_refresh_ms + self.refresh_rate * 1000

    def adopt(self, status: DeviceStatus, refresh_rate: Optional[int] = None) -> None:
        """Take a confirmed refresh as the new reference point."""
        self.last_refresh_ms = status.last_refresh_ms
        self.refresh_rate = refresh_rate if refresh_rate is not None else status.refresh_rate
        self.expecting_refresh = False


class Clock:
    """Wall clock with cancellable sleeps."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def sleep(self, seconds: float, stop_event: threading.Event) -> bool:
        """Sleep up to ``seconds``. Returns True if a stop was requested."""
        return stop_event.wait(max(0.0, seconds))


class CoordinatorStopped(Exception):
    """Raised inside the loop to unwind when stop() is called."""


class TemporaryRefreshRate:
    """
    Temporarily shortens the device's refresh rate.

    Used as a context manager around the resync wait; the original rate is
    restored exactly once on every way out of the block, including stop
    requests and errors. A rate that is not lower than the original is not
    applied at all.
    """

    def __init__(
        self,
        client: TerminusClient,
        device_id: int,
        rate: Optional[int],
        original_rate: int,
        attempts: int = 3,
        retry_delay: float = 1.0,
        clock: Optional[Clock] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.client = client
        self.device_id = device_id
        self.rate = rate
        self.original_rate = original_rate
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay
        self.clock = clock or Clock()
        self._stop_event = stop_event or threading.Event()

        self.active = False  # the device may carry the temporary rate
        self.applied = False  # Terminus acknowledged the temporary rate
        self.restored = False

    def __enter__(self) -> "TemporaryRefreshRate":
        if self.rate is None or self.rate >= self.original_rate:
            log.debug(f"Keeping device refresh rate at {self.original_rate}s")
            return self

        # A failed request may still have been applied, so restore regardless
        self.active = True
        try:
            self.client.update_device(self.device_id, refresh_rate=self.rate)
            self.applied = True
            log.info(
                f"Device refresh rate temporarily set to {self.rate}s (was {self.original_rate}s)"
            )
        except TerminusError as e:
            log.warning(f"Could not shorten device refresh rate: {e}")
        return self

    def restore(self) -> None:
        """Put the original rate back. Does nothing if already restored."""
        if not self.active or self.restored:
            return

        last_error: Optional[Exception] = None
        for attempt in range(1, self.attempts + 1):
            try:
                self.client.update_device(self.device_id, refresh_rate=self.original_rate)
            except TerminusError as e:
                last_error = e
                log.warning(f"Restoring device refresh rate failed (attempt {attempt}): {e}")
                if attempt < self.attempts:
                    # A stop request shortens the delay but never skips the retry
                    self.clock.sleep(self.retry_delay, self._stop_event)
                continue

            self.restored = True
            log.info(f"Device refresh rate restored to {self.original_rate}s")
            return

        raise CoordinatorError(
            f"Could not restore device refresh rate to {self.original_rate}s: {last_error}"
        )

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.restore()
        return False


class RefreshCoordinator:
    """
    Keeps plugin screens fresh in step with the device's own refresh cycle.

    The ``refresh`` callback renders and publishes every plugin; it receives a
    short reason string. Only one coordinator may run per device.
    """

    def __init__(
        self,
        client: TerminusClient,
        device_id: int,
        refresh: Callable[[str], Any],
        config: Optional[CoordinatorConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.client = client
        self.device_id = device_id
        self.config = config or CoordinatorConfig()
        self.clock = clock or Clock()
        self.validate_config(self.config)

        self._refresh = refresh
        self._state = SyncState.UNSYNCED
        self._stop_event = threading.Event()
        self._running = False
        self._on_state_change: Optional[Callable[[SyncState, SyncState], None]] = None

        self.belief = BeliefState()

    @staticmethod
    def validate_config(config: CoordinatorConfig) -> None:
        """Reject settings the timing arithmetic cannot work with."""
        for name in ("safety_margin", "poll_interval", "recovery_poll_interval"):
            if getattr(config, name) <= 0:
                raise CoordinatorError(f"Coordinator {name} must be positive")
        rate = config.recovery_refresh_rate
        if rate is not None and rate < MIN_REFRESH_RATE:
            raise CoordinatorError(
                f"Recovery refresh rate ({rate}s) is less than {MIN_REFRESH_RATE} seconds"
            )

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    def on_state_change(self, callback: Callable[[SyncState, SyncState], None]) -> None:
        """Set callback for state changes. Callback receives (old_state, new_state)."""
        self._on_state_change = callback

    def _set_state(self, state: SyncState) -> None:
        old = self._state
        if old is state:
            return
        self._state = state
        log.debug(f"Coordinator state {old.name} -> {state.name}")

        if self._on_state_change:
            try:
                self._on_state_change(old, state)
            except Exception:
                log.exception("State change callback failed")

    # Waiting

    def stop(self) -> None:
        """Ask the loop to stop. Safe to call from any thread or signal handler."""
        self._stop_event.set()

    def _check_stopped(self) -> None:
        if self._stop_event.is_set():
            raise CoordinatorStopped()

    def _wait(self, seconds: float) -> None:
        self._check_stopped()
        if self.clock.sleep(seconds, self._stop_event):
            raise CoordinatorStopped()

    def _wait_until(self, instant_ms: int) -> None:
        self._wait((instant_ms - self.clock.now_ms()) / 1000)

    # Polling

    def _check_rate(self, status: DeviceStatus) -> None:
        if status.refresh_rate < MIN_REFRESH_RATE:
            raise CoordinatorError(
                f"Device refresh rate ({status.refresh_rate}s) is less than "
                f"{MIN_REFRESH_RATE} seconds - not supported"
            )

    def poll(self) -> Optional[DeviceStatus]:
        """
        Read the device status once.

        Returns None on a transient failure; the belief state is untouched.
        """
        try:
            status = DeviceStatus.from_device(self.client.get_device(self.device_id))
        except TerminusError as e:
            log.warning(f"Device status poll failed: {e}")
            return None
        except ValueError as e:
            log.warning(f"Device reported an unreadable refresh time: {e}")
            return None

        self._check_rate(status)
        return status

    def _poll_until_success(self) -> DeviceStatus:
        while True:
            self._check_stopped()
            status = self.poll()
            if status is not None:
                return status
            self._wait(self.config.recovery_poll_interval)

    def _trigger_refresh(self, reason: str) -> None:
        log.info(reason)
        try:
            self._refresh(reason)
        except Exception:
            log.exception("Refresh cycle failed")

    # States

    def run(self) -> None:
        """
        Run until stop() is called.

        Raises:
            CoordinatorError: On a second coordinator for the device, a refresh
                rate below the floor, or a device rate that cannot be restored
        """
        with _active_lock:
            if self.device_id in _active_devices:
                raise CoordinatorError(
                    f"A refresh coordinator is already running for device {self.device_id}"
                )
            _active_devices.add(self.device_id)

        self._running = True
        log.info(f"Refresh coordinator started for device {self.device_id}")

        try:
            self.synchronize()
            while True:
                self.steady_cycle()
        except CoordinatorStopped:
            log.info("Refresh coordinator stopped")
        finally:
            self._set_state(SyncState.STOPPED)
            self._running = False
            with _active_lock:
                _active_devices.discard(self.device_id)

    def synchronize(self, last_seen: Optional[DeviceStatus] = None) -> None:
        """
        Establish a belief by waiting for one confirmed device refresh.

        The device's refresh rate may be shortened meanwhile so the wait is
        bounded; it is restored before this returns or unwinds.

        Args:
            last_seen: An earlier observation; if the first poll already
                differs from it, that refresh confirms the sync
        """
        self._set_state(SyncState.UNSYNCED)
        self.belief = BeliefState()

        baseline = self._poll_until_success()
        if last_seen is not None and baseline.last_refresh_ms != last_seen.last_refresh_ms:
            self._confirm(baseline, baseline.refresh_rate)
            return

        self._set_state(SyncState.WAITING_FOR_REFRESH)
        log.info(
            f"Waiting for device {self.device_id} to refresh "
            f"(last refresh at {format_ms(baseline.last_refresh_ms)}, "
            f"rate {baseline.refresh_rate}s)"
        )

        override = TemporaryRefreshRate(
            self.client,
            self.device_id,
            self.config.recovery_refresh_rate,
            baseline.refresh_rate,
            attempts=self.config.restore_attempts,
            retry_delay=self.config.restore_retry_delay,
            clock=self.clock,
            stop_event=self._stop_event,
        )
        with override:
            while True:
                self._wait(self.config.recovery_poll_interval)
                status = self.poll()
                if status is not None and status.last_refresh_ms != baseline.last_refresh_ms:
                    break

        # The fetch we just saw handed the device the temporary rate
        self._confirm(status, override.rate if override.applied else status.refresh_rate)

    def _confirm(self, status: DeviceStatus, rate: int) -> None:
        self.belief.adopt(status, refresh_rate=rate)
        log.info(
            f"Device refresh confirmed at {format_ms(status.last_refresh_ms)}; "
            f"next refresh expected in {rate}s"
        )

    def steady_cycle(self) -> None:
        """Wait for the next predicted refresh, render ahead of it, verify it happened."""
        self._set_state(SyncState.STEADY_STATE)
        margin_ms = int(self.config.safety_margin * 1000)
        predicted = self.belief.predicted_refresh_ms
        trigger_at = predicted - margin_ms
        log.info(
            f"Next device refresh predicted at {format_ms(predicted)}; "
            f"rendering at {format_ms(trigger_at)}"
        )

        # Sleep towards the trigger, polling for refreshes we did not predict
        while True:
            remaining = (trigger_at - self.clock.now_ms()) / 1000
            if remaining <= 0:
                break
            if remaining <= self.config.poll_interval:
                self._wait(remaining)
                continue

            self._wait(self.config.poll_interval)
            status = self.poll()
            if status is not None and status.last_refresh_ms != self.belief.last_refresh_ms:
                self._handle_unexpected_refresh(status)
                return

        now = self.clock.now_ms()
        if now - trigger_at > margin_ms:
            log.warning(f"Refresh window already reached, {(now - trigger_at) / 1000:.0f}s late")

        self._set_state(SyncState.REFRESHING)
        self.belief.expecting_refresh = True
        self._trigger_refresh(
            f"Device refresh approaching (in {(predicted - now) / 60000:.2f} minutes) "
            "- refreshing all plugins"
        )

        self._wait_until(max(predicted, now) + margin_ms)
        self._verify(predicted)

    def _handle_unexpected_refresh(self, status: DeviceStatus) -> None:
        log.info(f"Unexpected device refresh at {format_ms(status.last_refresh_ms)}")
        self.belief.adopt(status)
        # In case the user triggered it, they may do it again
        self._trigger_refresh("Refreshing all plugins after unexpected device refresh")

    def _verify(self, predicted: int) -> None:
        status = self._poll_until_success()

        if status.last_refresh_ms != self.belief.last_refresh_ms:
            drift = (status.last_refresh_ms - predicted) / 1000
            log.info(
                f"Device refreshed as planned, at {format_ms(status.last_refresh_ms)} "
                f"(drift {drift:+.0f}s)"
            )
            self.belief.adopt(status)
            return

        log.warning(
            f"Device did not refresh around {format_ms(predicted)} "
            f"(still {format_ms(status.last_refresh_ms)}); assuming it is offline"
        )
        self.belief.expecting_refresh = False
        self._set_state(SyncState.DISCONNECTED)
        # A human may trigger a refresh manually once it is back
        self._trigger_refresh("Refreshing all plugins after missed device refresh")
        self.synchronize(last_seen=status)
