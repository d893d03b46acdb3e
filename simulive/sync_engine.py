"""Drift correction for simulive media surfaces.

Each attached surface is compared with the position implied by authoritative
time since the scheduled start and hard-seeked when it drifts too far.
Surfaces are never synchronized to each other, only each to the schedule.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from simulive.lifecycle import SessionSchedule
from simulive.time_authority import TimeSource
from simulive.utils import PeriodicLoop

logger = logging.getLogger(__name__)

DRIFT_THRESHOLD_SECONDS = 0.5
"""Drift at or above which a surface is seeked."""
MIN_SYNC_INTERVAL_SECONDS = 3.0
"""Minimum time between two corrections of the same surface."""
CHECK_INTERVAL_SECONDS = 1.0


class MediaNotReadyError(Exception):
    """Raised by a media surface that cannot seek yet."""


class MediaSurface(Protocol):
    """A playable element the corrector can seek.

    ``duration`` is the natural length of the loaded media, or None while
    unknown.
    """

    current_position: float

    @property
    def ready(self) -> bool: ...

    @property
    def duration(self) -> float | None: ...


class SyncRole(Enum):
    """Role of a surface in a (possibly dual) presentation."""

    PRIMARY = "primary"
    SECONDARY = "secondary"


@dataclass(slots=True)
class SyncTarget:
    """A surface under drift correction and its correction bookkeeping."""

    surface: MediaSurface
    role: SyncRole
    last_drift: float | None = None
    last_correction_at: float | None = None
    cooldown_until: float = 0.0
    corrections: int = 0


class VisibilitySignal:
    """Event source for "the viewing surface came back to the foreground"."""

    def __init__(self) -> None:
        self._listeners: list[Callable[[], None]] = []

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def emit(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Error in visibility listener")


class DriftCorrector:
    """Keep up to two media surfaces on the schedule's timeline.

    One check runs per ``check_interval_s`` while started. A check is idle
    until the scheduled start has passed, signals the end of the stream once
    the expected position reaches the duration, and otherwise seeks every
    surface whose drift is at or above ``drift_threshold_s`` and whose
    cooldown has expired. A primary correction starts the cooldown of every
    surface; a secondary-only correction starts only the secondary's.
    """

    def __init__(
        self,
        time_source: TimeSource,
        *,
        drift_threshold_s: float = DRIFT_THRESHOLD_SECONDS,
        min_sync_interval_s: float = MIN_SYNC_INTERVAL_SECONDS,
        check_interval_s: float = CHECK_INTERVAL_SECONDS,
        on_sync: Callable[[float], None] | None = None,
        on_stream_end: Callable[[float], None] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the corrector.

        Args:
            time_source: Authoritative clock.
            drift_threshold_s: Drift at or above which a surface is seeked.
            min_sync_interval_s: Cooldown after a correction.
            check_interval_s: Period of the check loop.
            on_sync: Called with the expected position after a primary correction.
            on_stream_end: Called once with the stream duration when it ends.
            monotonic: Clock used for cooldown bookkeeping (seconds).
        """
        self._time_source = time_source
        self._drift_threshold_s = drift_threshold_s
        self._min_sync_interval_s = min_sync_interval_s
        self._on_sync = on_sync
        self._on_stream_end = on_stream_end
        self._monotonic = monotonic
        self._schedule: SessionSchedule | None = None
        self._targets: dict[SyncRole, SyncTarget] = {}
        self._ended = False
        self._visibility_unsubscribe: Callable[[], None] | None = None
        self._loop = PeriodicLoop("drift-check", check_interval_s, self.check, run_immediately=True)

    @property
    def running(self) -> bool:
        return self._loop.running

    @property
    def ended(self) -> bool:
        """Whether the end of the stream has been signalled for this session."""
        return self._ended

    @property
    def targets(self) -> list[SyncTarget]:
        """Attached targets, primary first."""
        return [self._targets[role] for role in SyncRole if role in self._targets]

    def set_schedule(self, schedule: SessionSchedule | None) -> None:
        """Set the schedule; a different scheduled start resets end detection."""
        previous = self._schedule
        self._schedule = schedule
        old_start = previous.scheduled_start_ms if previous is not None else None
        new_start = schedule.scheduled_start_ms if schedule is not None else None
        if old_start != new_start:
            self._ended = False
            for target in self._targets.values():
                target.cooldown_until = 0.0
        if schedule is None or not schedule.is_active:
            self.stop()

    def attach(self, surface: MediaSurface, role: SyncRole = SyncRole.PRIMARY) -> SyncTarget:
        """Attach a surface in ``role``, replacing any surface already there."""
        target = SyncTarget(surface=surface, role=role)
        self._targets[role] = target
        logger.debug("Attached %s surface", role.value)
        return target

    def detach(self, role: SyncRole) -> None:
        if self._targets.pop(role, None) is not None:
            logger.debug("Detached %s surface", role.value)

    def detach_all(self) -> None:
        self._targets.clear()

    def start(self, visibility: VisibilitySignal | None = None) -> None:
        """Start periodic checks, optionally listening for foreground resumes."""
        if visibility is not None and self._visibility_unsubscribe is None:
            self._visibility_unsubscribe = visibility.add_listener(self.notify_visible)
        self._loop.start()

    def stop(self) -> None:
        """Stop checks and unregister the visibility listener."""
        self._loop.stop()
        unsubscribe, self._visibility_unsubscribe = self._visibility_unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()

    def notify_visible(self) -> None:
        """Foreground resume: clear every cooldown and check immediately."""
        now = self._monotonic()
        for target in self._targets.values():
            target.cooldown_until = now
        logger.info("Viewing surface visible again, forcing sync check")
        self.check()

    def expected_position(self) -> float | None:
        """Seconds into the recording implied by authoritative time, or None before start."""
        schedule = self._schedule
        if schedule is None or not schedule.is_active:
            return None
        elapsed = schedule.elapsed_seconds(self._time_source.now_ms())
        if elapsed is None or elapsed < 0:
            return None
        return elapsed

    def end_position(self) -> float | None:
        """Known end of the stream: the scheduled duration, else the primary media's length."""
        if self._schedule is not None and self._schedule.video_duration is not None:
            return self._schedule.video_duration
        primary = self._targets.get(SyncRole.PRIMARY)
        if primary is not None and primary.surface.ready:
            return primary.surface.duration
        return None

    def check(self) -> bool:
        """Run one correction check; returns whether any surface was seeked."""
        if self._ended or not self._targets:
            return False
        expected = self.expected_position()
        if expected is None:
            return False

        end = self.end_position()
        if end is not None and expected >= end:
            self._signal_end(end)
            return False

        now = self._monotonic()
        corrected: list[SyncTarget] = []
        for target in self.targets:
            if self._correct(target, expected, now):
                corrected.append(target)
        if not corrected:
            return False

        if any(target.role is SyncRole.PRIMARY for target in corrected):
            cooled = self.targets
        else:
            cooled = corrected
        for target in cooled:
            target.cooldown_until = now + self._min_sync_interval_s

        if corrected[0].role is SyncRole.PRIMARY and self._on_sync is not None:
            self._on_sync(expected)
        return True

    def _correct(self, target: SyncTarget, expected: float, now: float) -> bool:
        surface = target.surface
        if not surface.ready:
            logger.debug("Skipping %s surface: media not ready", target.role.value)
            return False
        current = surface.current_position
        drift = current - expected
        target.last_drift = drift
        if abs(drift) < self._drift_threshold_s or now < target.cooldown_until:
            return False

        try:
            surface.current_position = expected
        except MediaNotReadyError:
            logger.debug("Skipping %s surface: media not ready", target.role.value)
            return False
        target.last_correction_at = now
        target.corrections += 1
        logger.info(
            "Syncing %s: current=%.2fs expected=%.2fs drift=%.3fs",
            target.role.value,
            current,
            expected,
            drift,
        )
        return True

    def _signal_end(self, duration: float) -> None:
        self._ended = True
        self.stop()
        logger.info("Stream ended (position %.1fs >= duration)", duration)
        if self._on_stream_end is not None:
            self._on_stream_end(duration)
