"""Session lifecycle derived from the schedule and authoritative time.

The state is recomputed by polling rather than pushed by events: a 100ms tick
keeps the countdown display smooth and there is nothing to subscribe to.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from simulive.time_authority import TimeSource
from simulive.utils import PeriodicLoop, parse_timestamp

logger = logging.getLogger(__name__)

COUNTDOWN_THRESHOLD_SECONDS = 60.0
"""Below this many seconds to start the session shows a countdown."""
STARTING_DURATION_SECONDS = 3.0
"""Length of the transition window right after the scheduled start."""
TICK_INTERVAL_SECONDS = 0.1


class LifecycleState(Enum):
    """Phase of a simulive session."""

    LOADING = "loading"
    SCHEDULED = "scheduled"
    COUNTDOWN = "countdown"
    STARTING = "starting"
    LIVE = "live"
    ENDED = "ended"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        """Whether the state absorbs further transitions."""
        return self in (LifecycleState.ENDED, LifecycleState.ERROR)

    @property
    def shows_countdown(self) -> bool:
        return self in (LifecycleState.SCHEDULED, LifecycleState.COUNTDOWN)

    @property
    def shows_player(self) -> bool:
        return self is LifecycleState.LIVE


@dataclass(frozen=True, slots=True)
class SessionSchedule:
    """Schedule of one session as returned by the schedule source.

    Attributes:
        scheduled_start_ms: Scheduled start in epoch milliseconds.
        video_duration: Length of the recording in seconds, once known.
        is_active: Whether the schedule should be considered at all.
        screen_url: Primary (screen share) media source.
        face_url: Secondary (face cam) media source.
    """

    scheduled_start_ms: float | None
    video_duration: float | None = None
    is_active: bool = True
    screen_url: str | None = None
    face_url: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> SessionSchedule:
        """Build a schedule from a schedule source payload.

        Raises:
            ValueError: If ``scheduledStart`` or ``videoDuration`` is malformed.
        """
        raw_start = payload.get("scheduledStart")
        start = parse_timestamp(raw_start) if raw_start is not None else None
        raw_duration = payload.get("videoDuration")
        duration = float(raw_duration) if raw_duration is not None else None
        screen_url = payload.get("screenUrl") or None
        face_url = payload.get("faceUrl") or None
        is_active = payload.get("isActive")
        if is_active is None:
            is_active = bool(screen_url or face_url)
        return cls(
            scheduled_start_ms=start,
            video_duration=duration,
            is_active=bool(is_active),
            screen_url=screen_url,
            face_url=face_url,
        )

    def with_duration(self, duration: float) -> SessionSchedule:
        """Return a copy with a known video duration."""
        return replace(self, video_duration=duration)

    def elapsed_seconds(self, now_ms: float) -> float | None:
        """Signed seconds since the scheduled start, or None if unscheduled."""
        if self.scheduled_start_ms is None:
            return None
        return (now_ms - self.scheduled_start_ms) / 1000.0


@dataclass(frozen=True, slots=True)
class LifecycleSnapshot:
    """Lifecycle state plus the figures derived alongside it."""

    state: LifecycleState
    seconds_to_start: float = 0.0
    live_offset_seconds: float = 0.0
    is_time_synced: bool = False

    @property
    def countdown_display(self) -> str:
        return format_countdown(self.seconds_to_start)

    @property
    def duration_display(self) -> str:
        return format_duration(self.live_offset_seconds)


def evaluate_lifecycle(
    schedule: SessionSchedule | None,
    now_ms: float,
    *,
    is_time_synced: bool = False,
    countdown_threshold_s: float = COUNTDOWN_THRESHOLD_SECONDS,
    starting_duration_s: float = STARTING_DURATION_SECONDS,
) -> LifecycleSnapshot:
    """Derive the lifecycle state for ``schedule`` at ``now_ms``.

    The branches form a strict priority chain; the duration is only
    consulted once the scheduled start has passed.
    """
    if schedule is None or not schedule.is_active:
        return LifecycleSnapshot(LifecycleState.LOADING, is_time_synced=is_time_synced)
    offset = schedule.elapsed_seconds(now_ms)
    if offset is None:
        return LifecycleSnapshot(LifecycleState.LOADING, is_time_synced=is_time_synced)

    if offset < -countdown_threshold_s:
        state = LifecycleState.SCHEDULED
    elif offset < 0:
        state = LifecycleState.COUNTDOWN
    elif offset < starting_duration_s:
        state = LifecycleState.STARTING
    elif schedule.video_duration is not None and offset >= schedule.video_duration:
        state = LifecycleState.ENDED
    else:
        state = LifecycleState.LIVE

    return LifecycleSnapshot(
        state=state,
        seconds_to_start=-offset,
        live_offset_seconds=max(0.0, offset),
        is_time_synced=is_time_synced,
    )


def format_countdown(seconds: float) -> str:
    """Format remaining seconds as ``MM:SS``, or ``H:MM:SS`` from one hour up."""
    if seconds <= 0:
        return "00:00"
    total = math.ceil(seconds)
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    if h > 0:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m:02d}:{s:02d}"


def format_duration(seconds: float) -> str:
    """Format elapsed seconds as ``HH:MM:SS``, truncated and never negative."""
    total = max(0, math.floor(seconds))
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"


TransitionListener = Callable[[LifecycleState, LifecycleState, LifecycleSnapshot], None]


class LifecycleTracker:
    """Poll the lifecycle of one session and report transitions.

    ``ended`` and ``error`` are absorbing: once reached, later ticks keep the
    state even if the inputs would derive something else. A schedule with a
    different scheduled start is a new session: it restarts from ``loading``
    whatever the current state.
    """

    def __init__(
        self,
        time_source: TimeSource,
        *,
        tick_interval_s: float = TICK_INTERVAL_SECONDS,
        countdown_threshold_s: float = COUNTDOWN_THRESHOLD_SECONDS,
        starting_duration_s: float = STARTING_DURATION_SECONDS,
    ) -> None:
        self._time_source = time_source
        self._countdown_threshold_s = countdown_threshold_s
        self._starting_duration_s = starting_duration_s
        self._schedule: SessionSchedule | None = None
        self._snapshot = LifecycleSnapshot(LifecycleState.LOADING)
        self._listeners: list[TransitionListener] = []
        self._loop = PeriodicLoop("lifecycle-tick", tick_interval_s, self.update, run_immediately=True)

    @property
    def schedule(self) -> SessionSchedule | None:
        return self._schedule

    @property
    def snapshot(self) -> LifecycleSnapshot:
        return self._snapshot

    @property
    def state(self) -> LifecycleState:
        return self._snapshot.state

    def add_listener(self, listener: TransitionListener) -> Callable[[], None]:
        """Register a transition listener; returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def set_schedule(self, schedule: SessionSchedule | None) -> None:
        """Replace the schedule; a different scheduled start begins a new session."""
        previous = self._schedule
        self._schedule = schedule
        new_start = schedule.scheduled_start_ms if schedule is not None else None
        old_start = previous.scheduled_start_ms if previous is not None else None
        if new_start != old_start and self._snapshot.state is not LifecycleState.LOADING:
            logger.info("Scheduled start changed, treating as a new session")
            self._transition(LifecycleSnapshot(LifecycleState.LOADING))

    def fail(self) -> None:
        """Put the session in the ``error`` state."""
        self._transition(
            LifecycleSnapshot(LifecycleState.ERROR, is_time_synced=self._time_source.is_synced)
        )

    def update(self) -> LifecycleSnapshot:
        """Recompute the snapshot from the current schedule and time."""
        snapshot = evaluate_lifecycle(
            self._schedule,
            self._time_source.now_ms(),
            is_time_synced=self._time_source.is_synced,
            countdown_threshold_s=self._countdown_threshold_s,
            starting_duration_s=self._starting_duration_s,
        )
        current = self._snapshot.state
        if current.is_terminal and snapshot.state is not current:
            snapshot = replace(snapshot, state=current)
        self._transition(snapshot)
        return snapshot

    def start(self) -> None:
        self._loop.start()

    def stop(self) -> None:
        self._loop.stop()

    def _transition(self, snapshot: LifecycleSnapshot) -> None:
        previous = self._snapshot.state
        self._snapshot = snapshot
        if snapshot.state is previous:
            return
        logger.info("Session state %s -> %s", previous.value, snapshot.state.value)
        for listener in list(self._listeners):
            try:
                listener(previous, snapshot.state, snapshot)
            except Exception:
                logger.exception("Error in lifecycle listener")
