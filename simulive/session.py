"""Playback orchestration for a single simulive session."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any, Protocol

from simulive.backend import BackendError, ScheduleUnavailable
from simulive.lifecycle import (
    LifecycleSnapshot,
    LifecycleState,
    LifecycleTracker,
    SessionSchedule,
    TransitionListener,
)
from simulive.sync_engine import DriftCorrector, MediaSurface, SyncRole, VisibilitySignal
from simulive.time_authority import TimeSource
from simulive.utils import PeriodicLoop, create_task

logger = logging.getLogger(__name__)

SCHEDULE_REFRESH_SECONDS = 30.0

# Creates a surface for a media source, positioned at the given offset (seconds)
MediaFactory = Callable[[SyncRole, str | None, float], MediaSurface]


class SessionBackend(Protocol):
    async def fetch_schedule(self, session_id: str) -> SessionSchedule: ...

    async def report_stream_end(self, session_id: str, duration: float) -> float: ...


class SessionController:
    """Drive the lifecycle and drift correction of one session.

    The controller loads and refreshes the schedule, attaches media surfaces
    while the session is live, and writes the measured duration back when
    the stream ends on its own.
    """

    def __init__(
        self,
        session_id: str,
        backend: SessionBackend,
        time_source: TimeSource,
        media_factory: MediaFactory,
        *,
        visibility: VisibilitySignal | None = None,
        schedule_refresh_s: float = SCHEDULE_REFRESH_SECONDS,
        on_sync: Callable[[float], None] | None = None,
        tracker: LifecycleTracker | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            session_id: Opaque session identifier.
            backend: Schedule source and stream-end write-back.
            time_source: Authoritative clock shared with other sessions.
            media_factory: Creates the surfaces played while live.
            visibility: Foreground-resume signal forwarded to the corrector.
            schedule_refresh_s: How often the schedule is re-fetched.
            on_sync: Called after each primary drift correction.
            tracker: Lifecycle tracker to use instead of a default one.
        """
        self.session_id = session_id
        self._backend = backend
        self._media_factory = media_factory
        self._visibility = visibility
        self._tracker = tracker or LifecycleTracker(time_source)
        self._corrector = DriftCorrector(
            time_source, on_sync=on_sync, on_stream_end=self._handle_stream_end
        )
        self._refresh_loop = PeriodicLoop(
            "schedule-refresh", schedule_refresh_s, self.load_schedule
        )
        self._measured_duration: float | None = None
        self._stream_end_reported = False
        self._pending: set[asyncio.Task[Any]] = set()
        self._tracker.add_listener(self._on_transition)

    @property
    def tracker(self) -> LifecycleTracker:
        return self._tracker

    @property
    def corrector(self) -> DriftCorrector:
        return self._corrector

    @property
    def schedule(self) -> SessionSchedule | None:
        return self._tracker.schedule

    @property
    def snapshot(self) -> LifecycleSnapshot:
        return self._tracker.snapshot

    def add_state_listener(self, listener: TransitionListener) -> Callable[[], None]:
        """Register a lifecycle transition listener; returns an unsubscribe function."""
        return self._tracker.add_listener(listener)

    async def start(self) -> None:
        """Load the schedule and start the lifecycle and refresh loops."""
        await self.load_schedule()
        self._tracker.start()
        self._refresh_loop.start()

    async def stop(self) -> None:
        """Tear down every loop and surface; waits for a pending stream-end write."""
        self._refresh_loop.stop()
        self._tracker.stop()
        self._teardown_playback()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def load_schedule(self) -> bool:
        """Fetch the schedule; returns whether a fresh schedule was applied.

        Failing to obtain the first schedule puts the session in ``error``.
        Later failures keep the schedule already known.
        """
        try:
            schedule = await self._backend.fetch_schedule(self.session_id)
        except ScheduleUnavailable as err:
            if self._tracker.schedule is None:
                logger.error("%s", err)
                self._tracker.fail()
            else:
                logger.warning("Schedule refresh failed, keeping last schedule: %s", err)
            return False
        self._apply_schedule(schedule)
        return True

    def _apply_schedule(self, schedule: SessionSchedule) -> None:
        current = self._tracker.schedule
        if current is not None and current.scheduled_start_ms == schedule.scheduled_start_ms:
            if schedule.video_duration is None and self._measured_duration is not None:
                schedule = schedule.with_duration(self._measured_duration)
        elif current is not None:
            logger.info("Session %s was rescheduled", self.session_id)
            self._teardown_playback()
            self._measured_duration = None
            self._stream_end_reported = False
        self._tracker.set_schedule(schedule)
        self._corrector.set_schedule(schedule)

    def _on_transition(
        self, previous: LifecycleState, state: LifecycleState, snapshot: LifecycleSnapshot
    ) -> None:
        if state is LifecycleState.LIVE:
            self._start_playback(snapshot.live_offset_seconds)
        elif previous is LifecycleState.LIVE:
            self._teardown_playback()

    def _start_playback(self, position: float) -> None:
        schedule = self._tracker.schedule
        if schedule is None:
            return
        sources: list[tuple[SyncRole, str | None]] = []
        if schedule.screen_url:
            sources.append((SyncRole.PRIMARY, schedule.screen_url))
        if schedule.face_url:
            role = SyncRole.SECONDARY if sources else SyncRole.PRIMARY
            sources.append((role, schedule.face_url))
        if not sources:
            sources.append((SyncRole.PRIMARY, None))

        for role, source in sources:
            surface = self._media_factory(role, source, position)
            self._corrector.attach(surface, role)
        logger.info("Playback started at %.1fs with %d surface(s)", position, len(sources))
        self._corrector.start(self._visibility)

    def _teardown_playback(self) -> None:
        self._corrector.stop()
        if self._corrector.targets:
            self._corrector.detach_all()
            logger.info("Playback stopped")

    def _handle_stream_end(self, duration: float) -> None:
        self._measured_duration = duration
        schedule = self._tracker.schedule
        if schedule is None or schedule.video_duration is not None:
            return
        updated = schedule.with_duration(duration)
        self._tracker.set_schedule(updated)
        self._corrector.set_schedule(updated)
        if not self._stream_end_reported:
            self._stream_end_reported = True
            self._spawn(self._report_stream_end(duration))

    async def _report_stream_end(self, duration: float) -> None:
        try:
            stored = await self._backend.report_stream_end(self.session_id, duration)
        except BackendError as err:
            logger.warning("Failed to record stream end: %s", err)
            return
        logger.info("Recorded stream end for %s: duration=%.1fs", self.session_id, stored)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = create_task(coro, name="stream-end-report")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
