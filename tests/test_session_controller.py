import asyncio

import pytest

from simulive.backend import BackendError, ScheduleUnavailable
from simulive.lifecycle import LifecycleState, SessionSchedule
from simulive.session import SessionController
from simulive.sync_engine import SyncRole

NOW = 1_700_000_000_000.0


class FixedTime:
    is_synced = True

    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def now_ms(self) -> float:
        return self.now


class FakeSurface:
    def __init__(self, position: float, duration: float | None = None) -> None:
        self.current_position = position
        self.duration = duration
        self.ready = True


class FakeBackend:
    def __init__(self, *schedules, report_error: Exception | None = None) -> None:
        self.schedules = list(schedules)
        self.report_error = report_error
        self.fetches = 0
        self.reports: list[tuple[str, float]] = []

    async def fetch_schedule(self, session_id: str) -> SessionSchedule:
        self.fetches += 1
        item = self.schedules.pop(0) if len(self.schedules) > 1 else self.schedules[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def report_stream_end(self, session_id: str, duration: float) -> float:
        self.reports.append((session_id, duration))
        if self.report_error is not None:
            raise self.report_error
        return duration


class SurfaceFactory:
    def __init__(self, duration: float | None = None) -> None:
        self.duration = duration
        self.created: list[tuple[SyncRole, str | None, float]] = []

    def __call__(self, role, source, position):
        self.created.append((role, source, position))
        return FakeSurface(position, self.duration)


def started_ago(seconds: float, duration: float | None = None, **urls) -> SessionSchedule:
    return SessionSchedule(
        scheduled_start_ms=NOW - seconds * 1000, video_duration=duration, **urls
    )


def test_going_live_attaches_screen_as_primary_and_face_as_secondary():
    backend = FakeBackend(started_ago(10, 3600, screen_url="screen.mp4", face_url="face.mp4"))
    factory = SurfaceFactory()
    controller = SessionController("abc", backend, FixedTime(), factory)

    async def scenario():
        assert await controller.load_schedule()
        controller.tracker.update()
        roles = [target.role for target in controller.corrector.targets]
        running = controller.corrector.running
        await controller.stop()
        return roles, running

    roles, running = asyncio.run(scenario())

    assert controller.snapshot.state is LifecycleState.LIVE
    assert factory.created == [
        (SyncRole.PRIMARY, "screen.mp4", pytest.approx(10)),
        (SyncRole.SECONDARY, "face.mp4", pytest.approx(10)),
    ]
    assert roles == [SyncRole.PRIMARY, SyncRole.SECONDARY]
    assert running
    assert controller.corrector.targets == []


def test_face_only_session_plays_face_as_primary():
    backend = FakeBackend(started_ago(10, 3600, face_url="face.mp4"))
    factory = SurfaceFactory()
    controller = SessionController("abc", backend, FixedTime(), factory)

    async def scenario():
        await controller.load_schedule()
        controller.tracker.update()
        await controller.stop()

    asyncio.run(scenario())

    assert factory.created == [(SyncRole.PRIMARY, "face.mp4", pytest.approx(10))]


def test_natural_end_is_written_back_once_and_ends_the_session():
    clock = FixedTime()
    schedule = started_ago(45, screen_url="screen.mp4")
    backend = FakeBackend(schedule)
    controller = SessionController("abc", backend, clock, SurfaceFactory(duration=40.0))
    transitions = []
    controller.add_state_listener(lambda previous, state, snapshot: transitions.append(state))

    async def scenario():
        await controller.load_schedule()
        controller.tracker.update()
        controller.corrector.check()
        controller.corrector.check()
        controller.tracker.update()
        # A refresh still without a duration keeps the measured one
        await controller.load_schedule()
        await controller.stop()

    asyncio.run(scenario())

    assert backend.reports == [("abc", 40.0)]
    assert controller.schedule.video_duration == 40.0
    assert transitions == [LifecycleState.LIVE, LifecycleState.ENDED]
    assert controller.corrector.targets == []


def test_known_duration_is_not_written_back():
    backend = FakeBackend(started_ago(45, 44, screen_url="screen.mp4"))
    controller = SessionController("abc", backend, FixedTime(), SurfaceFactory())

    async def scenario():
        await controller.load_schedule()
        controller.tracker.update()
        controller.corrector.check()
        await controller.stop()

    asyncio.run(scenario())

    assert backend.reports == []
    assert controller.snapshot.state is LifecycleState.ENDED


def test_failed_write_back_is_logged(caplog):
    caplog.set_level("WARNING")
    backend = FakeBackend(
        started_ago(45, screen_url="screen.mp4"), report_error=BackendError("HTTP 500")
    )
    controller = SessionController("abc", backend, FixedTime(), SurfaceFactory(duration=40.0))

    async def scenario():
        await controller.load_schedule()
        controller.tracker.update()
        controller.corrector.check()
        await controller.stop()

    asyncio.run(scenario())

    assert backend.reports == [("abc", 40.0)]
    assert any("Failed to record stream end" in r.message for r in caplog.records)


def test_unavailable_first_schedule_is_an_error(caplog):
    backend = FakeBackend(ScheduleUnavailable("missing", "not found"))
    controller = SessionController("missing", backend, FixedTime(), SurfaceFactory())

    loaded = asyncio.run(controller.load_schedule())

    assert not loaded
    assert controller.snapshot.state is LifecycleState.ERROR
    assert any("not found" in r.message for r in caplog.records)


def test_refresh_failure_keeps_last_schedule(caplog):
    caplog.set_level("WARNING")
    first = started_ago(-120, screen_url="screen.mp4")
    backend = FakeBackend(first, ScheduleUnavailable("abc", "HTTP 502"))
    controller = SessionController("abc", backend, FixedTime(), SurfaceFactory())

    async def scenario():
        await controller.load_schedule()
        controller.tracker.update()
        return await controller.load_schedule()

    refreshed = asyncio.run(scenario())

    assert not refreshed
    assert controller.schedule is first
    assert controller.snapshot.state is LifecycleState.SCHEDULED
    assert any("keeping last schedule" in r.message for r in caplog.records)


def test_reschedule_tears_down_playback_and_revives_an_ended_session():
    clock = FixedTime()
    backend = FakeBackend(
        started_ago(45, 40, screen_url="screen.mp4"),
        started_ago(-600, screen_url="screen.mp4"),
    )
    controller = SessionController("abc", backend, clock, SurfaceFactory())

    async def scenario():
        await controller.load_schedule()
        controller.tracker.update()
        assert controller.snapshot.state is LifecycleState.ENDED
        await controller.load_schedule()
        controller.tracker.update()
        await controller.stop()

    asyncio.run(scenario())

    assert controller.snapshot.state is LifecycleState.SCHEDULED
    assert not controller.corrector.ended


def test_reschedule_while_live_restarts_playback_at_the_new_offset():
    backend = FakeBackend(
        started_ago(100, screen_url="screen.mp4"),
        started_ago(50, screen_url="screen.mp4"),
    )
    factory = SurfaceFactory()
    controller = SessionController("abc", backend, FixedTime(), factory)
    transitions = []
    controller.add_state_listener(lambda previous, state, snapshot: transitions.append(state))

    async def scenario():
        await controller.load_schedule()
        controller.tracker.update()
        await controller.load_schedule()
        controller.tracker.update()
        running = controller.corrector.running
        targets = len(controller.corrector.targets)
        await controller.stop()
        return running, targets

    running, targets = asyncio.run(scenario())

    assert transitions == [LifecycleState.LIVE, LifecycleState.LOADING, LifecycleState.LIVE]
    assert running
    assert targets == 1
    assert [position for _, _, position in factory.created] == [
        pytest.approx(100),
        pytest.approx(50),
    ]


def test_start_refreshes_schedule_periodically():
    backend = FakeBackend(started_ago(-600, screen_url="screen.mp4"))
    controller = SessionController(
        "abc", backend, FixedTime(), SurfaceFactory(), schedule_refresh_s=0.01
    )

    async def scenario():
        await controller.start()
        await asyncio.sleep(0.05)
        await controller.stop()
        return backend.fetches

    fetches = asyncio.run(scenario())

    assert fetches >= 2
    assert controller.snapshot.state is LifecycleState.SCHEDULED
