import asyncio

import pytest

from simulive.lifecycle import SessionSchedule
from simulive.sync_engine import DriftCorrector, MediaNotReadyError, SyncRole, VisibilitySignal

NOW = 1_700_000_000_000.0


class FixedTime:
    is_synced = True

    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def now_ms(self) -> float:
        return self.now


class Monotonic:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeSurface:
    def __init__(
        self,
        position: float,
        *,
        ready: bool = True,
        duration: float | None = None,
        refuse_seek: bool = False,
    ) -> None:
        self._position = position
        self.ready = ready
        self.duration = duration
        self.refuse_seek = refuse_seek
        self.seeks: list[float] = []

    @property
    def current_position(self) -> float:
        return self._position

    @current_position.setter
    def current_position(self, value: float) -> None:
        if self.refuse_seek:
            raise MediaNotReadyError("still buffering")
        self.seeks.append(value)
        self._position = value


def started_ago(seconds: float, duration: float | None = None) -> SessionSchedule:
    return SessionSchedule(scheduled_start_ms=NOW - seconds * 1000, video_duration=duration)


def make_corrector(schedule: SessionSchedule | None, **kwargs):
    monotonic = Monotonic()
    corrector = DriftCorrector(FixedTime(), monotonic=monotonic, **kwargs)
    corrector.set_schedule(schedule)
    return corrector, monotonic


def test_corrects_each_target_against_the_schedule_independently():
    corrector, _ = make_corrector(started_ago(100.6))
    primary = FakeSurface(100.0)
    secondary = FakeSurface(100.3)
    corrector.attach(primary, SyncRole.PRIMARY)
    corrector.attach(secondary, SyncRole.SECONDARY)

    assert corrector.check()

    assert primary.seeks == [pytest.approx(100.6)]
    assert secondary.seeks == []
    primary_target, secondary_target = corrector.targets
    assert primary_target.last_drift == pytest.approx(-0.6)
    assert secondary_target.last_drift == pytest.approx(-0.3)
    assert primary_target.corrections == 1


def test_drift_below_threshold_is_left_alone():
    corrector, _ = make_corrector(started_ago(20))
    surface = FakeSurface(20.49)
    corrector.attach(surface)

    assert not corrector.check()
    assert surface.seeks == []


def test_drift_at_threshold_is_corrected():
    corrector, _ = make_corrector(started_ago(20))
    surface = FakeSurface(19.5)
    corrector.attach(surface)

    assert corrector.check()
    assert surface.seeks == [pytest.approx(20)]


def test_corrections_are_rate_limited_per_target():
    corrector, monotonic = make_corrector(started_ago(30))
    surface = FakeSurface(25.0)
    corrector.attach(surface)
    assert corrector.check()

    surface._position = 10.0
    monotonic.now = 2.9
    assert not corrector.check()

    monotonic.now = 3.0
    assert corrector.check()
    assert len(surface.seeks) == 2


def test_visibility_resume_bypasses_cooldown_once():
    corrector, monotonic = make_corrector(started_ago(30))
    surface = FakeSurface(25.0)
    corrector.attach(surface)
    corrector.check()

    surface._position = 10.0
    monotonic.now = 1.0
    corrector.notify_visible()
    assert len(surface.seeks) == 2

    surface._position = 10.0
    monotonic.now = 1.5
    assert not corrector.check()
    assert len(surface.seeks) == 2


def test_primary_correction_cools_down_every_target():
    corrector, monotonic = make_corrector(started_ago(50))
    primary = FakeSurface(40.0)
    secondary = FakeSurface(50.1)
    corrector.attach(primary, SyncRole.PRIMARY)
    corrector.attach(secondary, SyncRole.SECONDARY)
    corrector.check()

    secondary._position = 45.0
    monotonic.now = 1.0
    assert not corrector.check()
    assert secondary.seeks == []


def test_secondary_correction_leaves_primary_cooldown_alone():
    synced = []
    corrector, monotonic = make_corrector(started_ago(50), on_sync=synced.append)
    primary = FakeSurface(50.0)
    secondary = FakeSurface(45.0)
    corrector.attach(primary, SyncRole.PRIMARY)
    corrector.attach(secondary, SyncRole.SECONDARY)

    assert corrector.check()
    primary_target, secondary_target = corrector.targets
    assert secondary_target.cooldown_until == 3.0
    assert primary_target.cooldown_until == 0.0
    assert synced == []

    primary._position = 40.0
    monotonic.now = 1.0
    assert corrector.check()
    assert synced == [pytest.approx(50.0)]


def test_surface_that_is_not_ready_is_skipped():
    corrector, _ = make_corrector(started_ago(30))
    waiting = FakeSurface(0.0, ready=False)
    refusing = FakeSurface(0.0, refuse_seek=True)
    corrector.attach(waiting, SyncRole.PRIMARY)
    corrector.attach(refusing, SyncRole.SECONDARY)

    assert not corrector.check()
    assert waiting.seeks == []
    assert all(target.cooldown_until == 0.0 for target in corrector.targets)
    assert all(target.corrections == 0 for target in corrector.targets)


def test_idle_before_the_scheduled_start():
    corrector, _ = make_corrector(started_ago(-5))
    surface = FakeSurface(12.0)
    corrector.attach(surface)

    assert corrector.expected_position() is None
    assert not corrector.check()
    assert surface.seeks == []


def test_idle_without_targets_or_schedule():
    corrector, _ = make_corrector(None)
    assert not corrector.check()
    corrector.attach(FakeSurface(1.0))
    assert not corrector.check()


def test_stream_end_from_schedule_duration_is_signalled_once():
    ended = []
    corrector, _ = make_corrector(started_ago(61, duration=60), on_stream_end=ended.append)
    surface = FakeSurface(58.0)
    corrector.attach(surface)

    assert not corrector.check()
    assert not corrector.check()

    assert ended == [60]
    assert corrector.ended
    assert surface.seeks == []


def test_stream_end_from_media_duration_when_schedule_has_none():
    ended = []
    corrector, _ = make_corrector(started_ago(45), on_stream_end=ended.append)
    corrector.attach(FakeSurface(40.0, duration=40.0))

    corrector.check()

    assert ended == [40.0]


def test_media_duration_ignored_until_ready():
    ended = []
    corrector, _ = make_corrector(started_ago(45), on_stream_end=ended.append)
    corrector.attach(FakeSurface(40.0, duration=40.0, ready=False))

    corrector.check()

    assert ended == []
    assert corrector.end_position() is None


def test_new_scheduled_start_resets_end_detection():
    corrector, _ = make_corrector(started_ago(61, duration=60))
    corrector.attach(FakeSurface(58.0))
    corrector.check()
    assert corrector.ended

    corrector.set_schedule(started_ago(61, duration=120))
    assert corrector.ended

    corrector.set_schedule(started_ago(10, duration=60))
    assert not corrector.ended


def test_visibility_listener_lives_only_while_started():
    corrector, monotonic = make_corrector(started_ago(30), check_interval_s=60)
    surface = FakeSurface(30.0)
    corrector.attach(surface)
    visibility = VisibilitySignal()

    async def scenario():
        corrector.start(visibility)
        await asyncio.sleep(0)
        surface._position = 20.0
        visibility.emit()
        seeks_while_running = len(surface.seeks)
        corrector.stop()
        surface._position = 20.0
        visibility.emit()
        return seeks_while_running

    seeks_while_running = asyncio.run(scenario())

    assert seeks_while_running == 1
    assert len(surface.seeks) == 1
    assert not corrector.running


def test_inactive_schedule_stops_the_loop():
    corrector, _ = make_corrector(started_ago(30), check_interval_s=60)
    corrector.attach(FakeSurface(30.0))

    async def scenario():
        corrector.start()
        running = corrector.running
        corrector.set_schedule(
            SessionSchedule(scheduled_start_ms=NOW - 30_000, is_active=False)
        )
        return running

    assert asyncio.run(scenario())
    assert not corrector.running
