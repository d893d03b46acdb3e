import pytest

from simulive.media import SimulatedPlayer


class Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_position_advances_at_playback_rate():
    clock = Clock()
    player = SimulatedPlayer("screen", position=10.0, rate=1.1, clock=clock)

    clock.now += 10
    assert player.current_position == pytest.approx(21.0)


def test_seek_reanchors_and_clamps_to_media_length():
    clock = Clock()
    player = SimulatedPlayer("screen", position=0.0, duration=30.0, clock=clock)

    player.current_position = 25.0
    clock.now += 2
    assert player.current_position == pytest.approx(27.0)
    clock.now += 100
    assert player.current_position == 30.0


def test_stall_freezes_then_resumes():
    clock = Clock()
    player = SimulatedPlayer("face", position=5.0, clock=clock)

    player.stall(4)
    clock.now += 3
    assert player.current_position == pytest.approx(5.0)
    clock.now += 3
    assert player.current_position == pytest.approx(7.0)


def test_load_marks_ready_and_learns_duration():
    player = SimulatedPlayer("screen", ready=False)
    assert not player.ready
    assert player.duration is None

    player.load(duration=42.0)

    assert player.ready
    assert player.duration == 42.0
