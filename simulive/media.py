"""Clock-driven media surface used by the headless watcher."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)


class SimulatedPlayer:
    """Media surface whose position advances with the monotonic clock.

    The position moves at ``rate`` seconds of media per second of wall time,
    so any rate other than 1.0 drifts away from the schedule the way a real
    decoder does. It stops advancing at ``duration`` when that is known.
    """

    def __init__(
        self,
        name: str,
        *,
        source: str | None = None,
        position: float = 0.0,
        duration: float | None = None,
        rate: float = 1.0,
        ready: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.source = source
        self.rate = rate
        self._duration = duration
        self._ready = ready
        self._clock = clock
        self._anchor_position = position
        self._anchor_time = clock()
        self._stalled_until: float | None = None

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def duration(self) -> float | None:
        return self._duration

    def load(self, duration: float | None = None) -> None:
        """Mark the media as loaded, optionally learning its duration."""
        if duration is not None:
            self._duration = duration
        self._ready = True

    @property
    def current_position(self) -> float:
        now = self._clock()
        if self._stalled_until is not None:
            if now < self._stalled_until:
                return self._anchor_position
            # Resume from where the stall froze the position
            self._anchor_time = self._stalled_until
            self._stalled_until = None
        position = self._anchor_position + (now - self._anchor_time) * self.rate
        if self._duration is not None:
            position = min(position, self._duration)
        return max(0.0, position)

    @current_position.setter
    def current_position(self, value: float) -> None:
        self._anchor_position = max(0.0, value)
        self._anchor_time = self._clock()
        self._stalled_until = None
        logger.debug("%s seeked to %.2fs", self.name, value)

    def stall(self, seconds: float) -> None:
        """Freeze playback for ``seconds``, as a backgrounded element would."""
        self._anchor_position = self.current_position
        now = self._clock()
        self._anchor_time = now
        self._stalled_until = now + seconds

    def __repr__(self) -> str:
        return f"SimulatedPlayer({self.name!r}, position={self.current_position:.2f})"
