"""Storage behind the reference backend."""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from simulive.persistence import JsonFile

logger = logging.getLogger(__name__)

# Debounce delay for persisting stream-end records
SAVE_DEBOUNCE_SECONDS = 5.0
VIEWER_ACTIVE_WINDOW_SECONDS = 60.0


class SessionCatalog:
    """Read-only set of sessions loaded from a JSON file.

    The file holds either a mapping of session id to session record or an
    object with such a mapping under ``"sessions"``. Records use the wire
    names (``scheduledStart``, ``screenUrl``, ``faceUrl``, ``isActive``,
    ``videoDuration``).
    """

    def __init__(self, sessions: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self._sessions = {key: dict(value) for key, value in (sessions or {}).items()}

    @classmethod
    def from_file(cls, path: Path) -> SessionCatalog:
        data = json.loads(path.read_text())
        if isinstance(data, dict) and isinstance(data.get("sessions"), dict):
            data = data["sessions"]
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected an object of sessions")
        logger.info("Loaded %d session(s) from %s", len(data), path)
        return cls(data)

    def get(self, session_id: str) -> dict[str, Any] | None:
        record = self._sessions.get(session_id)
        return dict(record) if record is not None else None

    def __len__(self) -> int:
        return len(self._sessions)


class StreamEndStore:
    """Measured stream durations, keyed by session id.

    ``record`` is an idempotent upsert: the first duration recorded for a
    session wins and later writes return it unchanged. Records are saved to
    ``path`` with debouncing.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._file = JsonFile(path, debounce_s=SAVE_DEBOUNCE_SECONDS)
        self._records: dict[str, dict[str, float]] = {}

    def load(self) -> None:
        """Load records from disk (blocking I/O)."""
        data = self._file.read()
        if not isinstance(data, dict):
            return
        records: dict[str, dict[str, float]] = {}
        for key, value in data.items():
            try:
                duration = float(value["videoDuration"])
            except (TypeError, KeyError, ValueError):
                logger.warning("Skipping malformed stream-end record for %s: %r", key, value)
                continue
            if not math.isfinite(duration) or duration <= 0:
                logger.warning("Skipping stream-end record for %s: bad duration %r", key, duration)
                continue
            records[str(key)] = {**value, "videoDuration": duration}
        self._records = records
        logger.info("Loaded %d stream-end record(s)", len(self._records))

    def duration(self, session_id: str) -> float | None:
        record = self._records.get(session_id)
        return record["videoDuration"] if record is not None else None

    def record(self, session_id: str, duration: float) -> tuple[float, bool]:
        """Store ``duration`` unless one is already known.

        Returns:
            The stored duration and whether this call created it.
        """
        existing = self.duration(session_id)
        if existing is not None:
            return existing, False
        self._records[session_id] = {
            "videoDuration": float(duration),
            "recordedAt": time.time() * 1000.0,
        }
        logger.info("Recorded stream end for %s: %.1fs", session_id, duration)
        self._file.schedule_save(lambda: dict(self._records))
        return float(duration), True

    async def flush(self) -> None:
        """Save pending changes immediately."""
        await self._file.flush()


class ViewerRegistry:
    """Viewers seen recently, per session."""

    def __init__(
        self,
        *,
        active_window_s: float = VIEWER_ACTIVE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._active_window_s = active_window_s
        self._clock = clock
        self._seen: dict[str, dict[str, float]] = {}

    def heartbeat(self, session_id: str, viewer_id: str) -> int:
        viewers = self._seen.setdefault(session_id, {})
        viewers[viewer_id] = self._clock()
        return self.count(session_id)

    def leave(self, session_id: str, viewer_id: str) -> int:
        self._seen.get(session_id, {}).pop(viewer_id, None)
        return self.count(session_id)

    def count(self, session_id: str) -> int:
        viewers = self._seen.get(session_id)
        if not viewers:
            return 0
        cutoff = self._clock() - self._active_window_s
        for viewer_id in [v for v, seen in viewers.items() if seen < cutoff]:
            del viewers[viewer_id]
        return len(viewers)
