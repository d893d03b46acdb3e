"""Debounced JSON documents on disk."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class JsonFile:
    """A JSON document that is read once and written back lazily.

    ``schedule_save`` coalesces bursts of changes into one write after
    ``debounce_s`` of quiet; ``flush`` writes a pending change right away.
    Disk I/O runs in the default executor.
    """

    def __init__(self, path: Path | None, *, debounce_s: float) -> None:
        self.path = path
        self._debounce_s = debounce_s
        self._handle: asyncio.TimerHandle | None = None
        self._snapshot: Callable[[], Any] | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def read(self) -> Any | None:
        """Return the parsed document, or None if missing or unreadable (blocking I/O)."""
        if self.path is None or not self.path.exists():
            logger.debug("No file at %s", self.path)
            return None
        try:
            return json.loads(self.path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to load %s: %s", self.path, e)
            return None

    def write(self, data: Any) -> None:
        """Write ``data`` now (blocking I/O); errors are logged."""
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data, indent=2) + "\n")
            logger.debug("Saved %s", self.path)
        except OSError as e:
            logger.warning("Failed to save %s: %s", self.path, e)

    def schedule_save(self, snapshot: Callable[[], Any]) -> None:
        """Write ``snapshot()`` once no further change arrives for the debounce delay."""
        if self.path is None:
            return
        self._snapshot = snapshot
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._debounce_s, self._save_later, loop)

    async def flush(self) -> None:
        """Write a pending change immediately."""
        if self._handle is None or self._snapshot is None:
            return
        self._handle.cancel()
        self._handle = None
        data = self._snapshot()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.write, data)

    def _save_later(self, loop: asyncio.AbstractEventLoop) -> None:
        self._handle = None
        if self._snapshot is not None:
            loop.run_in_executor(None, self.write, self._snapshot())
