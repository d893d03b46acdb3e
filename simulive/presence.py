"""Viewer presence heartbeat."""

from __future__ import annotations

import logging
import secrets
import time
from typing import Protocol

from simulive.backend import BackendError
from simulive.utils import PeriodicLoop

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_SECONDS = 15.0


class PresenceBackend(Protocol):
    async def heartbeat(self, session_id: str, viewer_id: str) -> int: ...

    async def leave(self, session_id: str, viewer_id: str) -> None: ...


def generate_viewer_id() -> str:
    """Return a new viewer identifier, unique per installation."""
    return f"viewer_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class ViewerPresence:
    """Keep a viewer marked as present and track the session's viewer count."""

    def __init__(
        self,
        backend: PresenceBackend,
        session_id: str,
        viewer_id: str,
        *,
        interval_s: float = HEARTBEAT_INTERVAL_SECONDS,
    ) -> None:
        self._backend = backend
        self._session_id = session_id
        self.viewer_id = viewer_id
        self.viewer_count: int | None = None
        self._loop = PeriodicLoop("presence", interval_s, self.beat, run_immediately=True)

    async def beat(self) -> None:
        """Send one heartbeat; failures are logged and keep the last count."""
        try:
            self.viewer_count = await self._backend.heartbeat(self._session_id, self.viewer_id)
        except BackendError as err:
            logger.warning("Viewer heartbeat failed: %s", err)
            return
        logger.debug("Viewer heartbeat ok, %d watching", self.viewer_count)

    def start(self) -> None:
        logger.info("Tracking presence for session %s as %s", self._session_id, self.viewer_id)
        self._loop.start()

    async def stop(self) -> None:
        """Stop heartbeats and tell the backend this viewer left."""
        if not self._loop.running:
            return
        self._loop.stop()
        try:
            await self._backend.leave(self._session_id, self.viewer_id)
        except BackendError as err:
            logger.debug("Leave notification failed: %s", err)
        logger.info("Stopped presence tracking")
