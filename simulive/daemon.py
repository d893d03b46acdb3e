"""Watch mode: follow one simulive session from the command line."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass

from simulive.backend import BackendClient
from simulive.discovery import ServiceDiscovery
from simulive.hooks import LifecycleHook
from simulive.lifecycle import LifecycleSnapshot, LifecycleState, format_duration
from simulive.media import SimulatedPlayer
from simulive.presence import ViewerPresence
from simulive.session import SessionController
from simulive.sync_engine import MediaSurface, SyncRole, VisibilitySignal
from simulive.time_authority import TimeAuthority
from simulive.utils import PeriodicLoop

logger = logging.getLogger(__name__)

STATUS_INTERVAL_SECONDS = 1.0
# Print a playback line every N status ticks while live
LIVE_STATUS_EVERY = 10


@dataclass
class WatchConfig:
    """Configuration for `simulive watch`."""

    session_id: str
    url: str | None = None
    viewer_id: str | None = None
    hook_command: str | None = None
    drift_rate: float = 1.0
    media_duration: float | None = None


class SimuliveWatcher:
    """Headless viewer of one session.

    Keeps authoritative time, follows the session lifecycle, plays the
    session on simulated surfaces and prints what a viewer would see.
    Exits once the session reaches ``ended`` or ``error``.
    """

    def __init__(self, config: WatchConfig) -> None:
        self._config = config
        self._visibility = VisibilitySignal()
        self._shutdown_event: asyncio.Event | None = None
        self._last_display: str | None = None
        self._status_ticks = 0
        self.server_url: str | None = config.url

    async def run(self) -> int:
        """Run until the session finishes or a signal arrives; returns an exit code."""
        config = self._config

        url = config.url
        if url is None:
            url = await self._discover()
            if url is None:
                return 1
        self.server_url = url

        backend = BackendClient(url)
        authority = TimeAuthority(backend)
        controller = SessionController(
            config.session_id,
            backend,
            authority,
            self._create_surface,
            visibility=self._visibility,
            on_sync=self._on_sync,
        )
        controller.add_state_listener(self._on_transition)
        hook: LifecycleHook | None = None
        if config.hook_command:
            hook = LifecycleHook(config.hook_command, session_id=config.session_id, server_url=url)
            controller.add_state_listener(hook)
        presence = (
            ViewerPresence(backend, config.session_id, config.viewer_id)
            if config.viewer_id
            else None
        )
        status_loop = PeriodicLoop(
            "status", STATUS_INTERVAL_SECONDS, lambda: self._print_status(controller)
        )

        loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()

        def signal_handler() -> None:
            logger.debug("Received interrupt signal, shutting down...")
            if self._shutdown_event is not None:
                self._shutdown_event.set()

        # SIGCONT is what a shell sends when a stopped job is resumed
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, signal_handler)
            loop.add_signal_handler(signal.SIGTERM, signal_handler)
            loop.add_signal_handler(signal.SIGCONT, self._visibility.emit)

        logger.info("Watching session %s on %s", config.session_id, url)
        try:
            await authority.start()
            if not authority.is_synced:
                print("Server time unavailable, using the local clock for now", flush=True)
            await controller.start()
            if controller.snapshot.state.is_terminal:
                self._shutdown_event.set()
            if presence is not None:
                presence.start()
            status_loop.start()
            await self._shutdown_event.wait()
        finally:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(signal.SIGINT)
                loop.remove_signal_handler(signal.SIGTERM)
                loop.remove_signal_handler(signal.SIGCONT)
            status_loop.stop()
            if presence is not None:
                await presence.stop()
            await controller.stop()
            authority.stop()
            if hook is not None:
                await hook.wait()
            await backend.close()
            logger.info("Watcher stopped")

        return 1 if controller.snapshot.state is LifecycleState.ERROR else 0

    async def _discover(self) -> str | None:
        discovery = ServiceDiscovery()
        await discovery.start()
        try:
            logger.info("Waiting for mDNS discovery of a Simulive backend...")
            url = await discovery.wait_for_first_server()
            logger.info("Discovered backend at %s", url)
            return url
        except asyncio.CancelledError:
            return None
        finally:
            await discovery.stop()

    def _create_surface(self, role: SyncRole, source: str | None, position: float) -> MediaSurface:
        # Only the primary drifts so dual presentations show independent correction
        rate = self._config.drift_rate if role is SyncRole.PRIMARY else 1.0
        return SimulatedPlayer(
            role.value,
            source=source,
            position=position,
            duration=self._config.media_duration,
            rate=rate,
        )

    def _on_transition(
        self, previous: LifecycleState, state: LifecycleState, snapshot: LifecycleSnapshot
    ) -> None:
        if state is LifecycleState.SCHEDULED:
            print(f"Scheduled, starts in {snapshot.countdown_display}", flush=True)
        elif state is LifecycleState.COUNTDOWN:
            print("Starting soon", flush=True)
        elif state is LifecycleState.STARTING:
            print("Starting...", flush=True)
        elif state is LifecycleState.LIVE:
            print(f"Live, joined at {snapshot.duration_display}", flush=True)
        elif state is LifecycleState.ENDED:
            print("Session ended", flush=True)
        elif state is LifecycleState.ERROR:
            print("Session unavailable", flush=True)

        if state.is_terminal and self._shutdown_event is not None:
            self._shutdown_event.set()

    def _on_sync(self, expected: float) -> None:
        print(f"  resynced to {format_duration(expected)}", flush=True)

    def _print_status(self, controller: SessionController) -> None:
        snapshot = controller.snapshot
        if snapshot.state.shows_countdown:
            display = snapshot.countdown_display
            if display != self._last_display:
                self._last_display = display
                print(f"  {display}", flush=True)
        elif snapshot.state is LifecycleState.LIVE:
            self._status_ticks += 1
            if self._status_ticks % LIVE_STATUS_EVERY:
                return
            positions = ", ".join(
                f"{target.role.value}={target.surface.current_position:.1f}s"
                for target in controller.corrector.targets
            )
            print(f"  live {snapshot.duration_display} ({positions})", flush=True)
