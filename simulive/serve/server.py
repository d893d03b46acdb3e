"""Reference HTTP backend for Simulive watchers."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from aiohttp import web

from simulive.discovery import DEFAULT_PATH
from simulive.serve.advertisement import BackendAdvertisement
from simulive.serve.store import SessionCatalog, StreamEndStore, ViewerRegistry

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8930


class SimuliveServer:
    """HTTP server exposing time, schedule, stream-end and presence endpoints.

    Endpoints, relative to ``path``:

    - ``GET|POST /time``: ``{"now": <epoch ms>}``
    - ``GET /sessions/{id}``: the session schedule
    - ``PUT /sessions/{id}/stream-end``: record ``{"videoDuration": <s>}``
    - ``POST|DELETE /sessions/{id}/viewers/{viewer_id}``: presence heartbeat
    """

    def __init__(
        self,
        catalog: SessionCatalog,
        store: StreamEndStore,
        *,
        port: int = DEFAULT_PORT,
        host: str = "0.0.0.0",
        path: str = DEFAULT_PATH,
        viewers: ViewerRegistry | None = None,
    ) -> None:
        self._catalog = catalog
        self._store = store
        self._viewers = viewers or ViewerRegistry()
        self._port = port
        self._host = host
        self._path = path.rstrip("/")
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def create_app(self) -> web.Application:
        """Create the web application (also used directly by tests)."""
        app = web.Application()
        app.router.add_get(f"{self._path}/time", self._handle_time)
        app.router.add_post(f"{self._path}/time", self._handle_time)
        app.router.add_get(f"{self._path}/sessions/{{session_id}}", self._handle_session)
        app.router.add_put(
            f"{self._path}/sessions/{{session_id}}/stream-end", self._handle_stream_end
        )
        viewer_path = f"{self._path}/sessions/{{session_id}}/viewers/{{viewer_id}}"
        app.router.add_post(viewer_path, self._handle_heartbeat)
        app.router.add_delete(viewer_path, self._handle_leave)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()

        logger.info("Backend listening on %s:%d%s", self._host, self._port, self._path)

    async def stop(self) -> None:
        """Stop the HTTP server and persist pending records."""
        if self._site is not None:
            await self._site.stop()
            self._site = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        await self._store.flush()
        logger.debug("Backend stopped")

    async def __aenter__(self) -> SimuliveServer:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.stop()

    def _session_payload(self, session_id: str) -> dict[str, Any] | None:
        record = self._catalog.get(session_id)
        if record is None:
            return None
        duration = self._store.duration(session_id)
        if duration is None:
            duration = record.get("videoDuration")
        return {
            "id": session_id,
            "title": record.get("title"),
            "scheduledStart": record.get("scheduledStart"),
            "videoDuration": duration,
            "isActive": record.get("isActive"),
            "screenUrl": record.get("screenUrl"),
            "faceUrl": record.get("faceUrl"),
        }

    async def _handle_time(self, request: web.Request) -> web.Response:
        return web.json_response({"now": time.time() * 1000.0})

    async def _handle_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        payload = self._session_payload(session_id)
        if payload is None:
            raise web.HTTPNotFound(reason=f"Unknown session {session_id}")
        return web.json_response(payload)

    async def _handle_stream_end(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        if self._catalog.get(session_id) is None:
            raise web.HTTPNotFound(reason=f"Unknown session {session_id}")
        try:
            body = await request.json()
            duration = float(body["videoDuration"])
        except (ValueError, TypeError, KeyError) as err:
            raise web.HTTPBadRequest(reason="Expected {\"videoDuration\": <seconds>}") from err
        if not math.isfinite(duration) or duration <= 0:
            raise web.HTTPBadRequest(reason="videoDuration must be a positive number")
        stored, created = self._store.record(session_id, duration)
        return web.json_response({"videoDuration": stored, "created": created})

    async def _handle_heartbeat(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        if self._catalog.get(session_id) is None:
            raise web.HTTPNotFound(reason=f"Unknown session {session_id}")
        count = self._viewers.heartbeat(session_id, request.match_info["viewer_id"])
        return web.json_response({"viewers": count})

    async def _handle_leave(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        count = self._viewers.leave(session_id, request.match_info["viewer_id"])
        return web.json_response({"viewers": count})


@dataclass
class ServeConfig:
    """Configuration for `simulive serve`."""

    catalog_path: Path
    data_dir: Path
    port: int = DEFAULT_PORT
    name: str | None = None
    advertise: bool = True


async def run_server(config: ServeConfig) -> int:
    """Run the reference backend until interrupted; returns an exit code."""
    try:
        catalog = SessionCatalog.from_file(config.catalog_path)
    except (OSError, ValueError) as e:
        logger.error("Cannot load session catalog %s: %s", config.catalog_path, e)
        return 1

    store = StreamEndStore(config.data_dir / "stream-ends.json")
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, store.load)

    server = SimuliveServer(catalog, store, port=config.port)
    advertisement = BackendAdvertisement(config.port, name=config.name) if config.advertise else None
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.debug("Received interrupt signal, shutting down...")
        shutdown_event.set()

    # Signal handlers aren't supported on this platform (e.g., Windows)
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, signal_handler)
        loop.add_signal_handler(signal.SIGTERM, signal_handler)

    try:
        async with server:
            if advertisement is not None:
                await advertisement.start()
            try:
                await shutdown_event.wait()
            finally:
                if advertisement is not None:
                    await advertisement.stop()
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)
    return 0
