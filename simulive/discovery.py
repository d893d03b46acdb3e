"""mDNS discovery of Simulive backends."""

from __future__ import annotations

import asyncio
import logging

from zeroconf import IPVersion, ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from simulive.utils import create_task

logger = logging.getLogger(__name__)

# Service type advertised by `simulive serve`
SERVICE_TYPE = "_simulive._tcp.local."
DEFAULT_PATH = "/api"
RESOLVE_TIMEOUT_MS = 3000


class ServiceDiscovery:
    """Browse the local network for Simulive backends."""

    def __init__(self, service_type: str = SERVICE_TYPE) -> None:
        self._service_type = service_type
        self._zeroconf: AsyncZeroconf | None = None
        self._browser: AsyncServiceBrowser | None = None
        self._urls: dict[str, str] = {}
        self._found = asyncio.Event()
        self._resolve_tasks: set[asyncio.Task[None]] = set()

    async def start(self) -> None:
        """Start browsing for backends."""
        self._zeroconf = AsyncZeroconf(ip_version=IPVersion.V4Only)
        self._browser = AsyncServiceBrowser(
            self._zeroconf.zeroconf,
            self._service_type,
            handlers=[self._on_service_state_change],
        )
        logger.debug("Browsing for %s", self._service_type)

    async def stop(self) -> None:
        """Stop browsing and release resources."""
        for task in list(self._resolve_tasks):
            task.cancel()
        if self._browser is not None:
            await self._browser.async_cancel()
            self._browser = None
        if self._zeroconf is not None:
            await self._zeroconf.async_close()
            self._zeroconf = None

    def current_url(self) -> str | None:
        """Return a currently visible backend URL, if any."""
        return next(iter(self._urls.values()), None)

    async def wait_for_first_server(self) -> str:
        """Wait until a backend has been resolved and return its URL."""
        while True:
            url = self.current_url()
            if url is not None:
                return url
            self._found.clear()
            await self._found.wait()

    def _on_service_state_change(
        self,
        zeroconf: Zeroconf,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        if state_change is ServiceStateChange.Removed:
            if self._urls.pop(name, None) is not None:
                logger.info("Backend %s disappeared", name)
            return
        task = create_task(self._resolve(service_type, name), name=f"resolve-{name}")
        self._resolve_tasks.add(task)
        task.add_done_callback(self._resolve_tasks.discard)

    async def _resolve(self, service_type: str, name: str) -> None:
        if self._zeroconf is None:
            return
        info = AsyncServiceInfo(service_type, name)
        if not await info.async_request(self._zeroconf.zeroconf, RESOLVE_TIMEOUT_MS):
            logger.debug("Could not resolve %s", name)
            return
        addresses = info.parsed_addresses(IPVersion.V4Only)
        if not addresses or info.port is None:
            return
        raw_path = info.properties.get(b"path")
        path = raw_path.decode("utf-8") if raw_path else DEFAULT_PATH
        url = f"http://{addresses[0]}:{info.port}{path}"
        if self._urls.get(name) != url:
            logger.info("Discovered backend %s at %s", name, url)
        self._urls[name] = url
        self._found.set()
