"""mDNS advertisement for `simulive serve`."""

from __future__ import annotations

import logging
import socket

from zeroconf import IPVersion
from zeroconf.asyncio import AsyncServiceInfo, AsyncZeroconf

from simulive.discovery import DEFAULT_PATH, SERVICE_TYPE

logger = logging.getLogger(__name__)


def _get_local_ip() -> str:
    """Get the local IP address of this machine."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            # Connecting a UDP socket sends nothing; it only selects a route
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"


class BackendAdvertisement:
    """Advertises the reference backend so watchers can find it via mDNS."""

    def __init__(self, port: int, *, name: str | None = None, path: str = DEFAULT_PATH) -> None:
        """Initialize the advertisement.

        Args:
            port: Port the backend listens on.
            name: Instance name; defaults to the hostname.
            path: API root path advertised in the TXT record.
        """
        self._port = port
        self._name = name
        self._path = path
        self._zeroconf: AsyncZeroconf | None = None
        self._service_info: AsyncServiceInfo | None = None
        self._registered = False

    async def start(self) -> None:
        """Start advertising the service via mDNS."""
        if self._registered:
            return

        hostname = socket.gethostname()
        service_name = self._name or hostname

        self._service_info = AsyncServiceInfo(
            SERVICE_TYPE,
            f"{service_name}.{SERVICE_TYPE}",
            addresses=[socket.inet_aton(_get_local_ip())],
            port=self._port,
            properties={"path": self._path},
            server=f"{hostname}.local.",
        )

        self._zeroconf = AsyncZeroconf(ip_version=IPVersion.V4Only)

        try:
            await self._zeroconf.async_register_service(self._service_info)
            self._registered = True
            logger.info("Advertising %s on port %d", service_name, self._port)
        except Exception:
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop advertising and clean up resources."""
        if self._zeroconf is None:
            return
        if self._service_info is not None and self._registered:
            try:
                await self._zeroconf.async_unregister_service(self._service_info)
            except Exception:
                logger.exception("Error unregistering service")
        await self._zeroconf.async_close()
        self._zeroconf = None
        self._service_info = None
        self._registered = False
        logger.debug("Service advertisement stopped")
