"""Authoritative server time for simulive playback.

Client clocks are not trusted. Every schedule calculation goes through a
:class:`TimeAuthority`, which keeps an estimate of ``server_now - local_now``
obtained from round-trip probes against the backend.

The estimate assumes symmetric network latency: the probe is taken to have
been answered halfway through the round trip. This is an approximation and
carries an error of up to half the latency asymmetry.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from simulive.utils import PeriodicLoop, create_task, local_now_ms

logger = logging.getLogger(__name__)

STALENESS_SECONDS = 5 * 60.0
"""How long a successful probe is trusted before reads trigger a refresh."""
REFRESH_INTERVAL_SECONDS = 5 * 60.0
"""Unconditional background refresh interval."""
RETRY_SPACING_SECONDS = 5.0
"""Minimum gap between opportunistic probes triggered by reads."""


class ProbeError(Exception):
    """Raised when the time source is unreachable or returns a malformed response."""


class TimeProbe(Protocol):
    """Anything that can fetch the server's current time."""

    async def fetch_server_time(self) -> float:
        """Return the server's current time in epoch milliseconds."""
        ...


class TimeSource(Protocol):
    """Read-only view of authoritative time used by lifecycle and sync components."""

    @property
    def is_synced(self) -> bool: ...

    def now_ms(self) -> float: ...


@dataclass(frozen=True, slots=True)
class TimeReference:
    """Result of the last successful probe.

    Attributes:
        offset_ms: Estimated ``server_now - local_now`` in milliseconds.
        last_synced_at_local: Local timestamp (ms) of the last successful probe.
        is_synced: False until a probe has succeeded.
    """

    offset_ms: float = 0.0
    last_synced_at_local: float | None = None
    is_synced: bool = False


class TimeAuthority:
    """Process-wide offset-corrected clock.

    Only this class mutates the :class:`TimeReference`; it replaces it in a
    single assignment once a probe completes, so readers always see a
    consistent value.
    """

    def __init__(
        self,
        probe: TimeProbe,
        *,
        staleness_s: float = STALENESS_SECONDS,
        refresh_interval_s: float = REFRESH_INTERVAL_SECONDS,
        retry_spacing_s: float = RETRY_SPACING_SECONDS,
        clock: Callable[[], float] = local_now_ms,
    ) -> None:
        """Initialize the time authority.

        Args:
            probe: Source of server timestamps.
            staleness_s: Age after which reads trigger an opportunistic refresh.
            refresh_interval_s: Period of the background refresh loop.
            retry_spacing_s: Minimum gap between probes triggered by reads.
            clock: Local clock returning epoch milliseconds.
        """
        self._probe = probe
        self._staleness_ms = staleness_s * 1000.0
        self._retry_spacing_ms = retry_spacing_s * 1000.0
        self._last_attempt_at: float | None = None
        self._clock = clock
        self._reference = TimeReference()
        self._inflight: asyncio.Task[TimeReference] | None = None
        self._warned_unsynced = False
        self._refresh_loop = PeriodicLoop("time-refresh", refresh_interval_s, self.sync)

    @property
    def reference(self) -> TimeReference:
        """Snapshot of the current time reference."""
        return self._reference

    @property
    def is_synced(self) -> bool:
        """Whether at least one probe has succeeded."""
        return self._reference.is_synced

    @property
    def offset_ms(self) -> float:
        """Current offset estimate (0 until the first successful probe)."""
        return self._reference.offset_ms

    def is_stale(self) -> bool:
        """Whether the reference is missing or older than the staleness window."""
        synced_at = self._reference.last_synced_at_local
        if not self._reference.is_synced or synced_at is None:
            return True
        return self._clock() - synced_at > self._staleness_ms

    def now_ms(self) -> float:
        """Return the authoritative current time in epoch milliseconds.

        Never blocks and never raises. Before the first successful probe this
        is the local clock; a missing or stale reference schedules a
        background probe.
        """
        reference = self._reference
        if not reference.is_synced and not self._warned_unsynced:
            self._warned_unsynced = True
            logger.warning("Server time not synced yet, trusting local clock")
        if self.is_stale():
            self.request_sync()
        return self._clock() + reference.offset_ms

    def request_sync(self) -> None:
        """Start a probe in the background unless one is already running."""
        if self._inflight is not None and not self._inflight.done():
            return
        last = self._last_attempt_at
        if last is not None and self._clock() - last < self._retry_spacing_ms:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, skipping background time sync")
            return
        self._inflight = create_task(self._probe_once(), name="time-probe")

    async def sync(self) -> TimeReference:
        """Probe the server now and return the resulting reference.

        Concurrent callers share the probe already in flight. Failures are
        logged and leave the previous reference untouched.
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = create_task(self._probe_once(), name="time-probe")
        return await asyncio.shield(self._inflight)

    async def start(self) -> None:
        """Perform the initial probe and start the periodic refresh."""
        await self.sync()
        self._refresh_loop.start()

    def stop(self) -> None:
        """Stop periodic refresh and cancel any probe in flight."""
        self._refresh_loop.stop()
        inflight, self._inflight = self._inflight, None
        if inflight is not None and not inflight.done():
            inflight.cancel()

    async def _probe_once(self) -> TimeReference:
        t0 = self._last_attempt_at = self._clock()
        try:
            server_ms = await self._probe.fetch_server_time()
        except ProbeError as err:
            logger.warning(
                "Server time probe failed, keeping offset %.0fms: %s",
                self._reference.offset_ms,
                err,
            )
            return self._reference
        except Exception:
            logger.exception("Unexpected error while probing server time")
            return self._reference
        t1 = self._clock()

        half_latency = (t1 - t0) / 2
        offset = server_ms - (t0 + half_latency)
        self._reference = TimeReference(offset_ms=offset, last_synced_at_local=t1, is_synced=True)
        self._warned_unsynced = False
        logger.info("Server time synced: offset=%.0fms latency=%.0fms", offset, half_latency)
        return self._reference
