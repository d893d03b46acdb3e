"""HTTP client for the simulive backend.

The backend provides the time source, the session schedule source, the
stream-end write-back and viewer presence. Transport errors are translated
into the exception types the core understands.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import aiohttp
from aiohttp import ClientError, ClientTimeout

from simulive.lifecycle import SessionSchedule
from simulive.time_authority import ProbeError
from simulive.utils import parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class BackendError(Exception):
    """Raised when a backend write or presence call fails."""


class ScheduleUnavailable(Exception):
    """Raised when no schedule can be obtained for a session."""

    def __init__(self, session_id: str, reason: str) -> None:
        super().__init__(f"Schedule unavailable for session {session_id}: {reason}")
        self.session_id = session_id
        self.reason = reason


def _parse_server_time(payload: Any) -> float:
    if isinstance(payload, dict):
        payload = payload.get("now")
    return parse_timestamp(payload)


class BackendClient:
    """Client for the backend endpoints, sharing one aiohttp session."""

    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_SECONDS,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Backend root, e.g. ``http://host:8930/api``.
            session: Optional session to reuse; the client then does not close it.
            timeout_s: Total timeout for each request.
            headers: Extra headers sent with every request (e.g. an API key).
        """
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = ClientTimeout(total=timeout_s)
        self._headers = headers or {}

    @property
    def base_url(self) -> str:
        return self._base_url

    def _url(self, *parts: str) -> str:
        return "/".join([self._base_url, *(quote(part, safe="") for part in parts)])

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=self._headers)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the underlying session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def fetch_server_time(self) -> float:
        """Return the backend's current time in epoch milliseconds.

        Raises:
            ProbeError: If the backend is unreachable or the response is malformed.
        """
        try:
            async with self._get_session().post(
                self._url("time"), timeout=self._timeout
            ) as response:
                if response.status != 200:
                    raise ProbeError(f"Server time fetch failed: {response.status}")
                payload = await response.json(content_type=None)
            return _parse_server_time(payload)
        except (TimeoutError, OSError, ClientError) as err:
            raise ProbeError(f"{type(err).__name__}: {err}") from err
        except ValueError as err:
            raise ProbeError(f"Malformed server time: {err}") from err

    async def fetch_schedule(self, session_id: str) -> SessionSchedule:
        """Fetch the schedule of ``session_id``.

        Raises:
            ScheduleUnavailable: If the session is unknown or cannot be fetched.
        """
        try:
            async with self._get_session().get(
                self._url("sessions", session_id), timeout=self._timeout
            ) as response:
                if response.status == 404:
                    raise ScheduleUnavailable(session_id, "not found")
                if response.status != 200:
                    raise ScheduleUnavailable(session_id, f"HTTP {response.status}")
                payload = await response.json(content_type=None)
            if not isinstance(payload, dict):
                raise ScheduleUnavailable(session_id, "malformed response")
            return SessionSchedule.from_dict(payload)
        except (TimeoutError, OSError, ClientError) as err:
            raise ScheduleUnavailable(session_id, type(err).__name__) from err
        except ValueError as err:
            raise ScheduleUnavailable(session_id, f"malformed schedule: {err}") from err

    async def report_stream_end(self, session_id: str, duration: float) -> float:
        """Record the measured duration of a session; returns the stored value.

        The backend keeps the first recorded duration, so repeating the call
        (or racing other viewers) is harmless.
        """
        payload = await self._request(
            "PUT",
            self._url("sessions", session_id, "stream-end"),
            json={"videoDuration": duration},
        )
        stored = payload.get("videoDuration", duration) if isinstance(payload, dict) else duration
        return float(stored)

    async def heartbeat(self, session_id: str, viewer_id: str) -> int:
        """Mark ``viewer_id`` as watching and return the active viewer count."""
        payload = await self._request(
            "POST", self._url("sessions", session_id, "viewers", viewer_id)
        )
        if not isinstance(payload, dict):
            raise BackendError("Malformed heartbeat response")
        return int(payload.get("viewers", 0))

    async def leave(self, session_id: str, viewer_id: str) -> None:
        await self._request("DELETE", self._url("sessions", session_id, "viewers", viewer_id))

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            async with self._get_session().request(
                method, url, timeout=self._timeout, **kwargs
            ) as response:
                if response.status >= 400:
                    raise BackendError(f"{method} {url} failed: HTTP {response.status}")
                if response.content_length == 0:
                    return None
                return await response.json(content_type=None)
        except (TimeoutError, OSError, ClientError) as err:
            raise BackendError(f"{method} {url} failed: {type(err).__name__}") from err
        except ValueError as err:
            raise BackendError(f"{method} {url} returned malformed JSON") from err
