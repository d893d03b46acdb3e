"""Hook execution for external script integration."""

from __future__ import annotations

import asyncio
import logging
import os

from simulive.lifecycle import LifecycleState
from simulive.utils import create_task

logger = logging.getLogger(__name__)


async def run_hook(
    command: str,
    *,
    event: str,
    previous_state: str | None = None,
    session_id: str | None = None,
    server_url: str | None = None,
) -> None:
    """Execute a hook command with environment variables.

    Args:
        command: Shell command to execute.
        event: Lifecycle state that was entered (e.g., "countdown", "live").
        previous_state: Lifecycle state that was left.
        session_id: Session being watched.
        server_url: Backend URL.
    """
    # Build environment with SIMULIVE_ prefixed variables
    env = os.environ.copy()
    env["SIMULIVE_EVENT"] = event
    if previous_state:
        env["SIMULIVE_PREVIOUS_STATE"] = previous_state
    if session_id:
        env["SIMULIVE_SESSION_ID"] = session_id
    if server_url:
        env["SIMULIVE_SERVER_URL"] = server_url

    logger.debug("Running hook for %s event: %s", event, command)

    try:
        # Use the shell to allow commands like "notify-send 'Session is live'"
        proc = await asyncio.create_subprocess_shell(
            command,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()

        if proc.returncode != 0:
            logger.warning(
                "Hook command failed (exit %d): %s\nstderr: %s",
                proc.returncode,
                command,
                stderr.decode().strip() if stderr else "(empty)",
            )
        elif stdout or stderr:
            logger.debug(
                "Hook output: stdout=%s stderr=%s",
                stdout.decode().strip() if stdout else "(empty)",
                stderr.decode().strip() if stderr else "(empty)",
            )
    except OSError:
        logger.exception("Failed to execute hook command: %s", command)


class LifecycleHook:
    """Lifecycle listener that runs a hook command on every state transition."""

    def __init__(
        self, command: str, *, session_id: str, server_url: str | None = None
    ) -> None:
        self._command = command
        self._session_id = session_id
        self._server_url = server_url
        self._tasks: set[asyncio.Task[None]] = set()

    def __call__(self, previous: LifecycleState, state: LifecycleState, _snapshot: object) -> None:
        task = create_task(
            run_hook(
                self._command,
                event=state.value,
                previous_state=previous.value,
                session_id=self._session_id,
                server_url=self._server_url,
            ),
            name=f"hook-{state.value}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait(self) -> None:
        """Wait for hooks still running."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
