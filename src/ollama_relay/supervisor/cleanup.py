"""Teardown of everything a session started."""

import asyncio
from typing import Optional

import structlog

from ollama_relay.supervisor.models import ProcessRole, Session, SessionState
from ollama_relay.supervisor.remote import RemoteExecutor

logger = structlog.get_logger()


class CleanupCoordinator:
    """Releases the session's resources in reverse startup order.

    ``cleanup`` runs at most once per session. Concurrent callers wait for
    the single run to finish; callers after that return immediately. No step
    ever propagates an error.
    """

    def __init__(self, session: Session, remote: RemoteExecutor, terminate_grace_seconds: float = 10.0):
        self.session = session
        self.remote = remote
        self.terminate_grace_seconds = terminate_grace_seconds
        self._started = False
        self._done: Optional[asyncio.Event] = None
        self.runs = 0

    @property
    def done(self) -> bool:
        return self._done is not None and self._done.is_set()

    async def cleanup(self) -> None:
        if self._started or self.session.is_terminated:
            if self._done is not None:
                await self._done.wait()
            return
        self._started = True
        self._done = asyncio.Event()
        self.runs += 1

        try:
            self.session.transition(SessionState.CLEANING_UP)
        except Exception as e:
            logger.warning("Unexpected state at cleanup", state=self.session.state.value, error=str(e))

        logger.info("Cleaning up")
        try:
            await self._cancel_timer()
            await self._stop_relay()
            await self._stop_process(ProcessRole.TUNNEL, "Closing SSH tunnel")
            await self._stop_process(ProcessRole.LOCAL_SERVICE, "Stopping Ollama")
        finally:
            self.session.transition(SessionState.TERMINATED)
            self._done.set()
            logger.info("Cleanup complete")

    async def _cancel_timer(self) -> None:
        timer = self.session.timer
        self.session.timer = None
        if timer is None or timer.done():
            return
        try:
            timer.cancel()
        except Exception as e:
            logger.warning("Failed to cancel timeout timer", error=str(e))

    async def _stop_relay(self) -> None:
        relay = self.session.relay
        self.session.relay = None
        if relay is None:
            return
        logger.info("Stopping socat on remote server", host=relay.host)
        try:
            await self.remote.terminate_by_name(relay.name)
        except Exception as e:
            logger.warning("Failed to stop remote relay", host=relay.host, error=str(e))

    async def _stop_process(self, role: ProcessRole, message: str) -> None:
        process = self.session.processes.pop(role, None)
        if process is None:
            return
        logger.info(message, pid=process.pid)
        try:
            stopped = await process.terminate(timeout=self.terminate_grace_seconds)
            if not stopped:
                logger.warning("Process may still be running", role=role.value, pid=process.pid)
        except Exception as e:
            logger.warning("Failed to stop process", role=role.value, pid=process.pid, error=str(e))
