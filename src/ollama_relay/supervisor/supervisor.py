"""Supervisor of the local service -> tunnel -> relay chain."""

import asyncio
import signal
from typing import Optional

import structlog

from ollama_relay.core.config import Settings
from ollama_relay.core.exceptions import (
    DependencyMissingError,
    ProcessDiedError,
    RelayError,
    SessionCancelled,
    StartupError,
)
from ollama_relay.core.models import SessionConfig
from ollama_relay.supervisor.cancellation import CancellationToken
from ollama_relay.supervisor.cleanup import CleanupCoordinator
from ollama_relay.supervisor.launcher import StageLauncher
from ollama_relay.supervisor.local_service import OllamaControl
from ollama_relay.supervisor.models import (
    STAGE_STATES,
    ProcessRole,
    Session,
    SessionOutcome,
    SessionState,
    Stage,
    TerminationReason,
)
from ollama_relay.supervisor.remote import RemoteExecutor
from ollama_relay.supervisor.tunnel import SSHTunnel

logger = structlog.get_logger()

MONITORED_ROLES = (ProcessRole.LOCAL_SERVICE, ProcessRole.TUNNEL)


class Supervisor:
    """Brings up the chain, watches it, and tears it down exactly once."""

    def __init__(
        self,
        config: SessionConfig,
        settings: Optional[Settings] = None,
        *,
        ollama: Optional[OllamaControl] = None,
        tunnel: Optional[SSHTunnel] = None,
        remote: Optional[RemoteExecutor] = None,
        install_signal_handlers: bool = True,
    ):
        self.config = config
        self.settings = settings or Settings()
        self.session = Session(config)
        self.token = CancellationToken()
        self.remote = remote or RemoteExecutor(
            config.remote_user,
            config.remote_host,
            ssh_binary=self.settings.ssh_binary,
            connect_timeout=self.settings.ssh_connect_timeout,
            command_timeout=self.settings.remote_command_timeout_seconds,
        )
        self.launcher = StageLauncher(
            self.session,
            self.settings,
            self.token,
            ollama=ollama,
            tunnel=tunnel,
            remote=self.remote,
        )
        self.cleanup_coordinator = CleanupCoordinator(
            self.session,
            self.remote,
            terminate_grace_seconds=self.settings.terminate_grace_seconds,
        )
        self.install_signal_handlers = install_signal_handlers
        self.outcome: Optional[SessionOutcome] = None
        self._main_task: Optional[asyncio.Task] = None
        self._signals_installed = False

    @property
    def state(self) -> SessionState:
        return self.session.state

    async def run(self) -> SessionOutcome:
        """Run one session to completion and return how it ended."""
        try:
            self.launcher.check_dependencies()
        except DependencyMissingError as e:
            logger.error("Missing dependency", binary=e.binary, error=str(e))
            self.session.transition(SessionState.TERMINATED)
            self.outcome = SessionOutcome(TerminationReason.DEPENDENCY_MISSING, 1, e)
            return self.outcome

        self._setup_signal_handlers()
        try:
            self._main_task = asyncio.create_task(self._drive())
            await asyncio.wait({self._main_task})
            self.outcome = self._resolve_outcome(self._main_task)
        except asyncio.CancelledError:
            self.cancel(TerminationReason.CANCELLED)
            await self._settle_main_task()
            self.outcome = SessionOutcome(TerminationReason.CANCELLED, 0)
            raise
        finally:
            await self.cleanup()
            self._remove_signal_handlers()

        logger.info("Session finished", reason=self.outcome.reason.value, exit_code=self.outcome.exit_code)
        return self.outcome

    def cancel(self, reason: TerminationReason = TerminationReason.CANCELLED) -> None:
        """Request termination from any trigger (signal, timer, caller).

        Sets the cancellation token, which wakes any settle or poll wait, and
        cancels the driving task so other blocking calls are interrupted too.
        Only the first request has an effect.
        """
        if not self.token.cancel(reason.value):
            return
        logger.info("Termination requested", reason=reason.value, state=self.session.state.value)
        if self._main_task is not None and not self._main_task.done():
            self._main_task.cancel()

    async def cleanup(self) -> None:
        await self.cleanup_coordinator.cleanup()

    async def _settle_main_task(self) -> None:
        """Wait for a cancelled driving task to unwind.

        A launch that is still unwinding may record a process; cleanup must
        only run after that.
        """
        task = self._main_task
        if task is None or task.done():
            return
        if not task.cancelling():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning("Driving task failed while cancelling", error=str(e))

    async def _drive(self) -> None:
        for stage in Stage:
            if not self.session.transition(STAGE_STATES[stage]):
                raise SessionCancelled(self.token.reason)
            await self.launcher.launch(stage)

        for role in MONITORED_ROLES:
            process = self.session.get(role)
            if process is None or not process.is_alive:
                raise StartupError(f"{role.value} exited before the chain was up", stage=role.value)

        self.session.transition(SessionState.RUNNING)
        self.session.timer = asyncio.create_task(self._timeout_timer(self.config.timeout_seconds))
        stages_ms = {stage.value: round(seconds * 1000, 3) for stage, seconds in self.session.stage_durations().items()}

        logger.info(
            "Tunnel is ready",
            base_url=self.settings.relay_url,
            model=self.config.service_model,
            timeout_minutes=self.config.timeout_minutes,
            startup_ms=round(self.session.startup_seconds * 1000, 3),
            stages_ms=stages_ms,
        )
        logger.info(
            "Remote client configuration",
            OLLAMA_BASE_URL=self.settings.relay_url,
            INFERENCE_TEXT_MODEL=self.config.service_model,
        )
        await self._monitor()

    async def _monitor(self) -> None:
        """Poll the local processes until one of them dies.

        The remote relay has no local handle and is not polled.
        """
        logger.info("Monitoring processes", interval=self.settings.poll_interval_seconds)
        while True:
            for role in MONITORED_ROLES:
                process = self.session.get(role)
                if process is None or not process.is_alive:
                    pid = process.pid if process else None
                    exit_code = process.exit_code if process else None
                    uptime = round(process.uptime, 3) if process else None
                    logger.error("Process died", role=role.value, pid=pid, exit_code=exit_code, uptime_seconds=uptime)
                    raise ProcessDiedError(role.value, pid=pid, exit_code=exit_code)
            await self.token.sleep(self.settings.poll_interval_seconds)

    async def _timeout_timer(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        logger.warning("Timeout reached, auto-closing", timeout_minutes=self.config.timeout_minutes)
        self.cancel(TerminationReason.TIMEOUT)

    def _resolve_outcome(self, task: asyncio.Task) -> SessionOutcome:
        if task.cancelled():
            return self._cancelled_outcome()

        exc = task.exception()
        if exc is None or isinstance(exc, SessionCancelled):
            return self._cancelled_outcome()
        if isinstance(exc, ProcessDiedError):
            return SessionOutcome(TerminationReason.PROCESS_DIED, 1, exc)
        if isinstance(exc, DependencyMissingError):
            logger.error("Missing dependency", binary=exc.binary, error=str(exc))
            return SessionOutcome(TerminationReason.DEPENDENCY_MISSING, 1, exc)
        if isinstance(exc, RelayError):
            logger.error("Startup failed", stage=getattr(exc, "stage", None), error=str(exc))
            return SessionOutcome(TerminationReason.STARTUP_FAILED, 1, exc)

        logger.error("Unexpected supervisor error", error=str(exc), exc_info=exc)
        return SessionOutcome(TerminationReason.ERROR, 1, exc)

    def _cancelled_outcome(self) -> SessionOutcome:
        if self.token.reason == TerminationReason.TIMEOUT.value:
            return SessionOutcome(TerminationReason.TIMEOUT, 0)
        return SessionOutcome(TerminationReason.CANCELLED, 0)

    def _setup_signal_handlers(self) -> None:
        if not self.install_signal_handlers:
            return
        loop = asyncio.get_running_loop()
        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self.cancel, TerminationReason.CANCELLED)
            self._signals_installed = True
        except (NotImplementedError, RuntimeError) as e:
            logger.warning("Signal handlers unavailable", error=str(e))

    def _remove_signal_handlers(self) -> None:
        if not self._signals_installed:
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        self._signals_installed = False
