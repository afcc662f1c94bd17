"""Data models for the tunnel supervisor."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from time import monotonic
from typing import Dict, FrozenSet, List, Optional

import structlog

from ollama_relay.core.exceptions import SessionStateError
from ollama_relay.core.models import SessionConfig

logger = structlog.get_logger()


class Stage(str, Enum):
    """Stages of the tunnel chain, in startup order."""
    LOCAL_SERVICE = "local_service"
    TUNNEL = "tunnel"
    RELAY = "relay"


class ProcessRole(str, Enum):
    """Role of a locally owned process."""
    LOCAL_SERVICE = "local_service"
    TUNNEL = "tunnel"


class SessionState(str, Enum):
    """State of a supervised session."""
    IDLE = "idle"
    STARTING_LOCAL = "starting_local"
    STARTING_TUNNEL = "starting_tunnel"
    STARTING_RELAY = "starting_relay"
    RUNNING = "running"
    CLEANING_UP = "cleaning_up"
    TERMINATED = "terminated"


class TerminationReason(str, Enum):
    """Why a session ended."""
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    PROCESS_DIED = "process_died"
    STARTUP_FAILED = "startup_failed"
    DEPENDENCY_MISSING = "dependency_missing"
    ERROR = "error"


LEGAL_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE: frozenset({
        SessionState.STARTING_LOCAL,
        SessionState.CLEANING_UP,
        SessionState.TERMINATED,
    }),
    SessionState.STARTING_LOCAL: frozenset({SessionState.STARTING_TUNNEL, SessionState.CLEANING_UP}),
    SessionState.STARTING_TUNNEL: frozenset({SessionState.STARTING_RELAY, SessionState.CLEANING_UP}),
    SessionState.STARTING_RELAY: frozenset({SessionState.RUNNING, SessionState.CLEANING_UP}),
    SessionState.RUNNING: frozenset({SessionState.CLEANING_UP}),
    SessionState.CLEANING_UP: frozenset({SessionState.TERMINATED}),
    SessionState.TERMINATED: frozenset(),
}

STAGE_STATES: Dict[Stage, SessionState] = {
    Stage.LOCAL_SERVICE: SessionState.STARTING_LOCAL,
    Stage.TUNNEL: SessionState.STARTING_TUNNEL,
    Stage.RELAY: SessionState.STARTING_RELAY,
}

STATE_STAGES: Dict[SessionState, Stage] = {state: stage for stage, state in STAGE_STATES.items()}


@dataclass
class ManagedProcess:
    """A local process started and owned by the session.

    Termination has a confirmable outcome: ``terminate`` returns whether the
    process is gone.
    """

    role: ProcessRole
    handle: asyncio.subprocess.Process
    log_path: Optional[str] = None
    started_at: float = field(default_factory=monotonic)

    @property
    def pid(self) -> int:
        return self.handle.pid

    @property
    def exit_code(self) -> Optional[int]:
        return self.handle.returncode

    @property
    def is_alive(self) -> bool:
        """Check if the process is still running."""
        return self.handle.returncode is None

    @property
    def uptime(self) -> float:
        """Seconds since the process was started."""
        return monotonic() - self.started_at

    async def terminate(self, timeout: float = 10.0) -> bool:
        """Stop the process gracefully, killing it after ``timeout`` seconds.

        A process that already exited counts as terminated.
        """
        if not self.is_alive:
            logger.info("Process already gone", role=self.role.value, pid=self.pid, exit_code=self.exit_code)
            return True

        try:
            self.handle.terminate()
        except ProcessLookupError:
            return True

        try:
            await asyncio.wait_for(self.handle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Process didn't stop gracefully, killing", role=self.role.value, pid=self.pid)
            try:
                self.handle.kill()
            except ProcessLookupError:
                return True
            await self.handle.wait()

        logger.info("Process stopped", role=self.role.value, pid=self.pid, exit_code=self.exit_code)
        return not self.is_alive


@dataclass(frozen=True)
class RemoteProcess:
    """A process on the remote host, known only by name.

    There is no local handle and no confirmation channel: it can only be
    stopped with a best-effort remote terminate-by-name.
    """

    name: str
    host: str
    user: str
    log_path: Optional[str] = None


@dataclass
class SessionOutcome:
    """Result of a supervised session."""

    reason: TerminationReason
    exit_code: int
    error: Optional[BaseException] = None


@dataclass
class Session:
    """All mutable state of one supervised chain."""

    config: SessionConfig
    state: SessionState = SessionState.IDLE
    processes: Dict[ProcessRole, ManagedProcess] = field(default_factory=dict)
    relay: Optional[RemoteProcess] = None
    timer: Optional[asyncio.Task] = None
    history: List[SessionState] = field(default_factory=lambda: [SessionState.IDLE])
    entered_at: Dict[SessionState, float] = field(default_factory=lambda: {SessionState.IDLE: monotonic()})

    def transition(self, new_state: SessionState) -> bool:
        """Move to ``new_state`` if the transition is legal.

        Returns False for the ignored cases (anything out of TERMINATED,
        re-entering CLEANING_UP). Raises SessionStateError otherwise.
        """
        if self.state == new_state == SessionState.CLEANING_UP:
            return False
        if self.state == SessionState.TERMINATED:
            logger.debug("Ignoring transition out of terminated session", target=new_state.value)
            return False
        if self.state == SessionState.CLEANING_UP and new_state != SessionState.TERMINATED:
            return False
        if new_state not in LEGAL_TRANSITIONS[self.state]:
            raise SessionStateError(f"Illegal transition {self.state.value} -> {new_state.value}")

        logger.debug("Session state change", old=self.state.value, new=new_state.value)
        self.state = new_state
        self.history.append(new_state)
        self.entered_at[new_state] = monotonic()
        return True

    def record(self, process: ManagedProcess) -> None:
        self.processes[process.role] = process

    def get(self, role: ProcessRole) -> Optional[ManagedProcess]:
        return self.processes.get(role)

    @property
    def is_terminated(self) -> bool:
        return self.state == SessionState.TERMINATED

    def stage_durations(self) -> Dict[Stage, float]:
        """Seconds spent in each stage that was entered, up to the next state."""
        durations = {}
        for current, following in zip(self.history, self.history[1:]):
            stage = STATE_STAGES.get(current)
            if stage is not None:
                durations[stage] = self.entered_at[following] - self.entered_at[current]
        return durations

    @property
    def startup_seconds(self) -> Optional[float]:
        """Time from the first stage to a running chain, if it got there."""
        if SessionState.RUNNING not in self.entered_at:
            return None
        return self.entered_at[SessionState.RUNNING] - self.entered_at[SessionState.STARTING_LOCAL]
