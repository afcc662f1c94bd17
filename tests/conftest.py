"""
Pytest configuration and fakes for the tunnel supervisor tests.

The fakes stand in for the three external surfaces (the ollama CLI, the ssh
tunnel and the remote executor) so no real process or network is needed.
"""

import asyncio
import itertools
from typing import List, Optional

import pytest
import structlog
from structlog.contextvars import clear_contextvars

from ollama_relay.core.config import Settings
from ollama_relay.core.models import SessionConfig
from ollama_relay.supervisor.remote import RemoteResult

_pids = itertools.count(40000)


class FakeProcess:
    """Mimics the parts of asyncio.subprocess.Process the supervisor uses."""

    def __init__(self, returncode: Optional[int] = None, ignore_terminate: bool = False):
        self.pid = next(_pids)
        self.returncode = returncode
        self.ignore_terminate = ignore_terminate
        self.terminate_calls = 0
        self.kill_calls = 0

    def die(self, code: int = 1) -> None:
        if self.returncode is None:
            self.returncode = code

    def terminate(self) -> None:
        self.terminate_calls += 1
        if not self.ignore_terminate:
            self.die(-15)

    def kill(self) -> None:
        self.kill_calls += 1
        self.die(-9)

    async def wait(self) -> int:
        while self.returncode is None:
            await asyncio.sleep(0.001)
        return self.returncode


class FakeOllama:
    def __init__(self, installed: bool = True, models: Optional[List[str]] = None, pull_exit: int = 0, list_fails: bool = False):
        self.installed = installed
        self.list_fails = list_fails
        self.models = list(models) if models is not None else ["gemma3:4b"]
        self.pull_exit = pull_exit
        self.pulled: List[str] = []
        self.stop_all_calls = 0
        self.start_calls = 0
        self.start_error: Optional[Exception] = None
        self.dead_on_start = False
        self.process: Optional[FakeProcess] = None

    def is_installed(self) -> bool:
        return self.installed

    async def has_model(self, model: str) -> Optional[bool]:
        if self.list_fails:
            return None
        return model in self.models

    async def pull(self, model: str) -> int:
        self.pulled.append(model)
        if self.pull_exit == 0:
            self.models.append(model)
        return self.pull_exit

    async def stop_all(self) -> None:
        self.stop_all_calls += 1

    async def start(self, port: int, log_path: str) -> FakeProcess:
        self.start_calls += 1
        if self.start_error:
            raise self.start_error
        self.process = FakeProcess(returncode=1 if self.dead_on_start else None)
        return self.process


class FakeTunnel:
    def __init__(self):
        self.open_calls = 0
        self.dead_on_start = False
        self.kwargs = None
        self.process: Optional[FakeProcess] = None

    async def open(self, **kwargs) -> FakeProcess:
        self.open_calls += 1
        self.kwargs = kwargs
        self.process = FakeProcess(returncode=255 if self.dead_on_start else None)
        return self.process


class FakeRemote:
    def __init__(self, probe_ok: bool = True, launch_status: int = 0):
        self.probe_ok = probe_ok
        self.launch_status = launch_status
        self.commands: List[str] = []
        self.detached: List[str] = []
        self.terminated: List[str] = []

    async def execute(self, command: str, timeout: Optional[float] = None) -> RemoteResult:
        self.commands.append(command)
        if command.startswith("curl"):
            return RemoteResult(output="{}", exit_status=0 if self.probe_ok else 7)
        return RemoteResult(output="", exit_status=0)

    async def execute_detached(self, command: str, log_path: str = "/dev/null") -> RemoteResult:
        self.detached.append(command)
        return RemoteResult(output="", exit_status=self.launch_status)

    async def terminate_by_name(self, pattern: str) -> None:
        self.terminated.append(pattern)


@pytest.fixture
def settings(tmp_path):
    """Settings with every delay shortened for tests."""
    return Settings(
        stop_settle_seconds=0,
        local_settle_seconds=0,
        tunnel_settle_seconds=0,
        relay_settle_seconds=0,
        poll_interval_seconds=0.01,
        terminate_grace_seconds=0.1,
        service_log_path=str(tmp_path / "ollama.log"),
        tunnel_log_path=str(tmp_path / "ssh-tunnel.log"),
        relay_log_path="/tmp/socat.log",
    )


@pytest.fixture
def config():
    return SessionConfig(
        remote_user="admin",
        remote_host="relay.example.com",
        service_model="gemma3:4b",
        timeout_minutes=120,
    )


@pytest.fixture
def ollama():
    return FakeOllama()


@pytest.fixture
def tunnel():
    return FakeTunnel()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def local_health(monkeypatch):
    """Replace the local HTTP status probe; flip ``state["ok"]`` to fail it."""
    state = {"ok": True, "urls": []}

    def fake_http_endpoint_check(url, timeout=5.0, transport=None):
        state["urls"].append(url)

        async def check():
            return state["ok"]

        return check

    monkeypatch.setattr("ollama_relay.supervisor.launcher.http_endpoint_check", fake_http_endpoint_check)
    return state


@pytest.fixture
def ssh_installed(monkeypatch):
    monkeypatch.setattr("ollama_relay.supervisor.launcher.shutil.which", lambda name: f"/usr/bin/{name}")


@pytest.fixture
def reset_logging():
    """Undo structlog configuration and bound context after a test."""
    yield
    structlog.reset_defaults()
    clear_contextvars()
