"""Stage launchers for the tunnel chain."""

import shutil
from typing import Optional, Union

import structlog

from ollama_relay.core.config import Settings
from ollama_relay.core.exceptions import (
    ConnectivityError,
    DependencyMissingError,
    HealthCheckError,
    StartupError,
)
from ollama_relay.supervisor.cancellation import CancellationToken
from ollama_relay.supervisor.health import HealthProber, http_endpoint_check, remote_endpoint_check
from ollama_relay.supervisor.local_service import OllamaControl
from ollama_relay.supervisor.models import ManagedProcess, ProcessRole, RemoteProcess, Session, Stage
from ollama_relay.supervisor.remote import RemoteExecutor
from ollama_relay.supervisor.tunnel import SSHTunnel

logger = structlog.get_logger()

RELAY_PROCESS_NAME = "socat"


class StageLauncher:
    """Starts the stages of one session and checks that each is usable.

    Every spawned process is recorded on the session before its readiness
    check runs, so a failing check still leaves it to the cleanup.
    """

    def __init__(
        self,
        session: Session,
        settings: Settings,
        token: CancellationToken,
        ollama: Optional[OllamaControl] = None,
        tunnel: Optional[SSHTunnel] = None,
        remote: Optional[RemoteExecutor] = None,
        prober: Optional[HealthProber] = None,
    ):
        self.session = session
        self.config = session.config
        self.settings = settings
        self.token = token
        self.ollama = ollama or OllamaControl(settings.ollama_binary)
        self.tunnel = tunnel or SSHTunnel(settings.ssh_binary)
        self.remote = remote or RemoteExecutor(
            self.config.remote_user,
            self.config.remote_host,
            ssh_binary=settings.ssh_binary,
            connect_timeout=settings.ssh_connect_timeout,
            command_timeout=settings.remote_command_timeout_seconds,
        )
        self.prober = prober or HealthProber(token)

    def check_dependencies(self) -> None:
        """Fail fast when a required tool is missing.

        Raises:
            DependencyMissingError: if ollama or ssh is not installed
        """
        if not self.ollama.is_installed():
            raise DependencyMissingError(self.settings.ollama_binary, "Ollama not found. Please install it first.")
        if shutil.which(self.settings.ssh_binary) is None:
            raise DependencyMissingError(self.settings.ssh_binary)

    async def launch(self, stage: Stage) -> Union[ManagedProcess, RemoteProcess]:
        if stage == Stage.LOCAL_SERVICE:
            return await self.launch_local_service()
        if stage == Stage.TUNNEL:
            return await self.launch_tunnel()
        if stage == Stage.RELAY:
            return await self.launch_relay()
        raise ValueError(f"Unknown stage: {stage}")

    async def launch_local_service(self) -> ManagedProcess:
        if not self.ollama.is_installed():
            raise DependencyMissingError(self.settings.ollama_binary, "Ollama not found. Please install it first.")

        model = self.config.service_model
        logger.info("Checking if model is available", model=model)
        available = await self.ollama.has_model(model)
        if available is None:
            # list needs a running server; the health check below decides
            logger.warning("Could not list models, skipping pull", model=model)
        elif not available:
            logger.info("Model not found, pulling", model=model)
            exit_code = await self.ollama.pull(model)
            if exit_code != 0:
                logger.warning("Model pull failed, starting Ollama anyway", model=model, exit_code=exit_code)

        logger.info("Stopping any existing Ollama instances")
        await self.ollama.stop_all()
        await self.token.sleep(self.settings.stop_settle_seconds)

        log_path = self.settings.service_log_path
        logger.info("Starting Ollama", port=self.settings.service_port, log=log_path)
        try:
            handle = await self.ollama.start(self.settings.service_port, log_path)
        except OSError as e:
            raise StartupError(f"Ollama failed to start: {e}", stage=Stage.LOCAL_SERVICE.value) from e

        process = ManagedProcess(role=ProcessRole.LOCAL_SERVICE, handle=handle, log_path=log_path)
        self.session.record(process)
        await self.token.sleep(self.settings.local_settle_seconds)

        if not process.is_alive:
            raise StartupError(f"Ollama failed to start. Check {log_path}", stage=Stage.LOCAL_SERVICE.value)

        check = http_endpoint_check(self.settings.local_health_url, timeout=self.settings.probe_timeout_seconds)
        if not await self.prober.probe(check, max_attempts=1, name="local_service"):
            raise HealthCheckError(f"Ollama not responding. Check {log_path}", stage=Stage.LOCAL_SERVICE.value)

        logger.info("Ollama is running", pid=process.pid)
        return process

    async def launch_tunnel(self) -> ManagedProcess:
        log_path = self.settings.tunnel_log_path
        logger.info("Creating SSH reverse tunnel", destination=self.config.destination)
        try:
            handle = await self.tunnel.open(
                local_port=self.settings.service_port,
                remote_port=self.settings.remote_port,
                user=self.config.remote_user,
                host=self.config.remote_host,
                keepalive_interval=self.settings.keepalive_interval,
                keepalive_max_missed=self.settings.keepalive_max_missed,
                log_path=log_path,
            )
        except OSError as e:
            raise StartupError(f"SSH tunnel failed to start: {e}", stage=Stage.TUNNEL.value) from e

        process = ManagedProcess(role=ProcessRole.TUNNEL, handle=handle, log_path=log_path)
        self.session.record(process)
        await self.token.sleep(self.settings.tunnel_settle_seconds)

        if not process.is_alive:
            raise StartupError(f"SSH tunnel failed to establish. Check {log_path}", stage=Stage.TUNNEL.value)

        logger.info("SSH tunnel established", pid=process.pid)
        return process

    async def launch_relay(self) -> RemoteProcess:
        logger.info("Starting socat relay on remote server", host=self.config.remote_host)
        await self.remote.terminate_by_name(RELAY_PROCESS_NAME)

        port = self.settings.remote_port
        relay_cmd = (
            f"socat TCP-LISTEN:{port},fork,bind={self.settings.relay_bind_address} "
            f"TCP:127.0.0.1:{port}"
        )
        try:
            result = await self.remote.execute_detached(relay_cmd, log_path=self.settings.relay_log_path)
        except OSError as e:
            raise StartupError(f"Could not launch relay: {e}", stage=Stage.RELAY.value) from e
        finally:
            # recorded even when the launch fails; the remote stop is best-effort anyway
            self.session.relay = RemoteProcess(
                name=RELAY_PROCESS_NAME,
                host=self.config.remote_host,
                user=self.config.remote_user,
                log_path=self.settings.relay_log_path,
            )

        if not result.ok:
            raise StartupError(
                f"Relay launch failed (exit status {result.exit_status}): {result.output.strip()}",
                stage=Stage.RELAY.value,
            )

        await self.token.sleep(self.settings.relay_settle_seconds)

        logger.info("Testing connection from remote server", url=self.settings.relay_url)
        check = remote_endpoint_check(
            self.remote,
            f"{self.settings.relay_url}/api/tags",
            timeout=self.settings.probe_timeout_seconds,
        )
        if not await self.prober.probe(check, max_attempts=1, name="relay"):
            raise ConnectivityError("Connection test from remote server failed", stage=Stage.RELAY.value)

        logger.info("Connection test successful")
        return self.session.relay
