"""Command execution on the remote host over SSH."""

import asyncio
import shlex
import subprocess
from dataclasses import dataclass
from typing import List, Optional

import structlog

logger = structlog.get_logger()

TIMED_OUT = -1


@dataclass
class RemoteResult:
    """Output and exit status of a synchronous remote command."""

    output: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    @property
    def timed_out(self) -> bool:
        return self.exit_status == TIMED_OUT


class RemoteExecutor:
    """Runs commands on one remote host as one user."""

    def __init__(
        self,
        user: str,
        host: str,
        ssh_binary: str = "ssh",
        connect_timeout: Optional[int] = 10,
        command_timeout: float = 30.0,
    ):
        self.user = user
        self.host = host
        self.ssh_binary = ssh_binary
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}"

    def build_command(self, command: str) -> List[str]:
        """Build the ssh argv for a remote shell command."""
        cmd = [self.ssh_binary]
        if self.connect_timeout:
            cmd += ["-o", f"ConnectTimeout={self.connect_timeout}"]
        cmd += [self.destination, command]
        return cmd

    async def execute(self, command: str, timeout: Optional[float] = None) -> RemoteResult:
        """Run ``command`` remotely and wait for it.

        A command that exceeds its timeout is killed and reported with exit
        status ``TIMED_OUT``.

        Raises:
            OSError: if the ssh client cannot be spawned
        """
        timeout = self.command_timeout if timeout is None else timeout
        logger.debug("Running remote command", host=self.host, command=command)

        proc = await asyncio.create_subprocess_exec(
            *self.build_command(command),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Remote command timed out", host=self.host, command=command, timeout=timeout)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            return RemoteResult(output="Command timed out", exit_status=TIMED_OUT)
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise

        output = stdout.decode(errors="replace") if stdout else ""
        return RemoteResult(output=output, exit_status=proc.returncode)

    async def execute_detached(self, command: str, log_path: str = "/dev/null") -> RemoteResult:
        """Start ``command`` remotely so that it outlives the ssh connection.

        Only the launch is confirmed; the returned status says nothing about
        the detached process itself.
        """
        detached = f"nohup {command} > {shlex.quote(log_path)} 2>&1 &"
        logger.info("Launching detached remote command", host=self.host, command=command, log=log_path)
        return await self.execute(detached)

    async def terminate_by_name(self, pattern: str) -> None:
        """Best-effort remote ``pkill``.

        Fire-and-forget: there is no way to confirm the process is gone, so
        nothing is returned and no error is raised.
        """
        try:
            result = await self.execute(f"pkill {shlex.quote(pattern)}")
        except Exception as e:
            logger.warning("Remote terminate failed", host=self.host, pattern=pattern, error=str(e))
            return
        # pkill exits 1 when nothing matched
        logger.info("Remote terminate issued", host=self.host, pattern=pattern, exit_status=result.exit_status)
