"""SSH reverse tunnel."""

import asyncio
import subprocess
from typing import List

import structlog

logger = structlog.get_logger()


class SSHTunnel:
    """Opens ``ssh -R`` reverse tunnels."""

    def __init__(self, ssh_binary: str = "ssh"):
        self.ssh_binary = ssh_binary

    def build_command(
        self,
        local_port: int,
        remote_port: int,
        user: str,
        host: str,
        keepalive_interval: int = 60,
        keepalive_max_missed: int = 3,
    ) -> List[str]:
        return [
            self.ssh_binary,
            "-N",
            "-R", f"{remote_port}:localhost:{local_port}",
            "-o", f"ServerAliveInterval={keepalive_interval}",
            "-o", f"ServerAliveCountMax={keepalive_max_missed}",
            "-o", "ExitOnForwardFailure=yes",
            f"{user}@{host}",
        ]

    async def open(
        self,
        local_port: int,
        remote_port: int,
        user: str,
        host: str,
        keepalive_interval: int = 60,
        keepalive_max_missed: int = 3,
        log_path: str = "/tmp/ssh-tunnel.log",
    ) -> asyncio.subprocess.Process:
        """Spawn the tunnel in the background and return its handle.

        Keep-alive probing makes ssh exit when the network dies silently, so
        the monitoring loop notices instead of hanging forever.
        """
        cmd = self.build_command(local_port, remote_port, user, host, keepalive_interval, keepalive_max_missed)
        logger.info("Opening reverse tunnel", command=" ".join(cmd), log=log_path)
        with open(log_path, "wb") as log:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
